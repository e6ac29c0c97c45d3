"""Shared test fixtures and in-memory host fakes for the sealmail test suite."""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from jose import jwt

from sealmail.cache import CredentialCache
from sealmail.config import (
    CacheConfig,
    FolderConfig,
    KeyServiceConfig,
    RelocateConfig,
    RetryConfig,
    SealmailConfig,
)
from sealmail.interfaces import (
    ComposeHost,
    CryptoEngine,
    MailHost,
    MailStore,
    Notifier,
    SurfaceHost,
    Unsealer,
)
from sealmail.key_service import KeyServiceClient
from sealmail.models import (
    ComposeAttachment,
    ComposeDetails,
    MailFolder,
    MasterKeys,
    MessageAttachment,
    MessageHeader,
    MessageQuery,
    Notification,
    Policy,
    RecipientPolicy,
    SealOptions,
    SenderIdentity,
    SigningKeys,
    SurfaceKind,
)
from sealmail.policy import EMAIL_ATTRIBUTE_TYPE
from sealmail.session import SessionCoordinator, SurfaceChannel
from sealmail.tabs import TabStateRegistry

INBOX = MailFolder(account_id="acc1", path="/INBOX", name="Inbox")
SENT = MailFolder(account_id="acc1", path="/Sent", name="Sent")


# ------------------------------------------------------------------
# Host fakes
# ------------------------------------------------------------------


class FakeCompose(ComposeHost):
    def __init__(self) -> None:
        self.details: dict[int, ComposeDetails] = {}
        self.attachments: dict[int, list[ComposeAttachment]] = {}
        self.attachment_data: dict[int, bytes] = {}
        self.added: dict[int, list[tuple[str, str, bytes]]] = {}

    async def list_compose_tabs(self) -> list[int]:
        return list(self.details)

    async def get_details(self, tab_id: int) -> ComposeDetails:
        return self.details[tab_id]

    async def set_details(self, tab_id: int, details: ComposeDetails) -> None:
        self.details[tab_id] = details

    async def list_attachments(self, tab_id: int) -> list[ComposeAttachment]:
        return list(self.attachments.get(tab_id, []))

    async def read_attachment(self, attachment_id: int) -> bytes:
        return self.attachment_data[attachment_id]

    async def remove_attachment(self, tab_id: int, attachment_id: int) -> None:
        self.attachments[tab_id] = [a for a in self.attachments.get(tab_id, []) if a.id != attachment_id]

    async def add_attachment(self, tab_id: int, name: str, content_type: str, data: bytes) -> None:
        self.added.setdefault(tab_id, []).append((name, content_type, data))


class FakeMailStore(MailStore):
    def __init__(self) -> None:
        self.messages: dict[int, MessageHeader] = {}
        self.attachments: dict[int, list[MessageAttachment]] = {}
        self.attachment_data: dict[tuple[int, str], bytes] = {}
        self.headers: dict[int, dict[str, list[str]]] = {}
        self.bodies: dict[int, bytes] = {}
        self.identities: dict[str, str] = {"acc1": "Bob <Bob@Example.com>"}
        self.displayed: set[int] = set()
        self.selected: list[int] = []
        self.deleted: list[int] = []
        self.folders: dict[str, MailFolder] = {}
        self.query_results: list[list[MessageHeader]] | None = None
        self.queries: list[MessageQuery] = []
        self.fail_import = False
        self._next_id = 1000

    def add_message(
        self,
        message_id: int,
        *,
        author: str = "Alice <alice@example.com>",
        subject: str = "PostGuard Encrypted Email",
        attachments: dict[str, bytes] | None = None,
        headers: dict[str, list[str]] | None = None,
        folder: MailFolder = INBOX,
        displayed: bool = True,
    ) -> MessageHeader:
        header = MessageHeader(
            id=message_id,
            folder=folder,
            subject=subject,
            author=author,
            recipients=["bob@example.com"],
            date=datetime(2025, 6, 1, 12, 0, tzinfo=UTC),
        )
        self.messages[message_id] = header
        self.attachments[message_id] = []
        for index, (name, data) in enumerate((attachments or {}).items()):
            part_name = f"1.{index + 2}"
            self.attachments[message_id].append(MessageAttachment(name=name, part_name=part_name))
            self.attachment_data[(message_id, part_name)] = data
        self.headers[message_id] = headers or {}
        if displayed:
            self.displayed.add(message_id)
        return header

    async def get_message(self, message_id: int) -> MessageHeader:
        return self.messages[message_id]

    async def list_attachments(self, message_id: int) -> list[MessageAttachment]:
        return list(self.attachments.get(message_id, []))

    async def open_attachment(self, message_id: int, part_name: str) -> AsyncIterator[bytes]:
        data = self.attachment_data[(message_id, part_name)]
        for i in range(0, len(data), 7):
            yield data[i : i + 7]

    async def get_headers(self, message_id: int) -> dict[str, list[str]]:
        return self.headers.get(message_id, {})

    async def get_default_identity(self, account_id: str) -> str:
        return self.identities[account_id]

    async def is_displayed(self, message_id: int) -> bool:
        return message_id in self.displayed

    async def get_local_folder(self, name: str) -> MailFolder:
        return self.folders.setdefault(name, MailFolder(account_id="local", path=f"/{name}", name=name))

    async def import_message(self, data: bytes, folder: MailFolder) -> MessageHeader:
        if self.fail_import:
            raise OSError("disk full")
        self._next_id += 1
        header = MessageHeader(
            id=self._next_id,
            folder=folder,
            subject="Hello",
            author="alice@example.com",
            recipients=["bob@example.com"],
            date=datetime(2025, 6, 1, 12, 0, tzinfo=UTC),
        )
        self.messages[header.id] = header
        self.bodies[header.id] = data
        return header

    async def move_messages(self, message_ids: list[int], folder: MailFolder) -> None:
        for message_id in message_ids:
            moved = self.messages.pop(message_id)
            self._next_id += 1
            self.messages[self._next_id] = moved.model_copy(update={"id": self._next_id, "folder": folder})
            self.bodies[self._next_id] = self.bodies.pop(message_id, b"")

    async def delete_messages(self, message_ids: list[int]) -> None:
        for message_id in message_ids:
            self.messages.pop(message_id, None)
            self.deleted.append(message_id)

    async def query_messages(self, query: MessageQuery) -> list[MessageHeader]:
        self.queries.append(query)
        if self.query_results is not None:
            return self.query_results.pop(0) if self.query_results else []
        return [
            m
            for m in self.messages.values()
            if m.folder == query.folder
            and m.subject == query.subject
            and m.author == query.author
            and query.from_date <= m.date <= query.to_date
        ]

    async def select_message(self, message_id: int) -> None:
        self.selected.append(message_id)


class FakeNotifier(Notifier):
    def __init__(self) -> None:
        self.shown: dict[str, Notification] = {}
        self.cleared: list[str] = []

    async def show(self, notification: Notification) -> str:
        notification_id = f"n{len(self.shown) + 1}"
        self.shown[notification_id] = notification
        return notification_id

    async def clear(self, notification_id: str) -> None:
        self.cleared.append(notification_id)

    @property
    def keys(self) -> list[str]:
        return [n.key for n in self.shown.values()]


class FakeSurfaceHost(SurfaceHost):
    """Records surfaces; *responder* decides how each surface reacts once open."""

    def __init__(self) -> None:
        self.opened: list[tuple[SurfaceKind, str]] = []
        self.focused: list[str] = []
        self.responder: Callable[[SurfaceKind, str], None] | None = None

    async def open(self, kind: SurfaceKind, surface_id: str) -> None:
        self.opened.append((kind, surface_id))
        if self.responder is not None:
            asyncio.get_running_loop().call_soon(self.responder, kind, surface_id)

    async def focus(self, surface_id: str) -> None:
        self.focused.append(surface_id)


class FakeUnsealer(Unsealer):
    def __init__(self, header: dict[str, Any], body: bytes) -> None:
        self._header = header
        self._body = body
        self._sender: SenderIdentity | None = None

    def inspect_header(self) -> Policy:
        return {rid: RecipientPolicy.model_validate(p) for rid, p in self._header["policy"].items()}

    async def unseal(self, recipient_id: str, user_secret_key: Any) -> AsyncIterator[bytes]:
        if user_secret_key != {"usk": recipient_id}:
            raise RuntimeError("OperationError: wrong key")
        for i in range(0, len(self._body), 11):
            yield self._body[i : i + 11]
        self._sender = SenderIdentity.model_validate(self._header["sender"])

    @property
    def sender(self) -> SenderIdentity | None:
        return self._sender


class FakeCryptoEngine(CryptoEngine):
    """Reversible stand-in: a JSON header line followed by the plaintext."""

    def __init__(self) -> None:
        self.sealed_with: list[SealOptions] = []
        self.fail_seal = False

    async def seal(
        self,
        public_key: str,
        options: SealOptions,
        plaintext: AsyncIterator[bytes],
    ) -> AsyncIterator[bytes]:
        self.sealed_with.append(options)
        header = {
            "policy": {rid: p.model_dump(by_alias=True, exclude_none=True) for rid, p in options.policy.items()},
            "sender": {
                "public": options.pub_sign_key,
                "private": options.priv_sign_key,
            },
        }
        yield json.dumps(header).encode("utf-8") + b"\n"
        async for chunk in plaintext:
            if self.fail_seal:
                raise RuntimeError("seal exploded")
            yield chunk

    async def open_unsealer(self, ciphertext: AsyncIterator[bytes], verification_key: str) -> Unsealer:
        data = bytearray()
        async for chunk in ciphertext:
            data.extend(chunk)
        head, _, body = bytes(data).partition(b"\n")
        return FakeUnsealer(json.loads(head), body)


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def make_credential(exp: float | None = None, **claims: Any) -> str:
    payload = {"sub": "disclosure", "exp": int(exp if exp is not None else time.time() + 3600), **claims}
    return jwt.encode(payload, "test-secret", algorithm="HS256")


def email_con(email: str) -> list[dict[str, str]]:
    return [{"t": EMAIL_ATTRIBUTE_TYPE, "v": email}]


def seal_header(policy: dict[str, Any], sender_email: str = "alice@example.com") -> bytes:
    header = {"policy": policy, "sender": {"public": {"con": email_con(sender_email)}}}
    return json.dumps(header).encode("utf-8") + b"\n"


# ------------------------------------------------------------------
# Fixtures
# ------------------------------------------------------------------


@pytest.fixture
def key_service_config() -> KeyServiceConfig:
    return KeyServiceConfig(base_url="http://test-pkg:8087", timeout_seconds=5.0)


@pytest.fixture
def retry_config() -> RetryConfig:
    return RetryConfig(max_attempts=2, initial_wait_seconds=0.01, max_wait_seconds=0.02)


@pytest.fixture
def relocate_config() -> RelocateConfig:
    return RelocateConfig(attempts=10, interval_seconds=0.001)


@pytest.fixture
def folder_config() -> FolderConfig:
    return FolderConfig()


@pytest.fixture
def cache_config(tmp_path) -> CacheConfig:
    return CacheConfig(database_url=f"sqlite+aiosqlite:///{tmp_path / 'cache.db'}")


@pytest.fixture
def sealmail_config(
    key_service_config: KeyServiceConfig,
    retry_config: RetryConfig,
    relocate_config: RelocateConfig,
    cache_config: CacheConfig,
) -> SealmailConfig:
    return SealmailConfig(
        log_json=False,
        key_service=key_service_config,
        retry=retry_config,
        relocate=relocate_config,
        cache=cache_config,
    )


@pytest.fixture
async def cache(cache_config: CacheConfig) -> AsyncIterator[CredentialCache]:
    store = CredentialCache(cache_config)
    await store.start()
    yield store
    await store.stop()


@pytest.fixture
def master_keys() -> MasterKeys:
    return MasterKeys(public_key="mpk", verification_key="mvk")


@pytest.fixture
def compose() -> FakeCompose:
    return FakeCompose()


@pytest.fixture
def mail_store() -> FakeMailStore:
    return FakeMailStore()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def surfaces() -> FakeSurfaceHost:
    return FakeSurfaceHost()


@pytest.fixture
def crypto() -> FakeCryptoEngine:
    return FakeCryptoEngine()


@pytest.fixture
def host(
    compose: FakeCompose,
    mail_store: FakeMailStore,
    surfaces: FakeSurfaceHost,
    notifier: FakeNotifier,
    crypto: FakeCryptoEngine,
) -> MailHost:
    return MailHost(compose=compose, mail_store=mail_store, surfaces=surfaces, notifier=notifier, crypto=crypto)


@pytest.fixture
def channel(surfaces: FakeSurfaceHost) -> SurfaceChannel:
    return SurfaceChannel(surfaces)


@pytest.fixture
def coordinator(channel: SurfaceChannel, key_service_config: KeyServiceConfig) -> SessionCoordinator:
    return SessionCoordinator(channel, key_service_config)


@pytest.fixture
def tabs(notifier: FakeNotifier, surfaces: FakeSurfaceHost) -> TabStateRegistry:
    return TabStateRegistry(notifier, surfaces)


@pytest.fixture
def key_service() -> MagicMock:
    """A mock KeyServiceClient issuing keys the fake crypto engine accepts."""
    client = MagicMock(spec=KeyServiceClient)
    client.get_signing_keys = AsyncMock(
        return_value=SigningKeys(pub_sign_key={"con": email_con("alice@example.com")})
    )
    client.get_decryption_key = AsyncMock(return_value={"usk": "bob@example.com"})
    return client


@pytest.fixture
def respond_with_credential(surfaces: FakeSurfaceHost, channel: SurfaceChannel):
    """Make every disclosure surface answer ``done`` with a fresh credential."""

    def _install(credential: str | None = None) -> str:
        token = credential or make_credential()
        surfaces.responder = lambda kind, sid: channel.complete(sid, {"jwt": token})
        return token

    return _install
