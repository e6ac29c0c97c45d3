"""Abstract interfaces for the host mail client and the crypto engine.

sealmail never touches the mail store, windows, or the cryptographic
primitive directly; a host adapter implements these ABCs and hands them to
the service bundled in a :class:`MailHost`.
"""

from __future__ import annotations

import abc
from collections.abc import AsyncGenerator, AsyncIterator
from dataclasses import dataclass
from typing import Any

from .models import (
    ComposeAttachment,
    ComposeDetails,
    MailFolder,
    MessageAttachment,
    MessageHeader,
    MessageQuery,
    Notification,
    Policy,
    SealOptions,
    SenderIdentity,
    SurfaceKind,
)


class ComposeHost(abc.ABC):
    """Compose windows of the host mail client."""

    @abc.abstractmethod
    async def list_compose_tabs(self) -> list[int]:
        """Ids of the compose tabs open right now."""

    @abc.abstractmethod
    async def get_details(self, tab_id: int) -> ComposeDetails: ...

    @abc.abstractmethod
    async def set_details(self, tab_id: int, details: ComposeDetails) -> None: ...

    @abc.abstractmethod
    async def list_attachments(self, tab_id: int) -> list[ComposeAttachment]: ...

    @abc.abstractmethod
    async def read_attachment(self, attachment_id: int) -> bytes: ...

    @abc.abstractmethod
    async def remove_attachment(self, tab_id: int, attachment_id: int) -> None: ...

    @abc.abstractmethod
    async def add_attachment(self, tab_id: int, name: str, content_type: str, data: bytes) -> None: ...


class MailStore(abc.ABC):
    """Message store, folders and message display of the host mail client."""

    @abc.abstractmethod
    async def get_message(self, message_id: int) -> MessageHeader: ...

    @abc.abstractmethod
    async def list_attachments(self, message_id: int) -> list[MessageAttachment]: ...

    @abc.abstractmethod
    def open_attachment(self, message_id: int, part_name: str) -> AsyncGenerator[bytes, None]:
        """Yield the attachment's bytes in chunks; callers close the generator."""

    @abc.abstractmethod
    async def get_headers(self, message_id: int) -> dict[str, list[str]]:
        """All headers of a message, keyed by lower-cased name."""

    @abc.abstractmethod
    async def get_default_identity(self, account_id: str) -> str: ...

    @abc.abstractmethod
    async def is_displayed(self, message_id: int) -> bool:
        """Whether the message is currently selected or displayed."""

    @abc.abstractmethod
    async def get_local_folder(self, name: str) -> MailFolder:
        """Return the local folder called *name*, creating it if needed."""

    @abc.abstractmethod
    async def import_message(self, data: bytes, folder: MailFolder) -> MessageHeader: ...

    @abc.abstractmethod
    async def move_messages(self, message_ids: list[int], folder: MailFolder) -> None: ...

    @abc.abstractmethod
    async def delete_messages(self, message_ids: list[int]) -> None:
        """Permanently delete messages (no trash)."""

    @abc.abstractmethod
    async def query_messages(self, query: MessageQuery) -> list[MessageHeader]: ...

    @abc.abstractmethod
    async def select_message(self, message_id: int) -> None: ...


class SurfaceHost(abc.ABC):
    """Opens and focuses interactive surfaces (popup windows)."""

    @abc.abstractmethod
    async def open(self, kind: SurfaceKind, surface_id: str) -> None:
        """Open a surface that will talk to the bridge as *surface_id*."""

    @abc.abstractmethod
    async def focus(self, surface_id: str) -> None: ...


class Notifier(abc.ABC):
    """Notification bars of the host mail client."""

    @abc.abstractmethod
    async def show(self, notification: Notification) -> str:
        """Show a notification and return its id."""

    @abc.abstractmethod
    async def clear(self, notification_id: str) -> None: ...


class Unsealer(abc.ABC):
    """One-pass reader over a ciphertext stream.

    The header is parsed when the unsealer is opened; the body is consumed
    only by :meth:`unseal`.
    """

    @abc.abstractmethod
    def inspect_header(self) -> Policy:
        """Return the hidden policy: recipient id -> {timestamp, conjunction}."""

    @abc.abstractmethod
    def unseal(self, recipient_id: str, user_secret_key: Any) -> AsyncIterator[bytes]:
        """Yield plaintext chunks; verification happens when the stream ends."""

    @property
    @abc.abstractmethod
    def sender(self) -> SenderIdentity | None:
        """The verified sender, available once :meth:`unseal` is exhausted."""


class CryptoEngine(abc.ABC):
    """External seal/unseal primitive."""

    @abc.abstractmethod
    def seal(
        self,
        public_key: str,
        options: SealOptions,
        plaintext: AsyncIterator[bytes],
    ) -> AsyncIterator[bytes]:
        """Transform the plaintext stream into ciphertext chunks."""

    @abc.abstractmethod
    async def open_unsealer(
        self, ciphertext: AsyncIterator[bytes], verification_key: str
    ) -> Unsealer: ...


@dataclass
class MailHost:
    """Everything the host provides, bundled for injection."""

    compose: ComposeHost
    mail_store: MailStore
    surfaces: SurfaceHost
    notifier: Notifier
    crypto: CryptoEngine
