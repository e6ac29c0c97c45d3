"""UnsealPipeline — decrypts one incoming sealed message at a time.

State machine::

    INIT -> METADATA -> KEY_WAIT -> DECRYPTING -> DELIVERED
      \________\___________\____________\_____-> FAILED

Until DELIVERED the original ciphertext message is never modified.  It is
deleted only after the plaintext has been imported and moved into the
original folder.
"""

from __future__ import annotations

from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any

import structlog

from .badges import BadgeRegistry, to_badges
from .cache import CredentialCache
from .config import FolderConfig, RelocateConfig
from .detection import find_sealed_attachment
from .errors import (
    ConcurrencyError,
    CryptoPrimitiveError,
    MessageNotDisplayedError,
    NotSealedError,
    PersistenceError,
    RecipientUnknownError,
    SealmailError,
)
from .interfaces import MailHost, Unsealer
from .key_service import KeyServiceClient
from .models import (
    Badge,
    KeySort,
    MasterKeys,
    MessageAttachment,
    MessageHeader,
    MessageQuery,
    Notification,
    NotificationLevel,
    RecipientPolicy,
    SenderIdentity,
)
from .policy import PolicyBuilder, to_email
from .retry import poll_until
from .session import SessionCoordinator

logger = structlog.get_logger()


class DecryptState(str, Enum):
    INIT = "init"
    METADATA = "metadata"
    KEY_WAIT = "key_wait"
    DECRYPTING = "decrypting"
    DELIVERED = "delivered"
    FAILED = "failed"


@dataclass
class DecryptSession:
    """In-flight decryption of one message."""

    message_id: int
    state: DecryptState = DecryptState.INIT
    recipient_id: str | None = None
    credential: str | None = field(default=None, repr=False)
    unsealer: Unsealer | None = field(default=None, repr=False)
    sender: SenderIdentity | None = None
    delivered_id: int | None = None


class UnsealPipeline:
    """Orchestrates decryption; globally single-flight.

    A second :meth:`decrypt` while one is running fails immediately with
    :class:`ConcurrencyError` instead of queueing.
    """

    def __init__(
        self,
        *,
        host: MailHost,
        cache: CredentialCache,
        sessions: SessionCoordinator,
        key_service: KeyServiceClient,
        master_keys: MasterKeys,
        badges: BadgeRegistry,
        folders: FolderConfig,
        relocate: RelocateConfig,
        policy_builder: PolicyBuilder | None = None,
    ) -> None:
        self._host = host
        self._cache = cache
        self._sessions = sessions
        self._key_service = key_service
        self._master_keys = master_keys
        self._badges = badges
        self._folders = folders
        self._relocate = relocate
        self._policy = policy_builder or PolicyBuilder()
        self._active: DecryptSession | None = None

    @property
    def active_session(self) -> DecryptSession | None:
        return self._active

    async def decrypt(self, message_id: int) -> DecryptSession:
        """Decrypt *message_id* and replace it with its plaintext.

        Raises the pipeline's :class:`SealmailError` after notifying the
        user; the original message is left untouched in that case.
        """
        if self._active is not None:
            raise ConcurrencyError(f"decryption of message {self._active.message_id} in progress")
        session = DecryptSession(message_id=message_id)
        self._active = session
        log = logger.bind(message_id=message_id)
        try:
            await self._run(session)
        except SealmailError as exc:
            log.warning(
                "decryption_failed",
                state=session.state.value,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            session.state = DecryptState.FAILED
            await self._notify_failure(exc)
            raise
        except Exception:
            session.state = DecryptState.FAILED
            log.exception("decryption_aborted")
            raise
        finally:
            self._active = None
        return session

    # ------------------------------------------------------------------
    # States
    # ------------------------------------------------------------------

    async def _run(self, session: DecryptSession) -> None:
        mail_store = self._host.mail_store

        # INIT
        message, attachment = await self._locate(session)
        async with aclosing(mail_store.open_attachment(message.id, attachment.part_name)) as ciphertext:
            try:
                session.unsealer = await self._host.crypto.open_unsealer(
                    ciphertext, self._master_keys.verification_key
                )
            except SealmailError:
                raise
            except Exception as exc:
                raise CryptoPrimitiveError("could not read sealed header") from exc

            # METADATA
            self._advance(session, DecryptState.METADATA)
            try:
                identity = await mail_store.get_default_identity(message.folder.account_id)
            except Exception as exc:
                raise PersistenceError(f"no identity for account {message.folder.account_id}") from exc
            session.recipient_id = to_email(identity)
            try:
                hidden = session.unsealer.inspect_header()
            except Exception as exc:
                raise CryptoPrimitiveError("malformed sealed header") from exc
            recipient_policy = hidden.get(session.recipient_id)
            if recipient_policy is None:
                raise RecipientUnknownError(f"{session.recipient_id} is not a recipient")

            # KEY_WAIT
            self._advance(session, DecryptState.KEY_WAIT)
            user_secret_key = await self._resolve_key(session, recipient_policy, message)

            # DECRYPTING
            self._advance(session, DecryptState.DECRYPTING)
            plaintext = await self._unseal(session, user_secret_key, message)

        # DELIVERED
        await self._deliver(session, message, plaintext)
        self._advance(session, DecryptState.DELIVERED)

    async def _locate(self, session: DecryptSession) -> tuple[MessageHeader, MessageAttachment]:
        mail_store = self._host.mail_store
        try:
            displayed = await mail_store.is_displayed(session.message_id)
        except Exception as exc:
            raise PersistenceError(f"could not read display state of message {session.message_id}") from exc
        if not displayed:
            raise MessageNotDisplayedError(f"message {session.message_id} is not displayed")
        try:
            message = await mail_store.get_message(session.message_id)
            attachment = await find_sealed_attachment(mail_store, message.id)
        except Exception as exc:
            raise PersistenceError(f"could not read message {session.message_id}") from exc
        if attachment is None:
            raise NotSealedError(f"message {message.id} carries no sealed attachment")
        return message, attachment

    def _advance(self, session: DecryptSession, state: DecryptState) -> None:
        logger.debug("decrypt_state", message_id=session.message_id, state=state.value)
        session.state = state

    async def _resolve_key(
        self,
        session: DecryptSession,
        recipient_policy: RecipientPolicy,
        message: MessageHeader,
    ) -> Any:
        assert session.recipient_id is not None
        key_request, hints = self._policy.decryption_request(recipient_policy, session.recipient_id)

        credential = await self._cache.get(hints)
        fresh = credential is None
        if credential is None:
            credential = await self._sessions.request_credential(
                key_request.conjunction,
                KeySort.DECRYPTION,
                hints=hints,
                sender_id=to_email(message.author),
            )
        session.credential = credential

        user_secret_key = await self._key_service.get_decryption_key(credential, key_request.timestamp)
        if fresh:
            try:
                await self._cache.put(hints, credential)
            except (ValueError, PersistenceError) as exc:
                logger.warning("credential_not_cached", message_id=session.message_id, error=str(exc))
        return user_secret_key

    async def _unseal(self, session: DecryptSession, user_secret_key: Any, message: MessageHeader) -> bytes:
        assert session.unsealer is not None and session.recipient_id is not None
        plaintext = bytearray()
        try:
            async for chunk in session.unsealer.unseal(session.recipient_id, user_secret_key):
                plaintext.extend(chunk)
        except SealmailError:
            raise
        except Exception as exc:
            raise CryptoPrimitiveError("unseal primitive failed") from exc

        sender = session.unsealer.sender
        if sender is None:
            raise CryptoPrimitiveError("unseal finished without a verified sender")
        self._verify_sender(sender, message)
        session.sender = sender
        logger.info("sender_verified", message_id=session.message_id, attributes=len(sender.attributes))
        return bytes(plaintext)

    def _verify_sender(self, sender: SenderIdentity, message: MessageHeader) -> None:
        """The verified public email must be the message author's email."""
        author = to_email(message.author)
        emails = {
            to_email(a.value)
            for a in sender.public.conjunction
            if a.type == self._policy.email_type and a.value
        }
        if author not in emails:
            raise CryptoPrimitiveError(f"verified sender does not match author {author}")

    async def _deliver(self, session: DecryptSession, message: MessageHeader, plaintext: bytes) -> None:
        mail_store = self._host.mail_store
        try:
            local_folder = await mail_store.get_local_folder(self._folders.received_copy)
            local = await mail_store.import_message(plaintext, local_folder)
            await mail_store.move_messages([local.id], message.folder)
        except SealmailError:
            raise
        except Exception as exc:
            raise PersistenceError("could not store the decrypted message") from exc

        assert session.sender is not None
        badges = to_badges(session.sender.attributes)
        moved = await self._relocate_moved(local, message)
        if moved is not None:
            session.delivered_id = moved.id
            await self._present(moved.id, badges)

        try:
            await mail_store.delete_messages([message.id])
        except Exception as exc:
            logger.warning("sealed_original_not_deleted", message_id=message.id, error=str(exc))
        logger.info(
            "message_decrypted",
            message_id=message.id,
            delivered_id=session.delivered_id,
        )

    async def _relocate_moved(self, local: MessageHeader, original: MessageHeader) -> MessageHeader | None:
        """Find the imported message again in the original folder.

        The move does not report the new id, so look it up by subject,
        recipients, author and a two-second window around its date.
        """
        query = MessageQuery(
            folder=original.folder,
            subject=local.subject,
            recipients=";".join(local.recipients),
            author=local.author,
            from_date=local.date - timedelta(seconds=1),
            to_date=local.date + timedelta(seconds=1),
        )

        async def _query() -> list[MessageHeader]:
            return await self._host.mail_store.query_messages(query)

        found = await poll_until(self._relocate, _query, lambda messages: len(messages) == 1)
        if found is None:
            logger.info("moved_message_not_found", message_id=original.id)
            return None
        return found[0]

    async def _present(self, message_id: int, badges: list[Badge]) -> None:
        self._badges.attach(message_id, badges)
        try:
            await self._host.mail_store.select_message(message_id)
        except Exception as exc:
            logger.info("select_message_failed", message_id=message_id, error=str(exc))

    async def _notify_failure(self, exc: SealmailError) -> None:
        if exc.notification_key is None:
            return
        try:
            await self._host.notifier.show(
                Notification(key=exc.notification_key, level=NotificationLevel.ERROR)
            )
        except Exception as notify_exc:
            logger.warning("notification_failed", error=str(notify_exc))
