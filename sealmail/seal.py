"""SealPipeline — turns an outgoing compose session into sealed mail."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from datetime import UTC, datetime

import structlog

from .cache import CredentialCache
from .config import FolderConfig
from .detection import SEALED_ATTACHMENT_NAME, SEALED_CONTENT_TYPE, is_sealed
from .envelope import envelope_stream
from .errors import CryptoPrimitiveError, PersistenceError, SealmailError, SessionCancelledError
from .interfaces import MailHost
from .key_service import KeyServiceClient
from .models import (
    ComposeAttachment,
    ComposeDetails,
    Conjunction,
    KeySort,
    MasterKeys,
    MessageHeader,
    Notification,
    NotificationLevel,
    SealOptions,
    SendDecision,
    SigningIdentity,
)
from .policy import PolicyBuilder
from .session import SessionCoordinator
from .tabs import ComposeTabState, TabStateRegistry

logger = structlog.get_logger()

PLACEHOLDER_SUBJECT = "PostGuard Encrypted Email"
PLACEHOLDER_TEXT = (
    "This message was encrypted with PostGuard.\r\n"
    "Open it in a PostGuard-enabled mail client to read it."
)
PLACEHOLDER_HTML = (
    "<p>This message was encrypted with PostGuard.</p>"
    "<p>Open it in a PostGuard-enabled mail client to read it.</p>"
)


class SealPipeline:
    """Orchestrates encryption of one outgoing message per send.

    Steps run strictly in order: policy and signing identity, signing
    credential (cache or disclosure session), signing keys, seal, then
    attachment substitution.  The plaintext copy is archived in the
    background and never affects the send.
    """

    def __init__(
        self,
        *,
        host: MailHost,
        tabs: TabStateRegistry,
        cache: CredentialCache,
        sessions: SessionCoordinator,
        key_service: KeyServiceClient,
        master_keys: MasterKeys,
        folders: FolderConfig,
        policy_builder: PolicyBuilder | None = None,
    ) -> None:
        self._host = host
        self._tabs = tabs
        self._cache = cache
        self._sessions = sessions
        self._key_service = key_service
        self._master_keys = master_keys
        self._folders = folders
        self._policy = policy_builder or PolicyBuilder()

    # ------------------------------------------------------------------
    # Host hooks
    # ------------------------------------------------------------------

    async def on_before_send(self, tab_id: int, details: ComposeDetails) -> SendDecision:
        """Seal the message or cancel the send.

        Returns ``SendDecision(cancel=False, details=None)`` when the tab is
        not encrypting, so the host sends the message untouched.
        """
        state = self._tabs.get(tab_id)
        if state is None or not state.encryption_enabled:
            return SendDecision()

        if await self._tabs.refocus_popup(tab_id):
            return SendDecision(cancel=True)

        if details.bcc:
            if state.pending_notification_id is None:
                state.pending_notification_id = await self._host.notifier.show(
                    Notification(key="composeBccWarning", level=NotificationLevel.WARNING, tab_id=tab_id)
                )
            logger.info("send_blocked_by_bcc", tab_id=tab_id)
            return SendDecision(cancel=True)

        try:
            sealed = await self.seal(state, details)
        except SealmailError as exc:
            logger.warning("seal_failed", tab_id=tab_id, error=str(exc), error_type=type(exc).__name__)
            if not isinstance(exc, SessionCancelledError):
                await self._notify_failure(tab_id)
            return SendDecision(cancel=True)
        return SendDecision(cancel=False, details=sealed)

    async def on_after_send(self, tab_id: int, sent: list[MessageHeader]) -> None:
        """Swap the sent ciphertext for the archived plaintext copy.

        Best-effort: failures are logged and leave both copies in place.
        """
        state = self._tabs.get(tab_id)
        if state is None:
            return
        copy_id = state.sent_copy_id
        if state.archive_task is not None:
            copy_id = await state.archive_task
        if copy_id is None:
            return

        mail_store = self._host.mail_store
        try:
            for message in sent:
                if not await is_sealed(mail_store, message.id):
                    continue
                await mail_store.move_messages([copy_id], message.folder)
                await mail_store.delete_messages([message.id])
                logger.info("sent_copy_finalized", tab_id=tab_id, message_id=message.id, copy_id=copy_id)
                state.sent_copy_id = None
                state.archive_task = None
                break
        except Exception as exc:
            logger.warning("sent_copy_finalize_failed", tab_id=tab_id, error=str(exc))

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def seal(self, state: ComposeTabState, details: ComposeDetails) -> ComposeDetails:
        """Run the pipeline for *state*'s tab and return the placeholder details."""
        tab_id = state.tab_id
        compose = self._host.compose
        date = datetime.now(UTC).replace(microsecond=0)
        timestamp = int(date.timestamp())

        try:
            attachments = await compose.list_attachments(tab_id)
        except Exception as exc:
            raise PersistenceError("could not list compose attachments") from exc
        policy = self._policy.build_policy(details.recipients, timestamp, state.policy_override)
        identity = self._policy.build_signing_identity(details.from_address, state.sign_override)

        credential = await self._signing_credential(identity)
        keys = await self._key_service.get_signing_keys(credential, identity)
        options = SealOptions(
            policy=policy,
            pub_sign_key=keys.pub_sign_key,
            priv_sign_key=keys.priv_sign_key,
        )

        plaintext = bytearray()
        originals: dict[int, bytes] = {}

        async def _read(attachment_id: int) -> bytes:
            originals[attachment_id] = await compose.read_attachment(attachment_id)
            return originals[attachment_id]

        async def _tee() -> AsyncIterator[bytes]:
            async for chunk in envelope_stream(
                details,
                attachments,
                _read,
                subject=details.subject,
                date=date,
            ):
                plaintext.extend(chunk)
                yield chunk

        logger.info("sealing", tab_id=tab_id, recipients=len(policy), attachments=len(attachments))
        ciphertext = bytearray()
        try:
            async for chunk in self._host.crypto.seal(self._master_keys.public_key, options, _tee()):
                ciphertext.extend(chunk)
        except SealmailError:
            raise
        except Exception as exc:
            raise CryptoPrimitiveError("seal primitive failed") from exc

        await self._substitute_attachments(tab_id, attachments, originals, bytes(ciphertext))
        logger.info("sealed", tab_id=tab_id, size_bytes=len(ciphertext))

        state.sent_copy_id = None
        state.archive_task = asyncio.create_task(self._archive_plaintext(tab_id, bytes(plaintext)))

        return details.model_copy(
            update={
                "subject": PLACEHOLDER_SUBJECT,
                "plain_text_body": PLACEHOLDER_TEXT,
                "body": PLACEHOLDER_HTML,
            }
        )

    async def _signing_credential(self, identity: SigningIdentity) -> str:
        con = identity.combined
        credential = await self._cache.get(con)
        if credential is not None:
            return credential
        credential = await self._sessions.request_credential(con, KeySort.SIGNING)
        await self._remember(con, credential)
        return credential

    async def _remember(self, con: Conjunction, credential: str) -> None:
        try:
            await self._cache.put(con, credential)
        except (ValueError, PersistenceError) as exc:
            logger.warning("credential_not_cached", error=str(exc))

    async def _substitute_attachments(
        self,
        tab_id: int,
        attachments: list[ComposeAttachment],
        originals: dict[int, bytes],
        ciphertext: bytes,
    ) -> None:
        """Replace the compose attachments with the sealed attachment.

        On failure the removed originals are added back before raising
        :class:`PersistenceError`.
        """
        compose = self._host.compose
        removed: list[ComposeAttachment] = []
        try:
            for attachment in attachments:
                await compose.remove_attachment(tab_id, attachment.id)
                removed.append(attachment)
            await compose.add_attachment(tab_id, SEALED_ATTACHMENT_NAME, SEALED_CONTENT_TYPE, ciphertext)
        except Exception as exc:
            await self._restore_attachments(tab_id, removed, originals)
            raise PersistenceError("could not attach the sealed message") from exc

    async def _restore_attachments(
        self,
        tab_id: int,
        removed: list[ComposeAttachment],
        originals: dict[int, bytes],
    ) -> None:
        compose = self._host.compose
        for attachment in removed:
            try:
                await compose.add_attachment(
                    tab_id, attachment.name, attachment.content_type, originals[attachment.id]
                )
            except Exception as exc:
                logger.error(
                    "attachment_restore_failed",
                    tab_id=tab_id,
                    attachment=attachment.name,
                    error=str(exc),
                )

    async def _archive_plaintext(self, tab_id: int, data: bytes) -> int | None:
        """Import the plaintext into the local sent-copy folder."""
        mail_store = self._host.mail_store
        try:
            folder = await mail_store.get_local_folder(self._folders.sent_copy)
            header = await mail_store.import_message(data, folder)
        except Exception as exc:
            logger.warning("sent_copy_archive_failed", tab_id=tab_id, error=str(exc))
            return None
        state = self._tabs.get(tab_id)
        if state is not None:
            state.sent_copy_id = header.id
        logger.info("sent_copy_archived", tab_id=tab_id, copy_id=header.id)
        return header.id

    async def _notify_failure(self, tab_id: int) -> None:
        try:
            await self._host.notifier.show(
                Notification(key="encryptionFailed", level=NotificationLevel.ERROR, tab_id=tab_id)
            )
        except Exception as exc:
            logger.warning("notification_failed", tab_id=tab_id, error=str(exc))
