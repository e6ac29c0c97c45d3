"""Detect sealed and formerly sealed messages in the mail store."""

from __future__ import annotations

from .envelope import MARKER_HEADER
from .interfaces import MailStore
from .models import MessageAttachment

SEALED_ATTACHMENT_NAME = "postguard.encrypted"
SEALED_CONTENT_TYPE = "application/postguard; charset=utf-8"


async def find_sealed_attachment(mail_store: MailStore, message_id: int) -> MessageAttachment | None:
    """The message's sealed attachment, if it carries exactly one."""
    attachments = await mail_store.list_attachments(message_id)
    sealed = [a for a in attachments if a.name == SEALED_ATTACHMENT_NAME]
    return sealed[0] if len(sealed) == 1 else None


async def is_sealed(mail_store: MailStore, message_id: int) -> bool:
    return await find_sealed_attachment(mail_store, message_id) is not None


async def was_sealed(mail_store: MailStore, message_id: int) -> bool:
    """Whether the message is a decrypted (or archived) copy of sealed mail."""
    headers = await mail_store.get_headers(message_id)
    return MARKER_HEADER.lower() in headers
