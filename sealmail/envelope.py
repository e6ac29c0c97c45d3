"""Deterministic plaintext envelope for outgoing sealed mail.

The exact bytes produced here are what the seal primitive signs, so header
order and CRLF line endings must never depend on anything but the inputs.
"""

from __future__ import annotations

import base64
import email.utils
import secrets
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import datetime

from .models import ComposeAttachment, ComposeDetails

CRLF = "\r\n"
MARKER_HEADER = "X-PostGuard"
MARKER_VERSION = "0.1"
BASE64_LINE_LENGTH = 76


def generate_boundary() -> str:
    return secrets.token_hex(16)


def body_content_type(details: ComposeDetails) -> str:
    return f"{'text/plain' if details.is_plain_text else 'text/html'}; charset=utf-8"


def build_header(
    details: ComposeDetails,
    *,
    subject: str,
    date: datetime,
    boundary: str | None = None,
) -> str:
    """Header block, terminated by the empty line.

    *boundary* switches the top-level content type to ``multipart/mixed``.
    """
    content_type = (
        f'multipart/mixed; boundary="{boundary}"' if boundary else body_content_type(details)
    )
    lines = [
        f"Date: {email.utils.format_datetime(date, usegmt=True)}",
        "MIME-Version: 1.0",
        f"To: {', '.join(details.to)}",
        f"From: {details.from_address}",
        f"Subject: {subject}",
    ]
    if details.cc:
        lines.append(f"Cc: {', '.join(details.cc)}")
    lines.append(f"Content-Type: {content_type}")
    lines.append(f"{MARKER_HEADER}: {MARKER_VERSION}")
    return CRLF.join(lines) + CRLF + CRLF


def _wrap_base64(data: bytes) -> str:
    encoded = base64.b64encode(data).decode("ascii")
    return CRLF.join(
        encoded[i : i + BASE64_LINE_LENGTH] for i in range(0, len(encoded), BASE64_LINE_LENGTH)
    )


def attachment_part(boundary: str, attachment: ComposeAttachment, data: bytes, *, last: bool) -> str:
    part = (
        f'--{boundary}{CRLF}Content-Type: {attachment.content_type}; name="{attachment.name}"{CRLF}'
        f'Content-Disposition: attachment; filename="{attachment.name}"{CRLF}'
        f"Content-Transfer-Encoding: base64{CRLF}{CRLF}"
        f"{_wrap_base64(data)}"
    )
    return part + (f"{CRLF}--{boundary}--{CRLF}" if last else CRLF)


async def envelope_stream(
    details: ComposeDetails,
    attachments: list[ComposeAttachment],
    read_attachment: Callable[[int], Awaitable[bytes]],
    *,
    subject: str,
    date: datetime,
    boundary: str | None = None,
) -> AsyncIterator[bytes]:
    """Yield the envelope: header and body first, then one chunk per attachment.

    Attachments are read lazily, one at a time, as the consumer pulls.
    """
    body = details.plain_text_body if details.is_plain_text else details.body
    if not attachments:
        yield (build_header(details, subject=subject, date=date) + body).encode("utf-8")
        return

    boundary = boundary or generate_boundary()
    head = build_header(details, subject=subject, date=date, boundary=boundary)
    head += f"--{boundary}{CRLF}Content-Type: {body_content_type(details)}{CRLF}{CRLF}{body}{CRLF}"
    yield head.encode("utf-8")

    for index, attachment in enumerate(attachments):
        data = await read_attachment(attachment.id)
        last = index == len(attachments) - 1
        yield attachment_part(boundary, attachment, data, last=last).encode("utf-8")
