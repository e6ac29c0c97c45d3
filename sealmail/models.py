"""Data models shared by the pipelines, the host adapters and the bridge.

Field aliases follow the wire format of the key service and the
interactive surfaces (``t``/``v``, ``ts``/``con``, camelCase keys);
``populate_by_name=True`` allows construction via either name.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class AttributeRequest(BaseModel):
    """One disclosure condition: an attribute type and an optional value."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    type: str = Field(alias="t", description="Attribute type identifier")
    value: str | None = Field(default=None, alias="v", description="Required attribute value")


# A recipient's access condition; all attributes must be disclosed together.
Conjunction = list[AttributeRequest]


class RecipientPolicy(BaseModel):
    """Encryption parameters for a single recipient."""

    model_config = ConfigDict(populate_by_name=True)

    timestamp: int = Field(alias="ts", description="Policy timestamp (epoch seconds)")
    conjunction: Conjunction = Field(alias="con", description="Attributes the recipient must disclose")


# recipient id (canonical email) -> parameters.  The same shape is recovered
# from a ciphertext header as the hidden policy.
Policy = dict[str, RecipientPolicy]


class KeySort(str, Enum):
    """Purpose of a disclosure session."""

    DECRYPTION = "Decryption"
    SIGNING = "Signing"


class SigningIdentity(BaseModel):
    """Identity a message is signed under: a public and an optional private part."""

    public: Conjunction
    private: Conjunction | None = None

    @property
    def combined(self) -> Conjunction:
        return [*self.public, *(self.private or [])]


class IdentityClaim(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    conjunction: Conjunction = Field(alias="con")


class SenderIdentity(BaseModel):
    """Sender identity asserted by the unseal primitive after verification."""

    public: IdentityClaim
    private: IdentityClaim | None = None

    @property
    def attributes(self) -> Conjunction:
        private = self.private.conjunction if self.private else []
        return [*self.public.conjunction, *private]


class SealOptions(BaseModel):
    """Parameters handed to the seal primitive."""

    policy: Policy
    pub_sign_key: Any
    priv_sign_key: Any | None = None


# ------------------------------------------------------------------
# Key service responses
# ------------------------------------------------------------------


class KeyStatusResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: str
    proof_status: str | None = Field(default=None, alias="proofStatus")

    @property
    def accepted(self) -> bool:
        return self.status == "DONE" and self.proof_status == "VALID"


class DecryptionKeyResponse(KeyStatusResponse):
    key: Any | None = None


class SigningKeyResponse(KeyStatusResponse):
    pub_sign_key: Any | None = Field(default=None, alias="pubSignKey")
    priv_sign_key: Any | None = Field(default=None, alias="privSignKey")


class SigningKeys(BaseModel):
    pub_sign_key: Any
    priv_sign_key: Any | None = None


class ParametersResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    public_key: str = Field(alias="publicKey")


class MasterKeys(BaseModel):
    """Master public key (sealing) and verification key (unsealing)."""

    public_key: str
    verification_key: str


# ------------------------------------------------------------------
# Interactive surface payloads
# ------------------------------------------------------------------


class SurfaceKind(str, Enum):
    DISCLOSURE = "disclosure"
    ATTRIBUTE_SELECTION = "attributeSelection"


class DisclosureInit(BaseModel):
    """``init`` message sent to a disclosure surface."""

    model_config = ConfigDict(populate_by_name=True)

    hostname: str
    header: dict[str, str]
    conjunction: Conjunction = Field(alias="con")
    sort: KeySort
    hints: Conjunction | None = None
    sender_id: str | None = Field(default=None, alias="senderId")
    validity: int = Field(description="Requested credential validity in seconds")


class DisclosureDone(BaseModel):
    """``done`` message from a disclosure surface; no credential means abandoned."""

    jwt: str | None = None


class AttributeSelectionInit(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    initial_policy: dict[str, Conjunction] = Field(alias="initialPolicy")
    sign: bool


class AttributeSelectionDone(BaseModel):
    policy: dict[str, Conjunction] | None = None


# ------------------------------------------------------------------
# Host (mail client) models
# ------------------------------------------------------------------


class ComposeDetails(BaseModel):
    """State of a compose window as reported by the host.

    Uses ``Field(alias="from")`` because ``"from"`` is a Python reserved word.
    """

    model_config = ConfigDict(populate_by_name=True)

    from_address: str = Field(alias="from")
    to: list[str] = Field(default_factory=list)
    cc: list[str] = Field(default_factory=list)
    bcc: list[str] = Field(default_factory=list)
    subject: str = ""
    is_plain_text: bool = Field(default=False, alias="isPlainText")
    plain_text_body: str = Field(default="", alias="plainTextBody")
    body: str = ""
    type: str = "new"
    related_message_id: int | None = Field(default=None, alias="relatedMessageId")
    delivery_format: str = Field(default="auto", alias="deliveryFormat")

    @property
    def recipients(self) -> list[str]:
        return [*self.to, *self.cc]


class ComposeAttachment(BaseModel):
    id: int
    name: str
    content_type: str = "application/octet-stream"


class MailFolder(BaseModel):
    account_id: str
    path: str
    name: str


class MessageHeader(BaseModel):
    id: int
    folder: MailFolder
    subject: str = ""
    author: str = ""
    recipients: list[str] = Field(default_factory=list)
    date: datetime


class MessageAttachment(BaseModel):
    name: str
    part_name: str
    content_type: str = "application/octet-stream"


class MessageQuery(BaseModel):
    """Best-effort lookup used to find a message again after a move."""

    folder: MailFolder
    subject: str
    recipients: str
    author: str
    from_date: datetime
    to_date: datetime


class SendDecision(BaseModel):
    """Answer to the host's before-send hook."""

    cancel: bool = False
    details: ComposeDetails | None = None


# ------------------------------------------------------------------
# Notifications
# ------------------------------------------------------------------


class Badge(BaseModel):
    type: str
    value: str | None = None


class NotificationLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class Notification(BaseModel):
    """A localized notification bar; ``key`` is the i18n message key."""

    key: str
    level: NotificationLevel = NotificationLevel.INFO
    tab_id: int | None = None
    badges: list[Badge] = Field(default_factory=list)


class DisplayState(str, Enum):
    """What the host should show above a displayed message."""

    SEALED = "sealed"
    DECRYPTED = "decrypted"
    WAS_SEALED = "was_sealed"
    PLAIN = "plain"
