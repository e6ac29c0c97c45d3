"""Error taxonomy shared by the seal and unseal pipelines.

Every error carries a ``notification_key``: the i18n key of the message
the host shows to the user when the error ends a pipeline run.
"""

from __future__ import annotations


class SealmailError(Exception):
    """Root of all sealmail errors."""

    notification_key: str | None = None


class ConfigurationError(SealmailError):
    """Missing or unusable configuration (e.g. no master public key)."""

    notification_key = "configurationError"


class RecipientUnknownError(SealmailError):
    """The local identity has no entry in the ciphertext's hidden policy."""

    notification_key = "recipientUnknown"


class SessionCancelledError(SealmailError):
    """An interactive surface was closed or abandoned before completion."""

    notification_key = None


class RemoteKeyServiceError(SealmailError):
    """The key service failed, was unreachable, or reported a bad status."""

    notification_key = "keyServiceFailed"


class CryptoPrimitiveError(SealmailError):
    """Seal/unseal failed, or the verified sender does not match the author."""

    notification_key = "decryptionFailed"


class ConcurrencyError(SealmailError):
    """A decryption is already in flight."""

    notification_key = None


class PersistenceError(SealmailError):
    """Writing to the local mail store failed."""

    notification_key = "decryptionFailed"


class MessageNotDisplayedError(SealmailError):
    """Decryption was requested for a message that is not on screen."""

    notification_key = None


class NotSealedError(SealmailError):
    """The message does not carry exactly one sealed attachment."""

    notification_key = None
