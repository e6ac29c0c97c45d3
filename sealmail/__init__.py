"""sealmail — attribute-based mail encryption orchestration.

Public API re-exported here for convenience::

    from sealmail import SealmailConfig, SealmailService, MailHost
"""

from .badges import BadgeRegistry
from .cache import CredentialCache
from .cleanup import CacheJanitor
from .config import (
    BridgeConfig,
    CacheConfig,
    FolderConfig,
    KeyServiceConfig,
    RelocateConfig,
    RetryConfig,
    SealmailConfig,
)
from .configure import PolicyConfigurator
from .errors import (
    ConcurrencyError,
    ConfigurationError,
    CryptoPrimitiveError,
    MessageNotDisplayedError,
    NotSealedError,
    PersistenceError,
    RecipientUnknownError,
    RemoteKeyServiceError,
    SealmailError,
    SessionCancelledError,
)
from .interfaces import ComposeHost, CryptoEngine, MailHost, MailStore, Notifier, SurfaceHost, Unsealer
from .key_service import KeyServiceClient, retrieve_master_keys
from .logging import setup_logging
from .models import AttributeRequest, KeySort, Policy, RecipientPolicy
from .policy import PolicyBuilder, hash_conjunction, to_email
from .seal import SealPipeline
from .service import SealmailService
from .session import SessionCoordinator, SurfaceChannel
from .tabs import ComposeTabState, TabStateRegistry
from .unseal import DecryptSession, DecryptState, UnsealPipeline

__all__ = [
    "AttributeRequest",
    "BadgeRegistry",
    "BridgeConfig",
    "CacheConfig",
    "CacheJanitor",
    "ComposeHost",
    "ComposeTabState",
    "ConcurrencyError",
    "ConfigurationError",
    "CredentialCache",
    "CryptoEngine",
    "CryptoPrimitiveError",
    "DecryptSession",
    "DecryptState",
    "FolderConfig",
    "KeyServiceClient",
    "KeyServiceConfig",
    "KeySort",
    "MailHost",
    "MailStore",
    "MessageNotDisplayedError",
    "NotSealedError",
    "Notifier",
    "PersistenceError",
    "Policy",
    "PolicyBuilder",
    "PolicyConfigurator",
    "RecipientPolicy",
    "RecipientUnknownError",
    "RelocateConfig",
    "RemoteKeyServiceError",
    "RetryConfig",
    "SealPipeline",
    "SealmailConfig",
    "SealmailError",
    "SealmailService",
    "SessionCancelledError",
    "SessionCoordinator",
    "SurfaceChannel",
    "SurfaceHost",
    "TabStateRegistry",
    "UnsealPipeline",
    "Unsealer",
    "hash_conjunction",
    "retrieve_master_keys",
    "setup_logging",
    "to_email",
]
