"""Service configuration loaded from environment variables.

Uses pydantic-settings so every field can be overridden via env vars.
Nested models are populated from their own env-var prefixes.
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings


class KeyServiceConfig(BaseSettings):
    """Key-issuing service (PKG) connection settings."""

    model_config = {"env_prefix": "PKG_"}

    base_url: str = Field(
        default="https://postguard-main.cs.ru.nl/pkg",
        description="Base URL of the key-issuing service",
    )
    timeout_seconds: float = Field(default=30.0, description="HTTP request timeout")
    client_header: str = Field(
        default="X-PostGuard-Client-Version",
        description="Header used to announce the client version to the key service",
    )
    client_version: str = Field(
        default="Python,sealmail,0.1.0",
        description="Value sent in the client-version header",
    )

    @property
    def headers(self) -> dict[str, str]:
        return {self.client_header: self.client_version}


class CacheConfig(BaseSettings):
    """Durable credential cache settings."""

    model_config = {"env_prefix": "CACHE_"}

    database_url: str = Field(
        default="sqlite+aiosqlite:///sealmail-cache.db",
        description="Async SQLAlchemy URL of the credential cache database",
    )
    cleanup_interval_seconds: float = Field(
        default=600.0,
        description="Seconds between expired-credential evictions",
    )


class FolderConfig(BaseSettings):
    """Local folders used for plaintext copies."""

    model_config = {"env_prefix": "FOLDERS_"}

    sent_copy: str = Field(
        default="PostGuard Sent",
        description="Local folder receiving plaintext copies of sealed outgoing mail",
    )
    received_copy: str = Field(
        default="PostGuard Received",
        description="Local folder receiving decrypted incoming mail",
    )


class RetryConfig(BaseSettings):
    """Retry / backoff settings for fetching the master parameters."""

    model_config = {"env_prefix": "RETRY_"}

    max_attempts: int = Field(default=3, description="Maximum fetch attempts")
    initial_wait_seconds: float = Field(default=0.5, description="Initial backoff wait in seconds")
    max_wait_seconds: float = Field(default=5.0, description="Maximum backoff wait in seconds")
    multiplier: float = Field(default=2.0, description="Exponential backoff multiplier")


class RelocateConfig(BaseSettings):
    """Settings for finding a decrypted message again after it was moved."""

    model_config = {"env_prefix": "RELOCATE_"}

    attempts: int = Field(default=10, description="Number of lookup attempts")
    interval_seconds: float = Field(default=0.1, description="Wait between lookups")


class BridgeConfig(BaseSettings):
    """Local HTTP bridge serving the interactive surfaces."""

    model_config = {"env_prefix": "BRIDGE_"}

    host: str = Field(default="127.0.0.1", description="Bind address")
    port: int = Field(default=8765, description="Bind port")


class SealmailConfig(BaseSettings):
    """Root configuration for a sealmail service instance."""

    model_config = {"env_prefix": "SEALMAIL_"}

    encrypt_by_default: bool = Field(
        default=False,
        description="Enable encryption for new compose tabs that are not replies to sealed mail",
    )
    log_json: bool = Field(
        default=True,
        description="Use JSON log output (True for prod, False for dev)",
    )
    log_level: str = Field(default="INFO", description="Log level")

    key_service: KeyServiceConfig = Field(default_factory=KeyServiceConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    folders: FolderConfig = Field(default_factory=FolderConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    relocate: RelocateConfig = Field(default_factory=RelocateConfig)
    bridge: BridgeConfig = Field(default_factory=BridgeConfig)
