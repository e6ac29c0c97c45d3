"""Async HTTP client for the key-issuing service (PKG)."""

from __future__ import annotations

from typing import Any, TypeVar

import httpx
import structlog
from pydantic import BaseModel, ValidationError

from .cache import PUBLIC_KEY_SLOT, VERIFICATION_KEY_SLOT, CredentialCache
from .config import KeyServiceConfig, RetryConfig
from .errors import ConfigurationError, RemoteKeyServiceError
from .models import (
    Conjunction,
    DecryptionKeyResponse,
    KeyStatusResponse,
    MasterKeys,
    ParametersResponse,
    SigningIdentity,
    SigningKeyResponse,
    SigningKeys,
)
from .retry import with_retry

logger = structlog.get_logger()

M = TypeVar("M", bound=BaseModel)


class KeyServiceClient:
    """Exchanges credentials for key material and fetches master parameters.

    Every failure (transport error, non-2xx, malformed body, or a session
    that is not both DONE and VALID) surfaces as :class:`RemoteKeyServiceError`.
    """

    def __init__(self, config: KeyServiceConfig) -> None:
        self._config = config
        self._client: httpx.AsyncClient | None = None

    @property
    def base_url(self) -> str:
        return self._config.base_url

    async def start(self) -> None:
        self._client = httpx.AsyncClient(
            base_url=self._config.base_url,
            timeout=httpx.Timeout(self._config.timeout_seconds),
            headers=self._config.headers,
        )
        logger.info("key_service_client_started", base_url=self._config.base_url)

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            logger.info("key_service_client_stopped")

    async def _request(self, model: type[M], method: str, url: str, **kwargs: Any) -> M:
        if self._client is None:
            raise AssertionError("Client not started")
        try:
            response = await self._client.request(method, url, **kwargs)
            response.raise_for_status()
            return model.model_validate(response.json())
        except httpx.HTTPStatusError as exc:
            raise RemoteKeyServiceError(
                f"{method} {url} returned {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise RemoteKeyServiceError(f"{method} {url} failed: {exc}") from exc
        except (ValueError, ValidationError) as exc:
            raise RemoteKeyServiceError(f"{method} {url} returned a malformed body") from exc

    @staticmethod
    def _check_status(response: KeyStatusResponse, what: str) -> None:
        if not response.accepted:
            logger.warning(
                "key_session_rejected",
                what=what,
                status=response.status,
                proof_status=response.proof_status,
            )
            raise RemoteKeyServiceError(f"{what}: session not DONE and VALID")

    # ------------------------------------------------------------------
    # Parameters
    # ------------------------------------------------------------------

    async def fetch_public_key(self) -> str:
        params = await self._request(ParametersResponse, "GET", "/v2/parameters")
        return params.public_key

    async def fetch_verification_key(self) -> str:
        params = await self._request(ParametersResponse, "GET", "/v2/sign/parameters")
        return params.public_key

    # ------------------------------------------------------------------
    # Key material
    # ------------------------------------------------------------------

    async def get_decryption_key(self, credential: str, timestamp: int) -> Any:
        """Exchange a credential for the user secret key of *timestamp*."""
        response = await self._request(
            DecryptionKeyResponse,
            "GET",
            f"/v2/irma/key/{timestamp}",
            headers={"Authorization": f"Bearer {credential}"},
        )
        self._check_status(response, "decryption key")
        if response.key is None:
            raise RemoteKeyServiceError("decryption key: response carries no key")
        logger.info("decryption_key_retrieved", timestamp=timestamp)
        return response.key

    async def get_signing_keys(self, credential: str, identity: SigningIdentity) -> SigningKeys:
        """Exchange a credential for the signing keys of *identity*."""

        def _dump(con: Conjunction | None) -> list[dict[str, Any]] | None:
            if con is None:
                return None
            return [a.model_dump(by_alias=True, exclude_none=True) for a in con]

        body = {"pubSignId": _dump(identity.public), "privSignId": _dump(identity.private)}
        response = await self._request(
            SigningKeyResponse,
            "POST",
            "/v2/irma/sign/key",
            json=body,
            headers={"Authorization": f"Bearer {credential}"},
        )
        self._check_status(response, "signing keys")
        if response.pub_sign_key is None:
            raise RemoteKeyServiceError("signing keys: response carries no public signing key")
        logger.info("signing_keys_retrieved", private=response.priv_sign_key is not None)
        return SigningKeys(pub_sign_key=response.pub_sign_key, priv_sign_key=response.priv_sign_key)


async def _fetch_or_fallback(
    name: str,
    fetch: Any,
    cache: CredentialCache,
    retry: RetryConfig,
) -> str:
    stored = await cache.load_parameter(name)

    @with_retry(retry, retryable_exceptions=(RemoteKeyServiceError,))
    async def _fetch() -> str:
        return await fetch()

    try:
        value = await _fetch()
    except RemoteKeyServiceError as exc:
        logger.warning("parameter_fetch_failed", name=name, error=str(exc), fallback=stored is not None)
        if stored is None:
            raise ConfigurationError(f"no {name} parameter available") from exc
        return stored

    if value != stored:
        await cache.store_parameter(name, value)
    return value


async def retrieve_master_keys(
    client: KeyServiceClient,
    cache: CredentialCache,
    retry: RetryConfig,
) -> MasterKeys:
    """Fetch the master public and verification keys.

    Falls back to the last durably cached values when the key service is
    unreachable; raises :class:`ConfigurationError` when neither is available.
    """
    public_key = await _fetch_or_fallback(PUBLIC_KEY_SLOT, client.fetch_public_key, cache, retry)
    verification_key = await _fetch_or_fallback(
        VERIFICATION_KEY_SLOT, client.fetch_verification_key, cache, retry
    )
    logger.info("master_keys_loaded")
    return MasterKeys(public_key=public_key, verification_key=verification_key)
