"""Durable credential cache backed by async SQLAlchemy.

Entries are keyed by the canonical hash of a conjunction.  The expiry of an
entry is read from the credential's own ``exp`` claim without verifying its
signature: the key service validates the credential independently on every
key request, so the claim is only used to decide when to stop offering it.
"""

from __future__ import annotations

import time
from collections.abc import Iterable

import structlog
from jose import JWTError, jwt
from sqlalchemy import BigInteger, Text, delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .config import CacheConfig
from .errors import PersistenceError
from .models import AttributeRequest
from .policy import hash_conjunction

logger = structlog.get_logger()

PUBLIC_KEY_SLOT = "pk"
VERIFICATION_KEY_SLOT = "vk"


class Base(DeclarativeBase):
    pass


class CredentialRow(Base):
    __tablename__ = "credentials"

    hash: Mapped[str] = mapped_column(Text, primary_key=True)
    credential: Mapped[str] = mapped_column(Text, nullable=False)
    expiry: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)


class ParameterRow(Base):
    __tablename__ = "parameters"

    name: Mapped[str] = mapped_column(Text, primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)


def credential_expiry(credential: str) -> int:
    """Return the self-declared ``exp`` claim of a JWT credential."""
    try:
        claims = jwt.get_unverified_claims(credential)
    except JWTError as exc:
        raise ValueError("credential is not a decodable JWT") from exc
    exp = claims.get("exp")
    if not isinstance(exp, (int, float)):
        raise ValueError("credential has no numeric exp claim")
    return int(exp)


class CredentialCache:
    """Credential store shared by the seal and unseal pipelines.

    Also holds the single-slot entries for the last known master public
    key and verification key.
    """

    def __init__(self, config: CacheConfig) -> None:
        self._config = config
        self._engine: AsyncEngine | None = None
        self._session: async_sessionmaker[AsyncSession] | None = None

    async def start(self) -> None:
        """Create the engine and the tables if needed."""
        self._engine = create_async_engine(self._config.database_url, echo=False)
        self._session = async_sessionmaker(self._engine, class_=AsyncSession, expire_on_commit=False)
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("credential_cache_started")

    async def stop(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            logger.info("credential_cache_stopped")

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        assert self._session is not None, "Cache not started"
        return self._session

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    async def get(self, con: Iterable[AttributeRequest], *, now: float | None = None) -> str | None:
        """Return the cached credential for *con*, or ``None`` on a miss.

        An entry whose expiry is at or before *now* is a miss.
        """
        now = time.time() if now is None else now
        key = hash_conjunction(con)
        try:
            async with self._sessions()() as session:
                row = await session.get(CredentialRow, key)
        except SQLAlchemyError as exc:
            logger.warning("credential_cache_read_failed", error=str(exc))
            return None
        if row is None:
            logger.debug("credential_cache_miss", hash=key)
            return None
        if row.expiry <= now:
            logger.debug("credential_cache_expired", hash=key, expiry=row.expiry)
            return None
        logger.debug("credential_cache_hit", hash=key)
        return row.credential

    async def put(
        self,
        con: Iterable[AttributeRequest],
        credential: str,
        expiry: int | None = None,
    ) -> None:
        """Store *credential* for *con*; the last write for a hash wins."""
        if expiry is None:
            expiry = credential_expiry(credential)
        key = hash_conjunction(con)
        try:
            async with self._sessions()() as session:
                await session.merge(CredentialRow(hash=key, credential=credential, expiry=expiry))
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError("failed to store credential") from exc
        logger.info("credential_cached", hash=key, expiry=expiry)

    async def evict_expired(self, now: float | None = None) -> int:
        """Delete every entry with ``expiry <= now``.  Returns the count removed."""
        now = time.time() if now is None else now
        async with self._sessions()() as session:
            result = await session.execute(delete(CredentialRow).where(CredentialRow.expiry <= now))
            await session.commit()
        removed = result.rowcount or 0
        if removed:
            logger.info("credentials_evicted", count=removed)
        return removed

    async def count(self) -> int:
        async with self._sessions()() as session:
            return await session.scalar(select(func.count()).select_from(CredentialRow)) or 0

    # ------------------------------------------------------------------
    # Master parameters
    # ------------------------------------------------------------------

    async def load_parameter(self, name: str) -> str | None:
        try:
            async with self._sessions()() as session:
                row = await session.get(ParameterRow, name)
        except SQLAlchemyError as exc:
            logger.warning("parameter_read_failed", name=name, error=str(exc))
            return None
        return row.value if row else None

    async def store_parameter(self, name: str, value: str) -> None:
        try:
            async with self._sessions()() as session:
                await session.merge(ParameterRow(name=name, value=value))
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to store parameter {name}") from exc
        logger.info("parameter_stored", name=name)
