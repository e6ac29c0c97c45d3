"""Periodic eviction of expired credentials."""

from __future__ import annotations

import asyncio

import structlog
from sqlalchemy.exc import SQLAlchemyError

from .cache import CredentialCache

logger = structlog.get_logger()


class CacheJanitor:
    """Calls :meth:`CredentialCache.evict_expired` every *interval_seconds*."""

    def __init__(self, cache: CredentialCache, interval_seconds: float = 600.0) -> None:
        self._cache = cache
        self._interval = interval_seconds
        self.runs = 0

    async def run_once(self, now: float | None = None) -> int:
        try:
            removed = await self._cache.evict_expired(now)
        except SQLAlchemyError as exc:
            logger.warning("credential_eviction_failed", error=str(exc))
            return 0
        finally:
            self.runs += 1
        return removed

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Evict on a fixed interval until *shutdown_event* is set."""
        logger.info("cache_janitor_started", interval_seconds=self._interval)
        try:
            while not shutdown_event.is_set():
                try:
                    await asyncio.wait_for(shutdown_event.wait(), timeout=self._interval)
                except TimeoutError:
                    await self.run_once()
        finally:
            logger.info("cache_janitor_stopped")
