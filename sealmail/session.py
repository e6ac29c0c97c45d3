"""Interactive surfaces: the init/done request-response channel and the
disclosure session coordinator built on top of it.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import structlog
from pydantic import BaseModel, ValidationError

from .config import KeyServiceConfig
from .errors import SealmailError, SessionCancelledError
from .interfaces import SurfaceHost
from .models import Conjunction, DisclosureDone, DisclosureInit, KeySort, SurfaceKind

logger = structlog.get_logger()


@dataclass
class _Exchange:
    kind: SurfaceKind
    init: BaseModel
    future: asyncio.Future[dict[str, Any]]


class SurfaceChannel:
    """Runs one init/done exchange per open surface.

    The surface fetches its ``init`` payload and answers with ``done``
    through the bridge.  Closing the surface before ``done`` fails the
    exchange with :class:`SessionCancelledError`.  Exchanges are
    deregistered on every exit path.
    """

    def __init__(self, surfaces: SurfaceHost) -> None:
        self._surfaces = surfaces
        self._pending: dict[str, _Exchange] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(self, surface_id: str) -> bool:
        return surface_id in self._pending

    async def exchange(
        self,
        kind: SurfaceKind,
        init: BaseModel,
        *,
        on_open: Callable[[str], None] | None = None,
    ) -> dict[str, Any]:
        """Open a surface of *kind*, wait for its ``done`` payload and return it."""
        surface_id = uuid.uuid4().hex
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[surface_id] = _Exchange(kind=kind, init=init, future=future)
        log = logger.bind(surface_id=surface_id, kind=kind.value)
        try:
            try:
                await self._surfaces.open(kind, surface_id)
                if on_open is not None:
                    on_open(surface_id)
                await self._surfaces.focus(surface_id)
            except SealmailError:
                raise
            except Exception as exc:
                raise SessionCancelledError(f"could not open {kind.value} surface") from exc
            log.info("surface_opened")
            return await future
        finally:
            del self._pending[surface_id]
            if not future.done():
                future.cancel()
            log.debug("surface_deregistered")

    def init_payload(self, surface_id: str) -> dict[str, Any]:
        """Payload for the surface's ``init`` request.  Raises ``KeyError`` if unknown."""
        exchange = self._pending[surface_id]
        return exchange.init.model_dump(by_alias=True, mode="json", exclude_none=True)

    def complete(self, surface_id: str, payload: dict[str, Any]) -> None:
        """Deliver the surface's ``done`` payload.  Raises ``KeyError`` if unknown."""
        exchange = self._pending[surface_id]
        if not exchange.future.done():
            exchange.future.set_result(payload)

    def close(self, surface_id: str) -> None:
        """The surface went away; cancel its exchange if it is still waiting."""
        exchange = self._pending.get(surface_id)
        if exchange is None:
            return
        if not exchange.future.done():
            logger.info("surface_closed_before_done", surface_id=surface_id)
            exchange.future.set_exception(SessionCancelledError("surface closed"))


def seconds_until_4am(now: datetime | None = None) -> int:
    """Seconds until the next 04:00 local time; credentials expire overnight."""
    now = now or datetime.now()
    target = now.replace(hour=4, minute=0, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return round((target - now).total_seconds())


class SessionCoordinator:
    """Obtains a fresh credential through an interactive disclosure session."""

    def __init__(self, channel: SurfaceChannel, key_service: KeyServiceConfig) -> None:
        self._channel = channel
        self._key_service = key_service

    async def request_credential(
        self,
        con: Conjunction,
        kind: KeySort,
        *,
        hints: Conjunction | None = None,
        sender_id: str | None = None,
    ) -> str:
        """Open one disclosure surface for *con* and return the credential it yields.

        Raises :class:`SessionCancelledError` if the surface is closed or
        finishes without a credential.
        """
        init = DisclosureInit(
            hostname=self._key_service.base_url,
            header=self._key_service.headers,
            conjunction=con,
            sort=kind,
            hints=hints,
            sender_id=sender_id,
            validity=seconds_until_4am(),
        )
        logger.info("disclosure_session_started", kind=kind.value, attributes=len(con))
        payload = await self._channel.exchange(SurfaceKind.DISCLOSURE, init)
        try:
            done = DisclosureDone.model_validate(payload)
        except ValidationError as exc:
            raise SessionCancelledError("disclosure surface sent a malformed result") from exc
        if not done.jwt:
            logger.info("disclosure_session_abandoned", kind=kind.value)
            raise SessionCancelledError("disclosure finished without a credential")
        logger.info("disclosure_session_completed", kind=kind.value)
        return done.jwt
