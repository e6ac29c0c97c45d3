"""Per-compose-tab state, owned by the tab's lifecycle."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import structlog

from .interfaces import Notifier, SurfaceHost
from .models import Conjunction

logger = structlog.get_logger()


@dataclass
class ComposeTabState:
    """State of one compose tab.

    ``policy_override`` maps recipient -> conjunction; ``sign_override``
    maps sender -> private signing attributes.
    """

    tab_id: int
    encryption_enabled: bool
    policy_override: dict[str, Conjunction] | None = None
    sign_override: dict[str, Conjunction] | None = None
    open_popup_id: str | None = None
    pending_notification_id: str | None = None
    sent_copy_id: int | None = None
    archive_task: asyncio.Task[int | None] | None = field(default=None, repr=False)


class TabStateRegistry:
    """Holds :class:`ComposeTabState` keyed by tab id.

    The host adds an entry when a compose tab opens and removes it when the
    tab closes; nothing else creates or destroys entries.
    """

    def __init__(self, notifier: Notifier, surfaces: SurfaceHost) -> None:
        self._notifier = notifier
        self._surfaces = surfaces
        self._tabs: dict[int, ComposeTabState] = {}

    def __contains__(self, tab_id: object) -> bool:
        return tab_id in self._tabs

    def __len__(self) -> int:
        return len(self._tabs)

    def open_tab(self, tab_id: int, *, encrypt: bool) -> ComposeTabState:
        state = ComposeTabState(tab_id=tab_id, encryption_enabled=encrypt)
        self._tabs[tab_id] = state
        logger.info("compose_tab_registered", tab_id=tab_id, encrypt=encrypt)
        return state

    def close_tab(self, tab_id: int) -> None:
        state = self._tabs.pop(tab_id, None)
        if state is None:
            return
        if state.archive_task is not None and not state.archive_task.done():
            state.archive_task.cancel()
        logger.info("compose_tab_removed", tab_id=tab_id)

    def get(self, tab_id: int) -> ComposeTabState | None:
        return self._tabs.get(tab_id)

    def find_by_notification(self, notification_id: str) -> ComposeTabState | None:
        for state in self._tabs.values():
            if state.pending_notification_id == notification_id:
                return state
        return None

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def set_encryption(self, tab_id: int, enabled: bool) -> None:
        """Toggle encryption; turning it off clears the pending warning."""
        state = self._tabs.get(tab_id)
        if state is None:
            return
        state.encryption_enabled = enabled
        if not enabled and state.pending_notification_id is not None:
            notification_id = state.pending_notification_id
            state.pending_notification_id = None
            await self._notifier.clear(notification_id)
        logger.info("encryption_toggled", tab_id=tab_id, enabled=enabled)

    def notification_dismissed(self, notification_id: str) -> None:
        state = self.find_by_notification(notification_id)
        if state is not None:
            state.pending_notification_id = None

    async def replace_notification(self, tab_id: int, notification_id: str | None) -> None:
        """Clear the tab's pending notification and remember *notification_id* instead."""
        state = self._tabs.get(tab_id)
        if state is None:
            return
        previous = state.pending_notification_id
        state.pending_notification_id = notification_id
        if previous is not None and previous != notification_id:
            await self._notifier.clear(previous)

    async def refocus_popup(self, tab_id: int) -> bool:
        """Focus the tab's open configuration popup.

        Returns ``True`` if one is open, meaning a send must not proceed.
        """
        state = self._tabs.get(tab_id)
        if state is None or state.open_popup_id is None:
            return False
        await self._surfaces.focus(state.open_popup_id)
        logger.info("send_blocked_by_popup", tab_id=tab_id, popup_id=state.open_popup_id)
        return True
