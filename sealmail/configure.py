"""Attribute-selection flow: per-tab policy and signing overrides."""

from __future__ import annotations

import structlog
from pydantic import ValidationError

from .badges import to_badges
from .errors import SessionCancelledError
from .interfaces import MailHost
from .models import (
    AttributeSelectionDone,
    AttributeSelectionInit,
    Conjunction,
    ComposeDetails,
    Notification,
    SurfaceKind,
)
from .policy import to_email
from .session import SurfaceChannel
from .tabs import ComposeTabState, TabStateRegistry

logger = structlog.get_logger()


class PolicyConfigurator:
    """Lets the user pick recipient policies or extra signing attributes.

    While the attribute-selection surface is open its id is the tab's
    ``open_popup_id``, which blocks sending.
    """

    def __init__(self, *, host: MailHost, tabs: TabStateRegistry, channel: SurfaceChannel) -> None:
        self._host = host
        self._tabs = tabs
        self._channel = channel

    async def configure(self, tab_id: int, *, sign: bool) -> None:
        state = self._tabs.get(tab_id)
        if state is None:
            return
        if state.open_popup_id is not None:
            await self._host.surfaces.focus(state.open_popup_id)
            return

        details = await self._host.compose.get_details(tab_id)
        initial = self._initial_policy(state, details, sign=sign)

        def _opened(surface_id: str) -> None:
            state.open_popup_id = surface_id

        try:
            payload = await self._channel.exchange(
                SurfaceKind.ATTRIBUTE_SELECTION,
                AttributeSelectionInit(initial_policy=initial, sign=sign),
                on_open=_opened,
            )
        except SessionCancelledError:
            logger.info("attribute_selection_cancelled", tab_id=tab_id, sign=sign)
            return
        finally:
            state.open_popup_id = None

        try:
            policy = AttributeSelectionDone.model_validate(payload).policy
        except ValidationError:
            logger.warning("attribute_selection_malformed", tab_id=tab_id)
            return
        if policy is None:
            return

        if sign:
            await self._apply_sign_override(state, policy)
        else:
            await self._apply_policy_override(state, policy)

    @staticmethod
    def _initial_policy(
        state: ComposeTabState, details: ComposeDetails, *, sign: bool
    ) -> dict[str, Conjunction]:
        if sign:
            sender = to_email(details.from_address)
            if state.sign_override and sender in state.sign_override:
                return dict(state.sign_override)
            # Start over when the sender changed.
            return {sender: []}

        initial: dict[str, Conjunction] = {to_email(r): [] for r in details.recipients}
        for recipient, con in (state.policy_override or {}).items():
            if recipient in initial:
                initial[recipient] = con
        return initial

    async def _apply_policy_override(self, state: ComposeTabState, policy: dict[str, Conjunction]) -> None:
        state.policy_override = policy
        latest = await self._host.compose.get_details(state.tab_id)
        cc = {to_email(r) for r in latest.cc}
        to = [r for r in policy if r not in cc]
        await self._host.compose.set_details(state.tab_id, latest.model_copy(update={"to": to}))
        logger.info("policy_override_set", tab_id=state.tab_id, recipients=len(policy))

    async def _apply_sign_override(self, state: ComposeTabState, policy: dict[str, Conjunction]) -> None:
        state.sign_override = policy
        attributes = next(iter(policy.values()), [])
        notification_id = await self._host.notifier.show(
            Notification(key="notificationComposeBadgesLabel", tab_id=state.tab_id, badges=to_badges(attributes))
        )
        await self._tabs.replace_notification(state.tab_id, notification_id)
        logger.info("sign_override_set", tab_id=state.tab_id, attributes=len(attributes))
