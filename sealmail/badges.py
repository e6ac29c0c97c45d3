"""Sender badges shown above decrypted messages."""

from __future__ import annotations

from collections.abc import Iterable

from .models import AttributeRequest, Badge

_BADGE_TYPES = {
    "pbdf.sidn-pbdf.email.email": "envelope",
    "pbdf.sidn-pbdf.mobilenumber.mobilenumber": "phone",
    "pbdf.pbdf.surfnet-2.id": "education",
    "pbdf.nuts.agb.agbcode": "health",
    "pbdf.gemeente.personalData.dateofbirth": "calendar",
}


def badge_type(attribute_type: str) -> str:
    return _BADGE_TYPES.get(attribute_type, "personal")


def to_badges(attributes: Iterable[AttributeRequest]) -> list[Badge]:
    return [Badge(type=badge_type(a.type), value=a.value) for a in attributes]


class BadgeRegistry:
    """Verified sender badges of delivered messages, keyed by message id."""

    def __init__(self) -> None:
        self._badges: dict[int, list[Badge]] = {}

    def attach(self, message_id: int, badges: list[Badge]) -> None:
        self._badges[message_id] = badges

    def get(self, message_id: int) -> list[Badge] | None:
        return self._badges.get(message_id)

    def forget(self, message_id: int) -> None:
        self._badges.pop(message_id, None)
