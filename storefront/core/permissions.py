"""
Capabilities for reservation operations

A capability set is handed to engine operations by the caller; identity-based
capabilities (reserver, owner) are derived from the item itself. Keeping the
check here lets it be tested without any auth plumbing.
"""
from enum import Enum
from typing import Iterable, FrozenSet, Optional


class Capability(str, Enum):
    """Capability string format: "resource:action"."""

    # Derived from the item
    BOOKING_HOLDER = "booking:holder"
    ITEM_OWNER = "item:owner"

    # Granted by the caller (admin)
    CANCEL_ANY_BOOKING = "booking:cancel_any"
    MANAGE_ITEMS = "items:manage"


CANCEL_BOOKING_ALLOWED: FrozenSet[Capability] = frozenset({
    Capability.BOOKING_HOLDER,
    Capability.ITEM_OWNER,
    Capability.CANCEL_ANY_BOOKING,
})

ADMIN_CAPABILITIES: FrozenSet[Capability] = frozenset({
    Capability.CANCEL_ANY_BOOKING,
    Capability.MANAGE_ITEMS,
})


def capabilities_for_item(
    user_id: int,
    owner_id: int,
    reserved_by_id: Optional[int],
    granted: Iterable[Capability] = (),
) -> FrozenSet[Capability]:
    """Union the caller-granted capabilities with those the item confers."""
    caps = set(granted)
    if reserved_by_id is not None and reserved_by_id == user_id:
        caps.add(Capability.BOOKING_HOLDER)
    if owner_id == user_id:
        caps.add(Capability.ITEM_OWNER)
    return frozenset(caps)


def can_cancel_booking(capabilities: Iterable[Capability]) -> bool:
    return bool(CANCEL_BOOKING_ALLOWED.intersection(capabilities))


def capabilities_for_user(is_admin: bool) -> FrozenSet[Capability]:
    """Capabilities the identity layer grants to a user account."""
    return ADMIN_CAPABILITIES if is_admin else frozenset()
