"""Subscription state machine: statuses, lifecycle events, notification transitions.

Google Play reports lifecycle changes as small integer notification types.
Each type maps to exactly one :class:`Transition` in :data:`TRANSITIONS`;
the table is checked for completeness at import so a new notification type
cannot be added without deciding how it moves the stored status.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum, IntEnum


class SubscriptionStatus(str, Enum):
    """Stored subscription status. A restart stores ACTIVE."""

    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    ON_HOLD = "ON_HOLD"
    GRACE_PERIOD = "GRACE_PERIOD"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class EventType(str, Enum):
    """PurchaseEvent types written to the audit log."""

    PURCHASE = "PURCHASE"
    RENEWAL = "RENEWAL"
    CANCELLATION = "CANCELLATION"
    RECOVERY = "RECOVERY"
    ON_HOLD = "ON_HOLD"
    GRACE_PERIOD = "GRACE_PERIOD"
    RESTART = "RESTART"
    PRICE_CHANGE_CONFIRMED = "PRICE_CHANGE_CONFIRMED"
    DEFERRAL = "DEFERRAL"
    EXPIRY = "EXPIRY"


class NotificationType(IntEnum):
    """Real-time developer notification types (10 is unused by Google Play)."""

    RECOVERED = 1
    RENEWED = 2
    CANCELED = 3
    PURCHASED = 4
    ON_HOLD = 5
    IN_GRACE_PERIOD = 6
    RESTARTED = 7
    PRICE_CHANGE_CONFIRMED = 8
    DEFERRED = 9
    EXPIRED = 11


_LIVE = frozenset(s for s in SubscriptionStatus if s is not SubscriptionStatus.EXPIRED)


@dataclass(frozen=True)
class Transition:
    """How one notification type moves a stored subscription."""

    event_type: EventType
    allowed_from: frozenset[SubscriptionStatus]
    target: SubscriptionStatus | None = None  # None = status unchanged
    advances_expiry: bool = False

    def applies_to(self, current: str) -> bool:
        try:
            return SubscriptionStatus(current) in self.allowed_from
        except ValueError:
            return False


S = SubscriptionStatus

TRANSITIONS: dict[NotificationType, Transition] = {
    NotificationType.RECOVERED: Transition(
        EventType.RECOVERY, frozenset({S.PAUSED, S.ON_HOLD}), S.ACTIVE
    ),
    NotificationType.RENEWED: Transition(
        EventType.RENEWAL, frozenset({S.ACTIVE, S.GRACE_PERIOD}), S.ACTIVE, advances_expiry=True
    ),
    NotificationType.CANCELED: Transition(
        EventType.CANCELLATION, frozenset({S.ACTIVE, S.GRACE_PERIOD}), S.CANCELLED
    ),
    # Rows are only ever created by purchase verification
    NotificationType.PURCHASED: Transition(EventType.PURCHASE, frozenset()),
    NotificationType.ON_HOLD: Transition(
        EventType.ON_HOLD, frozenset({S.ACTIVE, S.GRACE_PERIOD}), S.ON_HOLD
    ),
    NotificationType.IN_GRACE_PERIOD: Transition(
        EventType.GRACE_PERIOD, frozenset({S.ACTIVE}), S.GRACE_PERIOD
    ),
    NotificationType.RESTARTED: Transition(
        EventType.RESTART, frozenset({S.CANCELLED}), S.ACTIVE
    ),
    NotificationType.PRICE_CHANGE_CONFIRMED: Transition(
        EventType.PRICE_CHANGE_CONFIRMED, _LIVE
    ),
    NotificationType.DEFERRED: Transition(EventType.DEFERRAL, _LIVE),
    NotificationType.EXPIRED: Transition(EventType.EXPIRY, _LIVE, S.EXPIRED),
}

del S

_missing = set(NotificationType) - set(TRANSITIONS)
if _missing:
    raise RuntimeError(f"No transition defined for notification types: {sorted(_missing)}")

KNOWN_NOTIFICATION_TYPES: frozenset[int] = frozenset(int(t) for t in NotificationType)

# Statuses that still grant access until expiry_date
_USABLE = frozenset(
    {SubscriptionStatus.ACTIVE, SubscriptionStatus.GRACE_PERIOD, SubscriptionStatus.CANCELLED}
)


def get_transition(notification_type: int) -> Transition:
    """Look up the transition for a notification type.

    Raises:
        ValueError: If the notification type is unknown.
    """
    return TRANSITIONS[NotificationType(notification_type)]


def advance_expiry(current_expiry: datetime, period: timedelta, now: datetime) -> datetime:
    """New expiry after a renewal: one period past the later of current expiry and now."""
    return max(current_expiry, now) + period


def effective_status(status: str, expiry_date: datetime, now: datetime) -> str:
    """Status reported to callers; ACTIVE past its expiry reads as EXPIRED."""
    if status == SubscriptionStatus.ACTIVE.value and expiry_date < now:
        return SubscriptionStatus.EXPIRED.value
    return status


def is_usable(status: str, expiry_date: datetime, now: datetime) -> bool:
    """Whether the subscription still grants access right now."""
    try:
        stored = SubscriptionStatus(status)
    except ValueError:
        return False
    return stored in _USABLE and expiry_date > now


def days_remaining(expiry_date: datetime, now: datetime) -> int:
    """Whole days left, rounded up; negative once expired."""
    return math.ceil((expiry_date - now) / timedelta(days=1))
