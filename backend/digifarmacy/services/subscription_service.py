"""Subscription service: persistence and lifecycle writes for Play subscriptions.

Every mutating helper bumps ``Subscription.version`` and writes its
PurchaseEvent right after the subscription change, inside the caller's
transaction. Callers commit.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from digifarmacy.billing.google_play import PurchaseRecord
from digifarmacy.billing.plans import get_sku
from digifarmacy.billing.state_machine import (
    EventType,
    SubscriptionStatus,
    Transition,
    advance_expiry,
    days_remaining,
    effective_status,
    is_usable,
)
from digifarmacy.database import utcnow
from digifarmacy.errors import SubscriptionNotFoundError
from digifarmacy.models.purchase_event import PurchaseEvent
from digifarmacy.models.subscription import Subscription
from digifarmacy.models.user import User

logger = logging.getLogger(__name__)

DEFAULT_CANCELLATION_REASON = "User requested cancellation"
CANCELLABLE_STATUSES = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.GRACE_PERIOD.value)


async def get_subscription_by_token(
    db: AsyncSession, purchase_token: str, for_update: bool = False
) -> Subscription | None:
    """Look up a subscription by purchase token, optionally locking the row."""
    stmt = select(Subscription).where(Subscription.purchase_token == purchase_token)
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def get_latest_subscription_for_user(
    db: AsyncSession, user_id: uuid.UUID
) -> Subscription | None:
    """Most recently purchased subscription for a user, any status."""
    result = await db.execute(
        select(Subscription)
        .where(Subscription.user_id == user_id)
        .order_by(Subscription.purchase_date.desc(), Subscription.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_cancellable_subscription(
    db: AsyncSession, user_id: uuid.UUID
) -> Subscription | None:
    """Latest unexpired ACTIVE or GRACE_PERIOD subscription for a user, locked for update."""
    result = await db.execute(
        select(Subscription)
        .where(
            Subscription.user_id == user_id,
            Subscription.status.in_(CANCELLABLE_STATUSES),
            Subscription.expiry_date > utcnow(),
        )
        .order_by(Subscription.purchase_date.desc())
        .limit(1)
        .with_for_update()
    )
    return result.scalar_one_or_none()


async def count_user_purchases(db: AsyncSession, user_id: uuid.UUID) -> int:
    """Number of subscriptions a user has ever purchased."""
    result = await db.execute(
        select(func.count()).select_from(Subscription).where(Subscription.user_id == user_id)
    )
    return result.scalar_one()


async def get_purchase_times_since(
    db: AsyncSession, user_id: uuid.UUID, since: datetime
) -> list[datetime]:
    """Purchase dates of a user's subscriptions bought after ``since``."""
    result = await db.execute(
        select(Subscription.purchase_date).where(
            Subscription.user_id == user_id,
            Subscription.purchase_date > since,
        )
    )
    return list(result.scalars().all())


async def record_event(
    db: AsyncSession,
    subscription: Subscription,
    event_type: EventType,
    event_data: dict[str, Any] | None = None,
    notification_id: str | None = None,
    needs_review: bool = False,
) -> PurchaseEvent:
    """Append a lifecycle event for a subscription that has already been written."""
    event = PurchaseEvent(
        subscription_id=subscription.id,
        user_id=subscription.user_id,
        event_type=event_type.value,
        event_data=event_data or {},
        notification_id=notification_id,
        needs_review=needs_review,
        timestamp=utcnow(),
    )
    db.add(event)
    await db.flush()
    return event


async def create_subscription(
    db: AsyncSession,
    user: User,
    sku_id: str,
    purchase_token: str,
    purchase: PurchaseRecord,
    event_data: dict[str, Any] | None = None,
    needs_review: bool = False,
) -> Subscription:
    """Insert a verified subscription plus its PURCHASE event.

    Raises:
        sqlalchemy.exc.IntegrityError: If the purchase token is already bound.
    """
    sku = get_sku(sku_id)
    now = utcnow()
    subscription = Subscription(
        user_id=user.id,
        business_type=sku.business_type,
        sku_id=sku_id,
        purchase_token=purchase_token,
        order_id=purchase.order_id,
        status=SubscriptionStatus.ACTIVE.value,
        purchase_date=purchase.start_time or now,
        expiry_date=purchase.expiry_time,
        renewal_date=purchase.expiry_time if purchase.auto_renewing else None,
        auto_renew=purchase.auto_renewing,
        price_amount_micros=purchase.price_amount_micros,
        currency_code=purchase.price_currency_code,
        raw_provider_response=purchase.raw,
        version=1,
        last_verified_at=now,
    )
    db.add(subscription)
    await db.flush()

    data = {
        "order_id": purchase.order_id,
        "sku_id": sku_id,
        "price_amount_micros": purchase.price_amount_micros,
        "currency": purchase.price_currency_code,
        "expiry_date": purchase.expiry_time.isoformat() if purchase.expiry_time else None,
    }
    data.update(event_data or {})
    await record_event(db, subscription, EventType.PURCHASE, data, needs_review=needs_review)

    logger.info(
        "Created subscription %s for user %s (sku=%s, expires=%s)",
        subscription.id,
        user.id,
        sku_id,
        subscription.expiry_date,
    )
    return subscription


async def apply_transition(
    db: AsyncSession,
    subscription: Subscription,
    transition: Transition,
    now: datetime,
    event_time: datetime | None = None,
    event_data: dict[str, Any] | None = None,
    notification_id: str | None = None,
) -> PurchaseEvent:
    """Apply a notification transition to a locked subscription row.

    The caller has already checked ``transition.applies_to(subscription.status)``.
    """
    previous_status = subscription.status
    if transition.target is not None:
        subscription.status = transition.target.value
    if transition.advances_expiry:
        period = get_sku(subscription.sku_id).period_length
        subscription.expiry_date = advance_expiry(subscription.expiry_date, period, now)
        subscription.renewal_date = subscription.expiry_date
    if transition.target is SubscriptionStatus.CANCELLED:
        subscription.cancellation_date = now
        subscription.auto_renew = False
    elif transition.target is SubscriptionStatus.ACTIVE and previous_status == SubscriptionStatus.CANCELLED.value:
        # Restart re-enables renewal
        subscription.cancellation_date = None
        subscription.cancellation_reason = None
        subscription.auto_renew = True
    if event_time is not None:
        subscription.last_event_at = event_time
    subscription.version += 1
    await db.flush()

    data = {
        "previous_status": previous_status,
        "new_status": subscription.status,
        "expiry_date": subscription.expiry_date.isoformat(),
    }
    data.update(event_data or {})
    event = await record_event(
        db, subscription, transition.event_type, data, notification_id=notification_id
    )
    logger.info(
        "Subscription %s: %s -> %s (%s, version %d)",
        subscription.id,
        previous_status,
        subscription.status,
        transition.event_type.value,
        subscription.version,
    )
    return event


async def cancel_subscription(
    db: AsyncSession, user: User, reason: str | None = None
) -> Subscription:
    """Cancel the user's latest active subscription; access continues until expiry.

    Raises:
        SubscriptionNotFoundError: If there is nothing to cancel.
    """
    subscription = await get_cancellable_subscription(db, user.id)
    if subscription is None:
        raise SubscriptionNotFoundError()

    reason = reason or DEFAULT_CANCELLATION_REASON
    now = utcnow()
    previous_status = subscription.status
    subscription.status = SubscriptionStatus.CANCELLED.value
    subscription.cancellation_date = now
    subscription.cancellation_reason = reason
    subscription.auto_renew = False
    subscription.version += 1
    await db.flush()

    await record_event(
        db,
        subscription,
        EventType.CANCELLATION,
        {"previous_status": previous_status, "reason": reason, "source": "user"},
    )
    logger.info("User %s cancelled subscription %s", user.id, subscription.id)
    return subscription


@dataclass(frozen=True)
class StatusSummary:
    has_subscription: bool
    subscription: Subscription | None = None
    status: str | None = None
    usable: bool = False
    days_remaining: int | None = None


def build_status_summary(subscription: Subscription | None, now: datetime) -> StatusSummary:
    """Derive effective status fields for a stored subscription."""
    if subscription is None:
        return StatusSummary(has_subscription=False)
    return StatusSummary(
        has_subscription=True,
        subscription=subscription,
        status=effective_status(subscription.status, subscription.expiry_date, now),
        usable=is_usable(subscription.status, subscription.expiry_date, now),
        days_remaining=max(0, days_remaining(subscription.expiry_date, now)),
    )


async def expire_overdue_subscriptions(db: AsyncSession, now: datetime | None = None) -> int:
    """Store EXPIRED for ACTIVE and CANCELLED subscriptions past their expiry date.

    Materializes the lazy expiry that ``effective_status`` applies on read.
    Returns the number of subscriptions expired.
    """
    now = now or utcnow()
    result = await db.execute(
        select(Subscription)
        .where(
            Subscription.expiry_date < now,
            # Held, paused and grace-period rows wait for Google Play's EXPIRED notification
            Subscription.status.in_(
                (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.CANCELLED.value)
            ),
        )
        .with_for_update(skip_locked=True)
    )
    expired = 0
    for subscription in result.scalars().all():
        previous_status = subscription.status
        subscription.status = SubscriptionStatus.EXPIRED.value
        subscription.version += 1
        await db.flush()
        await record_event(
            db,
            subscription,
            EventType.EXPIRY,
            {"previous_status": previous_status, "source": "expiry_sweep"},
        )
        expired += 1

    if expired:
        logger.info("Expired %d overdue subscriptions", expired)
    return expired
