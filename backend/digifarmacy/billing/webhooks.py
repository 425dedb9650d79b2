"""Google Play webhook processing: real-time developer notifications.

Each push goes through signature check, structural validation, freshness,
idempotency, then a locked state transition and its audit event in one
transaction. Anything a retry could not fix (bad signature, malformed or
stale body) is a 400; everything that was understood is acknowledged with
200 so Pub/Sub stops redelivering.
"""

import base64
import binascii
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicKey
from pydantic import TypeAdapter, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from digifarmacy.billing.idempotency import IdempotencyStore
from digifarmacy.billing.signature import verify_rsa_sha1_signature
from digifarmacy.billing.state_machine import NotificationType, get_transition
from digifarmacy.database import utcnow
from digifarmacy.errors import (
    SubscriptionError,
    WebhookMalformedError,
    WebhookSignatureError,
    WebhookStaleError,
)
from digifarmacy.schemas.webhook import DeveloperNotification, PubSubPushEnvelope
from digifarmacy.services.subscription_service import apply_transition, get_subscription_by_token

logger = logging.getLogger(__name__)

_datetime_adapter = TypeAdapter(datetime)


@dataclass(frozen=True)
class ValidatedNotification:
    message_id: str
    notification_type: NotificationType
    purchase_token: str
    subscription_id: str
    version: str
    publish_time: str | None = None
    event_time: datetime | None = None
    package_name: str | None = None


@dataclass(frozen=True)
class WebhookOutcome:
    status_code: int
    body: dict[str, Any] = field(default_factory=dict)


def _to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_notification(raw_body: bytes) -> ValidatedNotification:
    """Validate a Pub/Sub push body and decode its developer notification.

    Raises:
        WebhookMalformedError: On any structural problem. The detail is for logs.
    """
    try:
        envelope = PubSubPushEnvelope.model_validate_json(raw_body)
    except ValidationError as e:
        raise WebhookMalformedError(f"invalid envelope ({e.error_count()} errors)") from None

    message_id = envelope.resolved_message_id
    if not message_id:
        raise WebhookMalformedError("missing messageId")

    try:
        decoded = base64.b64decode(envelope.message.data, validate=True)
    except (binascii.Error, ValueError):
        raise WebhookMalformedError("message.data is not base64") from None

    try:
        notification = DeveloperNotification.model_validate_json(decoded)
    except ValidationError as e:
        raise WebhookMalformedError(f"invalid notification ({e.error_count()} errors)") from None

    event_time = None
    if notification.eventTimeMillis is not None:
        event_time = datetime.fromtimestamp(
            notification.eventTimeMillis / 1000, tz=timezone.utc
        ).replace(tzinfo=None)

    sub = notification.subscriptionNotification
    return ValidatedNotification(
        message_id=message_id,
        notification_type=NotificationType(sub.notificationType),
        purchase_token=sub.purchaseToken,
        subscription_id=sub.subscriptionId,
        version=str(sub.version),
        publish_time=envelope.message.publishTime,
        event_time=event_time,
        package_name=notification.packageName,
    )


def is_fresh(publish_time: str | None, now: datetime, max_age_seconds: int) -> bool:
    """Whether an RFC 3339 publish time is within ``max_age_seconds`` of ``now``.

    A push without a publish time is not age-checked; one that is present
    but unparseable is never fresh.
    """
    if not publish_time:
        return True
    try:
        published = _to_naive_utc(_datetime_adapter.validate_python(publish_time))
    except ValidationError:
        return False
    return now - published <= timedelta(seconds=max_age_seconds)


class WebhookProcessor:
    """Applies Google Play notifications to stored subscriptions.

    Uses its own sessions from ``session_factory``; Pub/Sub pushes carry no
    user context.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        idempotency_store: IdempotencyStore,
        public_key: RSAPublicKey | None = None,
        max_age_seconds: int = 60,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.idempotency_store = idempotency_store
        self.public_key = public_key
        self.max_age_seconds = max_age_seconds
        self._clock = clock

    def _check_signature(self, raw_body: bytes, signature: str | None) -> None:
        if self.public_key is None:
            return
        if not verify_rsa_sha1_signature(self.public_key, raw_body, signature or ""):
            logger.warning("Webhook signature verification failed")
            raise WebhookSignatureError()

    async def _claim(self, message_id: str) -> bool:
        """Record the message id; False if it was already processed."""
        try:
            if await self.idempotency_store.is_processed(message_id):
                return False
            return await self.idempotency_store.mark_processed(message_id)
        except Exception as e:
            logger.error(
                "Idempotency store unavailable (%s), processing message %s anyway",
                e.__class__.__name__,
                message_id,
            )
            return True

    async def _release(self, message_id: str) -> None:
        try:
            await self.idempotency_store.discard(message_id)
        except Exception as e:
            logger.error("Could not release message %s: %s", message_id, e.__class__.__name__)

    async def handle(self, raw_body: bytes, signature: str | None) -> WebhookOutcome:
        """Process one push request and return the HTTP outcome for Pub/Sub."""
        try:
            self._check_signature(raw_body, signature)
            notification = parse_notification(raw_body)
            if not is_fresh(notification.publish_time, self._clock(), self.max_age_seconds):
                logger.warning(
                    "Rejecting stale webhook message %s (published %s)",
                    notification.message_id,
                    notification.publish_time,
                )
                raise WebhookStaleError()
        except WebhookMalformedError as e:
            logger.warning("Malformed webhook: %s", e.detail)
            return WebhookOutcome(e.status_code, {"error": {"code": e.code, "message": e.message}})
        except SubscriptionError as e:
            return WebhookOutcome(e.status_code, {"error": {"code": e.code, "message": e.message}})

        if not await self._claim(notification.message_id):
            logger.info("Duplicate webhook message %s ignored", notification.message_id)
            return WebhookOutcome(200, {"status": "duplicate", "duplicate": True})

        try:
            return await self._dispatch(notification)
        except Exception:
            logger.exception("Error processing webhook message %s", notification.message_id)
            await self._release(notification.message_id)
            return WebhookOutcome(
                500,
                {"error": {"code": "internal_error", "message": "Webhook processing failed"}},
            )

    async def _dispatch(self, notification: ValidatedNotification) -> WebhookOutcome:
        transition = get_transition(notification.notification_type)
        logger.info(
            "Processing notification %s (type %s) for message %s",
            notification.notification_type.name,
            int(notification.notification_type),
            notification.message_id,
        )

        async with self.session_factory() as db:
            try:
                subscription = await get_subscription_by_token(
                    db, notification.purchase_token, for_update=True
                )
                if subscription is None:
                    logger.warning(
                        "No subscription for notification %s (message %s)",
                        notification.notification_type.name,
                        notification.message_id,
                    )
                    return WebhookOutcome(200, {"status": "ignored", "reason": "unknown_subscription"})

                if subscription.sku_id != notification.subscription_id:
                    logger.warning(
                        "Notification sku %s does not match subscription %s sku %s",
                        notification.subscription_id,
                        subscription.id,
                        subscription.sku_id,
                    )

                if not transition.applies_to(subscription.status):
                    logger.info(
                        "Ignoring %s for subscription %s in status %s",
                        notification.notification_type.name,
                        subscription.id,
                        subscription.status,
                    )
                    return WebhookOutcome(200, {"status": "ignored", "reason": "not_applicable"})

                if (
                    notification.event_time is not None
                    and subscription.last_event_at is not None
                    and notification.event_time < subscription.last_event_at
                ):
                    logger.info(
                        "Skipping out-of-order %s for subscription %s (event %s < last %s)",
                        notification.notification_type.name,
                        subscription.id,
                        notification.event_time,
                        subscription.last_event_at,
                    )
                    return WebhookOutcome(200, {"status": "ignored", "reason": "out_of_order"})

                await apply_transition(
                    db,
                    subscription,
                    transition,
                    now=self._clock(),
                    event_time=notification.event_time,
                    event_data={
                        "notification_type": int(notification.notification_type),
                        "notification_version": notification.version,
                        "event_time": (
                            notification.event_time.isoformat() if notification.event_time else None
                        ),
                    },
                    notification_id=notification.message_id,
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        return WebhookOutcome(200, {"status": "processed"})
