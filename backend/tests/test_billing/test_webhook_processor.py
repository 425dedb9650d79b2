"""Tests for webhook processing: validation, freshness, idempotency and transitions."""

import base64
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from sqlalchemy import select

from digifarmacy.billing.webhooks import WebhookProcessor, is_fresh, parse_notification
from digifarmacy.database import utcnow
from digifarmacy.errors import WebhookMalformedError
from digifarmacy.models.purchase_event import PurchaseEvent


async def _events(db_session, subscription, event_type=None) -> list[PurchaseEvent]:
    stmt = select(PurchaseEvent).where(PurchaseEvent.subscription_id == subscription.id)
    if event_type is not None:
        stmt = stmt.where(PurchaseEvent.event_type == event_type)
    result = await db_session.execute(stmt.order_by(PurchaseEvent.timestamp))
    return list(result.scalars().all())


def _envelope(message: dict, **extra) -> bytes:
    return json.dumps({"message": message, **extra}).encode()


def _encode(notification: dict) -> str:
    return base64.b64encode(json.dumps(notification).encode()).decode()


NOTIFICATION = {
    "version": "1.0",
    "packageName": "com.digifarmacy.app",
    "eventTimeMillis": "1767225600000",
    "subscriptionNotification": {
        "version": "1.0",
        "notificationType": 2,
        "purchaseToken": "token-1",
        "subscriptionId": "pharmacy_monthly",
    },
}


class TestParseNotification:
    def test_valid_push(self, push_body):
        body = push_body("token-1", notification_type=3, message_id="m-42")
        parsed = parse_notification(body)
        assert parsed.message_id == "m-42"
        assert parsed.notification_type == 3
        assert parsed.purchase_token == "token-1"
        assert parsed.subscription_id == "pharmacy_monthly"
        assert parsed.event_time is not None
        assert parsed.event_time.tzinfo is None

    def test_envelope_level_message_id(self):
        body = _envelope({"data": _encode(NOTIFICATION)}, messageId="outer-1")
        assert parse_notification(body).message_id == "outer-1"

    def test_snake_case_message_id(self):
        body = _envelope({"data": _encode(NOTIFICATION), "message_id": "snake-1"})
        assert parse_notification(body).message_id == "snake-1"

    def test_event_time_from_millis(self):
        body = _envelope({"data": _encode(NOTIFICATION), "messageId": "m"})
        assert parse_notification(body).event_time == datetime(2026, 1, 1)

    @pytest.mark.parametrize(
        "body",
        [
            b"not json",
            b"{}",
            json.dumps({"message": {}}).encode(),
            json.dumps({"message": {"data": "", "messageId": "m"}}).encode(),
            json.dumps({"message": {"data": "!!!not-base64!!!", "messageId": "m"}}).encode(),
            json.dumps({"message": {"data": _encode({"foo": "bar"}), "messageId": "m"}}).encode(),
            json.dumps({"message": {"data": _encode(NOTIFICATION)}}).encode(),
        ],
    )
    def test_malformed(self, body):
        with pytest.raises(WebhookMalformedError):
            parse_notification(body)

    def test_unknown_notification_type(self):
        notification = json.loads(json.dumps(NOTIFICATION))
        notification["subscriptionNotification"]["notificationType"] = 10
        body = _envelope({"data": _encode(notification), "messageId": "m"})
        with pytest.raises(WebhookMalformedError):
            parse_notification(body)

    def test_empty_purchase_token(self):
        notification = json.loads(json.dumps(NOTIFICATION))
        notification["subscriptionNotification"]["purchaseToken"] = ""
        body = _envelope({"data": _encode(notification), "messageId": "m"})
        with pytest.raises(WebhookMalformedError):
            parse_notification(body)


class TestFreshness:
    NOW = datetime(2026, 3, 1, 12, 0, 0)

    def test_recent_is_fresh(self):
        assert is_fresh("2026-03-01T11:59:30Z", self.NOW, 60)

    def test_at_limit_is_fresh(self):
        assert is_fresh("2026-03-01T11:59:00Z", self.NOW, 60)

    def test_old_is_stale(self):
        assert not is_fresh("2026-03-01T11:55:00Z", self.NOW, 60)

    def test_offset_is_normalized(self):
        assert is_fresh("2026-03-01T17:29:45+05:30", self.NOW, 60)

    @pytest.mark.parametrize("value", [None, ""])
    def test_missing_publish_time_is_not_age_checked(self, value):
        assert is_fresh(value, self.NOW, 60)

    @pytest.mark.parametrize("value", ["yesterday", "2026-13-40T00:00:00Z"])
    def test_unparseable_is_stale(self, value):
        assert not is_fresh(value, self.NOW, 60)


class TestHandle:
    @pytest.mark.asyncio
    async def test_renewal_is_idempotent(
        self, webhook_processor, push_body, user_factory, subscription_factory, db_session
    ):
        """The same message delivered twice renews exactly once."""
        user = await user_factory()
        sub = await subscription_factory(user)
        original_expiry = sub.expiry_date

        body = push_body(sub.purchase_token, notification_type=2, message_id="m-1")
        first = await webhook_processor.handle(body, None)
        second = await webhook_processor.handle(body, None)

        assert first.status_code == 200
        assert first.body == {"status": "processed"}
        assert second.status_code == 200
        assert second.body["duplicate"] is True

        await db_session.refresh(sub)
        assert sub.expiry_date == original_expiry + timedelta(days=30)
        assert sub.status == "ACTIVE"
        assert sub.version == 2
        renewals = await _events(db_session, sub, "RENEWAL")
        assert len(renewals) == 1
        assert renewals[0].notification_id == "m-1"
        assert renewals[0].event_data["previous_status"] == "ACTIVE"
        assert renewals[0].event_data["notification_type"] == 2

    @pytest.mark.asyncio
    async def test_stale_message_rejected(
        self, webhook_processor, push_body, user_factory, subscription_factory, db_session
    ):
        user = await user_factory()
        sub = await subscription_factory(user)
        old = datetime.now(timezone.utc) - timedelta(minutes=5)

        outcome = await webhook_processor.handle(push_body(sub.purchase_token, publish_time=old), None)

        assert outcome.status_code == 400
        assert outcome.body["error"]["code"] == "webhook_stale"
        assert await _events(db_session, sub) == []

    @pytest.mark.asyncio
    async def test_push_without_publish_time_is_processed(
        self, webhook_processor, user_factory, subscription_factory, db_session
    ):
        user = await user_factory()
        sub = await subscription_factory(user)
        original_expiry = sub.expiry_date
        notification = json.loads(json.dumps(NOTIFICATION))
        del notification["eventTimeMillis"]
        notification["subscriptionNotification"]["purchaseToken"] = sub.purchase_token
        body = _envelope({"data": _encode(notification), "messageId": "m-no-publish"})

        outcome = await webhook_processor.handle(body, None)

        assert outcome.status_code == 200
        assert outcome.body == {"status": "processed"}
        await db_session.refresh(sub)
        assert sub.expiry_date == original_expiry + timedelta(days=30)
        assert len(await _events(db_session, sub, "RENEWAL")) == 1

    @pytest.mark.asyncio
    async def test_stale_message_is_not_recorded(self, webhook_processor, push_body, idempotency_store):
        old = datetime.now(timezone.utc) - timedelta(minutes=5)
        await webhook_processor.handle(push_body("t", message_id="old-1", publish_time=old), None)
        assert not await idempotency_store.is_processed("old-1")

    @pytest.mark.asyncio
    async def test_malformed_body(self, webhook_processor):
        outcome = await webhook_processor.handle(b"{not json", None)
        assert outcome.status_code == 400
        assert outcome.body == {
            "error": {"code": "webhook_malformed", "message": "Invalid webhook format"}
        }

    @pytest.mark.asyncio
    async def test_unknown_subscription_acknowledged(self, webhook_processor, push_body):
        outcome = await webhook_processor.handle(push_body("no-such-token"), None)
        assert outcome.status_code == 200
        assert outcome.body == {"status": "ignored", "reason": "unknown_subscription"}

    @pytest.mark.asyncio
    async def test_cancel_then_restart(
        self, webhook_processor, push_body, user_factory, subscription_factory, db_session
    ):
        user = await user_factory()
        sub = await subscription_factory(user)

        cancelled = await webhook_processor.handle(push_body(sub.purchase_token, notification_type=3), None)
        assert cancelled.body == {"status": "processed"}
        await db_session.refresh(sub)
        assert sub.status == "CANCELLED"
        assert sub.auto_renew is False
        assert sub.cancellation_date is not None

        restarted = await webhook_processor.handle(push_body(sub.purchase_token, notification_type=7), None)
        assert restarted.body == {"status": "processed"}
        await db_session.refresh(sub)
        assert sub.status == "ACTIVE"
        assert sub.auto_renew is True
        assert sub.cancellation_date is None
        assert sub.version == 3

        types = [e.event_type for e in await _events(db_session, sub)]
        assert types == ["CANCELLATION", "RESTART"]

    @pytest.mark.asyncio
    async def test_on_hold_then_recovered(
        self, webhook_processor, push_body, user_factory, subscription_factory, db_session
    ):
        user = await user_factory()
        sub = await subscription_factory(user)

        await webhook_processor.handle(push_body(sub.purchase_token, notification_type=5), None)
        await db_session.refresh(sub)
        assert sub.status == "ON_HOLD"

        await webhook_processor.handle(push_body(sub.purchase_token, notification_type=1), None)
        await db_session.refresh(sub)
        assert sub.status == "ACTIVE"

    @pytest.mark.asyncio
    async def test_expired_is_terminal(
        self, webhook_processor, push_body, user_factory, subscription_factory, db_session
    ):
        user = await user_factory()
        sub = await subscription_factory(user, status="EXPIRED", expires_in=timedelta(days=-1))

        outcome = await webhook_processor.handle(push_body(sub.purchase_token, notification_type=7), None)

        assert outcome.status_code == 200
        assert outcome.body == {"status": "ignored", "reason": "not_applicable"}
        await db_session.refresh(sub)
        assert sub.status == "EXPIRED"
        assert sub.version == 1

    @pytest.mark.asyncio
    async def test_purchased_notification_for_existing_row_ignored(
        self, webhook_processor, push_body, user_factory, subscription_factory
    ):
        user = await user_factory()
        sub = await subscription_factory(user)
        outcome = await webhook_processor.handle(push_body(sub.purchase_token, notification_type=4), None)
        assert outcome.body["reason"] == "not_applicable"

    @pytest.mark.asyncio
    async def test_out_of_order_event_skipped(
        self, webhook_processor, push_body, user_factory, subscription_factory, db_session
    ):
        user = await user_factory()
        sub = await subscription_factory(user, last_event_at=utcnow())
        earlier = datetime.now(timezone.utc) - timedelta(hours=1)

        outcome = await webhook_processor.handle(
            push_body(sub.purchase_token, notification_type=3, event_time=earlier), None
        )

        assert outcome.body == {"status": "ignored", "reason": "out_of_order"}
        await db_session.refresh(sub)
        assert sub.status == "ACTIVE"

    @pytest.mark.asyncio
    async def test_price_change_keeps_status(
        self, webhook_processor, push_body, user_factory, subscription_factory, db_session
    ):
        user = await user_factory()
        sub = await subscription_factory(user)
        expiry = sub.expiry_date

        await webhook_processor.handle(push_body(sub.purchase_token, notification_type=8), None)

        await db_session.refresh(sub)
        assert sub.status == "ACTIVE"
        assert sub.expiry_date == expiry
        assert [e.event_type for e in await _events(db_session, sub)] == ["PRICE_CHANGE_CONFIRMED"]

    @pytest.mark.asyncio
    async def test_store_failure_fails_open(
        self, session_factory, push_body, user_factory, subscription_factory, db_session
    ):
        store = AsyncMock()
        store.is_processed.side_effect = ConnectionError("redis down")
        processor = WebhookProcessor(session_factory, store)
        user = await user_factory()
        sub = await subscription_factory(user)

        outcome = await processor.handle(push_body(sub.purchase_token, notification_type=3), None)

        assert outcome.body == {"status": "processed"}
        await db_session.refresh(sub)
        assert sub.status == "CANCELLED"

    @pytest.mark.asyncio
    async def test_processing_error_releases_message(
        self, webhook_processor, push_body, idempotency_store, user_factory, subscription_factory
    ):
        """A failed message is forgotten so the Pub/Sub retry is processed."""
        user = await user_factory()
        sub = await subscription_factory(user)
        body = push_body(sub.purchase_token, message_id="m-err")

        with patch(
            "digifarmacy.billing.webhooks.apply_transition",
            AsyncMock(side_effect=RuntimeError("boom")),
        ):
            outcome = await webhook_processor.handle(body, None)

        assert outcome.status_code == 500
        assert outcome.body["error"]["code"] == "internal_error"
        assert "boom" not in json.dumps(outcome.body)
        assert not await idempotency_store.is_processed("m-err")

        retried = await webhook_processor.handle(body, None)
        assert retried.body == {"status": "processed"}


class TestSignature:
    @pytest.fixture(scope="class")
    def private_key(self):
        return rsa.generate_private_key(public_exponent=65537, key_size=2048)

    @pytest.fixture
    def signed_processor(self, session_factory, idempotency_store, private_key):
        return WebhookProcessor(
            session_factory, idempotency_store, public_key=private_key.public_key()
        )

    @staticmethod
    def _sign(private_key, body: bytes) -> str:
        signature = private_key.sign(body, padding.PKCS1v15(), hashes.SHA1())
        return base64.b64encode(signature).decode()

    @pytest.mark.asyncio
    async def test_valid_signature_accepted(self, signed_processor, private_key, push_body):
        body = push_body("unknown-token")
        outcome = await signed_processor.handle(body, self._sign(private_key, body))
        assert outcome.status_code == 200

    @pytest.mark.asyncio
    async def test_missing_signature_rejected(self, signed_processor, push_body):
        outcome = await signed_processor.handle(push_body("t"), None)
        assert outcome.status_code == 400
        assert outcome.body["error"]["code"] == "webhook_signature_invalid"

    @pytest.mark.asyncio
    async def test_signature_over_other_body_rejected(self, signed_processor, private_key, push_body):
        signature = self._sign(private_key, push_body("a"))
        outcome = await signed_processor.handle(push_body("b"), signature)
        assert outcome.status_code == 400

    @pytest.mark.asyncio
    async def test_unsigned_when_no_key_configured(self, webhook_processor, push_body):
        outcome = await webhook_processor.handle(push_body("t"), "garbage")
        assert outcome.status_code == 200
