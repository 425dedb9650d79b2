"""Purchase verification: binds a Google Play purchase token to a subscription.

A purchase claim goes through these gates in order: rate limit, duplicate
token, breaker-guarded Google Play lookup, response validation, fraud
scoring. Only then is the subscription persisted and acknowledged.
"""

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from digifarmacy.billing.circuit_breaker import CircuitBreaker, CircuitOpenError
from digifarmacy.billing.fraud import (
    FraudLikelihoodScore,
    PurchaseValidationContext,
    RiskLevel,
    analyze_purchase,
    check_velocity,
)
from digifarmacy.billing.google_play import (
    GooglePlayClient,
    GooglePlayError,
    GooglePlayNotFoundError,
    GooglePlayRequestError,
    GooglePlayUnavailableError,
    PurchaseRecord,
)
from digifarmacy.billing.plans import get_sku
from digifarmacy.billing.rate_limit import FixedWindowRateLimiter, SlidingWindowRateLimiter
from digifarmacy.database import utcnow
from digifarmacy.errors import (
    DuplicateTokenError,
    FraudSuspectedError,
    ProviderRequestError,
    ProviderUnavailableError,
    PurchaseNotFoundError,
    PurchaseNotValidError,
    RateLimitedError,
)
from digifarmacy.models.user import User
from digifarmacy.services.subscription_service import (
    count_user_purchases,
    create_subscription,
    get_purchase_times_since,
    get_subscription_by_token,
)

logger = logging.getLogger(__name__)

PAYMENT_RECEIVED = 1
ACKNOWLEDGED = 1
RATE_LIMIT_ENDPOINT = "verify-purchase"
VELOCITY_WINDOW = timedelta(hours=1)


@dataclass(frozen=True)
class VerificationResult:
    subscription_id: uuid.UUID
    status: str
    expires_at: datetime
    auto_renew: bool
    sku_id: str
    business_type: str
    fraud: FraudLikelihoodScore | None = None


def validate_purchase(purchase: PurchaseRecord, now: datetime) -> None:
    """Reject provider states that cannot activate a subscription.

    Raises:
        PurchaseNotValidError: With reason ``incomplete``, ``expired`` or ``cancelled``.
    """
    if purchase.payment_state != PAYMENT_RECEIVED:
        raise PurchaseNotValidError("incomplete")
    if purchase.expiry_time is None or purchase.expiry_time <= now:
        raise PurchaseNotValidError("expired")
    if purchase.cancel_reason is not None:
        raise PurchaseNotValidError("cancelled")
    if purchase.start_time is not None and purchase.expiry_time <= purchase.start_time:
        raise PurchaseNotValidError("incomplete")


class PurchaseVerificationService:
    """Verifies purchase claims against Google Play and persists them.

    ``rate_limiter`` is optional: the HTTP routes apply the limit as a
    dependency before calling in, other drivers pass a limiter here. More than
    ``max_purchases_per_hour`` prior purchases in the last hour flags the new
    one for review.
    """

    def __init__(
        self,
        client: GooglePlayClient,
        breaker: CircuitBreaker,
        rate_limiter: FixedWindowRateLimiter | SlidingWindowRateLimiter | None = None,
        clock: Callable[[], datetime] = utcnow,
        max_purchases_per_hour: int = 5,
    ) -> None:
        self.client = client
        self.breaker = breaker
        self.rate_limiter = rate_limiter
        self.max_purchases_per_hour = max_purchases_per_hour
        self._clock = clock

    async def _check_rate_limit(self, user_id: uuid.UUID) -> None:
        if self.rate_limiter is None:
            return
        result = await self.rate_limiter.hit(str(user_id), RATE_LIMIT_ENDPOINT)
        if not result.allowed:
            raise RateLimitedError(result.retry_after, limit=result.limit, reset_at=result.reset_at)

    async def _fetch_purchase(self, sku_id: str, purchase_token: str) -> PurchaseRecord:
        try:
            return await self.breaker.call(self.client.verify, sku_id, purchase_token)
        except CircuitOpenError:
            logger.warning("Google Play circuit open, rejecting verification for sku %s", sku_id)
            raise ProviderUnavailableError() from None
        except GooglePlayNotFoundError as e:
            raise PurchaseNotFoundError() from e
        except GooglePlayRequestError as e:
            logger.error("Google Play rejected verification request (HTTP %s)", e.status_code)
            raise ProviderRequestError() from e
        except GooglePlayUnavailableError as e:
            logger.error("Google Play unavailable during verification: %s", e)
            raise ProviderUnavailableError() from e

    async def _acknowledge(self, sku_id: str, purchase_token: str) -> None:
        try:
            await self.breaker.call(self.client.acknowledge, sku_id, purchase_token)
        except (CircuitOpenError, GooglePlayError) as e:
            # Google Play refunds unacknowledged purchases after 3 days; the
            # next verification or a support action can retry.
            logger.error(
                "Failed to acknowledge purchase for sku %s: %s",
                sku_id,
                e.__class__.__name__,
            )

    async def _score(
        self,
        db: AsyncSession,
        user: User,
        sku_id: str,
        purchase_token: str,
        purchase: PurchaseRecord,
        now: datetime,
    ) -> FraudLikelihoodScore:
        previous_purchases = await count_user_purchases(db, user.id)
        account_age_days = (now - user.created_at) / timedelta(days=1) if user.created_at else 0.0
        context = PurchaseValidationContext(
            user_id=str(user.id),
            email=user.email,
            business_type=get_sku(sku_id).business_type,
            purchase_token=purchase_token,
            sku_id=sku_id,
            price=purchase.price,
            currency=purchase.price_currency_code,
            account_age_days=account_age_days,
            previous_purchases=previous_purchases,
        )
        return analyze_purchase(context)

    async def _within_velocity(self, db: AsyncSession, user_id: uuid.UUID, now: datetime) -> bool:
        purchase_times = await get_purchase_times_since(db, user_id, now - VELOCITY_WINDOW)
        if check_velocity(purchase_times, now, self.max_purchases_per_hour):
            return True
        logger.warning(
            "Purchase velocity exceeded for user %s: %d purchases in the last hour",
            user_id,
            len(purchase_times),
        )
        return False

    async def verify_purchase(
        self,
        db: AsyncSession,
        user: User,
        sku_id: str,
        purchase_token: str,
    ) -> VerificationResult:
        """Verify a purchase claim and bind the token to a new subscription.

        Raises:
            InvalidSkuError: Unknown SKU.
            RateLimitedError: The user exceeded the verify-purchase budget.
            DuplicateTokenError: The token is already bound to a subscription.
            ProviderUnavailableError: Google Play unreachable or breaker open.
            PurchaseNotFoundError: Google Play does not know the token.
            ProviderRequestError: Google Play rejected the request.
            PurchaseNotValidError: Payment pending, expired or cancelled.
            FraudSuspectedError: Fraud score reached CRITICAL.
        """
        sku = get_sku(sku_id)
        user_id = user.id

        await self._check_rate_limit(user_id)

        existing = await get_subscription_by_token(db, purchase_token)
        if existing is not None:
            logger.info("Purchase token already bound to subscription %s", existing.id)
            raise DuplicateTokenError(existing.id)

        purchase = await self._fetch_purchase(sku_id, purchase_token)
        now = self._clock()
        validate_purchase(purchase, now)

        fraud = await self._score(db, user, sku_id, purchase_token, purchase, now)
        if fraud.risk_level is RiskLevel.CRITICAL:
            logger.warning(
                "Fraud suspected for user %s (sku=%s, score=%d): %s",
                user_id,
                sku_id,
                fraud.score,
                "; ".join(fraud.reasons),
            )
            raise FraudSuspectedError(fraud.score, fraud.reasons)
        velocity_ok = await self._within_velocity(db, user_id, now)
        event_data: dict = {"fraud": fraud.to_dict()}
        if not velocity_ok:
            event_data["velocity_exceeded"] = True
        needs_review = fraud.risk_level is RiskLevel.HIGH or not velocity_ok
        if fraud.risk_level is RiskLevel.HIGH:
            logger.warning(
                "High fraud risk for user %s (sku=%s, score=%d), flagged for review: %s",
                user_id,
                sku_id,
                fraud.score,
                "; ".join(fraud.reasons),
            )

        locked = await get_subscription_by_token(db, purchase_token, for_update=True)
        if locked is not None:
            raise DuplicateTokenError(locked.id)

        try:
            subscription = await create_subscription(
                db,
                user,
                sku_id,
                purchase_token,
                purchase,
                event_data=event_data,
                needs_review=needs_review,
            )
            result = VerificationResult(
                subscription_id=subscription.id,
                status=subscription.status,
                expires_at=subscription.expiry_date,
                auto_renew=subscription.auto_renew,
                sku_id=sku_id,
                business_type=sku.business_type,
                fraud=fraud,
            )
            await db.commit()
        except IntegrityError:
            await db.rollback()
            existing = await get_subscription_by_token(db, purchase_token)
            logger.info("Concurrent verification bound the token first (user %s)", user_id)
            raise DuplicateTokenError(existing.id if existing else None) from None

        if purchase.acknowledgement_state != ACKNOWLEDGED:
            await self._acknowledge(sku_id, purchase_token)

        logger.info(
            "Verified purchase for user %s: subscription %s (sku=%s, risk=%s)",
            user_id,
            result.subscription_id,
            sku_id,
            fraud.risk_level.value,
        )
        return result
