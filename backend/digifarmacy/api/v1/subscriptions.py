"""Subscription API endpoints: Play purchase verification, status, and cancellation."""

import logging

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from digifarmacy.api.deps import (
    UserRateLimit,
    get_current_active_user,
    get_db,
    get_verification_service,
)
from digifarmacy.billing.plans import get_skus_for_business
from digifarmacy.database import utcnow
from digifarmacy.errors import DuplicateTokenError
from digifarmacy.models.user import User
from digifarmacy.schemas.subscription import (
    CancelRequest,
    CancelResponse,
    InitiateRequest,
    InitiateResponse,
    SkuOption,
    SubscriptionStatusResponse,
    VerifyPurchaseRequest,
    VerifyPurchaseResponse,
)
from digifarmacy.services.purchase_verification import PurchaseVerificationService
from digifarmacy.services.subscription_service import (
    build_status_summary,
    cancel_subscription,
    get_latest_subscription_for_user,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/subscriptions", tags=["subscriptions"])


@router.post(
    "/initiate",
    response_model=InitiateResponse,
    dependencies=[Depends(UserRateLimit("initiate"))],
)
async def initiate_subscription(
    body: InitiateRequest,
    current_user: User = Depends(get_current_active_user),
) -> InitiateResponse:
    """Return the SKUs a pharmacy or laboratory can subscribe to."""
    options = get_skus_for_business(body.business_type)
    logger.info("User %s initiated %s subscription", current_user.id, body.business_type)
    return InitiateResponse(
        business_type=body.business_type,
        options={
            period: SkuOption(sku=s.sku, period=s.period, price=s.price, currency=s.currency)
            for period, s in options.items()
        },
    )


@router.post(
    "/verify-purchase",
    response_model=VerifyPurchaseResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(UserRateLimit("verify-purchase"))],
)
async def verify_purchase(
    body: VerifyPurchaseRequest,
    response: Response,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
    service: PurchaseVerificationService = Depends(get_verification_service),
) -> VerifyPurchaseResponse:
    """Verify a Google Play purchase token and activate the subscription.

    A token that is already bound returns 200 with the existing subscription id.
    """
    try:
        result = await service.verify_purchase(db, current_user, body.sku_id, body.token)
    except DuplicateTokenError as e:
        response.status_code = status.HTTP_200_OK
        return VerifyPurchaseResponse(subscription_id=e.subscription_id, duplicate=True)

    return VerifyPurchaseResponse(
        subscription_id=result.subscription_id,
        status=result.status,
        sku_id=result.sku_id,
        business_type=result.business_type,
        expires_at=result.expires_at,
        auto_renew=result.auto_renew,
    )


@router.get(
    "/status",
    response_model=SubscriptionStatusResponse,
    dependencies=[Depends(UserRateLimit("status"))],
)
async def get_subscription_status(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> SubscriptionStatusResponse:
    """Current subscription with effective status and days remaining."""
    subscription = await get_latest_subscription_for_user(db, current_user.id)
    if subscription is None:
        return SubscriptionStatusResponse(has_subscription=False)

    summary = build_status_summary(subscription, utcnow())

    return SubscriptionStatusResponse(
        has_subscription=True,
        subscription_id=subscription.id,
        status=summary.status,
        stored_status=subscription.status,
        usable=summary.usable,
        sku_id=subscription.sku_id,
        business_type=subscription.business_type,
        expires_at=subscription.expiry_date,
        auto_renew=subscription.auto_renew,
        days_remaining=summary.days_remaining,
        cancellation_date=subscription.cancellation_date,
    )


@router.post(
    "/cancel",
    response_model=CancelResponse,
    dependencies=[Depends(UserRateLimit("cancel"))],
)
async def cancel(
    body: CancelRequest | None = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> CancelResponse:
    """Cancel the user's active subscription. Access continues until expiry."""
    reason = body.reason if body is not None else None
    subscription = await cancel_subscription(db, current_user, reason)
    return CancelResponse(
        subscription_id=subscription.id,
        status=subscription.status,
        expires_at=subscription.expiry_date,
    )
