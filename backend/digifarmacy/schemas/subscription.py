"""Pydantic v2 request/response schemas for subscription endpoints."""

import uuid
from datetime import datetime

from pydantic import BaseModel, Field

# --- Request schemas ---


class InitiateRequest(BaseModel):
    """Request pricing options before starting a Play purchase flow."""

    business_type: str = Field(..., pattern="^(pharmacy|laboratory)$")


class VerifyPurchaseRequest(BaseModel):
    """Purchase token returned by the Play Billing Library on the device."""

    sku_id: str = Field(..., min_length=1, max_length=100)
    token: str = Field(..., min_length=1, max_length=4096)


class CancelRequest(BaseModel):
    reason: str | None = Field(None, max_length=500)


# --- Response schemas ---


class SkuOption(BaseModel):
    """One purchasable SKU."""

    sku: str
    period: str  # monthly, annual
    price: int
    currency: str


class InitiateResponse(BaseModel):
    business_type: str
    options: dict[str, SkuOption]


class VerifyPurchaseResponse(BaseModel):
    """Subscription bound to the verified token."""

    subscription_id: uuid.UUID | None
    duplicate: bool = False
    status: str | None = None
    sku_id: str | None = None
    business_type: str | None = None
    expires_at: datetime | None = None
    auto_renew: bool | None = None


class SubscriptionStatusResponse(BaseModel):
    """Effective subscription state for the authenticated user."""

    has_subscription: bool
    subscription_id: uuid.UUID | None = None
    status: str | None = None  # effective status
    stored_status: str | None = None
    usable: bool = False
    sku_id: str | None = None
    business_type: str | None = None
    expires_at: datetime | None = None
    auto_renew: bool | None = None
    days_remaining: int | None = None
    cancellation_date: datetime | None = None


class CancelResponse(BaseModel):
    subscription_id: uuid.UUID
    status: str
    expires_at: datetime
    message: str = "Subscription cancelled; access continues until the expiry date"


class WebhookAckResponse(BaseModel):
    status: str
    duplicate: bool = False
