"""Billing dependencies: shared components from app state and per-route rate limits."""

import logging

from fastapi import Depends, Request, Response

from digifarmacy.auth.dependencies import get_current_active_user
from digifarmacy.billing.circuit_breaker import CircuitBreaker
from digifarmacy.billing.rate_limit import (
    FixedWindowRateLimiter,
    RateLimitResult,
    SlidingWindowRateLimiter,
)
from digifarmacy.billing.webhooks import WebhookProcessor
from digifarmacy.config import settings
from digifarmacy.errors import RateLimitedError
from digifarmacy.models.user import User
from digifarmacy.services.purchase_verification import PurchaseVerificationService

logger = logging.getLogger(__name__)

RateLimiter = FixedWindowRateLimiter | SlidingWindowRateLimiter


# The lifespan in main.py builds one of each and stores it on app.state


def get_circuit_breaker(request: Request) -> CircuitBreaker:
    return request.app.state.circuit_breaker


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_webhook_processor(request: Request) -> WebhookProcessor:
    return request.app.state.webhook_processor


def get_verification_service(request: Request) -> PurchaseVerificationService:
    return request.app.state.verification_service


def get_client_ip(request: Request) -> str:
    """Client address as seen by the outermost trusted proxy.

    Each of the ``trusted_proxy_hops`` proxies in front of the app appends to
    ``X-Forwarded-For``, so the client is that many entries from the right.
    Entries further left are caller-supplied and ignored. With no trusted
    proxies the header is ignored entirely.
    """
    hops = settings.trusted_proxy_hops
    forwarded = request.headers.get("x-forwarded-for")
    if hops > 0 and forwarded:
        chain = [part.strip() for part in forwarded.split(",") if part.strip()]
        if chain:
            return chain[-min(hops, len(chain))]
    if request.client is not None:
        return request.client.host
    return "unknown"


async def _enforce(
    limiter: RateLimiter, identifier: str, endpoint: str, response: Response
) -> RateLimitResult:
    result = await limiter.hit(identifier, endpoint)
    if not result.allowed:
        raise RateLimitedError(result.retry_after, limit=result.limit, reset_at=result.reset_at)
    response.headers.update(result.headers())
    return result


class UserRateLimit:
    """Rate-limit an authenticated route per user.

    Usage::

        @router.get("/status", dependencies=[Depends(UserRateLimit("status"))])
    """

    def __init__(self, endpoint: str) -> None:
        self.endpoint = endpoint

    async def __call__(
        self,
        response: Response,
        user: User = Depends(get_current_active_user),
        limiter: RateLimiter = Depends(get_rate_limiter),
    ) -> RateLimitResult:
        return await _enforce(limiter, str(user.id), self.endpoint, response)


class ClientRateLimit:
    """Rate-limit an unauthenticated route per client IP."""

    def __init__(self, endpoint: str) -> None:
        self.endpoint = endpoint

    async def __call__(
        self,
        request: Request,
        response: Response,
        limiter: RateLimiter = Depends(get_rate_limiter),
    ) -> RateLimitResult:
        return await _enforce(limiter, get_client_ip(request), self.endpoint, response)
