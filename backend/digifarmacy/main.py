"""DigiFarmacy Subscriptions: FastAPI application entry point."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.asyncio import Redis

from digifarmacy.api.v1.subscriptions import router as subscriptions_router
from digifarmacy.api.v1.webhooks import router as webhooks_router
from digifarmacy.billing.circuit_breaker import CircuitBreaker
from digifarmacy.billing.dependencies import get_circuit_breaker
from digifarmacy.billing.google_play import GooglePlayClient, GooglePlayRequestError
from digifarmacy.billing.idempotency import MemoryIdempotencyStore, RedisIdempotencyStore
from digifarmacy.billing.rate_limit import (
    FixedWindowRateLimiter,
    MemoryRateLimitStore,
    RedisRateLimitStore,
    SlidingWindowRateLimiter,
)
from digifarmacy.billing.signature import load_public_key
from digifarmacy.billing.webhooks import WebhookProcessor
from digifarmacy.config import settings
from digifarmacy.database import async_session_factory
from digifarmacy.errors import RateLimitedError, SubscriptionError, sanitize_error
from digifarmacy.middleware import RequestIDMiddleware, SecurityHeadersMiddleware
from digifarmacy.services.purchase_verification import PurchaseVerificationService

# Configure root logger so all digifarmacy.* loggers output to stderr (captured by Docker).
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the shared billing components on startup and release them on shutdown."""
    redis_client: Redis | None = None
    if "redis" in (settings.rate_limit_backend, settings.idempotency_backend):
        redis_client = Redis.from_url(settings.redis_url, decode_responses=True)

    client = GooglePlayClient(
        package_name=settings.google_play_package_name,
        credentials=settings.google_play_credentials,
        base_url=settings.google_play_api_base_url,
        timeout=settings.google_play_timeout_seconds,
    )
    breaker = CircuitBreaker(
        "google_play",
        failure_threshold=settings.breaker_failure_threshold,
        success_threshold=settings.breaker_success_threshold,
        reset_timeout=settings.breaker_reset_timeout_seconds,
        # Google Play answered; a bad token is not an outage
        excluded_exceptions=(GooglePlayRequestError,),
    )

    rate_redis = redis_client if settings.rate_limit_backend == "redis" else None
    if settings.rate_limit_strategy == "sliding":
        rate_limiter = SlidingWindowRateLimiter(
            settings.rate_limits, settings.rate_limit_window_seconds, redis=rate_redis
        )
    else:
        if rate_redis is not None:
            rate_store = RedisRateLimitStore(rate_redis)
        else:
            rate_store = MemoryRateLimitStore(window_seconds=settings.rate_limit_window_seconds)
        rate_limiter = FixedWindowRateLimiter(
            rate_store, settings.rate_limits, settings.rate_limit_window_seconds
        )

    if settings.idempotency_backend == "redis":
        idempotency_store = RedisIdempotencyStore(
            redis_client, ttl_seconds=settings.webhook_idempotency_ttl_seconds
        )
    else:
        idempotency_store = MemoryIdempotencyStore(
            ttl_seconds=settings.webhook_idempotency_ttl_seconds
        )

    public_key = None
    if settings.google_play_public_key:
        public_key = load_public_key(settings.google_play_public_key)
    else:
        logger.warning("GOOGLE_PLAY_PUBLIC_KEY not set, webhook signatures are not verified")

    app.state.circuit_breaker = breaker
    app.state.rate_limiter = rate_limiter
    app.state.verification_service = PurchaseVerificationService(
        client, breaker, max_purchases_per_hour=settings.fraud_max_purchases_per_hour
    )
    app.state.webhook_processor = WebhookProcessor(
        async_session_factory,
        idempotency_store,
        public_key=public_key,
        max_age_seconds=settings.webhook_max_age_seconds,
    )

    yield

    # Shutdown: close outbound clients and dispose engine connections
    await client.aclose()
    if redis_client is not None:
        await redis_client.aclose()

    from digifarmacy.database import engine

    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Google Play subscription verification and lifecycle for pharmacies and laboratories.",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Middleware: added in reverse execution order (last added runs first on request).
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset"],
)
app.add_middleware(RequestIDMiddleware)


@app.exception_handler(SubscriptionError)
async def subscription_error_handler(request: Request, exc: SubscriptionError) -> JSONResponse:
    """Render domain errors as ``{"error": {"code", "message"}}``."""
    headers: dict[str, str] = {}
    if isinstance(exc, RateLimitedError):
        headers["Retry-After"] = str(exc.retry_after)
        if exc.limit is not None:
            headers["X-RateLimit-Limit"] = str(exc.limit)
            headers["X-RateLimit-Remaining"] = "0"
        if exc.reset_at is not None:
            headers["X-RateLimit-Reset"] = str(exc.reset_at)
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"code": exc.code, "message": exc.message}},
        headers=headers or None,
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last resort: log everything, return nothing internal."""
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": {"code": "internal_error", "message": sanitize_error(exc)}},
    )


# Routers
app.include_router(subscriptions_router)
app.include_router(webhooks_router)


@app.get("/health", tags=["health"])
async def health_check(breaker: CircuitBreaker = Depends(get_circuit_breaker)) -> dict:
    """Health check endpoint with the Google Play circuit breaker state."""
    return {
        "status": "healthy",
        "service": settings.app_name,
        "google_play": breaker.snapshot(),
    }


@app.get("/", tags=["root"])
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
    }
