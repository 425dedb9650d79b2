"""Shared API dependencies: single import point for all routers.

Re-exports database session, authentication, and billing dependencies so that
router modules can import everything they need from one place::

    from digifarmacy.api.deps import get_db, get_current_active_user
"""

from digifarmacy.auth.dependencies import get_current_active_user, get_current_user
from digifarmacy.billing.dependencies import (
    ClientRateLimit,
    UserRateLimit,
    get_rate_limiter,
    get_verification_service,
    get_webhook_processor,
)
from digifarmacy.database import get_db

__all__ = [
    "get_db",
    "get_current_user",
    "get_current_active_user",
    "get_rate_limiter",
    "get_verification_service",
    "get_webhook_processor",
    "UserRateLimit",
    "ClientRateLimit",
]
