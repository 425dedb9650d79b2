"""Domain error taxonomy for purchase verification and webhook ingestion.

Every error carries an HTTP status, a stable machine-readable ``code`` and a
``message`` that is safe to return to external callers. Tokens, provider
payloads and stack traces never go into ``message``; they belong in logs.
"""

import uuid


class SubscriptionError(Exception):
    """Base class for all subscription-domain errors."""

    status_code: int = 500
    code: str = "internal_error"
    message: str = "An error occurred processing your request"

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


class InternalError(SubscriptionError):
    """Unexpected failure; details only in logs."""


class InvalidSkuError(SubscriptionError):
    status_code = 400
    code = "invalid_sku"
    message = "Invalid subscription ID"


class DuplicateTokenError(SubscriptionError):
    """Token already bound to a subscription. Idempotent success for the caller."""

    status_code = 200
    code = "duplicate_token"
    message = "This purchase token has already been used"

    def __init__(self, subscription_id: uuid.UUID | None) -> None:
        self.subscription_id = subscription_id
        super().__init__()


class RateLimitedError(SubscriptionError):
    status_code = 429
    code = "rate_limited"
    message = "Too many requests, please try again later"

    def __init__(
        self,
        retry_after: int,
        limit: int | None = None,
        reset_at: int | None = None,
        message: str | None = None,
    ) -> None:
        self.retry_after = retry_after
        self.limit = limit
        self.reset_at = reset_at
        super().__init__(message)


class ProviderUnavailableError(SubscriptionError):
    """Google Play is unreachable or the circuit breaker is open."""

    status_code = 503
    code = "provider_unavailable"
    message = "Purchase verification is temporarily unavailable"


class ProviderRequestError(SubscriptionError):
    """Google Play rejected the request (bad SKU/token format or auth)."""

    status_code = 502
    code = "provider_error"
    message = "Purchase verification failed"


class PurchaseNotFoundError(SubscriptionError):
    status_code = 404
    code = "purchase_not_found"
    message = "Purchase not found"


class PurchaseNotValidError(SubscriptionError):
    """Provider state does not allow activation: ``expired``, ``cancelled`` or ``incomplete``."""

    status_code = 400
    REASONS = ("expired", "cancelled", "incomplete")
    _MESSAGES = {
        "expired": "Subscription has expired",
        "cancelled": "Subscription has been cancelled",
        "incomplete": "Subscription payment not completed",
    }

    def __init__(self, reason: str) -> None:
        if reason not in self.REASONS:
            raise ValueError(f"Unknown purchase rejection reason: {reason}")
        self.reason = reason
        self.code = f"purchase_{reason}"
        super().__init__(self._MESSAGES[reason])


class FraudSuspectedError(SubscriptionError):
    status_code = 403
    code = "fraud_suspected"
    message = "Purchase could not be verified"

    def __init__(self, score: int, reasons: list[str]) -> None:
        self.score = score
        self.reasons = reasons
        super().__init__()


class SubscriptionNotFoundError(SubscriptionError):
    status_code = 404
    code = "subscription_not_found"
    message = "No active subscription found"


class WebhookMalformedError(SubscriptionError):
    status_code = 400
    code = "webhook_malformed"
    message = "Invalid webhook format"

    def __init__(self, detail: str) -> None:
        # detail is for logs only
        self.detail = detail
        super().__init__()


class WebhookStaleError(SubscriptionError):
    status_code = 400
    code = "webhook_stale"
    message = "Webhook message too old"


class WebhookSignatureError(SubscriptionError):
    status_code = 400
    code = "webhook_signature_invalid"
    message = "Invalid signature"


def sanitize_error(error: BaseException) -> str:
    """Return a caller-safe message for any exception."""
    if isinstance(error, SubscriptionError):
        return error.message
    return SubscriptionError.message
