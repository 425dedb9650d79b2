"""Async Google Play Developer API client for subscription purchases."""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote

import httpx
from jose import jwt
from jose.exceptions import JOSEError

logger = logging.getLogger(__name__)

ANDROID_PUBLISHER_SCOPE = "https://www.googleapis.com/auth/androidpublisher"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"

# Refresh the bearer token this long before Google says it expires
TOKEN_REFRESH_MARGIN_SECONDS = 60
ASSERTION_LIFETIME_SECONDS = 3600


class GooglePlayError(Exception):
    """Base error for Google Play API calls."""


class GooglePlayUnavailableError(GooglePlayError):
    """Transport failure, timeout, 5xx or failed authentication handshake."""


class GooglePlayRequestError(GooglePlayError):
    """Google Play rejected the request (400/401/403)."""

    def __init__(self, message: str, status_code: int) -> None:
        self.status_code = status_code
        super().__init__(message)


class GooglePlayNotFoundError(GooglePlayRequestError):
    """Purchase token not found or invalid (404)."""


def _ms_to_naive(value: Any) -> datetime | None:
    """Convert a Google millisecond timestamp (string or int) to naive UTC."""
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc).replace(tzinfo=None)


def _optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


@dataclass(frozen=True)
class PurchaseRecord:
    """Canonical subscription purchase state as reported by Google Play."""

    order_id: str | None
    start_time: datetime | None
    expiry_time: datetime | None
    auto_renewing: bool
    price_amount_micros: int
    price_currency_code: str
    payment_state: int | None  # 1 = paid, 0 = pending, 2 = free trial
    cancel_reason: int | None
    acknowledgement_state: int | None
    linked_purchase_token: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "PurchaseRecord":
        return cls(
            order_id=data.get("orderId"),
            start_time=_ms_to_naive(data.get("startTimeMillis")),
            expiry_time=_ms_to_naive(data.get("expiryTimeMillis")),
            auto_renewing=bool(data.get("autoRenewing", False)),
            price_amount_micros=int(data.get("priceAmountMicros") or 0),
            price_currency_code=data.get("priceCurrencyCode") or "LKR",
            payment_state=_optional_int(data.get("paymentState")),
            cancel_reason=_optional_int(data.get("cancelReason")),
            acknowledgement_state=_optional_int(data.get("acknowledgementState")),
            linked_purchase_token=data.get("linkedPurchaseToken"),
            raw=dict(data),
        )

    @property
    def price(self) -> float:
        """Price in major currency units."""
        return self.price_amount_micros / 1_000_000


class GooglePlayClient:
    """Verifies and acknowledges subscription purchases for one app package.

    Authenticates with a service-account JWT assertion exchanged for a
    short-lived bearer token, cached until shortly before it expires.
    """

    def __init__(
        self,
        package_name: str,
        credentials: dict[str, Any],
        base_url: str = "https://androidpublisher.googleapis.com/androidpublisher",
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.package_name = package_name
        self._credentials = credentials
        self._http = http_client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._clock = clock
        self._access_token: str | None = None
        self._token_expires_at: float = 0.0
        self._token_lock = asyncio.Lock()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def _build_assertion(self) -> str:
        now = int(self._clock())
        claims = {
            "iss": self._credentials.get("client_email"),
            "scope": ANDROID_PUBLISHER_SCOPE,
            "aud": self._credentials.get("token_uri", DEFAULT_TOKEN_URI),
            "iat": now,
            "exp": now + ASSERTION_LIFETIME_SECONDS,
        }
        headers = {}
        if self._credentials.get("private_key_id"):
            headers["kid"] = self._credentials["private_key_id"]
        return jwt.encode(
            claims,
            self._credentials.get("private_key", ""),
            algorithm="RS256",
            headers=headers,
        )

    async def _get_access_token(self) -> str:
        async with self._token_lock:
            if self._access_token and self._clock() < self._token_expires_at:
                return self._access_token

            token_uri = self._credentials.get("token_uri", DEFAULT_TOKEN_URI)
            try:
                assertion = self._build_assertion()
                response = await self._http.post(
                    token_uri,
                    data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
                )
                response.raise_for_status()
                payload = response.json()
                access_token = payload["access_token"]
            except (httpx.HTTPError, JOSEError, KeyError, ValueError) as e:
                logger.error("Failed to get Google Play access token: %s", e.__class__.__name__)
                raise GooglePlayUnavailableError("Failed to authenticate with Google Play API") from e

            self._access_token = access_token
            self._token_expires_at = (
                self._clock() + int(payload.get("expires_in", 3600)) - TOKEN_REFRESH_MARGIN_SECONDS
            )
            logger.debug("Obtained Google Play access token for %s", self.package_name)
            return self._access_token

    # ------------------------------------------------------------------
    # API calls
    # ------------------------------------------------------------------

    def _token_path(self, sku_id: str, token: str) -> str:
        return (
            f"/v3/applications/{quote(self.package_name, safe='')}"
            f"/purchases/subscriptions/{quote(sku_id, safe='')}"
            f"/tokens/{quote(token, safe='')}"
        )

    async def _request(self, method: str, path: str) -> httpx.Response:
        access_token = await self._get_access_token()
        try:
            response = await self._http.request(
                method,
                path,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as e:
            raise GooglePlayUnavailableError(f"Google Play request failed: {e.__class__.__name__}") from e

        status = response.status_code
        if status == 404:
            raise GooglePlayNotFoundError("Purchase token not found or invalid", status)
        if status == 400:
            raise GooglePlayRequestError("Invalid subscription ID or token format", status)
        if status in (401, 403):
            # Force a fresh token on the next call
            self._access_token = None
            raise GooglePlayRequestError("Authentication failed with Google Play API", status)
        if status >= 500:
            raise GooglePlayUnavailableError(f"Google Play returned {status}")
        if status >= 400:
            raise GooglePlayRequestError(f"Google Play returned {status}", status)
        return response

    async def verify(self, sku_id: str, token: str) -> PurchaseRecord:
        """Fetch the canonical purchase state for a subscription token."""
        response = await self._request("GET", self._token_path(sku_id, token))
        try:
            data = response.json()
        except ValueError as e:
            raise GooglePlayUnavailableError("Google Play returned a non-JSON body") from e
        logger.info("Fetched Google Play purchase for sku %s (order %s)", sku_id, data.get("orderId"))
        return PurchaseRecord.from_api(data)

    async def acknowledge(self, sku_id: str, token: str) -> None:
        """Acknowledge a subscription purchase so Google Play does not refund it."""
        await self._request("POST", self._token_path(sku_id, token) + ":acknowledge")
        logger.info("Acknowledged Google Play purchase for sku %s", sku_id)
