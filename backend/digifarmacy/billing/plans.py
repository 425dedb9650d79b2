"""Plan definitions: Google Play subscription SKUs and LKR pricing."""

from dataclasses import dataclass
from datetime import timedelta

from digifarmacy.errors import InvalidSkuError

BUSINESS_TYPES: tuple[str, ...] = ("pharmacy", "laboratory")


@dataclass(frozen=True)
class SkuDefinition:
    """A purchasable subscription product."""

    sku: str
    business_type: str  # pharmacy, laboratory
    period: str  # monthly, annual
    price: int  # LKR, adjusted for the 15% store commission
    currency: str
    period_length: timedelta


SKUS: dict[str, SkuDefinition] = {
    "pharmacy_monthly": SkuDefinition(
        sku="pharmacy_monthly",
        business_type="pharmacy",
        period="monthly",
        price=2941,
        currency="LKR",
        period_length=timedelta(days=30),
    ),
    "pharmacy_annual": SkuDefinition(
        sku="pharmacy_annual",
        business_type="pharmacy",
        period="annual",
        price=29410,
        currency="LKR",
        period_length=timedelta(days=365),
    ),
    "laboratory_monthly": SkuDefinition(
        sku="laboratory_monthly",
        business_type="laboratory",
        period="monthly",
        price=1765,
        currency="LKR",
        period_length=timedelta(days=30),
    ),
    "laboratory_annual": SkuDefinition(
        sku="laboratory_annual",
        business_type="laboratory",
        period="annual",
        price=17650,
        currency="LKR",
        period_length=timedelta(days=365),
    ),
}

VALID_SKUS: frozenset[str] = frozenset(SKUS)


def get_sku(sku_id: str) -> SkuDefinition:
    """Get a SKU definition. Raises InvalidSkuError if unknown."""
    try:
        return SKUS[sku_id]
    except KeyError:
        raise InvalidSkuError() from None


def business_type_for_sku(sku_id: str) -> str:
    """Derive the business type from the SKU prefix."""
    return get_sku(sku_id).business_type


def get_skus_for_business(business_type: str) -> dict[str, SkuDefinition]:
    """Pricing options for one business type, keyed by billing period."""
    return {s.period: s for s in SKUS.values() if s.business_type == business_type}
