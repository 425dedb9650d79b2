"""Fraud scoring for subscription purchases.

Scoring is additive, deterministic and side-effect free. Enforcement is up
to the caller; purchase verification rejects CRITICAL and flags HIGH for
manual review.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

# Price bounds in LKR (major units); other currencies are not price-checked
PRICE_BOUNDS_CURRENCY = "LKR"
MIN_PLAUSIBLE_PRICE = 100
MAX_PLAUSIBLE_PRICE = 100_000
MIN_TOKEN_LENGTH = 100

COMMON_EMAIL_DOMAINS = frozenset(
    {"gmail.com", "yahoo.com", "outlook.com", "hotmail.com", "icloud.com"}
)
BUSINESS_DOMAIN_KEYWORDS: dict[str, tuple[str, ...]] = {
    "pharmacy": ("pharmacy", "pharma", "health"),
    "laboratory": ("lab", "laboratory", "diagnostic"),
}
PROFESSIONAL_TLDS = (".com", ".lk", ".org", ".net", ".co", ".biz", ".business")


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


@dataclass(frozen=True)
class PurchaseValidationContext:
    """Inputs the fraud engine scores a purchase on."""

    user_id: str
    email: str
    business_type: str
    purchase_token: str
    sku_id: str
    price: float  # major currency units
    currency: str
    account_age_days: float
    previous_purchases: int = 0


@dataclass(frozen=True)
class FraudLikelihoodScore:
    score: int
    risk_level: RiskLevel
    reasons: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "score": self.score,
            "risk_level": self.risk_level.value,
            "reasons": list(self.reasons),
        }


def risk_level_for(score: int) -> RiskLevel:
    if score >= 80:
        return RiskLevel.CRITICAL
    if score >= 60:
        return RiskLevel.HIGH
    if score >= 30:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def is_suspicious_token(token: str) -> bool:
    """Real Play tokens are long opaque strings; short or test-looking ones are not."""
    if not token or len(token) < MIN_TOKEN_LENGTH:
        return True
    return "test" in token or "mock" in token


def is_plausible_business_email(email: str, business_type: str) -> bool:
    """Consumer providers, business keywords and professional TLDs all pass."""
    if not email or "@" not in email:
        return False
    domain = email.rsplit("@", 1)[1].lower()
    if not domain:
        return False
    if domain in COMMON_EMAIL_DOMAINS:
        return True
    if any(k in domain for k in BUSINESS_DOMAIN_KEYWORDS.get(business_type, ())):
        return True
    return domain.endswith(PROFESSIONAL_TLDS)


def analyze_purchase(context: PurchaseValidationContext) -> FraudLikelihoodScore:
    """Score a purchase for fraud indicators."""
    score = 0
    reasons: list[str] = []

    if context.account_age_days < 1:
        score += 20
        reasons.append("Account created less than 1 day ago")
    elif context.account_age_days < 7:
        score += 10
        reasons.append("Account created less than 7 days ago")

    if context.previous_purchases > 5:
        score += 15
        reasons.append("Unusually high number of previous purchases")

    token_suspicious = is_suspicious_token(context.purchase_token)
    if token_suspicious:
        score += 25
        reasons.append("Suspicious purchase token format detected")

    if (context.currency or "").upper() == PRICE_BOUNDS_CURRENCY:
        if context.price < MIN_PLAUSIBLE_PRICE:
            score += 15
            reasons.append("Price unusually low (potential test/fraud)")
        elif context.price > MAX_PLAUSIBLE_PRICE:
            score += 10
            reasons.append("Price unusually high (potential error or fraud)")

    if not is_plausible_business_email(context.email, context.business_type):
        score += 5
        reasons.append("Email domain not typical for business type")

    score = max(0, min(100, score))
    risk_level = risk_level_for(score)
    # An implausible token alone is never LOW
    if token_suspicious and risk_level is RiskLevel.LOW:
        risk_level = RiskLevel.MEDIUM
    return FraudLikelihoodScore(score=score, risk_level=risk_level, reasons=reasons)


def check_velocity(
    purchase_times: list[datetime],
    now: datetime,
    max_per_hour: int = 5,
) -> bool:
    """True when the number of purchases in the last hour is within bounds."""
    cutoff = now - timedelta(hours=1)
    return sum(1 for t in purchase_times if t > cutoff) <= max_per_hour


def assess_chargeback_risk(
    total_purchases: int,
    failed_charges: int,
    chargebacks: int,
) -> int:
    """Risk 0-100 from a user's payment history."""
    if total_purchases == 0:
        return 10

    chargeback_rate = chargebacks / total_purchases * 100
    failure_rate = failed_charges / total_purchases * 100

    risk = 0
    if chargeback_rate > 20:
        risk += 40
    elif chargeback_rate > 5:
        risk += 20
    elif chargeback_rate > 0:
        risk += 5

    if failure_rate > 50:
        risk += 30
    elif failure_rate > 20:
        risk += 15

    return min(100, risk)
