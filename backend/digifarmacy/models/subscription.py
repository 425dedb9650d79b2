"""Subscription model: Google Play subscription bound to one purchase token."""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, BigInteger, Boolean, CheckConstraint, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from digifarmacy.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class Subscription(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """One row per purchase lineage; ``purchase_token`` is globally unique."""

    __tablename__ = "subscriptions"
    __table_args__ = (
        CheckConstraint("expiry_date > purchase_date", name="ck_subscriptions_expiry_after_purchase"),
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    business_type: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    sku_id: Mapped[str] = mapped_column(String(100), nullable=False)

    # Google Play identifiers
    purchase_token: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    order_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="ACTIVE", index=True)

    # Billing period (naive UTC)
    purchase_date: Mapped[datetime] = mapped_column(nullable=False)
    expiry_date: Mapped[datetime] = mapped_column(nullable=False, index=True)
    renewal_date: Mapped[datetime | None] = mapped_column(nullable=True)
    auto_renew: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    price_amount_micros: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    currency_code: Mapped[str] = mapped_column(String(3), nullable=False, default="LKR")

    cancellation_date: Mapped[datetime | None] = mapped_column(nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Forensics only, never read by the state machine
    raw_provider_response: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    # Write bookkeeping for concurrent producers
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_verified_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_event_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Relationships
    user: Mapped["User"] = relationship(back_populates="subscriptions", lazy="selectin")  # type: ignore[name-defined]  # noqa: F821
    events: Mapped[list["PurchaseEvent"]] = relationship(  # type: ignore[name-defined]  # noqa: F821
        back_populates="subscription",
        lazy="noload",
        order_by="PurchaseEvent.timestamp",
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, user_id={self.user_id}, sku={self.sku_id}, "
            f"status={self.status}, version={self.version})>"
        )
