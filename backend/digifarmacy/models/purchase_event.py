"""PurchaseEvent model: append-only audit trail of subscription lifecycle events."""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from digifarmacy.database import Base, UUIDPrimaryKeyMixin, utcnow


class PurchaseEvent(UUIDPrimaryKeyMixin, Base):
    """Lifecycle event written right after the subscription write it describes."""

    __tablename__ = "purchase_events"

    subscription_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    event_data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    # Webhook message id when the event came from a provider notification
    notification_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    needs_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    timestamp: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, index=True)

    subscription: Mapped["Subscription"] = relationship(back_populates="events")  # type: ignore[name-defined]  # noqa: F821

    def __repr__(self) -> str:
        return (
            f"<PurchaseEvent(id={self.id}, subscription_id={self.subscription_id}, "
            f"type={self.event_type})>"
        )
