"""Pydantic v2 schemas for Google Play real-time developer notifications.

Pub/Sub push wraps each notification in an envelope whose ``message.data``
is the base64-encoded JSON ``DeveloperNotification``.
"""

from pydantic import BaseModel, Field, field_validator

from digifarmacy.billing.state_machine import KNOWN_NOTIFICATION_TYPES


class PubSubMessage(BaseModel):
    """The ``message`` object of a Pub/Sub push request."""

    data: str = Field(..., min_length=1)
    messageId: str | None = None
    message_id: str | None = None
    publishTime: str | None = None
    attributes: dict[str, str] | None = None


class PubSubPushEnvelope(BaseModel):
    """Body Pub/Sub POSTs to the push endpoint."""

    message: PubSubMessage
    messageId: str | None = None
    subscription: str | None = None

    @property
    def resolved_message_id(self) -> str | None:
        """Message id from the envelope or, failing that, the message itself."""
        return self.messageId or self.message.messageId or self.message.message_id


class SubscriptionNotification(BaseModel):
    version: str | float
    notificationType: int
    purchaseToken: str = Field(..., min_length=1)
    subscriptionId: str = Field(..., min_length=1)

    @field_validator("notificationType")
    @classmethod
    def _known_type(cls, value: int) -> int:
        if value not in KNOWN_NOTIFICATION_TYPES:
            raise ValueError(f"unknown notification type {value}")
        return value


class DeveloperNotification(BaseModel):
    """Decoded ``message.data`` payload."""

    version: str | float | None = None
    packageName: str | None = None
    eventTimeMillis: int | None = None
    subscriptionNotification: SubscriptionNotification
