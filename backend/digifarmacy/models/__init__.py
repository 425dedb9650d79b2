"""SQLAlchemy models for DigiFarmacy subscriptions.

All models are imported here so that Alembic's autogenerate can discover
them via Base.metadata. If you add a new model, import it in this file.
"""

from digifarmacy.models.purchase_event import PurchaseEvent
from digifarmacy.models.subscription import Subscription
from digifarmacy.models.user import User

__all__ = [
    "PurchaseEvent",
    "Subscription",
    "User",
]
