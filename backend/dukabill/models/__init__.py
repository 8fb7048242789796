"""
Database models for the billing engine.

Importing this package registers every table on the shared Base metadata.
"""

from dukabill.models.store import Store, StoreAccessCode
from dukabill.models.subscription import Subscription, SubscriptionStatus
from dukabill.models.payment_event import PaymentEvent, MatchStatus, PaymentChannel
from dukabill.models.payment_intent import PaymentIntent, IntentStatus
from dukabill.models.reminder_log import ReminderLog, ReminderType, DeliveryStatus
from dukabill.models.billing_event import BillingEvent, BillingEventType, ActorType

__all__ = [
    "Store",
    "StoreAccessCode",
    "Subscription",
    "SubscriptionStatus",
    "PaymentEvent",
    "MatchStatus",
    "PaymentChannel",
    "PaymentIntent",
    "IntentStatus",
    "ReminderLog",
    "ReminderType",
    "DeliveryStatus",
    "BillingEvent",
    "BillingEventType",
    "ActorType",
]
