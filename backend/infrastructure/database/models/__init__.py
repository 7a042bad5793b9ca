"""
SQLAlchemy database models.
"""

from .base import Base, TimestampMixin, UTCDateTime
from .billing_event import ProcessedEvent, UnmatchedBillingEvent
from .profile import MembershipProfile
from .subscriber import SubscriptionRecord

__all__ = [
    "Base",
    "TimestampMixin",
    "UTCDateTime",
    "MembershipProfile",
    "SubscriptionRecord",
    "ProcessedEvent",
    "UnmatchedBillingEvent",
]
