# Domain Entities
# Pure business objects with no external dependencies
from .membership import (
    BillingState,
    CheckoutCompleted,
    Decision,
    InboundEvent,
    MembershipState,
    PaymentFailed,
    PaymentSucceeded,
    SubscriptionCreated,
    SubscriptionDeleted,
    SubscriptionTier,
    SubscriptionUpdated,
    Transition,
    map_gateway_status,
)

__all__ = [
    "BillingState",
    "CheckoutCompleted",
    "Decision",
    "InboundEvent",
    "MembershipState",
    "PaymentFailed",
    "PaymentSucceeded",
    "SubscriptionCreated",
    "SubscriptionDeleted",
    "SubscriptionTier",
    "SubscriptionUpdated",
    "Transition",
    "map_gateway_status",
]
