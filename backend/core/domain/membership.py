"""Membership billing domain entities.

Pure value objects shared by the state machine, the webhook processor and the
API layer. Nothing in here touches the database or the network.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional, Union


class SubscriptionTier(str, Enum):
    """Access tier granted by a subscription."""
    NONE = "none"
    PREMIUM = "premium"


class MembershipState(str, Enum):
    """Last-known lifecycle state of a billing relationship."""
    NONE = "none"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"

    @property
    def grants_access(self) -> bool:
        return self in (MembershipState.TRIALING, MembershipState.ACTIVE)


# Gateway status strings -> membership state
GATEWAY_STATUS_MAP: dict[str, MembershipState] = {
    "trialing": MembershipState.TRIALING,
    "active": MembershipState.ACTIVE,
    "past_due": MembershipState.PAST_DUE,
    "unpaid": MembershipState.PAST_DUE,
    "canceled": MembershipState.CANCELED,
    "cancelled": MembershipState.CANCELED,
    "incomplete_expired": MembershipState.CANCELED,
    "paused": MembershipState.CANCELED,
    "incomplete": MembershipState.NONE,
}

# Transitions the gateway is expected to produce. Anything else is still
# applied (event-time ordering is authoritative) but logged.
EXPECTED_TRANSITIONS: frozenset[tuple[MembershipState, MembershipState]] = frozenset({
    (MembershipState.NONE, MembershipState.TRIALING),
    (MembershipState.NONE, MembershipState.ACTIVE),
    (MembershipState.TRIALING, MembershipState.ACTIVE),
    (MembershipState.TRIALING, MembershipState.CANCELED),
    (MembershipState.TRIALING, MembershipState.PAST_DUE),
    (MembershipState.ACTIVE, MembershipState.PAST_DUE),
    (MembershipState.ACTIVE, MembershipState.CANCELED),
    (MembershipState.PAST_DUE, MembershipState.ACTIVE),
    (MembershipState.PAST_DUE, MembershipState.CANCELED),
    (MembershipState.CANCELED, MembershipState.TRIALING),
    (MembershipState.CANCELED, MembershipState.ACTIVE),
})


def map_gateway_status(status: Optional[str]) -> Optional[MembershipState]:
    """Translate a gateway subscription status, None when unknown."""
    if not status:
        return None
    return GATEWAY_STATUS_MAP.get(status.lower())


@dataclass(frozen=True)
class BillingState:
    """Combined view of a SubscriptionRecord and the trial fields of its profile.

    ``last_event_at`` is the gateway event-time of the last applied event and
    is the ordering watermark. ``provisional`` marks an advisory record written
    by the client after checkout that no authoritative event has confirmed.
    """

    user_id: str
    email: str
    external_customer_id: Optional[str] = None
    external_subscription_id: Optional[str] = None
    status: MembershipState = MembershipState.NONE
    subscribed: bool = False
    tier: SubscriptionTier = SubscriptionTier.NONE
    subscription_end: Optional[datetime] = None
    last_event_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    provisional: bool = False
    provisional_until: Optional[datetime] = None
    trial_started_at: Optional[datetime] = None
    trial_ended_at: Optional[datetime] = None

    @classmethod
    def empty(cls, user_id: str, email: str) -> "BillingState":
        return cls(user_id=user_id, email=email)

    def evolve(self, **changes) -> "BillingState":
        return replace(self, **changes)

    @property
    def has_watermark(self) -> bool:
        return self.last_event_at is not None


# ---------------------------------------------------------------------------
# Inbound events: one class per kind, each carrying only what it needs.
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _EventBase:
    event_id: str
    occurred_at: datetime
    customer_id: Optional[str]
    subscription_id: Optional[str]


@dataclass(frozen=True)
class CheckoutCompleted(_EventBase):
    status: MembershipState = MembershipState.NONE
    period_end: Optional[datetime] = None
    email: Optional[str] = None
    user_id: Optional[str] = None

    kind: ClassVar[str] = "checkout-completed"


@dataclass(frozen=True)
class SubscriptionCreated(_EventBase):
    status: MembershipState = MembershipState.NONE
    period_end: Optional[datetime] = None

    kind: ClassVar[str] = "subscription-created"


@dataclass(frozen=True)
class SubscriptionUpdated(_EventBase):
    status: MembershipState = MembershipState.NONE
    period_end: Optional[datetime] = None

    kind: ClassVar[str] = "subscription-updated"


@dataclass(frozen=True)
class SubscriptionDeleted(_EventBase):
    kind: ClassVar[str] = "subscription-deleted"


@dataclass(frozen=True)
class PaymentSucceeded(_EventBase):
    status: MembershipState = MembershipState.ACTIVE
    period_end: Optional[datetime] = None

    kind: ClassVar[str] = "payment-succeeded"


@dataclass(frozen=True)
class PaymentFailed(_EventBase):
    status: MembershipState = MembershipState.PAST_DUE
    period_end: Optional[datetime] = None

    kind: ClassVar[str] = "payment-failed"


InboundEvent = Union[
    CheckoutCompleted,
    SubscriptionCreated,
    SubscriptionUpdated,
    SubscriptionDeleted,
    PaymentSucceeded,
    PaymentFailed,
]


class Decision(str, Enum):
    """Outcome of applying an event to a billing state."""
    APPLIED = "applied"
    IGNORED = "ignored"


@dataclass(frozen=True)
class Transition:
    """Result of the state machine: the next state and why."""

    state: BillingState
    decision: Decision
    reason: str = ""
    previous_status: MembershipState = MembershipState.NONE
    notes: tuple[str, ...] = field(default_factory=tuple)

    @property
    def applied(self) -> bool:
        return self.decision == Decision.APPLIED
