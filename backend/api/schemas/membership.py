"""
Membership billing request/response schemas.
"""

from datetime import datetime, timedelta

from pydantic import BaseModel, ConfigDict, Field

from core.access import AccessPolicy, is_authorized
from core.countdown import derive
from core.domain.membership import BillingState


class TrialCheckoutResponse(BaseModel):
    """Where to send the member to start a trial."""

    model_config = ConfigDict(populate_by_name=True)

    url: str = Field(..., description="Hosted checkout URL")
    trial_end: datetime = Field(
        ...,
        serialization_alias="trialEnd",
        description="When the trial would end if started now",
    )


class ErrorResponse(BaseModel):
    """Error body for the checkout endpoint."""

    error: str


class CountdownView(BaseModel):
    """Trial countdown derived from the canonical expiry."""

    remaining_label: str
    expiring_soon: bool
    expired: bool
    remaining_seconds: int


class SubscriptionView(BaseModel):
    """Canonical subscription state for the signed-in member."""

    subscribed: bool = Field(..., description="Whether the member currently has a subscription")
    tier: str = Field(..., description="Access tier (none, premium)")
    status: str = Field(..., description="Membership state (none, trialing, active, past_due, canceled)")
    subscription_end: datetime | None = Field(None, description="Canonical expiry")
    provisional: bool = Field(False, description="True while only the client's optimistic write backs this view")
    provisional_until: datetime | None = None
    trial_started_at: datetime | None = None
    trial_ended_at: datetime | None = None
    has_access: bool = Field(..., description="Result of the access guard at read time")
    countdown: CountdownView | None = None

    @classmethod
    def from_state(
        cls,
        state: BillingState,
        now: datetime,
        policy: AccessPolicy,
        expiring_soon_threshold: timedelta,
    ) -> "SubscriptionView":
        countdown = None
        if state.subscribed and state.subscription_end is not None:
            c = derive(now, state.subscription_end, expiring_soon_threshold)
            countdown = CountdownView(
                remaining_label=c.remaining_label,
                expiring_soon=c.expiring_soon,
                expired=c.expired,
                remaining_seconds=c.remaining_seconds,
            )
        return cls(
            subscribed=state.subscribed,
            tier=state.tier.value,
            status=state.status.value,
            subscription_end=state.subscription_end,
            provisional=state.provisional,
            provisional_until=state.provisional_until,
            trial_started_at=state.trial_started_at,
            trial_ended_at=state.trial_ended_at,
            has_access=is_authorized(state, now, policy),
            countdown=countdown,
        )


class AccessDenied(BaseModel):
    """Returned with 403 when the access guard says no."""

    authorized: bool = False
    detail: str = "Active membership required"
    checkout_path: str = "/checkout/trial"


class AccessGranted(BaseModel):
    authorized: bool = True
    subscription: SubscriptionView
