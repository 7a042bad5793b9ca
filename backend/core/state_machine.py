"""
Subscription state machine.

Pure functions, no I/O. ``apply`` folds one gateway event into a billing
state; ``merge_optimistic`` folds in the advisory write a client makes right
after checkout. Both return a ``Transition`` that says whether the input was
applied or ignored, so callers decide what to persist.

Ordering: an event is applied only when its event-time is at or after the
event-time of the last applied event (the watermark). A state with no
watermark (fresh, or only ever written optimistically) accepts anything. This
makes the final record depend on the set of events, not on arrival order.
"""

import logging
from datetime import datetime, timedelta
from typing import assert_never

from core.clock import ensure_utc
from core.domain.membership import (
    EXPECTED_TRANSITIONS,
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
)

logger = logging.getLogger(__name__)

REASON_STALE = "stale"
REASON_SUPERSEDED = "superseded_subscription"
REASON_UNKNOWN_STATUS = "unknown_status"
REASON_CANONICAL_PRESENT = "canonical_present"
REASON_NOT_PROVISIONAL = "not_provisional"
REASON_PROVISIONAL_USED = "provisional_used"


def _ignored(state: BillingState, reason: str) -> Transition:
    return Transition(
        state=state,
        decision=Decision.IGNORED,
        reason=reason,
        previous_status=state.status,
    )


def _later(a: datetime | None, b: datetime | None) -> datetime | None:
    candidates = [ensure_utc(v) for v in (a, b) if v is not None]
    return max(candidates) if candidates else None


def _is_superseded(state: BillingState, event: InboundEvent, grants_access: bool) -> bool:
    """An event about an older subscription must not revoke a newer one."""
    return (
        event.subscription_id is not None
        and state.external_subscription_id is not None
        and event.subscription_id != state.external_subscription_id
        and state.subscribed
        and not state.provisional
        and not grants_access
    )


def apply(state: BillingState, event: InboundEvent, now: datetime) -> Transition:
    """
    Apply a gateway event to a billing state.

    Args:
        state: Current combined record/profile state for the owning user
        event: Normalised inbound event
        now: Wall-clock processing time, used for trial stamps

    Returns:
        Transition carrying the next state and an applied/ignored decision
    """
    occurred_at = ensure_utc(event.occurred_at)
    watermark = ensure_utc(state.last_event_at)

    if watermark is not None and occurred_at < watermark:
        return _backfill_trial(state, event, now)

    match event:
        case SubscriptionDeleted():
            return _apply_deletion(state, event, occurred_at, now)
        case CheckoutCompleted() | SubscriptionCreated() | SubscriptionUpdated():
            return _apply_status(state, event, occurred_at, now)
        case PaymentSucceeded() | PaymentFailed():
            return _apply_status(state, event, occurred_at, now)
        case _:
            assert_never(event)


def _backfill_trial(state: BillingState, event: InboundEvent, now: datetime) -> Transition:
    """
    Ignore a stale event, keeping only the trial history it proves.

    A trialing event that lost the ordering race still shows the member had a
    trial. Record its start if nothing did, and stamp its end when a later
    event already moved the member past it. Access fields are left alone.
    """
    if getattr(event, "status", None) != MembershipState.TRIALING or state.trial_started_at is not None:
        return _ignored(state, REASON_STALE)

    trial_ended_at = state.trial_ended_at
    if state.status in (MembershipState.ACTIVE, MembershipState.CANCELED) and trial_ended_at is None:
        trial_ended_at = now

    return Transition(
        state=state.evolve(trial_started_at=now, trial_ended_at=trial_ended_at),
        decision=Decision.IGNORED,
        reason=REASON_STALE,
        previous_status=state.status,
        notes=("trial history backfilled",),
    )


def _apply_deletion(
    state: BillingState,
    event: SubscriptionDeleted,
    occurred_at: datetime,
    now: datetime,
) -> Transition:
    if _is_superseded(state, event, grants_access=False):
        return _ignored(state, REASON_SUPERSEDED)

    trial_ended_at = state.trial_ended_at
    if state.trial_started_at is not None and trial_ended_at is None:
        trial_ended_at = now

    new_state = state.evolve(
        external_customer_id=event.customer_id or state.external_customer_id,
        external_subscription_id=None,
        status=MembershipState.CANCELED,
        subscribed=False,
        tier=SubscriptionTier.NONE,
        subscription_end=None,
        last_event_at=occurred_at,
        updated_at=now,
        provisional=False,
        provisional_until=None,
        trial_ended_at=trial_ended_at,
    )
    return Transition(
        state=new_state,
        decision=Decision.APPLIED,
        reason=event.kind,
        previous_status=state.status,
    )


def _apply_status(
    state: BillingState,
    event: CheckoutCompleted | SubscriptionCreated | SubscriptionUpdated | PaymentSucceeded | PaymentFailed,
    occurred_at: datetime,
    now: datetime,
) -> Transition:
    target = event.status
    if not isinstance(target, MembershipState):
        return _ignored(state, REASON_UNKNOWN_STATUS)

    if _is_superseded(state, event, grants_access=target.grants_access):
        return _ignored(state, REASON_SUPERSEDED)

    notes: list[str] = []
    if (state.status, target) not in EXPECTED_TRANSITIONS and state.status != target:
        notes.append(f"unexpected transition {state.status.value} -> {target.value}")
        logger.warning(
            "Unexpected membership transition %s -> %s for user %s (event %s)",
            state.status.value, target.value, state.user_id, event.event_id,
        )

    subscribed = target.grants_access

    # A provisional end is a client prediction and never holds back the real one.
    base_end = None if state.provisional else state.subscription_end
    subscription_end = _later(base_end, event.period_end)

    trial_started_at = state.trial_started_at
    trial_ended_at = state.trial_ended_at
    if target == MembershipState.TRIALING and trial_started_at is None:
        trial_started_at = now
        trial_ended_at = None
        notes.append("trial started")
    elif target == MembershipState.ACTIVE and trial_started_at is not None and trial_ended_at is None:
        trial_ended_at = now
        notes.append("trial converted")

    new_state = state.evolve(
        external_customer_id=event.customer_id or state.external_customer_id,
        external_subscription_id=event.subscription_id or state.external_subscription_id,
        status=target,
        subscribed=subscribed,
        tier=SubscriptionTier.PREMIUM if subscribed else SubscriptionTier.NONE,
        subscription_end=subscription_end,
        last_event_at=occurred_at,
        updated_at=now,
        provisional=False,
        provisional_until=None,
        trial_started_at=trial_started_at,
        trial_ended_at=trial_ended_at,
    )
    return Transition(
        state=new_state,
        decision=Decision.APPLIED,
        reason=event.kind,
        previous_status=state.status,
        notes=tuple(notes),
    )


def merge_optimistic(
    state: BillingState,
    predicted_end: datetime,
    now: datetime,
    window: timedelta,
) -> Transition:
    """
    Fold a client's post-checkout optimistic write into the canonical state.

    Only a member the gateway has never reported on gets the write, and only
    once: any applied gateway event (including a cancellation) wins, and a
    member who already holds or held a provisional trial is refused. The
    written record is flagged provisional and grants access only until
    ``now + window``; the watermark is left untouched so any gateway event
    supersedes it.
    """
    if state.has_watermark or (state.subscribed and not state.provisional):
        return _ignored(state, REASON_CANONICAL_PRESENT)
    if state.provisional or state.trial_started_at is not None:
        return _ignored(state, REASON_PROVISIONAL_USED)

    new_state = state.evolve(
        status=MembershipState.TRIALING,
        subscribed=True,
        tier=SubscriptionTier.PREMIUM,
        subscription_end=ensure_utc(predicted_end),
        updated_at=now,
        provisional=True,
        provisional_until=now + window,
        trial_started_at=now,
        trial_ended_at=None,
    )
    return Transition(
        state=new_state,
        decision=Decision.APPLIED,
        reason="optimistic",
        previous_status=state.status,
    )


def revert_provisional(state: BillingState, now: datetime) -> Transition:
    """Drop an unconfirmed optimistic write after the gateway reports nothing."""
    if not state.provisional:
        return _ignored(state, REASON_NOT_PROVISIONAL)

    new_state = state.evolve(
        status=MembershipState.CANCELED if state.has_watermark else MembershipState.NONE,
        subscribed=False,
        tier=SubscriptionTier.NONE,
        subscription_end=None,
        updated_at=now,
        provisional=False,
        provisional_until=None,
    )
    return Transition(
        state=new_state,
        decision=Decision.APPLIED,
        reason="provisional_reverted",
        previous_status=state.status,
    )
