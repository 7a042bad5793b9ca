"""
Subscription access guard.

A pure read of the canonical record: no side effects and never triggers a
reconciliation. Callers that are denied are sent to the checkout flow.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

from core.clock import ensure_utc
from core.domain.membership import BillingState


@dataclass(frozen=True)
class AccessPolicy:
    """Tunable limits for the access guard."""

    # A lapsed expiry on a still-subscribed record keeps access this long, so
    # a late renewal webhook does not lock a paying member out.
    expiry_grace: timedelta = timedelta(hours=24)


DEFAULT_POLICY = AccessPolicy()


def is_authorized(
    state: BillingState | None,
    now: datetime,
    policy: AccessPolicy = DEFAULT_POLICY,
) -> bool:
    """Return True when the member may reach protected resources."""
    if state is None or not state.subscribed:
        return False

    now = ensure_utc(now)

    if state.provisional:
        until = ensure_utc(state.provisional_until)
        return until is not None and now < until

    end = ensure_utc(state.subscription_end)
    if end is not None and now > end + policy.expiry_grace:
        return False

    return True
