"""Membership status, optimistic confirmation, reconciliation and access endpoints."""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Annotated

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import (
    get_access_policy,
    get_checkout_initiator,
    get_clock,
    get_current_profile,
    get_reconciler,
)
from api.middleware.rate_limit import get_rate_limit, limiter
from api.schemas.membership import AccessDenied, AccessGranted, SubscriptionView
from core.access import AccessPolicy, is_authorized
from core.domain.membership import BillingState
from infrastructure.config.settings import settings
from infrastructure.database import get_db
from infrastructure.database.models import MembershipProfile
from services.billing_store import load_state
from services.checkout import CheckoutInitiator
from services.reconciliation import MembershipReconciler

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Membership"])

EXPIRING_SOON = timedelta(hours=settings.expiring_soon_hours)


def _view(state: BillingState, now: datetime, policy: AccessPolicy) -> SubscriptionView:
    return SubscriptionView.from_state(state, now, policy, EXPIRING_SOON)


async def _current_state(db: AsyncSession, profile: MembershipProfile) -> BillingState:
    state = await load_state(db, profile.id)
    return state if state is not None else BillingState.empty(profile.id, profile.email)


@router.get("/billing/subscription", response_model=SubscriptionView)
async def get_subscription(
    profile: Annotated[MembershipProfile, Depends(get_current_profile)],
    db: Annotated[AsyncSession, Depends(get_db)],
    clock: Annotated[Callable[[], datetime], Depends(get_clock)],
    policy: Annotated[AccessPolicy, Depends(get_access_policy)],
) -> SubscriptionView:
    """Canonical subscription state for the signed-in member."""
    return _view(await _current_state(db, profile), clock(), policy)


@router.post("/billing/trial/confirm", response_model=SubscriptionView)
@limiter.limit(get_rate_limit("trial_confirm"))
async def confirm_trial(
    request: Request,
    profile: Annotated[MembershipProfile, Depends(get_current_profile)],
    initiator: Annotated[CheckoutInitiator, Depends(get_checkout_initiator)],
    clock: Annotated[Callable[[], datetime], Depends(get_clock)],
    policy: Annotated[AccessPolicy, Depends(get_access_policy)],
) -> SubscriptionView:
    """
    Record that the member just came back from a successful checkout.

    Advisory only: a record the gateway already confirmed is returned as is,
    and the provisional grant lapses unless a webhook confirms it.
    """
    state = await initiator.confirm(profile.id)
    return _view(state, clock(), policy)


@router.post("/billing/reconcile", response_model=SubscriptionView)
@limiter.limit(get_rate_limit("reconcile"))
async def reconcile_subscription(
    request: Request,
    profile: Annotated[MembershipProfile, Depends(get_current_profile)],
    reconciler: Annotated[MembershipReconciler, Depends(get_reconciler)],
    clock: Annotated[Callable[[], datetime], Depends(get_clock)],
    policy: Annotated[AccessPolicy, Depends(get_access_policy)],
) -> SubscriptionView:
    """Re-pull the member's subscription from Stripe and return the result."""
    state = await reconciler.reconcile(profile.id)
    return _view(state, clock(), policy)


@router.get(
    "/membership/access",
    response_model=AccessGranted,
    responses={403: {"model": AccessDenied}},
)
async def check_access(
    profile: Annotated[MembershipProfile, Depends(get_current_profile)],
    db: Annotated[AsyncSession, Depends(get_db)],
    clock: Annotated[Callable[[], datetime], Depends(get_clock)],
    policy: Annotated[AccessPolicy, Depends(get_access_policy)],
):
    """Gate for members-only resources. Never triggers a reconciliation."""
    state = await _current_state(db, profile)
    now = clock()
    if not is_authorized(state, now, policy):
        return JSONResponse(
            status_code=status.HTTP_403_FORBIDDEN,
            content=AccessDenied().model_dump(),
        )
    return AccessGranted(subscription=_view(state, now, policy))
