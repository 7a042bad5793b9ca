"""Trial checkout endpoint."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Request

from api.deps import bearer_token, get_checkout_initiator
from api.middleware.rate_limit import get_rate_limit, limiter
from api.schemas.membership import ErrorResponse, TrialCheckoutResponse
from services.checkout import CheckoutInitiator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Checkout"])


@router.post(
    "/checkout/trial",
    response_model=TrialCheckoutResponse,
    responses={401: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
@limiter.limit(get_rate_limit("checkout"))
async def start_trial_checkout(
    request: Request,
    initiator: Annotated[CheckoutInitiator, Depends(get_checkout_initiator)],
    token: Annotated[str | None, Depends(bearer_token)],
) -> TrialCheckoutResponse:
    """
    Open a Stripe checkout session for a paid trial.

    The session collects a payment method up front so the trial converts to a
    paid subscription on its own when it ends.
    """
    start = await initiator.start(token)
    return TrialCheckoutResponse(url=start.redirect_url, trial_end=start.trial_end)
