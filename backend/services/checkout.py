"""
Trial checkout: opening the gateway session and the optimistic confirmation
the client makes when it comes back from it.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core import state_machine
from core.clock import utcnow
from core.domain.membership import BillingState, Decision, Transition
from core.interfaces.services import PaymentGateway
from core.security.tokens import TokenService
from infrastructure.config.settings import settings
from services.billing_store import BillingStore
from services.members import authenticate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutStart:
    """Where to send the member, and when the trial would end if started now."""

    redirect_url: str
    trial_end: datetime
    session_id: str


def success_url() -> str:
    base = settings.frontend_url.rstrip("/")
    return f"{base}/trial-success?trial_started=true&session_id={{CHECKOUT_SESSION_ID}}"


def cancel_url() -> str:
    return f"{settings.frontend_url.rstrip('/')}/membership?trial_canceled=true"


class CheckoutInitiator:
    """Starts paid trials and records the client's optimistic view of them."""

    def __init__(
        self,
        gateway: PaymentGateway,
        session_factory: async_sessionmaker[AsyncSession],
        tokens: TokenService,
        store: BillingStore | None = None,
        clock: Callable[[], datetime] = utcnow,
        trial_days: int | None = None,
    ):
        self.gateway = gateway
        self.session_factory = session_factory
        self.tokens = tokens
        self.store = store or BillingStore(session_factory)
        self.clock = clock
        self.trial_days = trial_days if trial_days is not None else settings.trial_period_days

    async def start(self, user_token: str | None) -> CheckoutStart:
        """
        Open a checkout session for the caller's trial.

        Raises:
            AuthError: The token does not identify a member
            ExternalServiceError: The gateway could not create the customer or session
        """
        async with self.session_factory() as db:
            profile = await authenticate(db, self.tokens, user_token)
            user_id, email, name = profile.id, profile.email, profile.name

        customer_id = await self.gateway.find_or_create_customer(email=email, user_id=user_id, name=name)
        await self._link_customer(user_id, customer_id)

        session = await self.gateway.create_trial_checkout(
            customer_id=customer_id,
            user_id=user_id,
            trial_days=self.trial_days,
            success_url=success_url(),
            cancel_url=cancel_url(),
        )
        trial_end = self.clock() + timedelta(days=self.trial_days)
        logger.info("Opened trial checkout %s for user %s", session.id, user_id, extra={"user_id": user_id})
        return CheckoutStart(redirect_url=session.url, trial_end=trial_end, session_id=session.id)

    async def _link_customer(self, user_id: str, customer_id: str) -> None:
        def link(state: BillingState) -> Transition:
            if state.external_customer_id == customer_id:
                return Transition(state=state, decision=Decision.IGNORED, reason="already_linked")
            return Transition(
                state=state.evolve(external_customer_id=customer_id),
                decision=Decision.APPLIED,
                reason="customer_linked",
                previous_status=state.status,
            )

        await self.store.mutate(user_id, link)

    async def confirm(self, user_id: str) -> BillingState:
        """
        Optimistically record a just-started trial.

        The write is advisory: it is merged through the state machine so an
        authoritative record already in place is left alone, and it grants
        access only for the provisional window.
        """
        now = self.clock()
        predicted_end = now + timedelta(days=self.trial_days)
        window = timedelta(minutes=settings.provisional_access_minutes)

        transition = await self.store.mutate(
            user_id,
            lambda state: state_machine.merge_optimistic(state, predicted_end, now, window),
        )
        if transition.applied:
            logger.info("Provisional trial recorded for user %s", user_id, extra={"user_id": user_id})
        else:
            logger.info(
                "Optimistic trial write for user %s refused (%s)",
                user_id, transition.reason, extra={"user_id": user_id},
            )
        return transition.state
