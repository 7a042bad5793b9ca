"""
Manual reconciliation.

Re-pulls a member's subscription straight from the gateway and folds it
into the canonical record. This is how a member recovers from a lost
webhook, an optimistic write the gateway never confirmed, or an event that
was parked because its owner could not be resolved at delivery time.
"""

import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import or_, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core import state_machine
from core.clock import utcnow
from core.domain.membership import (
    BillingState,
    MembershipState,
    SubscriptionUpdated,
    map_gateway_status,
)
from core.errors import ProfileNotFoundError
from core.interfaces.services import GatewaySubscription, PaymentGateway
from infrastructure.database.models import UnmatchedBillingEvent
from services.billing_store import BillingStore, load_state

logger = logging.getLogger(__name__)


def pick_current(subscriptions: list[GatewaySubscription]) -> GatewaySubscription | None:
    """Newest subscription that grants access, else the newest one with a known status."""
    known = [s for s in subscriptions if map_gateway_status(s.status) is not None]
    for subscription in known:
        if map_gateway_status(subscription.status).grants_access:
            return subscription
    return known[0] if known else None


class MembershipReconciler:
    """Pulls canonical subscription state from the gateway on demand."""

    def __init__(
        self,
        gateway: PaymentGateway,
        session_factory: async_sessionmaker[AsyncSession],
        store: BillingStore | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.gateway = gateway
        self.session_factory = session_factory
        self.store = store or BillingStore(session_factory)
        self.clock = clock

    async def reconcile(self, user_id: str) -> BillingState:
        """
        Bring a member's record in line with the gateway.

        Raises:
            ProfileNotFoundError: The member does not exist
            ExternalServiceError: The gateway could not be reached
        """
        async with self.session_factory() as db:
            current = await load_state(db, user_id)
        if current is None:
            raise ProfileNotFoundError(f"Profile {user_id} not found")

        subscription = None
        if current.external_customer_id:
            subscriptions = await self.gateway.list_customer_subscriptions(current.external_customer_id)
            subscription = pick_current(subscriptions)

        now = self.clock()
        if subscription is None:
            transition = await self.store.mutate(
                user_id, lambda state: state_machine.revert_provisional(state, now)
            )
            if transition.applied:
                logger.info("Reverted unconfirmed provisional trial for user %s", user_id)
        else:
            # The gateway's answer is as of now, so it outranks any event stamped earlier
            event = SubscriptionUpdated(
                event_id=f"reconcile:{subscription.id}:{int(now.timestamp())}",
                occurred_at=now,
                customer_id=subscription.customer_id or current.external_customer_id,
                subscription_id=subscription.id,
                status=map_gateway_status(subscription.status) or MembershipState.NONE,
                period_end=subscription.current_period_end,
            )
            transition = await self.store.mutate(
                user_id, lambda state: state_machine.apply(state, event, now)
            )
            logger.info(
                "Reconciled user %s against subscription %s: %s (%s)",
                user_id, subscription.id, transition.state.status.value, transition.decision.value,
                extra={"user_id": user_id, "decision": transition.decision.value},
            )

        await self._resolve_parked(transition.state, now)
        return transition.state

    async def _resolve_parked(self, state: BillingState, now: datetime) -> int:
        """Close parked events the pull just superseded."""
        conditions = [UnmatchedBillingEvent.email == state.email.lower()]
        if state.external_customer_id:
            conditions.append(UnmatchedBillingEvent.customer_id == state.external_customer_id)

        async with self.session_factory() as db:
            result = await db.execute(
                update(UnmatchedBillingEvent)
                .where(UnmatchedBillingEvent.resolved_at.is_(None), or_(*conditions))
                .values(resolved_at=now)
            )
            await db.commit()

        if result.rowcount:
            logger.info("Resolved %d parked billing events for user %s", result.rowcount, state.user_id)
        return result.rowcount or 0
