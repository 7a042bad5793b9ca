"""
Webhook event processor.

Turns one raw gateway delivery into exactly one HTTP outcome:

- 400 for payloads that will never succeed (bad signature, malformed body),
  so the gateway stops retrying;
- 500 for transient failures (gateway lookups, write conflicts, timeouts),
  so the gateway redelivers;
- 200 for everything else, including duplicates, stale events, ignored
  event types and events whose owner cannot be found yet (parked).

An event's identity is committed in the same transaction as the state change
it caused, so a redelivery never applies twice.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core import state_machine
from core.clock import utcnow
from core.domain.membership import CheckoutCompleted, InboundEvent
from core.errors import (
    ExternalServiceError,
    MalformedEventError,
    PersistenceConflictError,
    ProfileNotFoundError,
    SignatureVerificationError,
)
from core.interfaces.services import PaymentGateway
from infrastructure.database.models import ProcessedEvent, UnmatchedBillingEvent
from services.billing_store import BillingStore, EventMarker, is_processed
from services.event_dedup import EventDedupCache
from services.members import resolve_owner

logger = logging.getLogger(__name__)


@dataclass
class WebhookResult:
    """HTTP status and JSON body to answer the gateway with."""

    status_code: int
    body: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, **extra: Any) -> "WebhookResult":
        return cls(200, {"received": True, **extra})

    @classmethod
    def rejected(cls, message: str) -> "WebhookResult":
        return cls(400, {"error": message})

    @classmethod
    def retry(cls, message: str) -> "WebhookResult":
        return cls(500, {"error": message})


class WebhookEventProcessor:
    """Verifies, deduplicates, routes and applies gateway events."""

    def __init__(
        self,
        gateway: PaymentGateway,
        session_factory: async_sessionmaker[AsyncSession],
        store: BillingStore | None = None,
        dedup: EventDedupCache | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.gateway = gateway
        self.session_factory = session_factory
        self.store = store or BillingStore(session_factory)
        self.dedup = dedup or EventDedupCache()
        self.clock = clock

    async def handle(self, raw_body: bytes, signature: str | None) -> WebhookResult:
        """
        Process one webhook delivery.

        Args:
            raw_body: Request body exactly as received
            signature: Value of the gateway signature header

        Returns:
            WebhookResult describing the HTTP response
        """
        try:
            envelope = self.gateway.verify_webhook(raw_body, signature)
        except SignatureVerificationError as e:
            logger.error("Webhook signature verification failed: %s", e.message)
            return WebhookResult.rejected("Invalid signature")
        except MalformedEventError as e:
            logger.error("Malformed webhook payload: %s", e.message)
            return WebhookResult.rejected("Invalid payload")

        marker = EventMarker(event_id=envelope["id"], event_type=envelope["type"])
        log_extra = {"event_id": marker.event_id, "event_type": marker.event_type}
        logger.info("Webhook verified: %s %s", marker.event_type, marker.event_id, extra=log_extra)

        if await self._already_processed(marker.event_id):
            logger.info("Duplicate webhook event %s, skipping", marker.event_id, extra=log_extra)
            return WebhookResult.ok(duplicate=True)

        try:
            event = await self.gateway.to_inbound_event(envelope)
            if event is None:
                await self.store.mark(marker, "unhandled")
                await self.dedup.remember(marker.event_id)
                return WebhookResult.ok(ignored=True)
            return await self._process(event, envelope, marker, log_extra)
        except ExternalServiceError as e:
            logger.error("Gateway error while processing %s: %s", marker.event_id, e.message, extra=log_extra)
            return WebhookResult.retry("Payment gateway unavailable")
        except PersistenceConflictError as e:
            logger.error("Write conflict while processing %s: %s", marker.event_id, e.message, extra=log_extra)
            return WebhookResult.retry("Concurrent update, retry later")
        except asyncio.TimeoutError:
            logger.error("Timed out persisting %s", marker.event_id, extra=log_extra)
            return WebhookResult.retry("Timed out, retry later")
        except SQLAlchemyError as e:
            logger.error("Database error while processing %s: %s", marker.event_id, e, extra=log_extra)
            return WebhookResult.retry("Database unavailable")

    async def _already_processed(self, event_id: str) -> bool:
        if await self.dedup.seen(event_id):
            return True
        async with self.session_factory() as db:
            return await is_processed(db, event_id)

    async def _process(
        self,
        event: InboundEvent,
        envelope: dict[str, Any],
        marker: EventMarker,
        log_extra: dict[str, Any],
    ) -> WebhookResult:
        try:
            async with self.session_factory() as db:
                profile = await resolve_owner(db, self.gateway, event)
                user_id = profile.id

            now = self.clock()
            transition = await self.store.mutate(
                user_id,
                lambda state: state_machine.apply(state, event, now),
                marker=marker,
            )
        except ProfileNotFoundError as e:
            await self._park(event, envelope, marker, e)
            return WebhookResult.ok(parked=True)

        await self.dedup.remember(marker.event_id)

        if transition is None:
            logger.info("Duplicate webhook event %s, skipping", marker.event_id, extra=log_extra)
            return WebhookResult.ok(duplicate=True)

        decision = transition.decision.value
        if transition.applied:
            logger.info(
                "Applied %s for user %s: %s -> %s",
                event.kind, user_id, transition.previous_status.value, transition.state.status.value,
                extra={**log_extra, "user_id": user_id, "decision": decision},
            )
        else:
            logger.info(
                "Ignored %s for user %s (%s)",
                event.kind, user_id, transition.reason,
                extra={**log_extra, "user_id": user_id, "decision": decision},
            )
        return WebhookResult.ok(decision=decision)

    async def _park(
        self,
        event: InboundEvent,
        envelope: dict[str, Any],
        marker: EventMarker,
        error: ProfileNotFoundError,
    ) -> None:
        """Keep an unattributable event for the reconciliation flow."""
        email = error.email or (event.email if isinstance(event, CheckoutCompleted) else None)
        logger.warning(
            "No member for %s %s (customer=%s), parking event",
            marker.event_type, marker.event_id, error.customer_id,
            extra={"event_id": marker.event_id, "event_type": marker.event_type, "decision": "parked"},
        )
        async with self.session_factory() as db:
            existing = await db.execute(
                select(UnmatchedBillingEvent.id).where(UnmatchedBillingEvent.event_id == marker.event_id)
            )
            if existing.scalar_one_or_none() is None:
                db.add(UnmatchedBillingEvent(
                    event_id=marker.event_id,
                    event_type=marker.event_type,
                    customer_id=event.customer_id,
                    email=email.lower() if email else None,
                    payload=envelope,
                ))
            db.add(ProcessedEvent(event_id=marker.event_id, event_type=marker.event_type, outcome="parked"))
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                return
        await self.dedup.remember(marker.event_id)
