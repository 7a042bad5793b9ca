"""
Persistence for member billing state.

Every write to a member's SubscriptionRecord goes through
``BillingStore.mutate``: it serialises writers on the member id, locks the
row, runs a pure merge function over the current state and commits the result
together with the processed-event marker in one transaction. Version conflicts
and transient database failures are retried a bounded number of times with
backoff, and each attempt is bounded by a timeout.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, func, select
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from core.clock import utcnow
from core.domain.membership import (
    BillingState,
    MembershipState,
    SubscriptionTier,
    Transition,
)
from core.errors import PersistenceConflictError, ProfileNotFoundError
from infrastructure.config.settings import settings
from infrastructure.database.models import (
    MembershipProfile,
    ProcessedEvent,
    SubscriptionRecord,
)
from services.keyed_lock import KeyedLock, member_locks

logger = logging.getLogger(__name__)

Merge = Callable[[BillingState], Transition]


@dataclass(frozen=True)
class EventMarker:
    """Processed-event row written in the same transaction as the state change."""

    event_id: str
    event_type: str


def _is_transient(exc: Exception) -> bool:
    """Whether a failed write attempt is worth repeating."""
    if isinstance(exc, DBAPIError):
        return isinstance(exc, OperationalError) or exc.connection_invalidated
    return True


def to_state(profile: MembershipProfile, record: SubscriptionRecord | None) -> BillingState:
    """Combine a profile and its (possibly missing) record into one value."""
    if record is None:
        return BillingState(
            user_id=profile.id,
            email=profile.email,
            external_customer_id=profile.external_customer_id,
            external_subscription_id=profile.external_subscription_id,
            trial_started_at=profile.trial_started_at,
            trial_ended_at=profile.trial_ended_at,
        )
    return BillingState(
        user_id=profile.id,
        email=profile.email,
        external_customer_id=record.external_customer_id or profile.external_customer_id,
        external_subscription_id=record.external_subscription_id,
        status=MembershipState(record.status),
        subscribed=record.subscribed,
        tier=SubscriptionTier(record.tier),
        subscription_end=record.subscription_end,
        last_event_at=record.last_event_at,
        updated_at=record.updated_at,
        provisional=record.provisional,
        provisional_until=record.provisional_until,
        trial_started_at=profile.trial_started_at,
        trial_ended_at=profile.trial_ended_at,
    )


def write_state(
    db: AsyncSession,
    profile: MembershipProfile,
    record: SubscriptionRecord | None,
    state: BillingState,
) -> SubscriptionRecord:
    """Copy a state value onto the ORM rows, creating the record if needed."""
    if record is None:
        record = SubscriptionRecord(user_id=profile.id, email=profile.email)
        db.add(record)

    record.email = profile.email
    record.external_customer_id = state.external_customer_id
    record.external_subscription_id = state.external_subscription_id
    record.status = state.status.value
    record.subscribed = state.subscribed
    record.tier = state.tier.value
    record.subscription_end = state.subscription_end
    record.last_event_at = state.last_event_at
    record.provisional = state.provisional
    record.provisional_until = state.provisional_until
    record.updated_at = state.updated_at or utcnow()

    profile.trial_started_at = state.trial_started_at
    profile.trial_ended_at = state.trial_ended_at
    if state.external_customer_id:
        profile.external_customer_id = state.external_customer_id
    profile.external_subscription_id = state.external_subscription_id
    profile.access_flag = state.subscribed
    return record


async def load_state(db: AsyncSession, user_id: str) -> BillingState | None:
    """Read-only view of a member's billing state, None for unknown members."""
    profile = await db.get(MembershipProfile, user_id)
    if profile is None:
        return None
    result = await db.execute(select(SubscriptionRecord).where(SubscriptionRecord.user_id == user_id))
    return to_state(profile, result.scalar_one_or_none())


async def is_processed(db: AsyncSession, event_id: str) -> bool:
    result = await db.execute(select(ProcessedEvent.event_id).where(ProcessedEvent.event_id == event_id))
    return result.scalar_one_or_none() is not None


class BillingStore:
    """Serialised, bounded read-merge-write of member billing state."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: KeyedLock = member_locks,
        timeout: float | None = None,
        max_attempts: int | None = None,
        backoff: float | None = None,
    ):
        self.session_factory = session_factory
        self.locks = locks
        self.timeout = timeout if timeout is not None else settings.webhook_persist_timeout_seconds
        self.max_attempts = max(1, max_attempts if max_attempts is not None else settings.webhook_persist_max_attempts)
        self.backoff = backoff if backoff is not None else settings.webhook_persist_backoff_seconds

    async def mutate(
        self,
        user_id: str,
        merge: Merge,
        marker: EventMarker | None = None,
    ) -> Transition | None:
        """
        Apply ``merge`` to the member's current state and persist the result.

        Version conflicts, attempt timeouts and dropped connections are
        retried with exponential backoff up to ``max_attempts`` times.

        Args:
            user_id: Member whose record is written
            merge: Pure function from the current state to a Transition
            marker: Processed-event row committed atomically with the change

        Returns:
            The Transition that was committed, or None when ``marker`` had
            already been committed by another writer

        Raises:
            ProfileNotFoundError: The member does not exist
            PersistenceConflictError: Writers kept conflicting on every attempt
            asyncio.TimeoutError: Every attempt exceeded the persistence timeout
            DBAPIError: The database stayed unreachable on every attempt
        """
        async with self.locks.hold(user_id):
            for attempt in range(1, self.max_attempts + 1):
                try:
                    return await asyncio.wait_for(
                        self._mutate_once(user_id, merge, marker),
                        timeout=self.timeout,
                    )
                except (PersistenceConflictError, asyncio.TimeoutError, DBAPIError) as e:
                    if not _is_transient(e) or attempt == self.max_attempts:
                        if isinstance(e, PersistenceConflictError):
                            raise PersistenceConflictError(
                                f"Gave up writing billing state for user {user_id}"
                            ) from e
                        raise
                    delay = self.backoff * (2 ** (attempt - 1))
                    logger.warning(
                        "Billing write for user %s failed (attempt %d/%d), retrying in %.2fs: %r",
                        user_id, attempt, self.max_attempts, delay, e,
                    )
                    await asyncio.sleep(delay)

    async def _mutate_once(
        self,
        user_id: str,
        merge: Merge,
        marker: EventMarker | None,
    ) -> Transition | None:
        async with self.session_factory() as db:
            try:
                profile = await db.get(MembershipProfile, user_id, with_for_update=True)
                if profile is None:
                    raise ProfileNotFoundError(f"Profile {user_id} no longer exists")

                result = await db.execute(
                    select(SubscriptionRecord)
                    .where(SubscriptionRecord.user_id == user_id)
                    .with_for_update()
                )
                record = result.scalar_one_or_none()

                current = to_state(profile, record)
                transition = merge(current)
                if transition.applied or transition.state != current:
                    write_state(db, profile, record, transition.state)

                if marker is not None:
                    db.add(ProcessedEvent(
                        event_id=marker.event_id,
                        event_type=marker.event_type,
                        outcome="applied" if transition.applied else transition.reason,
                    ))

                await db.commit()
                return transition
            except StaleDataError as e:
                await db.rollback()
                raise PersistenceConflictError(str(e)) from e
            except IntegrityError as e:
                await db.rollback()
                if marker is not None and await is_processed(db, marker.event_id):
                    logger.info("Event %s was committed by a concurrent delivery", marker.event_id)
                    return None
                # Two writers created the same member's record at once
                raise PersistenceConflictError(str(e.orig)) from e

    async def mark(self, marker: EventMarker, outcome: str) -> bool:
        """Record an event that changes no state. False if it was already recorded."""
        async with self.session_factory() as db:
            db.add(ProcessedEvent(event_id=marker.event_id, event_type=marker.event_type, outcome=outcome))
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                return False
            return True


async def prune_processed_events(
    session_factory: async_sessionmaker[AsyncSession],
    retention: timedelta,
    now: datetime | None = None,
) -> int:
    """Forget processed-event ids older than the retention window."""
    cutoff = (now or utcnow()) - retention
    async with session_factory() as db:
        count = await db.scalar(
            select(func.count()).select_from(ProcessedEvent).where(ProcessedEvent.processed_at < cutoff)
        )
        if count:
            await db.execute(delete(ProcessedEvent).where(ProcessedEvent.processed_at < cutoff))
            await db.commit()
            logger.info("Pruned %d processed webhook events older than %s", count, cutoff.isoformat())
        return count or 0
