"""
Webhook bookkeeping models: processed event identities and parked events.
"""

from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import JSON, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from core.clock import utcnow

from .base import Base, UTCDateTime


class ProcessedEvent(Base):
    """Identity of a gateway event that has been handled.

    Inserted in the same transaction as the state change it produced, so the
    unique constraint on ``event_id`` is what makes processing exactly-once.
    """

    __tablename__ = "processed_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    outcome: Mapped[str] = mapped_column(String(50), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, nullable=False, index=True
    )

    def __repr__(self) -> str:
        return f"<ProcessedEvent(event_id={self.event_id}, outcome={self.outcome})>"


class UnmatchedBillingEvent(Base):
    """A verified event whose owner could not be resolved yet."""

    __tablename__ = "unmatched_billing_events"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    event_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    customer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    received_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, nullable=False
    )
    resolved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        Index("ix_unmatched_customer", "customer_id"),
        Index("ix_unmatched_email", "email"),
    )

    def __repr__(self) -> str:
        return f"<UnmatchedBillingEvent(event_id={self.event_id}, customer_id={self.customer_id})>"
