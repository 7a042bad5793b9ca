"""
Membership profile database model.
"""

from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import Boolean, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin, UTCDateTime


class MembershipProfile(Base, TimestampMixin):
    """A member known to the system, created by signup before any billing."""

    __tablename__ = "profiles"

    # Primary key (the identity provider's user id)
    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )

    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        index=True,
    )
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Trial history, kept even after the subscription ends
    trial_started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    trial_ended_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    # Gateway identifiers
    external_customer_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, unique=True
    )
    external_subscription_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )

    # Denormalised copy of SubscriptionRecord.subscribed for cheap reads
    access_flag: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        Index("ix_profiles_external_customer", "external_customer_id"),
    )

    def __repr__(self) -> str:
        return f"<MembershipProfile(id={self.id}, email={self.email})>"
