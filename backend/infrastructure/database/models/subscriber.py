"""
Subscription record database model.
"""

from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import Boolean, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from core.domain.membership import MembershipState, SubscriptionTier

from .base import Base, TimestampMixin, UTCDateTime


class SubscriptionRecord(Base, TimestampMixin):
    """Canonical billing state for one member.

    Written only by the webhook processor, the reconciliation flow and (for
    provisional rows) the optimistic trial confirmation. ``version_id`` makes
    concurrent writers fail with StaleDataError instead of losing an update.
    """

    __tablename__ = "subscribers"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )

    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("profiles.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
        index=True,
    )
    email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    external_customer_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, index=True
    )
    external_subscription_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )

    status: Mapped[str] = mapped_column(
        String(50),
        default=MembershipState.NONE.value,
        nullable=False,
    )
    subscribed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    tier: Mapped[str] = mapped_column(
        String(50),
        default=SubscriptionTier.NONE.value,
        nullable=False,
    )
    subscription_end: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    # Event-time of the last applied gateway event
    last_event_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    # Advisory write made by the client right after checkout
    provisional: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    provisional_until: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return (
            f"<SubscriptionRecord(user_id={self.user_id}, status={self.status}, "
            f"subscribed={self.subscribed})>"
        )
