"""
Member lookups: bearer-token authentication and webhook owner resolution.
"""

import logging

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.domain.membership import CheckoutCompleted, InboundEvent
from core.errors import AuthError, ProfileNotFoundError
from core.interfaces.services import PaymentGateway
from core.security.tokens import TokenService
from infrastructure.database.models import MembershipProfile, SubscriptionRecord

logger = logging.getLogger(__name__)


async def authenticate(
    db: AsyncSession,
    tokens: TokenService,
    token: str | None,
) -> MembershipProfile:
    """
    Resolve a bearer token to the caller's profile.

    Raises:
        AuthError: Missing, invalid or expired token, or no such member
    """
    if not token:
        raise AuthError("Not authenticated")

    payload = tokens.verify_access_token(token)
    if payload is None:
        raise AuthError("Invalid or expired token")

    profile = await db.get(MembershipProfile, payload.sub)
    if profile is None:
        raise AuthError("User not found")
    return profile


async def get_profile_by_email(db: AsyncSession, email: str) -> MembershipProfile | None:
    result = await db.execute(
        select(MembershipProfile).where(func.lower(MembershipProfile.email) == email.strip().lower())
    )
    return result.scalar_one_or_none()


async def get_profile_by_customer(db: AsyncSession, customer_id: str) -> MembershipProfile | None:
    result = await db.execute(
        select(MembershipProfile).where(MembershipProfile.external_customer_id == customer_id)
    )
    profile = result.scalar_one_or_none()
    if profile is not None:
        return profile

    result = await db.execute(
        select(MembershipProfile)
        .join(SubscriptionRecord, SubscriptionRecord.user_id == MembershipProfile.id)
        .where(SubscriptionRecord.external_customer_id == customer_id)
        .order_by(SubscriptionRecord.updated_at.desc())
    )
    matches = result.scalars().all()
    if len(matches) > 1:
        logger.warning(
            "Customer %s is recorded on %d members, using the most recently updated (%s)",
            customer_id, len(matches), matches[0].id,
        )
    return matches[0] if matches else None


def _customer_matches(profile: MembershipProfile, customer_id: str | None) -> bool:
    """A profile already linked to another customer must not be claimed by this one."""
    return (
        customer_id is None
        or profile.external_customer_id is None
        or profile.external_customer_id == customer_id
    )


async def resolve_owner(
    db: AsyncSession,
    gateway: PaymentGateway,
    event: InboundEvent,
) -> MembershipProfile:
    """
    Find the member an event belongs to.

    Tried in order: the user id the checkout session was opened for, the
    stored customer id, then the customer's email as known to the gateway.

    Raises:
        ProfileNotFoundError: No member matches, or the match is linked to a
            different customer
        ExternalServiceError: The gateway email lookup failed
    """
    customer_id = event.customer_id

    if isinstance(event, CheckoutCompleted) and event.user_id:
        profile = await db.get(MembershipProfile, event.user_id)
        if profile is not None:
            if _customer_matches(profile, customer_id):
                return profile
            logger.warning(
                "Customer mismatch on event %s: user %s is linked to %s, event names %s",
                event.event_id, profile.id, profile.external_customer_id, customer_id,
            )
            raise ProfileNotFoundError(
                "Customer does not match the referenced member",
                customer_id=customer_id,
            )

    if customer_id:
        profile = await get_profile_by_customer(db, customer_id)
        if profile is not None:
            return profile

    email = event.email if isinstance(event, CheckoutCompleted) else None
    if not email and customer_id:
        email = await gateway.get_customer_email(customer_id)

    if email:
        profile = await get_profile_by_email(db, email)
        if profile is not None and _customer_matches(profile, customer_id):
            return profile

    raise ProfileNotFoundError(
        f"No member for customer {customer_id}",
        customer_id=customer_id,
        email=email,
    )
