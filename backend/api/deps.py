"""
API dependencies: authentication and injected billing collaborators.

Everything the routes need is constructed here and resolved through FastAPI's
dependency system, so tests swap the gateway, the session factory or the
clock with ``app.dependency_overrides``.
"""

from collections.abc import Callable
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Annotated

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.access import AccessPolicy
from core.clock import utcnow
from core.interfaces.services import PaymentGateway
from core.security.tokens import TokenService
from infrastructure.config.settings import settings
from infrastructure.database import async_session_maker, get_db
from infrastructure.database.models import MembershipProfile
from services import get_payment_gateway
from services.billing_store import BillingStore
from services.checkout import CheckoutInitiator
from services.event_dedup import EventDedupCache
from services.members import authenticate
from services.reconciliation import MembershipReconciler
from services.webhook_processor import WebhookEventProcessor

token_service = TokenService(
    secret_key=settings.jwt_secret_key,
    algorithm=settings.jwt_algorithm,
    access_token_expire_minutes=settings.jwt_access_token_expire_minutes,
)


def get_token_service() -> TokenService:
    return token_service


def get_clock() -> Callable[[], datetime]:
    return utcnow


def get_access_policy() -> AccessPolicy:
    return AccessPolicy(expiry_grace=timedelta(hours=settings.access_expiry_grace_hours))


def get_gateway() -> PaymentGateway:
    return get_payment_gateway()


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return async_session_maker


@lru_cache
def get_dedup_cache() -> EventDedupCache:
    return EventDedupCache()


def bearer_token(
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
) -> str | None:
    """Token from the Authorization header, falling back to the access_token cookie."""
    token = None
    if authorization and authorization.startswith("Bearer "):
        parts = authorization.split(" ", 1)
        token = parts[1].strip() if len(parts) > 1 and parts[1].strip() else None
    if not token:
        token = request.cookies.get("access_token")
    return token


async def get_current_profile(
    token: Annotated[str | None, Depends(bearer_token)],
    db: Annotated[AsyncSession, Depends(get_db)],
    tokens: Annotated[TokenService, Depends(get_token_service)],
) -> MembershipProfile:
    """
    Dependency to get the authenticated member.

    Raises AuthError, which the application turns into a 401.
    """
    return await authenticate(db, tokens, token)


def get_billing_store(
    session_factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)],
) -> BillingStore:
    return BillingStore(session_factory)


def get_webhook_processor(
    gateway: Annotated[PaymentGateway, Depends(get_gateway)],
    session_factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)],
    store: Annotated[BillingStore, Depends(get_billing_store)],
    clock: Annotated[Callable[[], datetime], Depends(get_clock)],
) -> WebhookEventProcessor:
    return WebhookEventProcessor(
        gateway=gateway,
        session_factory=session_factory,
        store=store,
        dedup=get_dedup_cache(),
        clock=clock,
    )


def get_checkout_initiator(
    gateway: Annotated[PaymentGateway, Depends(get_gateway)],
    session_factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)],
    store: Annotated[BillingStore, Depends(get_billing_store)],
    tokens: Annotated[TokenService, Depends(get_token_service)],
    clock: Annotated[Callable[[], datetime], Depends(get_clock)],
) -> CheckoutInitiator:
    return CheckoutInitiator(
        gateway=gateway,
        session_factory=session_factory,
        tokens=tokens,
        store=store,
        clock=clock,
    )


def get_reconciler(
    gateway: Annotated[PaymentGateway, Depends(get_gateway)],
    session_factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)],
    store: Annotated[BillingStore, Depends(get_billing_store)],
    clock: Annotated[Callable[[], datetime], Depends(get_clock)],
) -> MembershipReconciler:
    return MembershipReconciler(
        gateway=gateway,
        session_factory=session_factory,
        store=store,
        clock=clock,
    )
