"""
Stripe payment gateway adapter.

Wraps the Stripe SDK behind the ``PaymentGateway`` interface: customer
lookup/creation, trial checkout sessions, subscription reads, webhook
signature verification and normalisation of Stripe event envelopes into the
membership event union.
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable

import stripe

from core.clock import from_unix
from core.domain.membership import (
    CheckoutCompleted,
    InboundEvent,
    MembershipState,
    PaymentFailed,
    PaymentSucceeded,
    SubscriptionCreated,
    SubscriptionDeleted,
    SubscriptionUpdated,
    map_gateway_status,
)
from core.errors import (
    ExternalServiceError,
    MalformedEventError,
    SignatureVerificationError,
)
from core.interfaces.services import CheckoutSession, GatewaySubscription, PaymentGateway
from infrastructure.config.settings import settings

logger = logging.getLogger(__name__)

SUBSCRIPTION_EVENTS = {
    "customer.subscription.created": SubscriptionCreated,
    "customer.subscription.updated": SubscriptionUpdated,
}
INVOICE_EVENTS = {
    "invoice.payment_succeeded": PaymentSucceeded,
    "invoice.paid": PaymentSucceeded,
    "invoice.payment_failed": PaymentFailed,
}


def _field(obj: Any, key: str, default: Any = None) -> Any:
    """Read a key from a plain dict or a StripeObject."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    try:
        value = obj[key]
    except (KeyError, TypeError, AttributeError):
        return default
    return default if value is None else value


def _expandable_id(value: Any) -> str | None:
    """Stripe references are either an ID string or an expanded object."""
    if value is None or isinstance(value, str):
        return value
    return _field(value, "id")


def _period_end(subscription: Any):
    """Current period end, which newer API versions moved onto the items."""
    end = _field(subscription, "current_period_end")
    if end is None:
        items = _field(_field(subscription, "items"), "data") or []
        if items:
            end = _field(items[0], "current_period_end")
    return from_unix(end)


def _to_gateway_subscription(subscription: Any) -> GatewaySubscription:
    return GatewaySubscription(
        id=_field(subscription, "id"),
        customer_id=_expandable_id(_field(subscription, "customer")),
        status=_field(subscription, "status", ""),
        current_period_end=_period_end(subscription),
        created=from_unix(_field(subscription, "created")),
        trial_end=from_unix(_field(subscription, "trial_end")),
    )


def _invoice_subscription_id(invoice: dict[str, Any]) -> str | None:
    subscription_id = _expandable_id(invoice.get("subscription"))
    if subscription_id:
        return subscription_id
    # Basil and later API versions nest it under parent.subscription_details
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return _expandable_id(details.get("subscription"))


class StripeAdapter(PaymentGateway):
    """
    Stripe implementation of the payment gateway.

    Every API call carries its own ``api_key`` instead of mutating the
    module-level ``stripe.api_key``, is bounded by a timeout, and is retried
    with exponential backoff on connection, rate-limit and 5xx failures.
    """

    def __init__(
        self,
        api_key: str | None = None,
        webhook_secret: str | None = None,
        timeout: float | None = None,
        max_attempts: int | None = None,
        backoff: float | None = None,
    ):
        """
        Initialize Stripe adapter.

        Args:
            api_key: Stripe secret key (defaults to settings)
            webhook_secret: Webhook signing secret (defaults to settings)
            timeout: Per-attempt timeout in seconds
            max_attempts: Attempts before giving up on a transient failure
            backoff: Base delay between attempts in seconds
        """
        self.api_key = api_key or settings.stripe_secret_key
        self.webhook_secret = webhook_secret or settings.stripe_webhook_secret
        self.timeout = timeout if timeout is not None else settings.gateway_timeout_seconds
        self.max_attempts = max(1, max_attempts if max_attempts is not None else settings.gateway_max_attempts)
        self.backoff = backoff if backoff is not None else settings.gateway_backoff_seconds
        self.tolerance = settings.stripe_webhook_tolerance_seconds

        if not self.api_key:
            logger.warning("Stripe secret key not configured. Set STRIPE_SECRET_KEY in settings.")

    @staticmethod
    def _is_transient(exc: Exception) -> bool:
        if isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError, asyncio.TimeoutError)):
            return True
        status = getattr(exc, "http_status", None)
        return isinstance(exc, stripe.StripeError) and status is not None and status >= 500

    async def _call(self, operation: str, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Run one Stripe API call with timeout and bounded retries.

        Raises:
            ExternalServiceError: If the gateway is unconfigured, rejects the
                call, or keeps failing after the last attempt
        """
        if not self.api_key:
            raise ExternalServiceError("Payment gateway is not configured")

        kwargs["api_key"] = self.api_key
        last_error: Exception | None = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                return await asyncio.wait_for(func(*args, **kwargs), timeout=self.timeout)
            except (stripe.StripeError, asyncio.TimeoutError) as e:
                last_error = e
                if not self._is_transient(e):
                    logger.error("Stripe %s failed: %s", operation, e)
                    raise ExternalServiceError(f"Payment gateway rejected {operation}") from e
                if attempt < self.max_attempts:
                    delay = self.backoff * (2 ** (attempt - 1))
                    logger.warning(
                        "Stripe %s transient failure (attempt %d/%d), retrying in %.2fs: %s",
                        operation, attempt, self.max_attempts, delay, e,
                    )
                    await asyncio.sleep(delay)

        logger.error("Stripe %s failed after %d attempts: %s", operation, self.max_attempts, last_error)
        raise ExternalServiceError(f"Payment gateway unavailable during {operation}") from last_error

    async def find_or_create_customer(
        self,
        email: str,
        user_id: str,
        name: str | None = None,
    ) -> str:
        existing = await self._call("customer lookup", stripe.Customer.list_async, email=email, limit=1)
        data = _field(existing, "data") or []
        if data:
            customer_id = _field(data[0], "id")
            logger.info("Reusing Stripe customer %s for user %s", customer_id, user_id)
            return customer_id

        params: dict[str, Any] = {
            "email": email,
            "metadata": {"user_id": user_id},
            "idempotency_key": f"customer-{user_id}",
        }
        if name:
            params["name"] = name
        customer = await self._call("customer create", stripe.Customer.create_async, **params)
        customer_id = _field(customer, "id")
        logger.info("Created Stripe customer %s for user %s", customer_id, user_id)
        return customer_id

    async def create_trial_checkout(
        self,
        customer_id: str,
        user_id: str,
        trial_days: int,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        session = await self._call(
            "checkout create",
            stripe.checkout.Session.create_async,
            customer=customer_id,
            mode="subscription",
            payment_method_types=["card"],
            payment_method_collection="always",
            line_items=[
                {
                    "price_data": {
                        "currency": settings.trial_currency,
                        "product_data": {
                            "name": settings.membership_product_name,
                            "description": settings.membership_product_description,
                        },
                        "unit_amount": settings.trial_price_cents,
                        "recurring": {"interval": "month"},
                    },
                    "quantity": 1,
                }
            ],
            subscription_data={
                "trial_period_days": trial_days,
                "metadata": {"user_id": user_id},
            },
            client_reference_id=user_id,
            metadata={"user_id": user_id},
            success_url=success_url,
            cancel_url=cancel_url,
        )
        url = _field(session, "url")
        if not url:
            raise ExternalServiceError("Payment gateway returned a checkout session without a URL")
        return CheckoutSession(id=_field(session, "id"), url=url)

    async def get_subscription(self, subscription_id: str) -> GatewaySubscription:
        subscription = await self._call(
            "subscription retrieve", stripe.Subscription.retrieve_async, subscription_id
        )
        return _to_gateway_subscription(subscription)

    async def list_customer_subscriptions(self, customer_id: str) -> list[GatewaySubscription]:
        result = await self._call(
            "subscription list",
            stripe.Subscription.list_async,
            customer=customer_id,
            status="all",
            limit=10,
        )
        subscriptions = [_to_gateway_subscription(s) for s in (_field(result, "data") or [])]
        subscriptions.sort(key=lambda s: s.created.timestamp() if s.created else 0, reverse=True)
        return subscriptions

    async def get_customer_email(self, customer_id: str) -> str | None:
        customer = await self._call("customer retrieve", stripe.Customer.retrieve_async, customer_id)
        if _field(customer, "deleted"):
            return None
        return _field(customer, "email")

    def verify_webhook(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        """
        Verify the Stripe-Signature header and decode the event envelope.

        Raises:
            SignatureVerificationError: Missing secret, header or a bad signature
            MalformedEventError: Body is not a JSON event envelope
        """
        if not self.webhook_secret:
            logger.error("Stripe webhook secret not configured")
            raise SignatureVerificationError("Webhook signing secret is not configured")
        if not signature:
            raise SignatureVerificationError("Missing signature header")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedEventError("Payload is not valid UTF-8") from e

        try:
            stripe.WebhookSignature.verify_header(body, signature, self.webhook_secret, self.tolerance)
        except stripe.SignatureVerificationError as e:
            raise SignatureVerificationError("Invalid signature") from e

        try:
            envelope = json.loads(body)
        except json.JSONDecodeError as e:
            raise MalformedEventError("Payload is not valid JSON") from e

        if not isinstance(envelope, dict) or not envelope.get("id") or not envelope.get("type"):
            raise MalformedEventError("Payload is not an event envelope")
        if not isinstance((envelope.get("data") or {}).get("object"), dict):
            raise MalformedEventError("Event envelope has no data object")
        if from_unix(envelope.get("created")) is None:
            raise MalformedEventError("Event envelope has no creation time")

        return envelope

    async def to_inbound_event(self, envelope: dict[str, Any]) -> InboundEvent | None:
        event_id = envelope["id"]
        event_type = envelope["type"]
        occurred_at = from_unix(envelope.get("created"))
        obj = envelope["data"]["object"]

        if event_type == "checkout.session.completed":
            if obj.get("mode") != "subscription":
                return None
            subscription_id = _expandable_id(obj.get("subscription"))
            if not subscription_id:
                logger.warning("Checkout session %s completed without a subscription", obj.get("id"))
                return None
            subscription = await self.get_subscription(subscription_id)
            details = obj.get("customer_details") or {}
            return CheckoutCompleted(
                event_id=event_id,
                occurred_at=occurred_at,
                customer_id=_expandable_id(obj.get("customer")) or subscription.customer_id,
                subscription_id=subscription_id,
                status=map_gateway_status(subscription.status) or MembershipState.NONE,
                period_end=subscription.current_period_end,
                email=details.get("email") or obj.get("customer_email"),
                user_id=obj.get("client_reference_id") or (obj.get("metadata") or {}).get("user_id"),
            )

        if event_type in SUBSCRIPTION_EVENTS:
            status = map_gateway_status(obj.get("status"))
            if status is None:
                logger.warning("Event %s carries unknown subscription status %r", event_id, obj.get("status"))
                return None
            return SUBSCRIPTION_EVENTS[event_type](
                event_id=event_id,
                occurred_at=occurred_at,
                customer_id=_expandable_id(obj.get("customer")),
                subscription_id=obj.get("id"),
                status=status,
                period_end=_period_end(obj),
            )

        if event_type == "customer.subscription.deleted":
            return SubscriptionDeleted(
                event_id=event_id,
                occurred_at=occurred_at,
                customer_id=_expandable_id(obj.get("customer")),
                subscription_id=obj.get("id"),
            )

        if event_type in INVOICE_EVENTS:
            subscription_id = _invoice_subscription_id(obj)
            if not subscription_id:
                # One-off invoices have nothing to do with membership
                return None
            event_cls = INVOICE_EVENTS[event_type]
            subscription = await self.get_subscription(subscription_id)
            status = map_gateway_status(subscription.status)
            if status is None or status == MembershipState.NONE:
                status = MembershipState.ACTIVE if event_cls is PaymentSucceeded else MembershipState.PAST_DUE
            return event_cls(
                event_id=event_id,
                occurred_at=occurred_at,
                customer_id=_expandable_id(obj.get("customer")) or subscription.customer_id,
                subscription_id=subscription_id,
                status=status,
                period_end=subscription.current_period_end,
            )

        logger.debug("Ignoring Stripe event type %s (%s)", event_type, event_id)
        return None


# Factory function for easy instantiation
def create_stripe_adapter(
    api_key: str | None = None,
    webhook_secret: str | None = None,
) -> StripeAdapter:
    """
    Create a Stripe adapter instance.

    Args:
        api_key: Stripe secret key (defaults to settings)
        webhook_secret: Webhook signing secret (defaults to settings)

    Returns:
        StripeAdapter instance
    """
    return StripeAdapter(api_key=api_key, webhook_secret=webhook_secret)
