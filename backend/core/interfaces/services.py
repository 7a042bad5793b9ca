"""Service interfaces for external integrations."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from core.domain.membership import InboundEvent


@dataclass
class GatewaySubscription:
    """Subscription as reported by the payment gateway."""

    id: str
    customer_id: str | None
    status: str
    current_period_end: datetime | None
    created: datetime | None = None
    trial_end: datetime | None = None


@dataclass
class CheckoutSession:
    """Hosted checkout session opened on the payment gateway."""

    id: str
    url: str


class PaymentGateway(ABC):
    """Abstract payment gateway used by checkout, webhooks and reconciliation."""

    @abstractmethod
    async def find_or_create_customer(
        self,
        email: str,
        user_id: str,
        name: str | None = None,
    ) -> str:
        """Return the customer ID for ``email``, creating one if needed."""
        ...

    @abstractmethod
    async def create_trial_checkout(
        self,
        customer_id: str,
        user_id: str,
        trial_days: int,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        """Open a subscription checkout with a trial and required payment method."""
        ...

    @abstractmethod
    async def get_subscription(self, subscription_id: str) -> GatewaySubscription:
        """Fetch a subscription by ID."""
        ...

    @abstractmethod
    async def list_customer_subscriptions(self, customer_id: str) -> list[GatewaySubscription]:
        """List all subscriptions for a customer, newest first."""
        ...

    @abstractmethod
    async def get_customer_email(self, customer_id: str) -> str | None:
        """Fetch the email on file for a customer."""
        ...

    @abstractmethod
    def verify_webhook(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        """Verify a webhook signature and return the decoded event envelope."""
        ...

    @abstractmethod
    async def to_inbound_event(self, envelope: dict[str, Any]) -> InboundEvent | None:
        """Normalise a verified envelope, None for event types this service ignores."""
        ...
