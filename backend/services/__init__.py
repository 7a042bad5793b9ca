"""
Service layer for business logic.
"""

from functools import lru_cache

from adapters.payments import create_stripe_adapter
from core.interfaces.services import PaymentGateway


@lru_cache
def get_payment_gateway() -> PaymentGateway:
    """
    Get singleton payment gateway instance.

    Returns:
        Configured Stripe adapter
    """
    return create_stripe_adapter()
