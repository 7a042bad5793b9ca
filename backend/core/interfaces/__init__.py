# Interfaces (Abstract Contracts)
# Adapters implement these interfaces
from .services import CheckoutSession, GatewaySubscription, PaymentGateway

__all__ = [
    "PaymentGateway",
    "GatewaySubscription",
    "CheckoutSession",
]
