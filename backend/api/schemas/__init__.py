"""
API request and response schemas.
"""

from .membership import (
    AccessDenied,
    AccessGranted,
    CountdownView,
    ErrorResponse,
    SubscriptionView,
    TrialCheckoutResponse,
)

__all__ = [
    "AccessDenied",
    "AccessGranted",
    "CountdownView",
    "ErrorResponse",
    "SubscriptionView",
    "TrialCheckoutResponse",
]
