"""
Client-side membership state: post-checkout sync and the trial countdown ticker.
"""

from .countdown_ticker import CountdownTicker
from .membership_sync import ClientStateSync, SubscriptionSnapshot

__all__ = [
    "ClientStateSync",
    "CountdownTicker",
    "SubscriptionSnapshot",
]
