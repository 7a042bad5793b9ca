"""
Security utilities for authentication.
"""

from .tokens import TokenPayload, TokenService

__all__ = [
    "TokenService",
    "TokenPayload",
]
