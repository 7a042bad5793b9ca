"""
Billing error taxonomy.

Permanent errors (bad credentials, bad signature, malformed payload) are never
retried. Transient errors (gateway/network failures, write contention) are
retried at the caller boundary and surface to the gateway as a 500 so it
redelivers.
"""


class BillingError(Exception):
    """Base exception for membership billing errors."""

    retryable: bool = False

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class AuthError(BillingError):
    """Missing or invalid caller credentials."""

    pass


class SignatureVerificationError(BillingError):
    """Webhook payload signature did not verify against the signing secret."""

    pass


class MalformedEventError(BillingError):
    """Webhook payload is not a usable event envelope."""

    pass


class ExternalServiceError(BillingError):
    """Payment gateway or network failure."""

    retryable = True


class ProfileNotFoundError(BillingError):
    """An event's customer does not map to any known membership profile."""

    def __init__(self, message: str = "", customer_id: str | None = None, email: str | None = None):
        super().__init__(message)
        self.customer_id = customer_id
        self.email = email


class PersistenceConflictError(BillingError):
    """Concurrent writers contended on the same subscription record."""

    retryable = True
