"""Error taxonomy for the subscription service.

Services raise these; the router translates them to HTTP responses and the
sweeps catch them per account.
"""

from typing import Optional


class SubscriptionServiceError(Exception):
    """Base class for all service errors."""

    code = "subscription_error"
    retriable = False

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ValidationError(SubscriptionServiceError):
    """Unknown plan or billing cycle, or a transition the current state forbids."""

    code = "validation_error"


class NotFoundError(SubscriptionServiceError):
    """An account or order does not exist."""

    code = "not_found"


class OrderCreationError(SubscriptionServiceError):
    """No unused order id could be generated within the attempt budget."""

    code = "order_creation_failed"


class PersistenceError(SubscriptionServiceError):
    """The database failed or timed out. Safe to retry."""

    code = "persistence_error"
    retriable = True


class ConcurrentUpdateError(PersistenceError):
    """Another writer changed the account since it was read."""

    code = "concurrent_update"


class UsageLimitExceededError(SubscriptionServiceError):
    """Recording usage would exceed the account's current allowance."""

    code = "usage_limit_exceeded"

    def __init__(self, counter: str, limit: int, used: int):
        super().__init__(
            f"Usage limit reached for {counter}: {used}/{limit}",
        )
        self.counter = counter
        self.limit = limit
        self.used = used


class SignatureError(SubscriptionServiceError):
    """A webhook delivery failed authentication."""

    code = "invalid_signature"
