"""
Error taxonomy for the drop notifier.

Parse and usage problems are recoverable and always turned into a reply or a
silent acknowledgment. Delivery problems are isolated per recipient.
Persistence problems are fatal to the single operation that hit them, never to
the process.
"""

from enum import Enum
from typing import Optional


class DeliveryFailure(str, Enum):
    """Why an outbound message could not be delivered."""
    NOT_CONFIGURED = "not_configured"
    NETWORK = "network"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    INVALID_RECIPIENT = "invalid_recipient"
    REJECTED = "rejected"
    SERVER_ERROR = "server_error"
    UNEXPECTED = "unexpected"


class DropNotifierError(Exception):
    """Base class for all errors raised by the core."""


class ParseError(DropNotifierError):
    """Inbound webhook payload is malformed or carries no message."""


class NotFoundError(DropNotifierError):
    """A referenced store or drop does not exist."""

    def __init__(self, kind: str, reference: str):
        self.kind = kind
        self.reference = reference
        super().__init__(f"{kind.capitalize()} not found: {reference}")


class PersistenceError(DropNotifierError):
    """The subscription ledger or drop repository failed to read or write."""


class DeliveryError(DropNotifierError):
    """An outbound send to one recipient failed."""

    def __init__(
        self,
        failure: DeliveryFailure,
        detail: str,
        retry_after: Optional[int] = None,
    ):
        self.failure = failure
        self.detail = detail
        self.retry_after = retry_after
        super().__init__(f"{failure.value}: {detail}")
