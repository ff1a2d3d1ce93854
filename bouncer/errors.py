"""
Error taxonomy shared by workers, services and the queue orchestrator.

Every error declares whether retrying can help. The orchestrator reads only
the ``retryable`` attribute: it never looks at messages or details.
"""

from typing import Any


class BouncerError(Exception):
    """Base exception for all application errors."""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        retryable: bool | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class TransientUpstreamError(BouncerError):
    """A third party failed in a way that may succeed later (network, 5xx, 429)."""

    retryable = True


class PermanentRejectionError(BouncerError):
    """A third party rejected the request for good (bad recipient, malformed payload)."""


class ConfigurationError(BouncerError):
    """Invalid process configuration. Raised at startup, never caught per request."""


class DecryptionError(BouncerError):
    """Ciphertext failed authentication or could not be parsed."""


class ValidationError(BouncerError):
    """Caller-supplied data failed a precondition."""


class UnknownQueueError(ValidationError):
    """The queue name isn't one of the registered queues."""


class UnknownJobTypeError(ValidationError):
    """The job type doesn't belong to the target queue."""


class StaleLeaseError(BouncerError):
    """A worker tried to transition a job it no longer holds."""


class RateLimitExceededError(TransientUpstreamError):
    """A third party answered 429. ``retry_after`` is its hint in seconds, 0 when absent."""

    def __init__(self, message: str, retry_after: int, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


def is_retryable(exc: BaseException) -> bool:
    """Unknown exceptions are treated as transient."""
    return bool(getattr(exc, "retryable", True))
