"""
Shared — Domain errors

Every service raises these from its command handlers. The HTTP layer maps
them to a status code with a plain-text body, and the event bus uses the
`DomainError` base to tell business rejections (dead-letter immediately)
from infrastructure hiccups (retry first).
"""


class DomainError(Exception):
    """Base class for business-rule failures."""

    status_code: int = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(DomainError):
    """Malformed request, rejected before any state change."""

    status_code = 400


class NotFoundError(DomainError):
    status_code = 404


class ConflictError(DomainError):
    status_code = 409


class InvalidTransitionError(ConflictError):
    """Order status move outside PLACED → … → DELIVERED / CANCELLED."""


class InvalidStateError(ConflictError):
    """Operation not allowed in the record's current status."""


class DependencyUnavailable(DomainError):
    """A synchronous dependency failed. Only fallbacks ever see this."""

    status_code = 503


class CircuitOpenError(DependencyUnavailable):
    pass


class ResourceExhaustedError(DomainError):
    status_code = 503


class TransientProcessingError(Exception):
    """Retryable failure. Deliberately not a DomainError."""

    status_code = 503
