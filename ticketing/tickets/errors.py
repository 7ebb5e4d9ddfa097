"""Structured error taxonomy raised by the ticket lifecycle core."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Machine-checkable classification carried by every ticketing error."""

    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"
    INVALID_TRANSITION = "invalid_transition"
    PRECONDITION_FAILED = "precondition_failed"
    NOT_FOUND = "not_found"
    VALIDATION_ERROR = "validation_error"
    CONFLICT = "conflict"
    INTERNAL = "internal"


class TicketingError(RuntimeError):
    """Base error for ticket lifecycle refusals.

    ``reason`` is the human-readable explanation shown to callers and
    ``status_code`` the HTTP status used by the reference binding.
    """

    kind: ErrorKind = ErrorKind.VALIDATION_ERROR
    status_code: int = 400
    retryable: bool = False

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason

    def as_dict(self) -> dict[str, str]:
        return {"detail": self.reason, "kind": self.kind.value}


class UnauthenticatedError(TicketingError):
    """Raised when no caller identity could be established."""

    kind = ErrorKind.UNAUTHENTICATED
    status_code = 401


class ForbiddenError(TicketingError):
    """Raised when the caller lacks the role required for an action."""

    kind = ErrorKind.FORBIDDEN
    status_code = 403


class InvalidTransitionError(TicketingError):
    """Raised when the requested state pair is not in the transition table."""

    kind = ErrorKind.INVALID_TRANSITION
    status_code = 400


class PreconditionFailedError(TicketingError):
    """Raised when a legal transition has an unmet precondition."""

    kind = ErrorKind.PRECONDITION_FAILED
    status_code = 400


class NotFoundError(TicketingError):
    kind = ErrorKind.NOT_FOUND
    status_code = 404


class TicketNotFoundError(NotFoundError):
    """Raised when an operation targets a non-existent ticket."""

    def __init__(self, ticket_id: str) -> None:
        super().__init__(f"Ticket {ticket_id} not found")
        self.ticket_id = ticket_id


class UserNotFoundError(NotFoundError):
    """Raised when a referenced identity is missing from the identity store."""

    def __init__(self, user_id: str, reason: str | None = None) -> None:
        super().__init__(reason or f"User {user_id} not found")
        self.user_id = user_id


class TicketValidationError(TicketingError):
    """Raised when submitted ticket fields are malformed."""

    kind = ErrorKind.VALIDATION_ERROR
    status_code = 400


class ConflictError(TicketingError):
    """Raised when a concurrent modification won the race for a ticket.

    The caller may retry; nothing was written.
    """

    kind = ErrorKind.CONFLICT
    status_code = 409
    retryable = True
