"""Ticket lifecycle: state machine, access policy, transition engine and audit trail."""

from .audit import AuditTrail
from .engine import TransitionEngine
from .errors import (
    ConflictError,
    ErrorKind,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    PreconditionFailedError,
    TicketingError,
    TicketNotFoundError,
    TicketValidationError,
    UnauthenticatedError,
    UserNotFoundError,
)
from .models import Comment, StatusHistoryEntry, Ticket, TicketDetail, TicketDraft, TicketQuery
from .policy import AccessPolicy, AccessPolicyConfig
from .repository import SqlTicketRepository, TicketRepository
from .service import TicketService
from .state import TRANSITION_TABLE, TicketCategory, TicketPriority, TicketStateMachine, TicketStatus

__all__ = [
    "AccessPolicy",
    "AccessPolicyConfig",
    "AuditTrail",
    "Comment",
    "ConflictError",
    "ErrorKind",
    "ForbiddenError",
    "InvalidTransitionError",
    "NotFoundError",
    "PreconditionFailedError",
    "SqlTicketRepository",
    "StatusHistoryEntry",
    "TRANSITION_TABLE",
    "Ticket",
    "TicketCategory",
    "TicketDetail",
    "TicketDraft",
    "TicketNotFoundError",
    "TicketPriority",
    "TicketQuery",
    "TicketRepository",
    "TicketService",
    "TicketStateMachine",
    "TicketStatus",
    "TicketValidationError",
    "TicketingError",
    "TransitionEngine",
    "UnauthenticatedError",
    "UserNotFoundError",
]
