"""Database models and utilities."""

from .models import (
    TicketCommentTable,
    TicketNumberCounterTable,
    TicketStatusHistoryTable,
    TicketTable,
    UserTable,
)

__all__ = [
    "TicketCommentTable",
    "TicketNumberCounterTable",
    "TicketStatusHistoryTable",
    "TicketTable",
    "UserTable",
]
