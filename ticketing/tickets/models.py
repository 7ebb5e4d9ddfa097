from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Sequence

from .errors import TicketValidationError
from .state import TicketCategory, TicketPriority, TicketStatus

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass(slots=True)
class Ticket:
    """Aggregate representing a request moving through the delivery pipeline."""

    id: str
    ticket_number: str
    title: str
    description: str
    category: TicketCategory
    priority: TicketPriority
    status: TicketStatus
    submitter_id: str
    contact_email: str
    created_at: datetime
    updated_at: datetime
    steps_to_reproduce: str | None = None
    contact_phone: str | None = None
    process_owner_id: str | None = None
    assigned_developer_id: str | None = None
    assigned_qa_id: str | None = None
    submitted_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancelled_by_id: str | None = None
    cancellation_reason: str | None = None
    deployed_at: datetime | None = None
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status in (TicketStatus.DEPLOYED, TicketStatus.CANCELLED)

    def terminal_timestamps_consistent(self) -> bool:
        """Each terminal timestamp is set exactly when the ticket sits in that state."""

        cancelled = (self.cancelled_at is not None) == (self.status is TicketStatus.CANCELLED)
        deployed = (self.deployed_at is not None) == (self.status is TicketStatus.DEPLOYED)
        return cancelled and deployed

    def projection(self) -> TicketProjection:
        return TicketProjection(id=self.id, status=self.status, updated_at=self.updated_at)


@dataclass(frozen=True, slots=True)
class TicketProjection:
    """Minimal view returned after a successful transition."""

    id: str
    status: TicketStatus
    updated_at: datetime


@dataclass(slots=True)
class StatusHistoryEntry:
    """Audit record describing one state change of a ticket."""

    id: str
    ticket_id: str
    from_status: TicketStatus | None
    to_status: TicketStatus
    actor_id: str
    reason: str
    created_at: datetime
    ticket_version: int


@dataclass(slots=True)
class Comment:
    id: str
    ticket_id: str
    author_id: str
    body: str
    is_internal: bool
    created_at: datetime
    attachments: list[str] = field(default_factory=list)


@dataclass(slots=True)
class TicketDraft:
    """Caller-supplied fields for a new ticket."""

    title: str
    description: str
    category: TicketCategory
    priority: TicketPriority
    contact_email: str
    steps_to_reproduce: str | None = None
    contact_phone: str | None = None

    def validate(self) -> None:
        problems: list[str] = []
        title = self.title.strip()
        if not 5 <= len(title) <= 200:
            problems.append("title must be between 5 and 200 characters")
        if len(self.description.strip()) < 20:
            problems.append("description must be at least 20 characters")
        if not _EMAIL_RE.match(self.contact_email or ""):
            problems.append("contact_email must be a valid email address")
        if problems:
            raise TicketValidationError("Validation failed: " + "; ".join(problems))


@dataclass(slots=True)
class TicketDetail:
    """Ticket bundled with the comments and history visible to one caller."""

    ticket: Ticket
    comments: Sequence[Comment]
    history: Sequence[StatusHistoryEntry]


@dataclass(slots=True)
class TicketQuery:
    """Listing filters. ``visible_to`` restricts results to related tickets."""

    visible_to: str | None = None
    status: TicketStatus | None = None
    priority: TicketPriority | None = None
    category: TicketCategory | None = None
    search: str | None = None
    exclude_cancelled: bool = False
    page: int = 1
    limit: int = 10

    @property
    def offset(self) -> int:
        return (max(self.page, 1) - 1) * self.limit


@dataclass(slots=True)
class TicketPage:
    tickets: list[Ticket]
    total_count: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        if self.limit <= 0:
            return 0
        return -(-self.total_count // self.limit)


@dataclass(slots=True)
class TicketStats:
    total: int
    for_approval: int
    in_progress: int
    completed: int
    recent: list[Ticket]
