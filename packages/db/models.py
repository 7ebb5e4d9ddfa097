"""SQLModel table definitions for the ticketing data layer."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, JSON, String, Text
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    """Return a timezone aware UTC timestamp."""

    return datetime.now(timezone.utc)


def _uuid_str() -> str:
    """Generate a random UUID string."""

    return str(uuid.uuid4())


class UserTable(SQLModel, table=True):
    """Identity store entries with their ticketing role and hierarchy flags."""

    __tablename__ = "users"

    id: str = Field(default_factory=_uuid_str, primary_key=True, index=True)
    email: str = Field(sa_column=Column(String(255), nullable=False, unique=True))
    display_name: str | None = Field(default=None, sa_column=Column(String(255), nullable=True))
    ticket_role: str = Field(default="NORMAL", sa_column=Column(String(30), nullable=False))
    is_department_head: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))
    is_office_head: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))
    is_group_director: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))
    api_token_hash: str | None = Field(default=None, sa_column=Column(String(64), nullable=True, unique=True))
    is_active: bool = Field(default=True, sa_column=Column(Boolean, nullable=False, default=True))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class TicketTable(SQLModel, table=True):
    """Ticket records moving through the approval and delivery pipeline."""

    __tablename__ = "tickets"

    id: str = Field(primary_key=True, index=True)
    ticket_number: str = Field(sa_column=Column(String(20), nullable=False, unique=True))
    title: str = Field(sa_column=Column(String(200), nullable=False))
    description: str = Field(sa_column=Column(Text, nullable=False))
    steps_to_reproduce: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    contact_email: str = Field(sa_column=Column(String(255), nullable=False))
    contact_phone: str | None = Field(default=None, sa_column=Column(String(50), nullable=True))
    category: str = Field(sa_column=Column(String(30), nullable=False))
    priority: str = Field(sa_column=Column(String(20), nullable=False))
    status: str = Field(sa_column=Column(String(30), nullable=False, index=True))
    submitter_id: str = Field(sa_column=Column(String(36), ForeignKey("users.id"), nullable=False))
    process_owner_id: str | None = Field(
        default=None, sa_column=Column(String(36), ForeignKey("users.id"), nullable=True)
    )
    assigned_developer_id: str | None = Field(
        default=None, sa_column=Column(String(36), ForeignKey("users.id"), nullable=True)
    )
    assigned_qa_id: str | None = Field(
        default=None, sa_column=Column(String(36), ForeignKey("users.id"), nullable=True)
    )
    version: int = Field(default=1, sa_column=Column(Integer, nullable=False, default=1))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    submitted_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    cancelled_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    cancelled_by_id: str | None = Field(
        default=None, sa_column=Column(String(36), ForeignKey("users.id"), nullable=True)
    )
    cancellation_reason: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    deployed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))


class TicketStatusHistoryTable(SQLModel, table=True):
    """Append-only record of every ticket state change."""

    __tablename__ = "ticket_status_history"
    __table_args__ = (Index("ix_ticket_status_history_ticket_version", "ticket_id", "ticket_version", unique=True),)

    id: str = Field(default_factory=_uuid_str, primary_key=True, index=True)
    ticket_id: str = Field(sa_column=Column(String(36), ForeignKey("tickets.id"), nullable=False))
    from_status: str | None = Field(default=None, sa_column=Column(String(30), nullable=True))
    to_status: str = Field(sa_column=Column(String(30), nullable=False))
    changed_by_id: str = Field(sa_column=Column(String(36), nullable=False))
    reason: str = Field(sa_column=Column(Text, nullable=False))
    ticket_version: int = Field(sa_column=Column(Integer, nullable=False))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class TicketCommentTable(SQLModel, table=True):
    """Comments left on a ticket, optionally restricted to staff."""

    __tablename__ = "ticket_comments"

    id: str = Field(default_factory=_uuid_str, primary_key=True, index=True)
    ticket_id: str = Field(sa_column=Column(String(36), ForeignKey("tickets.id"), nullable=False, index=True))
    author_id: str = Field(sa_column=Column(String(36), nullable=False))
    body: str = Field(sa_column=Column(Text, nullable=False))
    is_internal: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))
    attachments: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class TicketNumberCounterTable(SQLModel, table=True):
    """Per-month counter backing ``TKT-YYMM-NNNN`` ticket numbers."""

    __tablename__ = "ticket_number_counters"

    period: str = Field(sa_column=Column(String(4), primary_key=True))
    current_value: int = Field(default=0, sa_column=Column(Integer, nullable=False, default=0))
