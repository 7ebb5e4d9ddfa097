from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Mapping, Protocol, Sequence

from sqlalchemy import func, or_, update
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlmodel import SQLModel, select

from packages.db.models import (
    TicketCommentTable,
    TicketNumberCounterTable,
    TicketStatusHistoryTable,
    TicketTable,
)

from .errors import ConflictError
from .models import Comment, StatusHistoryEntry, Ticket, TicketPage, TicketQuery
from .numbering import format_ticket_number, numbering_period
from .state import TicketCategory, TicketPriority, TicketStatus

# Columns a transition or assignment is allowed to write.
_MUTABLE_COLUMNS = frozenset(
    {
        "status",
        "process_owner_id",
        "assigned_developer_id",
        "assigned_qa_id",
        "submitted_at",
        "cancelled_at",
        "cancelled_by_id",
        "cancellation_reason",
        "deployed_at",
    }
)


class TicketRepository(Protocol):
    """Storage boundary used by the transition engine and ticket service.

    Implementations must apply each mutation and its audit entry in a single
    transaction, guarded by the ticket's ``version``.
    """

    async def ensure_schema(self) -> None:
        ...

    async def create_ticket(self, ticket: Ticket, entry: StatusHistoryEntry) -> Ticket:
        ...

    async def get_ticket(self, ticket_id: str) -> Ticket | None:
        ...

    async def list_tickets(self, query: TicketQuery) -> TicketPage:
        ...

    async def list_pending_approval(self) -> Sequence[Ticket]:
        ...

    async def list_work_queue(self, status: TicketStatus | None) -> Sequence[Ticket]:
        ...

    async def status_counts(self, *, visible_to: str | None = None) -> Mapping[TicketStatus, int]:
        ...

    async def apply_transition(
        self,
        ticket_id: str,
        *,
        expected_version: int,
        changes: Mapping[str, Any],
        entry: StatusHistoryEntry,
    ) -> Ticket:
        ...

    async def update_assignment(
        self,
        ticket_id: str,
        *,
        expected_version: int,
        changes: Mapping[str, Any],
        updated_at: datetime,
    ) -> Ticket:
        ...

    async def list_history(self, ticket_id: str) -> Sequence[StatusHistoryEntry]:
        ...

    async def add_comment(self, comment: Comment) -> None:
        ...

    async def list_comments(self, ticket_id: str) -> Sequence[Comment]:
        ...


class SqlTicketRepository:
    """Persistence for tickets, status history, comments and number counters."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        engine: AsyncEngine | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._engine: AsyncEngine | None = engine

    async def ensure_schema(self) -> None:
        if self._engine is None:
            raise RuntimeError("Session factory is not bound to an async engine")
        async with self._engine.begin() as connection:
            await connection.run_sync(SQLModel.metadata.create_all)

    async def create_ticket(self, ticket: Ticket, entry: StatusHistoryEntry) -> Ticket:
        async with self._session_factory() as session:
            async with session.begin():
                sequence = await self._next_sequence(session, numbering_period(ticket.created_at))
                number = format_ticket_number(numbering_period(ticket.created_at), sequence)
                created = replace(ticket, ticket_number=number, version=1)
                session.add(self._ticket_to_table(created))
                await session.flush()
                session.add(self._entry_to_table(replace(entry, ticket_version=1)))
        return created

    async def get_ticket(self, ticket_id: str) -> Ticket | None:
        async with self._session_factory() as session:
            row = await session.get(TicketTable, ticket_id)
            if row is None:
                return None
            return self._table_to_ticket(row)

    async def list_tickets(self, query: TicketQuery) -> TicketPage:
        conditions = self._conditions(query)
        async with self._session_factory() as session:
            total = await session.scalar(
                select(func.count()).select_from(TicketTable).where(*conditions)
            )
            result = await session.execute(
                select(TicketTable)
                .where(*conditions)
                .order_by(TicketTable.created_at.desc(), TicketTable.ticket_number.desc())
                .offset(query.offset)
                .limit(query.limit)
            )
            tickets = [self._table_to_ticket(row) for row in result.scalars().all()]
        return TicketPage(tickets=tickets, total_count=int(total or 0), page=max(query.page, 1), limit=query.limit)

    async def list_pending_approval(self) -> Sequence[Ticket]:
        return await self._list_by_priority(TicketTable.status == TicketStatus.FOR_PD_APPROVAL.value)

    async def list_work_queue(self, status: TicketStatus | None) -> Sequence[Ticket]:
        """Tickets in ``status`` (every non-cancelled ticket when ``None``), most urgent first."""

        if status is None:
            return await self._list_by_priority(TicketTable.status != TicketStatus.CANCELLED.value)
        return await self._list_by_priority(TicketTable.status == status.value)

    async def _list_by_priority(self, *conditions: Any) -> list[Ticket]:
        # Priority is stored as text, so rank ordering happens here rather than in SQL.
        async with self._session_factory() as session:
            result = await session.execute(select(TicketTable).where(*conditions))
            tickets = [self._table_to_ticket(row) for row in result.scalars().all()]
        return sorted(tickets, key=lambda item: (-item.priority.rank, item.created_at))

    async def status_counts(self, *, visible_to: str | None = None) -> Mapping[TicketStatus, int]:
        conditions = self._conditions(TicketQuery(visible_to=visible_to))
        async with self._session_factory() as session:
            result = await session.execute(
                select(TicketTable.status, func.count())
                .where(*conditions)
                .group_by(TicketTable.status)
            )
            rows = result.all()
        return {TicketStatus(status): int(count) for status, count in rows}

    async def apply_transition(
        self,
        ticket_id: str,
        *,
        expected_version: int,
        changes: Mapping[str, Any],
        entry: StatusHistoryEntry,
    ) -> Ticket:
        new_version = expected_version + 1
        async with self._session_factory() as session:
            async with session.begin():
                await self._guarded_update(
                    session,
                    ticket_id,
                    expected_version=expected_version,
                    changes=changes,
                    updated_at=entry.created_at,
                )
                session.add(self._entry_to_table(replace(entry, ticket_version=new_version)))
                await session.flush()
                row = await session.get(TicketTable, ticket_id, populate_existing=True)
                if row is None:  # pragma: no cover - guarded update already matched the row
                    raise ConflictError(f"Ticket {ticket_id} disappeared during update")
                return self._table_to_ticket(row)

    async def update_assignment(
        self,
        ticket_id: str,
        *,
        expected_version: int,
        changes: Mapping[str, Any],
        updated_at: datetime,
    ) -> Ticket:
        async with self._session_factory() as session:
            async with session.begin():
                await self._guarded_update(
                    session,
                    ticket_id,
                    expected_version=expected_version,
                    changes=changes,
                    updated_at=updated_at,
                )
                row = await session.get(TicketTable, ticket_id, populate_existing=True)
                if row is None:  # pragma: no cover - guarded update already matched the row
                    raise ConflictError(f"Ticket {ticket_id} disappeared during update")
                return self._table_to_ticket(row)

    async def list_history(self, ticket_id: str) -> Sequence[StatusHistoryEntry]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(TicketStatusHistoryTable)
                .where(TicketStatusHistoryTable.ticket_id == ticket_id)
                .order_by(TicketStatusHistoryTable.ticket_version.asc())
            )
            return [self._table_to_entry(row) for row in result.scalars().all()]

    async def add_comment(self, comment: Comment) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                session.add(
                    TicketCommentTable(
                        id=comment.id,
                        ticket_id=comment.ticket_id,
                        author_id=comment.author_id,
                        body=comment.body,
                        is_internal=comment.is_internal,
                        attachments=list(comment.attachments),
                        created_at=comment.created_at,
                    )
                )

    async def list_comments(self, ticket_id: str) -> Sequence[Comment]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(TicketCommentTable)
                .where(TicketCommentTable.ticket_id == ticket_id)
                .order_by(TicketCommentTable.created_at.asc())
            )
            return [self._table_to_comment(row) for row in result.scalars().all()]

    async def _guarded_update(
        self,
        session: AsyncSession,
        ticket_id: str,
        *,
        expected_version: int,
        changes: Mapping[str, Any],
        updated_at: datetime,
    ) -> None:
        unknown = set(changes) - _MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"Refusing to write immutable ticket fields: {', '.join(sorted(unknown))}")

        values: dict[str, Any] = {
            key: value.value if isinstance(value, TicketStatus) else value for key, value in changes.items()
        }
        values["version"] = expected_version + 1
        values["updated_at"] = updated_at

        result = await session.execute(
            update(TicketTable)
            .where(TicketTable.id == ticket_id, TicketTable.version == expected_version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError(
                f"Ticket {ticket_id} was modified concurrently; reload it and retry"
            )

    @staticmethod
    async def _next_sequence(session: AsyncSession, period: str) -> int:
        """Atomically bump the per-month counter and return the new value."""

        dialect = session.get_bind().dialect.name
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        elif dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        else:  # pragma: no cover - only the deployed and test databases are supported
            raise RuntimeError(f"Unsupported database dialect for ticket numbering: {dialect}")

        table = TicketNumberCounterTable.__table__
        statement = (
            insert(table)
            .values(period=period, current_value=1)
            .on_conflict_do_update(
                index_elements=[table.c.period],
                set_={"current_value": table.c.current_value + 1},
            )
            .returning(table.c.current_value)
        )
        result = await session.execute(statement)
        return int(result.scalar_one())

    @staticmethod
    def _conditions(query: TicketQuery) -> list[Any]:
        conditions: list[Any] = []
        if query.visible_to is not None:
            user_id = query.visible_to
            conditions.append(
                or_(
                    TicketTable.submitter_id == user_id,
                    TicketTable.process_owner_id == user_id,
                    TicketTable.assigned_developer_id == user_id,
                    TicketTable.assigned_qa_id == user_id,
                )
            )
        if query.status is not None:
            conditions.append(TicketTable.status == query.status.value)
        elif query.exclude_cancelled:
            conditions.append(TicketTable.status != TicketStatus.CANCELLED.value)
        if query.priority is not None:
            conditions.append(TicketTable.priority == query.priority.value)
        if query.category is not None:
            conditions.append(TicketTable.category == query.category.value)
        if query.search:
            pattern = f"%{query.search.strip()}%"
            conditions.append(
                or_(
                    TicketTable.title.ilike(pattern),
                    TicketTable.ticket_number.ilike(pattern),
                    TicketTable.description.ilike(pattern),
                )
            )
        return conditions

    @staticmethod
    def _ticket_to_table(ticket: Ticket) -> TicketTable:
        return TicketTable(
            id=ticket.id,
            ticket_number=ticket.ticket_number,
            title=ticket.title,
            description=ticket.description,
            steps_to_reproduce=ticket.steps_to_reproduce,
            contact_email=ticket.contact_email,
            contact_phone=ticket.contact_phone,
            category=ticket.category.value,
            priority=ticket.priority.value,
            status=ticket.status.value,
            submitter_id=ticket.submitter_id,
            process_owner_id=ticket.process_owner_id,
            assigned_developer_id=ticket.assigned_developer_id,
            assigned_qa_id=ticket.assigned_qa_id,
            version=ticket.version,
            created_at=ticket.created_at,
            updated_at=ticket.updated_at,
            submitted_at=ticket.submitted_at,
            cancelled_at=ticket.cancelled_at,
            cancelled_by_id=ticket.cancelled_by_id,
            cancellation_reason=ticket.cancellation_reason,
            deployed_at=ticket.deployed_at,
        )

    @staticmethod
    def _entry_to_table(entry: StatusHistoryEntry) -> TicketStatusHistoryTable:
        return TicketStatusHistoryTable(
            id=entry.id,
            ticket_id=entry.ticket_id,
            from_status=entry.from_status.value if entry.from_status else None,
            to_status=entry.to_status.value,
            changed_by_id=entry.actor_id,
            reason=entry.reason,
            ticket_version=entry.ticket_version,
            created_at=entry.created_at,
        )

    @staticmethod
    def _table_to_ticket(row: TicketTable) -> Ticket:
        return Ticket(
            id=row.id,
            ticket_number=row.ticket_number,
            title=row.title,
            description=row.description,
            category=TicketCategory(row.category),
            priority=TicketPriority(row.priority),
            status=TicketStatus(row.status),
            submitter_id=row.submitter_id,
            contact_email=row.contact_email,
            created_at=_ensure_datetime(row.created_at),
            updated_at=_ensure_datetime(row.updated_at),
            steps_to_reproduce=row.steps_to_reproduce,
            contact_phone=row.contact_phone,
            process_owner_id=row.process_owner_id,
            assigned_developer_id=row.assigned_developer_id,
            assigned_qa_id=row.assigned_qa_id,
            submitted_at=_optional_datetime(row.submitted_at),
            cancelled_at=_optional_datetime(row.cancelled_at),
            cancelled_by_id=row.cancelled_by_id,
            cancellation_reason=row.cancellation_reason,
            deployed_at=_optional_datetime(row.deployed_at),
            version=row.version,
        )

    @staticmethod
    def _table_to_entry(row: TicketStatusHistoryTable) -> StatusHistoryEntry:
        from_status = row.from_status
        return StatusHistoryEntry(
            id=row.id,
            ticket_id=row.ticket_id,
            from_status=TicketStatus(from_status) if from_status else None,
            to_status=TicketStatus(row.to_status),
            actor_id=row.changed_by_id,
            reason=row.reason,
            created_at=_ensure_datetime(row.created_at),
            ticket_version=row.ticket_version,
        )

    @staticmethod
    def _table_to_comment(row: TicketCommentTable) -> Comment:
        return Comment(
            id=row.id,
            ticket_id=row.ticket_id,
            author_id=row.author_id,
            body=row.body,
            is_internal=bool(row.is_internal),
            created_at=_ensure_datetime(row.created_at),
            attachments=[str(item) for item in row.attachments or []],
        )


def _ensure_datetime(value: datetime | None) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    raise TypeError("Expected datetime value from database")


def _optional_datetime(value: datetime | None) -> datetime | None:
    return None if value is None else _ensure_datetime(value)
