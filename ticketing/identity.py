"""Caller identities and the user directory they are resolved from."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from packages.db.models import UserTable


class TicketRole(str, Enum):
    """Role a user plays in the ticketing workflow."""

    NORMAL = "NORMAL"
    DEVELOPER = "DEVELOPER"
    QA = "QA"
    PROJECT_MANAGER = "PROJECT_MANAGER"


@dataclass(frozen=True, slots=True)
class Actor:
    """Authenticated caller as seen by every authorization check.

    Approver status is not stored here: it comes from the access policy's
    allow-list, which is independent of the hierarchy flags below.
    """

    user_id: str
    email: str
    ticket_role: TicketRole = TicketRole.NORMAL
    is_department_head: bool = False
    is_office_head: bool = False
    is_group_director: bool = False
    display_name: str | None = None

    @property
    def is_manager(self) -> bool:
        return self.ticket_role is TicketRole.PROJECT_MANAGER

    @property
    def has_elevated_flag(self) -> bool:
        return self.is_department_head or self.is_office_head or self.is_group_director


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class UserDirectory:
    """Read access to the ``users`` identity store."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_user(self, user_id: str) -> Actor | None:
        async with self._session_factory() as session:
            row = await session.get(UserTable, user_id)
        if row is None:
            return None
        return self._table_to_actor(row)

    async def resolve_token(self, token: str) -> Actor | None:
        if not token:
            return None
        async with self._session_factory() as session:
            result = await session.execute(
                select(UserTable).where(UserTable.api_token_hash == hash_token(token))
            )
            row = result.scalars().first()
        if row is None or not row.is_active:
            return None
        return self._table_to_actor(row)

    async def list_by_role(self, role: TicketRole) -> Sequence[Actor]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(UserTable)
                .where(UserTable.ticket_role == role.value, UserTable.is_active == True)  # noqa: E712
                .order_by(UserTable.display_name.asc(), UserTable.email.asc())
            )
            return [self._table_to_actor(row) for row in result.scalars().all()]

    async def add_user(
        self,
        *,
        email: str,
        ticket_role: TicketRole = TicketRole.NORMAL,
        user_id: str | None = None,
        display_name: str | None = None,
        is_department_head: bool = False,
        is_office_head: bool = False,
        is_group_director: bool = False,
        api_token: str | None = None,
    ) -> Actor:
        now = datetime.now(timezone.utc)
        row = UserTable(
            email=email.lower(),
            display_name=display_name,
            ticket_role=ticket_role.value,
            is_department_head=is_department_head,
            is_office_head=is_office_head,
            is_group_director=is_group_director,
            api_token_hash=hash_token(api_token) if api_token else None,
            created_at=now,
            updated_at=now,
        )
        if user_id is not None:
            row.id = user_id
        async with self._session_factory() as session:
            async with session.begin():
                session.add(row)
        return self._table_to_actor(row)

    @staticmethod
    def _table_to_actor(row: UserTable) -> Actor:
        return Actor(
            user_id=row.id,
            email=row.email,
            ticket_role=TicketRole(row.ticket_role),
            is_department_head=bool(row.is_department_head),
            is_office_head=bool(row.is_office_head),
            is_group_director=bool(row.is_group_director),
            display_name=row.display_name,
        )
