from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from ticketing.identity import TicketRole, UserDirectory
from ticketing.tickets.engine import TransitionEngine
from ticketing.tickets.models import TicketDraft
from ticketing.tickets.policy import AccessPolicy, AccessPolicyConfig
from ticketing.tickets.repository import SqlTicketRepository
from ticketing.tickets.service import TicketService
from ticketing.tickets.state import TicketCategory, TicketPriority

APPROVER_EMAIL = "approver@example.com"
SUBMITTER_EMAIL = "submitter@example.com"
INTEGRATION_SECRET = "sap-shared-secret"
INTEGRATION_USER_ID = "sap-integration-user"


class FrozenClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)

    def set(self, moment: datetime) -> None:
        self.now = moment


@pytest_asyncio.fixture
async def db_engine(tmp_path) -> AsyncEngine:
    # A file database gives every session its own connection, like production.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'tickets.db'}")
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine: AsyncEngine) -> async_sessionmaker:
    async with db_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest.fixture
def repository(session_factory: async_sessionmaker, db_engine: AsyncEngine) -> SqlTicketRepository:
    return SqlTicketRepository(session_factory, engine=db_engine)


@pytest.fixture
def policy() -> AccessPolicy:
    return AccessPolicy(
        AccessPolicyConfig(
            approver_emails=frozenset({APPROVER_EMAIL}),
            creator_emails=frozenset({SUBMITTER_EMAIL, "Outsider@Example.com"}),
            integration_secret=INTEGRATION_SECRET,
        )
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2025, 1, 15, 9, 30, tzinfo=timezone.utc))


@pytest.fixture
def transition_engine(repository: SqlTicketRepository, policy: AccessPolicy, clock: FrozenClock) -> TransitionEngine:
    return TransitionEngine(repository, policy, clock=clock, lock_timeout=1.0)


@pytest.fixture
def users(session_factory: async_sessionmaker) -> UserDirectory:
    return UserDirectory(session_factory)


@pytest_asyncio.fixture
async def actors(users: UserDirectory) -> SimpleNamespace:
    return SimpleNamespace(
        submitter=await users.add_user(email=SUBMITTER_EMAIL, display_name="Sam Submitter", api_token="submitter-token"),
        approver=await users.add_user(email=APPROVER_EMAIL, display_name="Ada Approver", api_token="approver-token"),
        manager=await users.add_user(
            email="pm@example.com",
            ticket_role=TicketRole.PROJECT_MANAGER,
            display_name="Pat Manager",
            api_token="manager-token",
        ),
        developer=await users.add_user(
            email="dev@example.com",
            ticket_role=TicketRole.DEVELOPER,
            display_name="Dee Developer",
            api_token="developer-token",
        ),
        qa=await users.add_user(
            email="qa@example.com",
            ticket_role=TicketRole.QA,
            display_name="Quinn Tester",
            api_token="qa-token",
        ),
        director=await users.add_user(
            email="director@example.com",
            is_group_director=True,
            display_name="Dana Director",
        ),
        outsider=await users.add_user(email="outsider@example.com", display_name="Olly Outsider"),
        integration=await users.add_user(
            email="sap@example.com",
            user_id=INTEGRATION_USER_ID,
            display_name="SAP Integration",
        ),
    )


@pytest.fixture
def service(
    transition_engine: TransitionEngine,
    repository: SqlTicketRepository,
    users: UserDirectory,
) -> TicketService:
    return TicketService(
        engine=transition_engine,
        repository=repository,
        users=users,
        integration_submitter_id=INTEGRATION_USER_ID,
    )


@pytest.fixture
def make_draft():
    def factory(**overrides) -> TicketDraft:
        fields = {
            "title": "Payroll export fails",
            "description": "The monthly payroll export stops with a timeout after ten minutes.",
            "category": TicketCategory.BUG,
            "priority": TicketPriority.HIGH,
            "contact_email": SUBMITTER_EMAIL,
        }
        fields.update(overrides)
        return TicketDraft(**fields)

    return factory
