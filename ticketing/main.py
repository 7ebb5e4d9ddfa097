import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from ticketing.api.routes import approvals, dashboard, integrations, ping, pm, tickets
from ticketing.core.config import get_settings
from ticketing.core.logging import configure_logging, init_tracer, shutdown_tracer
from ticketing.identity import UserDirectory
from ticketing.tickets.engine import TransitionEngine
from ticketing.tickets.errors import ErrorKind, TicketingError
from ticketing.tickets.policy import AccessPolicy, AccessPolicyConfig
from ticketing.tickets.repository import SqlTicketRepository
from ticketing.tickets.service import TicketService

logger = logging.getLogger(__name__)


def _to_asyncpg_dsn(dsn: str) -> str:
    """Ensure the SQLAlchemy DSN uses the asyncpg driver."""

    if dsn.startswith("postgresql+asyncpg://"):
        return dsn
    if dsn.startswith("postgresql://"):
        return "postgresql+asyncpg://" + dsn[len("postgresql://") :]
    if dsn.startswith("postgres://"):
        return "postgresql+asyncpg://" + dsn[len("postgres://") :]
    return dsn


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - executed by framework
    settings = get_settings()
    app.state.logger = configure_logging(settings)
    tracer_provider = init_tracer(settings)
    app.state.tracer_provider = tracer_provider

    db_engine = create_async_engine(_to_asyncpg_dsn(settings.database_url), future=True)
    session_factory = async_sessionmaker(db_engine, expire_on_commit=False)
    repository = SqlTicketRepository(session_factory, engine=db_engine)
    policy = AccessPolicy(AccessPolicyConfig.from_settings(settings))
    users = UserDirectory(session_factory)

    app.state.db_engine = db_engine
    app.state.user_directory = users
    app.state.ticket_service = None
    try:
        await repository.ensure_schema()
        app.state.ticket_service = TicketService(
            engine=TransitionEngine(repository, policy, lock_timeout=settings.transition_lock_timeout),
            repository=repository,
            users=users,
            integration_submitter_id=settings.integration_submitter_id,
            integration_contact_email=settings.integration_contact_email,
        )
        yield
    finally:
        await db_engine.dispose()
        shutdown_tracer(tracer_provider)


async def _ticketing_error_handler(request: Request, exc: TicketingError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.as_dict())


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = "; ".join(
        f"{'.'.join(str(part) for part in error.get('loc', ()) if part != 'body')}: {error.get('msg')}"
        for error in exc.errors()
    )
    return JSONResponse(
        status_code=400,
        content={"detail": f"Validation failed: {problems}", "kind": ErrorKind.VALIDATION_ERROR.value},
    )


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "kind": ErrorKind.INTERNAL.value},
    )


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.add_exception_handler(TicketingError, _ticketing_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)
    app.include_router(ping.router)
    app.include_router(tickets.router)
    app.include_router(approvals.router)
    app.include_router(pm.router)
    app.include_router(dashboard.router)
    app.include_router(integrations.router)
    return app


app = create_app()
