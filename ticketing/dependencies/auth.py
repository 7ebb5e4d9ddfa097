from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ticketing.dependencies.tickets import TicketServiceDep
from ticketing.identity import Actor, UserDirectory
from ticketing.tickets.errors import UnauthenticatedError

bearer_scheme = HTTPBearer(auto_error=False)


async def get_user_directory(request: Request) -> UserDirectory:
    directory = getattr(request.app.state, "user_directory", None)
    if directory is None:
        raise HTTPException(status_code=503, detail="User directory is not configured")
    return directory


async def get_current_actor(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Security(bearer_scheme)],
    request: Request,
    directory: Annotated[UserDirectory, Depends(get_user_directory)],
) -> Actor:
    """Resolve the bearer token to an active user.

    The resolved actor is cached on ``request.state`` so that several
    dependencies in one request share a single lookup.
    """

    cached = getattr(request.state, "actor", None)
    if isinstance(cached, Actor):
        return cached

    if credentials is None or not credentials.credentials:
        raise UnauthenticatedError("Unauthorized")

    actor = await directory.resolve_token(credentials.credentials)
    if actor is None:
        raise UnauthenticatedError("Invalid authentication credentials")
    request.state.actor = actor
    return actor


async def require_integration_key(
    service: TicketServiceDep,
    x_api_key: Annotated[str | None, Header(alias="x-api-key")] = None,
) -> str:
    """Reject integration calls without a valid ``x-api-key`` before reading the body."""

    if not service.policy.verify_integration_secret(x_api_key):
        raise UnauthenticatedError("Unauthorized - Invalid or missing API key")
    return x_api_key or ""


CurrentActor = Annotated[Actor, Depends(get_current_actor)]
IntegrationKey = Annotated[str, Depends(require_integration_key)]
