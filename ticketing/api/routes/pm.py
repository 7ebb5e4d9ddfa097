from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query

from ticketing.api.schemas import (
    AssignableUsersResponse,
    AssignmentResponse,
    AssignRequest,
    AssignResponse,
    TicketResponse,
    UserResponse,
    WorkQueueResponse,
)
from ticketing.dependencies.auth import CurrentActor
from ticketing.dependencies.tickets import TicketServiceDep
from ticketing.tickets.errors import TicketValidationError
from ticketing.tickets.state import TicketStatus

router = APIRouter(prefix="/pm", tags=["project-management"])

ALL_STATUSES = "all"


def _queue_status(value: str) -> TicketStatus | None:
    if value == ALL_STATUSES:
        return None
    try:
        return TicketStatus(value)
    except ValueError as exc:
        raise TicketValidationError(f"Validation failed: unknown status filter {value!r}") from exc


@router.get("/tickets", response_model=WorkQueueResponse, summary="Project-manager work queue")
async def list_work_queue(
    service: TicketServiceDep,
    actor: CurrentActor,
    status_filter: str = Query(default=TicketStatus.SUBMITTED.value, alias="status"),
) -> WorkQueueResponse:
    tickets = await service.list_manager_queue(actor, _queue_status(status_filter))
    return WorkQueueResponse(tickets=[TicketResponse.model_validate(ticket) for ticket in tickets])


@router.post("/tickets/{ticket_id}/assign", response_model=AssignResponse)
async def assign_ticket(
    ticket_id: str,
    payload: AssignRequest,
    service: TicketServiceDep,
    actor: CurrentActor,
) -> AssignResponse:
    # Only fields present in the body are changed; an explicit null or "" unassigns.
    assignment: dict[str, Any] = {
        field: getattr(payload, field)
        for field in ("developer_id", "qa_id")
        if field in payload.model_fields_set
    }
    ticket = await service.assign(
        actor,
        ticket_id,
        start_development=payload.start_development,
        **assignment,
    )
    return AssignResponse(ticket=AssignmentResponse.model_validate(ticket))


@router.get("/users", response_model=AssignableUsersResponse, summary="Developers and QA available for assignment")
async def list_assignable_users(service: TicketServiceDep, actor: CurrentActor) -> AssignableUsersResponse:
    users = await service.list_assignable_users(actor)
    return AssignableUsersResponse(
        developers=[UserResponse.model_validate(user) for user in users.developers],
        qa=[UserResponse.model_validate(user) for user in users.qa],
    )
