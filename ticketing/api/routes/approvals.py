from __future__ import annotations

from fastapi import APIRouter

from ticketing.api.schemas import (
    ApprovalActionRequest,
    TicketProjectionResponse,
    TicketResponse,
    TransitionResponse,
)
from ticketing.dependencies.auth import CurrentActor
from ticketing.dependencies.tickets import TicketServiceDep

router = APIRouter(prefix="/approvals", tags=["approvals"])


@router.get("", response_model=list[TicketResponse], summary="Tickets awaiting process-owner approval")
async def list_pending_approvals(service: TicketServiceDep, actor: CurrentActor) -> list[TicketResponse]:
    tickets = await service.list_pending_approvals(actor)
    return [TicketResponse.model_validate(ticket) for ticket in tickets]


@router.post("/{ticket_id}", response_model=TransitionResponse)
async def review_ticket(
    ticket_id: str,
    payload: ApprovalActionRequest,
    service: TicketServiceDep,
    actor: CurrentActor,
) -> TransitionResponse:
    ticket = await service.review_approval(
        actor,
        ticket_id,
        approve=payload.action == "approve",
        reason=payload.reason,
    )
    return TransitionResponse(ticket=TicketProjectionResponse.model_validate(ticket.projection()))
