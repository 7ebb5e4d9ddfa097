from __future__ import annotations

from fastapi import APIRouter, Query, status

from ticketing.api.schemas import (
    CancelRequest,
    CommentCreateRequest,
    CommentResponse,
    HistoryEntryResponse,
    PaginationResponse,
    StatusChangeRequest,
    TicketCreatedResponse,
    TicketCreateRequest,
    TicketDetailResponse,
    TicketListResponse,
    TicketProjectionResponse,
    TicketResponse,
    TransitionResponse,
)
from ticketing.dependencies.auth import CurrentActor
from ticketing.dependencies.tickets import TicketServiceDep
from ticketing.tickets.models import Ticket, TicketDraft, TicketQuery
from ticketing.tickets.state import TicketCategory, TicketPriority, TicketStatus

router = APIRouter(prefix="/tickets", tags=["tickets"])


def _transition_response(ticket: Ticket) -> TransitionResponse:
    return TransitionResponse(ticket=TicketProjectionResponse.model_validate(ticket.projection()))


@router.post("", response_model=TicketCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_ticket(
    payload: TicketCreateRequest,
    service: TicketServiceDep,
    actor: CurrentActor,
) -> TicketCreatedResponse:
    draft = TicketDraft(
        title=payload.title,
        description=payload.description,
        category=payload.category,
        priority=payload.priority,
        contact_email=payload.contact_email,
        steps_to_reproduce=payload.steps_to_reproduce,
        contact_phone=payload.contact_phone,
    )
    ticket = await service.create_ticket(actor, draft)
    return TicketCreatedResponse.model_validate(ticket)


@router.get("", response_model=TicketListResponse, summary="List tickets visible to the caller")
async def list_tickets(
    service: TicketServiceDep,
    actor: CurrentActor,
    status_filter: TicketStatus | None = Query(default=None, alias="status"),
    priority: TicketPriority | None = Query(default=None),
    category: TicketCategory | None = Query(default=None),
    search: str | None = Query(default=None, max_length=200),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
) -> TicketListResponse:
    result = await service.list_tickets(
        actor,
        TicketQuery(
            status=status_filter,
            priority=priority,
            category=category,
            search=search or None,
            page=page,
            limit=limit,
        ),
    )
    return TicketListResponse(
        tickets=[TicketResponse.model_validate(ticket) for ticket in result.tickets],
        pagination=PaginationResponse(
            page=result.page,
            limit=result.limit,
            total_count=result.total_count,
            total_pages=result.total_pages,
        ),
    )


@router.get("/{ticket_id}", response_model=TicketDetailResponse)
async def get_ticket(ticket_id: str, service: TicketServiceDep, actor: CurrentActor) -> TicketDetailResponse:
    detail = await service.get_ticket_detail(actor, ticket_id)
    return TicketDetailResponse(
        **TicketResponse.model_validate(detail.ticket).model_dump(),
        comments=[CommentResponse.model_validate(comment) for comment in detail.comments],
        status_history=[HistoryEntryResponse.model_validate(entry) for entry in detail.history],
    )


@router.post("/{ticket_id}/status", response_model=TransitionResponse)
async def change_ticket_status(
    ticket_id: str,
    payload: StatusChangeRequest,
    service: TicketServiceDep,
    actor: CurrentActor,
) -> TransitionResponse:
    ticket = await service.request_transition(actor, ticket_id, payload.status, payload.reason)
    return _transition_response(ticket)


@router.post("/{ticket_id}/cancel", response_model=TransitionResponse)
async def cancel_ticket(
    ticket_id: str,
    service: TicketServiceDep,
    actor: CurrentActor,
    payload: CancelRequest | None = None,
) -> TransitionResponse:
    reason = payload.reason if payload is not None else None
    ticket = await service.cancel_ticket(actor, ticket_id, reason)
    return _transition_response(ticket)


@router.get("/{ticket_id}/history", response_model=list[HistoryEntryResponse])
async def list_ticket_history(
    ticket_id: str,
    service: TicketServiceDep,
    actor: CurrentActor,
) -> list[HistoryEntryResponse]:
    entries = await service.list_history(actor, ticket_id)
    return [HistoryEntryResponse.model_validate(entry) for entry in entries]


@router.post(
    "/{ticket_id}/comments",
    response_model=CommentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_ticket_comment(
    ticket_id: str,
    payload: CommentCreateRequest,
    service: TicketServiceDep,
    actor: CurrentActor,
) -> CommentResponse:
    comment = await service.add_comment(
        actor,
        ticket_id,
        payload.content,
        is_internal=payload.is_internal,
        attachments=payload.attachments,
    )
    return CommentResponse.model_validate(comment)
