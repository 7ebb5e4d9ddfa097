from __future__ import annotations

from fastapi import APIRouter

from ticketing.api.schemas import DashboardCounts, DashboardStatsResponse, TicketResponse
from ticketing.dependencies.auth import CurrentActor
from ticketing.dependencies.tickets import TicketServiceDep

router = APIRouter(prefix="/dashboard", tags=["dashboard"])


@router.get("/stats", response_model=DashboardStatsResponse)
async def dashboard_stats(service: TicketServiceDep, actor: CurrentActor) -> DashboardStatsResponse:
    stats = await service.ticket_stats(actor)
    return DashboardStatsResponse(
        stats=DashboardCounts(
            total=stats.total,
            for_approval=stats.for_approval,
            in_progress=stats.in_progress,
            completed=stats.completed,
        ),
        recent_tickets=[TicketResponse.model_validate(ticket) for ticket in stats.recent],
    )
