from __future__ import annotations

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from ticketing.api.schemas import IntegrationTicketRequest, IntegrationTicketResponse
from ticketing.dependencies.auth import IntegrationKey
from ticketing.dependencies.tickets import TicketServiceDep
from ticketing.tickets.errors import ErrorKind

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/external", tags=["integrations"])


@router.post(
    "/sap/tickets",
    response_model=IntegrationTicketResponse,
    summary="Create an already-approved ticket from an SAP integration failure",
)
async def create_sap_ticket(
    api_key: IntegrationKey,
    payload: IntegrationTicketRequest,
    service: TicketServiceDep,
) -> IntegrationTicketResponse | JSONResponse:
    try:
        ticket = await service.create_integration_ticket(
            api_key,
            sap_payload=payload.sap_payload,
            sap_response=payload.sap_response,
            form_data=payload.form_data,
        )
    except SQLAlchemyError:
        logger.exception("Error creating SAP ticket")
        return JSONResponse(
            status_code=500,
            content={"detail": "Failed to create ticket", "kind": ErrorKind.INTERNAL.value},
        )

    logger.info("SAP ticket created: %s (ID: %s)", ticket.ticket_number, ticket.id)
    return IntegrationTicketResponse(ticket_number=ticket.ticket_number, ticket_id=ticket.id)
