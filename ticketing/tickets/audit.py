from __future__ import annotations

from .models import StatusHistoryEntry
from .repository import TicketRepository


class AuditTrail:
    """Read side of the ticket status history.

    Entries are only ever appended by :class:`~ticketing.tickets.engine.TransitionEngine`
    inside the same transaction as the change they describe.
    """

    def __init__(self, repository: TicketRepository) -> None:
        self._repository = repository

    async def list_history(self, ticket_id: str) -> list[StatusHistoryEntry]:
        entries = await self._repository.list_history(ticket_id)
        return sorted(entries, key=lambda entry: entry.ticket_version, reverse=True)
