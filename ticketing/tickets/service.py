from __future__ import annotations

import json
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping
from uuid import uuid4

from ticketing.identity import Actor, TicketRole, UserDirectory

from .audit import AuditTrail
from .engine import TransitionEngine
from .errors import (
    ForbiddenError,
    TicketNotFoundError,
    TicketValidationError,
    UnauthenticatedError,
    UserNotFoundError,
)
from .models import (
    Comment,
    StatusHistoryEntry,
    Ticket,
    TicketDetail,
    TicketDraft,
    TicketPage,
    TicketQuery,
    TicketStats,
)
from .policy import AccessPolicy
from .repository import TicketRepository
from .state import ACTIVE_STATUSES, TicketCategory, TicketPriority, TicketStatus

logger = logging.getLogger(__name__)

INTEGRATION_TICKET_TITLE = "SAP Integration Fail"
MAX_COMMENT_LENGTH = 2000
RECENT_TICKET_COUNT = 5


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()
"""Marker for assignment fields the caller did not mention."""


def format_integration_description(
    sap_payload: Mapping[str, Any],
    sap_response: Mapping[str, Any],
    form_data: Mapping[str, Any],
) -> str:
    return (
        "SAP Integration Error - Automatic ticket created by SAP system\n\n"
        f"SAP PAYLOAD:\n{json.dumps(sap_payload, indent=2, default=str)}\n\n"
        f"SAP RESPONSE:\n{json.dumps(sap_response, indent=2, default=str)}\n\n"
        f"FORM DATA:\n{json.dumps(form_data, indent=2, default=str)}"
    )


@dataclass(slots=True)
class AssignableUsers:
    developers: list[Actor]
    qa: list[Actor]


@dataclass(slots=True)
class TicketService:
    """Application operations around the transition engine.

    State changes go through :attr:`engine`; this class adds creation inputs,
    assignment, comments, listing and the read-side permission checks.
    """

    engine: TransitionEngine
    repository: TicketRepository
    users: UserDirectory
    integration_submitter_id: str | None = None
    integration_contact_email: str = "sap-integration@example.com"

    @property
    def policy(self) -> AccessPolicy:
        return self.engine.policy

    @property
    def audit(self) -> AuditTrail:
        return AuditTrail(self.repository)

    async def ensure_schema(self) -> None:
        await self.repository.ensure_schema()

    async def create_ticket(self, actor: Actor, draft: TicketDraft) -> Ticket:
        return await self.engine.open_ticket(actor, draft)

    async def create_integration_ticket(
        self,
        secret: str | None,
        *,
        sap_payload: Mapping[str, Any],
        sap_response: Mapping[str, Any],
        form_data: Mapping[str, Any],
    ) -> Ticket:
        if not self.policy.verify_integration_secret(secret):
            raise UnauthenticatedError("Unauthorized - Invalid or missing API key")

        submitter_id = self.integration_submitter_id
        submitter = await self.users.get_user(submitter_id) if submitter_id else None
        if submitter is None:
            logger.error("Integration submitter user not found: %s", submitter_id)
            raise UserNotFoundError(
                submitter_id or "<unset>",
                "Configuration error - Submitter user not found",
            )

        draft = TicketDraft(
            title=INTEGRATION_TICKET_TITLE,
            description=format_integration_description(sap_payload, sap_response, form_data),
            category=TicketCategory.BUG,
            priority=TicketPriority.URGENT,
            contact_email=submitter.email or self.integration_contact_email,
        )
        return await self.engine.open_integration_ticket(submitter, draft)

    async def request_transition(
        self,
        actor: Actor,
        ticket_id: str,
        to_state: TicketStatus,
        reason: str | None = None,
    ) -> Ticket:
        return await self.engine.request_transition(ticket_id, actor, to_state, reason)

    async def cancel_ticket(self, actor: Actor, ticket_id: str, reason: str | None = None) -> Ticket:
        return await self.engine.cancel_ticket(actor, ticket_id, reason)

    async def review_approval(
        self,
        actor: Actor,
        ticket_id: str,
        *,
        approve: bool,
        reason: str | None = None,
    ) -> Ticket:
        if approve:
            return await self.engine.approve(actor, ticket_id, reason)
        return await self.engine.reject(actor, ticket_id, reason)

    async def get_ticket(self, actor: Actor, ticket_id: str) -> Ticket:
        ticket = await self.repository.get_ticket(ticket_id)
        if ticket is None:
            raise TicketNotFoundError(ticket_id)
        if not self.policy.can_view(actor, ticket):
            raise ForbiddenError("You do not have access to this ticket")
        return ticket

    async def get_ticket_detail(self, actor: Actor, ticket_id: str) -> TicketDetail:
        ticket = await self.get_ticket(actor, ticket_id)
        comments = list(await self.repository.list_comments(ticket_id))
        if not self.policy.is_staff(actor, ticket):
            comments = [comment for comment in comments if not comment.is_internal]
        history = await self.audit.list_history(ticket_id)
        return TicketDetail(ticket=ticket, comments=comments, history=history)

    async def list_history(self, actor: Actor, ticket_id: str) -> list[StatusHistoryEntry]:
        ticket = await self.repository.get_ticket(ticket_id)
        if ticket is None:
            return []
        if not self.policy.can_view(actor, ticket):
            raise ForbiddenError("You do not have access to this ticket")
        return await self.audit.list_history(ticket_id)

    async def list_tickets(self, actor: Actor, query: TicketQuery | None = None) -> TicketPage:
        query = query or TicketQuery()
        visible_to = None if self.policy.sees_all_tickets(actor) else actor.user_id
        return await self.repository.list_tickets(replace(query, visible_to=visible_to))

    async def ticket_stats(self, actor: Actor) -> TicketStats:
        visible_to = None if self.policy.sees_all_tickets(actor) else actor.user_id
        counts = await self.repository.status_counts(visible_to=visible_to)
        recent = await self.repository.list_tickets(
            TicketQuery(visible_to=visible_to, exclude_cancelled=True, limit=RECENT_TICKET_COUNT)
        )
        return TicketStats(
            total=sum(count for status, count in counts.items() if status is not TicketStatus.CANCELLED),
            for_approval=counts.get(TicketStatus.FOR_PD_APPROVAL, 0),
            in_progress=sum(counts.get(status, 0) for status in ACTIVE_STATUSES),
            completed=counts.get(TicketStatus.DEPLOYED, 0),
            recent=recent.tickets,
        )

    async def list_pending_approvals(self, actor: Actor) -> list[Ticket]:
        if not self.policy.can_review_approvals(actor):
            raise ForbiddenError("Only ticket approvers can review pending approvals")
        return list(await self.repository.list_pending_approval())

    async def add_comment(
        self,
        actor: Actor,
        ticket_id: str,
        body: str,
        *,
        is_internal: bool = False,
        attachments: Iterable[str] = (),
    ) -> Comment:
        text = (body or "").strip()
        if not 1 <= len(text) <= MAX_COMMENT_LENGTH:
            raise TicketValidationError(
                f"Validation failed: comment must be between 1 and {MAX_COMMENT_LENGTH} characters"
            )

        ticket = await self.repository.get_ticket(ticket_id)
        if ticket is None:
            raise TicketNotFoundError(ticket_id)
        if not self.policy.can_comment(actor, ticket):
            raise ForbiddenError("You do not have access to comment on this ticket")

        comment = Comment(
            id=str(uuid4()),
            ticket_id=ticket_id,
            author_id=actor.user_id,
            body=text,
            is_internal=is_internal and self.policy.is_staff(actor, ticket),
            created_at=datetime.now(timezone.utc),
            attachments=[str(item) for item in attachments],
        )
        await self.repository.add_comment(comment)
        return comment

    async def assign(
        self,
        actor: Actor,
        ticket_id: str,
        *,
        developer_id: str | None = UNSET,
        qa_id: str | None = UNSET,
        start_development: bool = False,
    ) -> Ticket:
        """Change the developer and/or QA assignment of a ticket.

        Passing ``None`` (or an empty string) clears an assignment; omitted
        fields are left untouched. With ``start_development`` a ticket still in
        SUBMITTED is then moved to DEV_IN_PROGRESS through the engine.
        """

        # Checked before the user lookups so non-managers learn nothing about other accounts.
        if not self.policy.can_assign(actor):
            raise ForbiddenError("Only project managers can assign tickets")

        changes: dict[str, str | None] = {}
        if developer_id is not UNSET:
            changes["assigned_developer_id"] = await self._assignee(
                developer_id, TicketRole.DEVELOPER, "Invalid developer selected"
            )
        if qa_id is not UNSET:
            changes["assigned_qa_id"] = await self._assignee(qa_id, TicketRole.QA, "Invalid QA selected")

        ticket = await self.engine.assign(actor, ticket_id, changes)
        if start_development and ticket.status is TicketStatus.SUBMITTED:
            ticket = await self.engine.request_transition(ticket_id, actor, TicketStatus.DEV_IN_PROGRESS)
        return ticket

    async def list_manager_queue(
        self,
        actor: Actor,
        status: TicketStatus | None = TicketStatus.SUBMITTED,
    ) -> list[Ticket]:
        """Project-manager work queue, most urgent and oldest first.

        ``status=None`` lists every ticket that has not been cancelled.
        """

        if not self.policy.can_assign(actor):
            raise ForbiddenError("Only project managers can view the work queue")
        return list(await self.repository.list_work_queue(status))

    async def list_assignable_users(self, actor: Actor) -> AssignableUsers:
        if not self.policy.can_assign(actor):
            raise ForbiddenError("Only project managers can list assignable users")
        developers = await self.users.list_by_role(TicketRole.DEVELOPER)
        qa = await self.users.list_by_role(TicketRole.QA)
        return AssignableUsers(developers=list(developers), qa=list(qa))

    async def _assignee(self, user_id: str | None, role: TicketRole, message: str) -> str | None:
        if not user_id:
            return None
        user = await self.users.get_user(user_id)
        if user is None or user.ticket_role is not role:
            raise TicketValidationError(message)
        return user.user_id
