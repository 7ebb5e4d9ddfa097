"""Transition engine: the single path through which ticket state changes."""

from __future__ import annotations

import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, Mapping
from uuid import uuid4

from opentelemetry import trace

from ticketing.identity import Actor

from .errors import (
    ConflictError,
    ForbiddenError,
    PreconditionFailedError,
    TicketNotFoundError,
)
from .models import StatusHistoryEntry, Ticket, TicketDraft
from .policy import AccessPolicy
from .repository import TicketRepository
from .state import (
    ASSIGNABLE_STATUSES,
    TicketStateMachine,
    TicketStatus,
    TransitionContext,
    TransitionRule,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

CREATION_REASON = "Ticket created"
INTEGRATION_CREATION_REASON = "Auto-created by SAP integration"
ASSIGNMENT_FIELDS = frozenset({"assigned_developer_id", "assigned_qa_id"})

Authorizer = Callable[[TransitionContext], bool]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransitionEngine:
    """Validate, authorize and commit ticket transitions.

    Every successful call writes the ticket change and exactly one history
    entry in the same repository transaction. Requests for the same ticket are
    serialized in-process by a per-ticket lock; writers in other processes are
    caught by the repository's version check and surface as
    :class:`ConflictError`.
    """

    def __init__(
        self,
        repository: TicketRepository,
        policy: AccessPolicy,
        *,
        clock: Callable[[], datetime] | None = None,
        lock_timeout: float = 5.0,
    ) -> None:
        self._repository = repository
        self._policy = policy
        self._clock = clock or _utcnow
        self._lock_timeout = lock_timeout
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    @property
    def policy(self) -> AccessPolicy:
        return self._policy

    async def request_transition(
        self,
        ticket_id: str,
        actor: Actor,
        to_state: TicketStatus,
        reason: str | None = None,
    ) -> Ticket:
        return await self._transition(ticket_id, actor, to_state, reason)

    async def approve(self, actor: Actor, ticket_id: str, reason: str | None = None) -> Ticket:
        return await self._transition(ticket_id, actor, TicketStatus.SUBMITTED, reason)

    async def reject(self, actor: Actor, ticket_id: str, reason: str | None) -> Ticket:
        if not reason or not reason.strip():
            raise PreconditionFailedError("Rejection reason is required")
        return await self._transition(
            ticket_id,
            actor,
            TicketStatus.CANCELLED,
            reason,
            authorize=lambda ctx: ctx.policy.can_approve(ctx.actor),
            forbidden="Only ticket approvers can reject tickets",
            rejecting=True,
        )

    async def cancel_ticket(self, actor: Actor, ticket_id: str, reason: str | None = None) -> Ticket:
        """Withdraw a ticket that is still awaiting approval.

        Only the submitter may do this; approvers reject through :meth:`reject`.
        """

        return await self._transition(
            ticket_id,
            actor,
            TicketStatus.CANCELLED,
            reason,
            authorize=lambda ctx: ctx.policy.can_cancel(ctx.actor, ctx.ticket),
            forbidden="Only the ticket submitter can cancel a ticket awaiting approval",
        )

    async def open_ticket(self, actor: Actor, draft: TicketDraft) -> Ticket:
        """Create a ticket awaiting process-owner approval."""

        if not self._policy.can_create(actor):
            raise ForbiddenError(
                "You do not have permission to create tickets. Contact your administrator for access."
            )
        draft.validate()
        return await self._insert(
            draft,
            submitter_id=actor.user_id,
            status=TicketStateMachine.initial_state(),
            reason=CREATION_REASON,
        )

    async def open_integration_ticket(self, submitter: Actor, draft: TicketDraft) -> Ticket:
        """Create an already-approved ticket on behalf of an external system.

        The caller must have verified the integration secret.
        """

        draft.validate()
        return await self._insert(
            draft,
            submitter_id=submitter.user_id,
            status=TicketStateMachine.initial_state(bypass_approval=True),
            reason=INTEGRATION_CREATION_REASON,
        )

    async def assign(self, actor: Actor, ticket_id: str, changes: Mapping[str, str | None]) -> Ticket:
        """Change the developer and/or QA assignment of a ticket.

        Assignment is not a transition: it bumps the version but appends no
        history entry. It shares the ticket's lock with transitions so it
        cannot interleave with one in flight.
        """

        if not self._policy.can_assign(actor):
            raise ForbiddenError("Only project managers can assign tickets")
        unknown = set(changes) - ASSIGNMENT_FIELDS
        if unknown:
            raise ValueError(f"Not assignment fields: {sorted(unknown)}")

        async with self._ticket_lock(ticket_id):
            with tracer.start_as_current_span("ticket.assign") as span:
                span.set_attribute("ticket.id", ticket_id)
                span.set_attribute("actor.id", actor.user_id)

                ticket = await self._repository.get_ticket(ticket_id)
                if ticket is None:
                    raise TicketNotFoundError(ticket_id)
                if ticket.status not in ASSIGNABLE_STATUSES:
                    raise PreconditionFailedError("Ticket cannot be assigned in its current status")
                if not changes:
                    return ticket

                updated = await self._repository.update_assignment(
                    ticket.id,
                    expected_version=ticket.version,
                    changes=dict(changes),
                    updated_at=self._clock(),
                )

        logger.info("Ticket %s assignment updated by %s: %s", updated.ticket_number, actor.user_id, dict(changes))
        return updated

    async def _insert(
        self,
        draft: TicketDraft,
        *,
        submitter_id: str,
        status: TicketStatus,
        reason: str,
    ) -> Ticket:
        now = self._clock()
        ticket = Ticket(
            id=str(uuid4()),
            ticket_number="",
            title=draft.title.strip(),
            description=draft.description.strip(),
            category=draft.category,
            priority=draft.priority,
            status=status,
            submitter_id=submitter_id,
            contact_email=draft.contact_email,
            created_at=now,
            updated_at=now,
            steps_to_reproduce=draft.steps_to_reproduce,
            contact_phone=draft.contact_phone,
            submitted_at=now if status is TicketStatus.SUBMITTED else None,
        )
        entry = StatusHistoryEntry(
            id=str(uuid4()),
            ticket_id=ticket.id,
            from_status=None,
            to_status=status,
            actor_id=submitter_id,
            reason=reason,
            created_at=now,
            ticket_version=1,
        )
        with tracer.start_as_current_span("ticket.create") as span:
            span.set_attribute("ticket.id", ticket.id)
            span.set_attribute("ticket.status", status.value)
            created = await self._repository.create_ticket(ticket, entry)
            span.set_attribute("ticket.number", created.ticket_number)
        logger.info(
            "Created ticket %s (%s) in %s for %s",
            created.ticket_number,
            created.id,
            status.value,
            submitter_id,
        )
        return created

    async def _transition(
        self,
        ticket_id: str,
        actor: Actor,
        to_state: TicketStatus,
        reason: str | None,
        *,
        authorize: Authorizer | None = None,
        forbidden: str | None = None,
        rejecting: bool = False,
    ) -> Ticket:
        async with self._ticket_lock(ticket_id):
            with tracer.start_as_current_span("ticket.transition") as span:
                span.set_attribute("ticket.id", ticket_id)
                span.set_attribute("ticket.to_status", to_state.value)
                span.set_attribute("actor.id", actor.user_id)

                ticket = await self._repository.get_ticket(ticket_id)
                if ticket is None:
                    raise TicketNotFoundError(ticket_id)
                span.set_attribute("ticket.from_status", ticket.status.value)

                rule = TicketStateMachine.assert_transition(ticket.status, to_state)
                context = TransitionContext(
                    policy=self._policy,
                    actor=actor,
                    ticket=ticket,
                    reason=reason,
                    now=self._clock(),
                    rejecting=rejecting,
                )
                self._authorize(rule, context, authorize, forbidden)

                unmet = rule.unmet_preconditions(context)
                if unmet:
                    logger.info(
                        "Transition %s -> %s on %s blocked: %s",
                        ticket.status.value,
                        to_state.value,
                        ticket_id,
                        unmet[0],
                    )
                    raise PreconditionFailedError(unmet[0])

                resolved_reason = rule.resolve_reason(context)
                entry = StatusHistoryEntry(
                    id=str(uuid4()),
                    ticket_id=ticket.id,
                    from_status=ticket.status,
                    to_status=to_state,
                    actor_id=actor.user_id,
                    reason=resolved_reason,
                    created_at=context.now,
                    ticket_version=ticket.version + 1,
                )
                try:
                    updated = await self._repository.apply_transition(
                        ticket.id,
                        expected_version=ticket.version,
                        changes=rule.changes(context, resolved_reason),
                        entry=entry,
                    )
                except ConflictError:
                    logger.warning(
                        "Concurrent update lost on ticket %s (%s -> %s)",
                        ticket_id,
                        ticket.status.value,
                        to_state.value,
                    )
                    raise

        logger.info(
            "Ticket %s moved %s -> %s by %s",
            updated.ticket_number,
            ticket.status.value,
            updated.status.value,
            actor.user_id,
        )
        return updated

    @staticmethod
    def _authorize(
        rule: TransitionRule,
        context: TransitionContext,
        authorize: Authorizer | None,
        forbidden: str | None,
    ) -> None:
        check = authorize or rule.authorize
        if check(context):
            return
        message = forbidden or rule.forbidden_message()
        logger.info(
            "Actor %s refused %s -> %s on %s",
            context.actor.user_id,
            rule.source.value,
            rule.target.value,
            context.ticket.id,
        )
        raise ForbiddenError(message)

    @asynccontextmanager
    async def _ticket_lock(self, ticket_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(ticket_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[ticket_id] = lock
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self._lock_timeout)
        except asyncio.TimeoutError as exc:
            raise ConflictError(
                f"Ticket {ticket_id} is being updated by another request; retry shortly"
            ) from exc
        try:
            yield
        finally:
            lock.release()
