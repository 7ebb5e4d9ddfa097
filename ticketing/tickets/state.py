from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Mapping

from .errors import InvalidTransitionError

if TYPE_CHECKING:
    from ticketing.identity import Actor

    from .models import Ticket
    from .policy import AccessPolicy


class TicketStatus(str, Enum):
    """Supported states for a ticket's lifecycle."""

    FOR_PD_APPROVAL = "FOR_PD_APPROVAL"
    SUBMITTED = "SUBMITTED"
    DEV_IN_PROGRESS = "DEV_IN_PROGRESS"
    QA_TESTING = "QA_TESTING"
    PD_TESTING = "PD_TESTING"
    FOR_DEPLOYMENT = "FOR_DEPLOYMENT"
    DEPLOYED = "DEPLOYED"
    CANCELLED = "CANCELLED"


class TicketCategory(str, Enum):
    BUG = "BUG"
    FEATURE_REQUEST = "FEATURE_REQUEST"
    ENHANCEMENT = "ENHANCEMENT"
    SUPPORT = "SUPPORT"
    TASK = "TASK"
    OTHER = "OTHER"


class TicketPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    TicketPriority.LOW: 0,
    TicketPriority.MEDIUM: 1,
    TicketPriority.HIGH: 2,
    TicketPriority.URGENT: 3,
}

TERMINAL_STATUSES: frozenset[TicketStatus] = frozenset({TicketStatus.DEPLOYED, TicketStatus.CANCELLED})

# States in which developer and QA assignments may still change.
ASSIGNABLE_STATUSES: frozenset[TicketStatus] = frozenset(
    {
        TicketStatus.SUBMITTED,
        TicketStatus.DEV_IN_PROGRESS,
        TicketStatus.QA_TESTING,
        TicketStatus.PD_TESTING,
    }
)

ACTIVE_STATUSES: frozenset[TicketStatus] = ASSIGNABLE_STATUSES | {TicketStatus.FOR_DEPLOYMENT}


@dataclass(frozen=True, slots=True)
class TransitionContext:
    """Everything a rule needs to judge one requested transition."""

    policy: AccessPolicy
    actor: Actor
    ticket: Ticket
    reason: str | None
    now: datetime
    rejecting: bool = False

    @property
    def cancelling_as_submitter(self) -> bool:
        # An explicit rejection is an approver act even when the approver filed the ticket.
        return not self.rejecting and self.policy.can_cancel(self.actor, self.ticket)


@dataclass(frozen=True, slots=True)
class Precondition:
    """A named check that must hold before a transition commits."""

    message: str
    check: Callable[[TransitionContext], bool]


@dataclass(frozen=True, slots=True)
class TransitionRule:
    """One row of the transition table."""

    source: TicketStatus
    target: TicketStatus
    required_role: str
    authorize: Callable[[TransitionContext], bool]
    default_reason: Callable[[TransitionContext], str]
    preconditions: tuple[Precondition, ...] = ()
    side_effects: Callable[[TransitionContext, str], Mapping[str, Any]] | None = None

    def forbidden_message(self) -> str:
        return (
            f"Only {self.required_role} can move a ticket from "
            f"{self.source.value} to {self.target.value}"
        )

    def unmet_preconditions(self, context: TransitionContext) -> list[str]:
        return [item.message for item in self.preconditions if not item.check(context)]

    def resolve_reason(self, context: TransitionContext) -> str:
        if context.reason and context.reason.strip():
            return context.reason.strip()
        return self.default_reason(context)

    def changes(self, context: TransitionContext, reason: str) -> dict[str, Any]:
        changes: dict[str, Any] = {"status": self.target}
        if self.side_effects is not None:
            changes.update(self.side_effects(context, reason))
        return changes


def _is_manager(context: TransitionContext) -> bool:
    return context.actor.is_manager


def _is_assigned_developer(context: TransitionContext) -> bool:
    developer_id = context.ticket.assigned_developer_id
    return developer_id is not None and developer_id == context.actor.user_id


def _is_assigned_qa(context: TransitionContext) -> bool:
    qa_id = context.ticket.assigned_qa_id
    return qa_id is not None and qa_id == context.actor.user_id


def _approve_effects(context: TransitionContext, reason: str) -> dict[str, Any]:
    return {"process_owner_id": context.actor.user_id, "submitted_at": context.now}


def _cancel_effects(context: TransitionContext, reason: str) -> dict[str, Any]:
    changes: dict[str, Any] = {
        "cancelled_at": context.now,
        "cancelled_by_id": context.actor.user_id,
        "cancellation_reason": reason,
    }
    if not context.cancelling_as_submitter:
        # An approver rejecting the request becomes its process owner.
        changes["process_owner_id"] = context.actor.user_id
    return changes


def _deploy_effects(context: TransitionContext, reason: str) -> dict[str, Any]:
    return {"deployed_at": context.now}


def _fixed(text: str) -> Callable[[TransitionContext], str]:
    return lambda _context: text


_RULES: tuple[TransitionRule, ...] = (
    TransitionRule(
        source=TicketStatus.FOR_PD_APPROVAL,
        target=TicketStatus.SUBMITTED,
        required_role="ticket approvers",
        authorize=lambda ctx: ctx.policy.can_approve(ctx.actor),
        default_reason=_fixed("Approved by process owner"),
        side_effects=_approve_effects,
    ),
    TransitionRule(
        source=TicketStatus.FOR_PD_APPROVAL,
        target=TicketStatus.CANCELLED,
        required_role="ticket approvers or the ticket submitter",
        authorize=lambda ctx: ctx.policy.can_approve(ctx.actor) or ctx.cancelling_as_submitter,
        default_reason=_fixed("Cancelled by submitter"),
        preconditions=(
            Precondition(
                message="Rejection reason is required",
                check=lambda ctx: ctx.cancelling_as_submitter or bool(ctx.reason and ctx.reason.strip()),
            ),
        ),
        side_effects=_cancel_effects,
    ),
    TransitionRule(
        source=TicketStatus.SUBMITTED,
        target=TicketStatus.DEV_IN_PROGRESS,
        required_role="project managers",
        authorize=_is_manager,
        default_reason=_fixed("Development started by Project Manager"),
        preconditions=(
            Precondition(
                message="A developer must be assigned before development can start",
                check=lambda ctx: ctx.ticket.assigned_developer_id is not None,
            ),
        ),
    ),
    TransitionRule(
        source=TicketStatus.DEV_IN_PROGRESS,
        target=TicketStatus.QA_TESTING,
        required_role="the assigned developer or a project manager",
        authorize=lambda ctx: _is_assigned_developer(ctx) or _is_manager(ctx),
        default_reason=_fixed("Development completed, ready for QA testing"),
        preconditions=(
            Precondition(
                message="A QA tester must be assigned before moving to QA Testing",
                check=lambda ctx: ctx.ticket.assigned_qa_id is not None,
            ),
        ),
    ),
    TransitionRule(
        source=TicketStatus.QA_TESTING,
        target=TicketStatus.PD_TESTING,
        required_role="the assigned QA or a project manager",
        authorize=lambda ctx: _is_assigned_qa(ctx) or _is_manager(ctx),
        default_reason=_fixed("QA testing completed, ready for PD testing"),
    ),
    TransitionRule(
        source=TicketStatus.PD_TESTING,
        target=TicketStatus.FOR_DEPLOYMENT,
        required_role="approvers, process owners or project managers",
        authorize=lambda ctx: (
            ctx.policy.can_approve(ctx.actor) or ctx.actor.has_elevated_flag or _is_manager(ctx)
        ),
        default_reason=_fixed("PD testing approved, ready for deployment"),
    ),
    TransitionRule(
        source=TicketStatus.FOR_DEPLOYMENT,
        target=TicketStatus.DEPLOYED,
        required_role="project managers",
        authorize=_is_manager,
        default_reason=_fixed("Deployed to production"),
        side_effects=_deploy_effects,
    ),
)

TRANSITION_TABLE: Mapping[tuple[TicketStatus, TicketStatus], TransitionRule] = {
    (rule.source, rule.target): rule for rule in _RULES
}


class TicketStateMachine:
    """Validate ticket lifecycle transitions against the transition table."""

    _TRANSITIONS = TRANSITION_TABLE

    @classmethod
    def initial_state(cls, *, bypass_approval: bool = False) -> TicketStatus:
        return TicketStatus.SUBMITTED if bypass_approval else TicketStatus.FOR_PD_APPROVAL

    @classmethod
    def is_terminal(cls, status: TicketStatus) -> bool:
        return status in TERMINAL_STATUSES

    @classmethod
    def rule_for(cls, current: TicketStatus, new: TicketStatus) -> TransitionRule | None:
        return cls._TRANSITIONS.get((current, new))

    @classmethod
    def can_transition(cls, current: TicketStatus, new: TicketStatus) -> bool:
        return (current, new) in cls._TRANSITIONS

    @classmethod
    def targets(cls, current: TicketStatus) -> list[TicketStatus]:
        return [target for source, target in cls._TRANSITIONS if source == current]

    @classmethod
    def assert_transition(cls, current: TicketStatus, new: TicketStatus) -> TransitionRule:
        rule = cls.rule_for(current, new)
        if rule is None:
            raise InvalidTransitionError(
                f"Invalid status transition from {current.value} to {new.value}"
            )
        return rule
