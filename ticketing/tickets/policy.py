"""Access policy: pure predicates over (actor, ticket) pairs."""

from __future__ import annotations

import hmac
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable

from ticketing.identity import Actor

from .models import Ticket
from .state import TicketStatus

if TYPE_CHECKING:
    from ticketing.core.config import Settings


def _normalise_emails(values: Iterable[str]) -> frozenset[str]:
    return frozenset(value.strip().lower() for value in values if value and value.strip())


def parse_email_list(raw: str | None) -> frozenset[str]:
    """Split a comma separated allow-list as read from the environment."""

    if not raw:
        return frozenset()
    return _normalise_emails(raw.split(","))


@dataclass(frozen=True)
class AccessPolicyConfig:
    """Allow-lists and credentials injected into :class:`AccessPolicy`."""

    approver_emails: frozenset[str] = field(default_factory=frozenset)
    creator_emails: frozenset[str] = field(default_factory=frozenset)
    integration_secret: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "approver_emails", _normalise_emails(self.approver_emails))
        object.__setattr__(self, "creator_emails", _normalise_emails(self.creator_emails))

    @classmethod
    def from_settings(cls, settings: "Settings") -> "AccessPolicyConfig":
        return cls(
            approver_emails=parse_email_list(settings.approver_emails),
            creator_emails=parse_email_list(settings.creator_emails),
            integration_secret=settings.sap_api_key or None,
        )


class AccessPolicy:
    """Answer "may this actor do X to this ticket?" without side effects."""

    def __init__(self, config: AccessPolicyConfig) -> None:
        self._config = config

    @property
    def config(self) -> AccessPolicyConfig:
        return self._config

    def can_create(self, actor: Actor) -> bool:
        return bool(actor.email) and actor.email.lower() in self._config.creator_emails

    def can_approve(self, actor: Actor) -> bool:
        return bool(actor.email) and actor.email.lower() in self._config.approver_emails

    def can_view(self, actor: Actor, ticket: Ticket) -> bool:
        if actor.is_manager or actor.has_elevated_flag:
            return True
        return actor.user_id in {
            ticket.submitter_id,
            ticket.process_owner_id,
            ticket.assigned_developer_id,
            ticket.assigned_qa_id,
        }

    def can_comment(self, actor: Actor, ticket: Ticket) -> bool:
        return self.can_view(actor, ticket)

    def can_cancel(self, actor: Actor, ticket: Ticket) -> bool:
        return actor.user_id == ticket.submitter_id and ticket.status is TicketStatus.FOR_PD_APPROVAL

    def can_assign(self, actor: Actor) -> bool:
        return actor.is_manager

    def can_review_approvals(self, actor: Actor) -> bool:
        return self.can_approve(actor) or actor.has_elevated_flag

    def sees_all_tickets(self, actor: Actor) -> bool:
        return actor.is_manager or actor.has_elevated_flag

    def is_staff(self, actor: Actor, ticket: Ticket) -> bool:
        """Staff may write and read internal comments on ``ticket``."""

        if actor.is_manager or actor.has_elevated_flag:
            return True
        return actor.user_id in {ticket.assigned_developer_id, ticket.assigned_qa_id}

    def verify_integration_secret(self, presented: str | None) -> bool:
        expected = self._config.integration_secret
        if not expected or not presented:
            return False
        return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))
