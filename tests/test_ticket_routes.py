from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from ticketing.dependencies import auth as auth_deps
from ticketing.dependencies import tickets as ticket_deps
from ticketing.identity import Actor, TicketRole
from ticketing.main import create_app
from ticketing.tickets.errors import (
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    PreconditionFailedError,
    TicketNotFoundError,
    UserNotFoundError,
)
from ticketing.tickets.models import Comment, StatusHistoryEntry, Ticket, TicketDetail, TicketPage, TicketStats
from ticketing.tickets.service import AssignableUsers
from ticketing.tickets.state import TicketCategory, TicketPriority, TicketStatus

NOW = datetime(2025, 1, 15, 9, 30, tzinfo=timezone.utc)
CALLER = Actor(user_id="u-caller", email="caller@example.com", ticket_role=TicketRole.PROJECT_MANAGER)


def _make_ticket(*, status: TicketStatus = TicketStatus.FOR_PD_APPROVAL, **overrides) -> Ticket:
    fields = dict(
        id=str(uuid4()),
        ticket_number="TKT-2501-0001",
        title="Payroll export fails",
        description="The monthly payroll export stops with a timeout.",
        category=TicketCategory.BUG,
        priority=TicketPriority.HIGH,
        status=status,
        submitter_id="u-sub",
        contact_email="sub@example.com",
        created_at=NOW,
        updated_at=NOW,
    )
    fields.update(overrides)
    return Ticket(**fields)


def _make_entry(ticket: Ticket, to_status: TicketStatus, from_status=None, version: int = 1) -> StatusHistoryEntry:
    return StatusHistoryEntry(
        id=str(uuid4()),
        ticket_id=ticket.id,
        from_status=from_status,
        to_status=to_status,
        actor_id="u-sub",
        reason="Ticket created",
        created_at=NOW,
        ticket_version=version,
    )


@pytest.fixture
def ticket_client():
    app = create_app()
    service = AsyncMock()
    service.policy = MagicMock()
    service.policy.verify_integration_secret.side_effect = lambda key: key == "good-key"

    async def override_service():
        return service

    app.dependency_overrides[ticket_deps.get_ticket_service] = override_service
    app.dependency_overrides[auth_deps.get_current_actor] = lambda: CALLER

    client = TestClient(app)
    try:
        yield client, service
    finally:
        app.dependency_overrides.clear()


def test_create_ticket_returns_id_and_number(ticket_client):
    client, service = ticket_client
    ticket = _make_ticket()
    service.create_ticket = AsyncMock(return_value=ticket)

    response = client.post(
        "/tickets",
        json={
            "title": "Payroll export fails",
            "description": "The monthly payroll export stops with a timeout.",
            "category": "BUG",
            "priority": "HIGH",
            "contactEmail": "sub@example.com",
            "stepsToReproduce": "Run the export",
        },
    )

    assert response.status_code == 201
    assert response.json() == {"id": ticket.id, "ticketNumber": "TKT-2501-0001"}
    actor, draft = service.create_ticket.await_args.args
    assert actor == CALLER
    assert draft.steps_to_reproduce == "Run the export"


def test_create_ticket_validation_errors_are_400(ticket_client):
    client, service = ticket_client

    response = client.post("/tickets", json={"title": "Hi", "category": "BUG"})

    assert response.status_code == 400
    assert response.json()["kind"] == "validation_error"
    service.create_ticket.assert_not_awaited()


def test_create_ticket_forbidden_maps_to_403(ticket_client):
    client, service = ticket_client
    service.create_ticket = AsyncMock(side_effect=ForbiddenError("You do not have permission to create tickets."))

    response = client.post(
        "/tickets",
        json={
            "title": "Payroll export fails",
            "description": "The monthly payroll export stops with a timeout.",
            "category": "BUG",
            "priority": "LOW",
            "contactEmail": "sub@example.com",
        },
    )

    assert response.status_code == 403
    assert response.json() == {"detail": "You do not have permission to create tickets.", "kind": "forbidden"}


def test_status_change_returns_projection(ticket_client):
    client, service = ticket_client
    ticket = _make_ticket(status=TicketStatus.SUBMITTED)
    service.request_transition = AsyncMock(return_value=ticket)

    response = client.post(f"/tickets/{ticket.id}/status", json={"status": "SUBMITTED"})

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "ticket": {"id": ticket.id, "status": "SUBMITTED", "updatedAt": "2025-01-15T09:30:00Z"},
    }
    service.request_transition.assert_awaited_once_with(CALLER, ticket.id, TicketStatus.SUBMITTED, None)


@pytest.mark.parametrize(
    ("error", "status_code", "kind"),
    [
        (InvalidTransitionError("Invalid status transition from DEPLOYED to SUBMITTED"), 400, "invalid_transition"),
        (PreconditionFailedError("A developer must be assigned before development can start"), 400, "precondition_failed"),
        (ForbiddenError("Only project managers can move a ticket from SUBMITTED to DEV_IN_PROGRESS"), 403, "forbidden"),
        (TicketNotFoundError("t-404"), 404, "not_found"),
        (ConflictError("Ticket t-1 was modified concurrently; reload it and retry"), 409, "conflict"),
    ],
)
def test_status_change_error_mapping(ticket_client, error, status_code, kind):
    client, service = ticket_client
    service.request_transition = AsyncMock(side_effect=error)

    response = client.post("/tickets/t-1/status", json={"status": "DEV_IN_PROGRESS", "reason": "Go"})

    assert response.status_code == status_code
    assert response.json() == {"detail": error.reason, "kind": kind}


def test_status_change_rejects_unknown_status(ticket_client):
    client, service = ticket_client

    response = client.post("/tickets/t-1/status", json={"status": "ARCHIVED"})

    assert response.status_code == 400
    service.request_transition.assert_not_awaited()


def test_cancel_accepts_missing_body(ticket_client):
    client, service = ticket_client
    ticket = _make_ticket(status=TicketStatus.CANCELLED, cancelled_at=NOW)
    service.cancel_ticket = AsyncMock(return_value=ticket)

    response = client.post(f"/tickets/{ticket.id}/cancel")

    assert response.status_code == 200
    assert response.json()["ticket"]["status"] == "CANCELLED"
    service.cancel_ticket.assert_awaited_once_with(CALLER, ticket.id, None)


def test_history_lists_entries(ticket_client):
    client, service = ticket_client
    ticket = _make_ticket()
    service.list_history = AsyncMock(return_value=[_make_entry(ticket, TicketStatus.FOR_PD_APPROVAL)])

    response = client.get(f"/tickets/{ticket.id}/history")

    assert response.status_code == 200
    body = response.json()
    assert body[0]["fromStatus"] is None
    assert body[0]["toStatus"] == "FOR_PD_APPROVAL"
    assert body[0]["reason"] == "Ticket created"


def test_history_of_unknown_ticket_is_empty(ticket_client):
    client, service = ticket_client
    service.list_history = AsyncMock(return_value=[])

    response = client.get("/tickets/missing/history")

    assert response.status_code == 200
    assert response.json() == []


def test_list_tickets_passes_filters(ticket_client):
    client, service = ticket_client
    ticket = _make_ticket()
    service.list_tickets = AsyncMock(
        return_value=TicketPage(tickets=[ticket], total_count=11, page=2, limit=5)
    )

    response = client.get("/tickets", params={"status": "FOR_PD_APPROVAL", "search": "payroll", "page": 2, "limit": 5})

    assert response.status_code == 200
    body = response.json()
    assert body["pagination"] == {"page": 2, "limit": 5, "totalCount": 11, "totalPages": 3}
    assert body["tickets"][0]["ticketNumber"] == "TKT-2501-0001"
    _, query = service.list_tickets.await_args.args
    assert query.status is TicketStatus.FOR_PD_APPROVAL
    assert query.search == "payroll"
    assert query.offset == 5


def test_get_ticket_detail(ticket_client):
    client, service = ticket_client
    ticket = _make_ticket()
    comment = Comment(
        id="c-1",
        ticket_id=ticket.id,
        author_id="u-sub",
        body="Still failing",
        is_internal=False,
        created_at=NOW,
    )
    service.get_ticket_detail = AsyncMock(
        return_value=TicketDetail(ticket=ticket, comments=[comment], history=[_make_entry(ticket, ticket.status)])
    )

    response = client.get(f"/tickets/{ticket.id}")

    assert response.status_code == 200
    body = response.json()
    assert body["id"] == ticket.id
    assert body["comments"][0]["body"] == "Still failing"
    assert len(body["statusHistory"]) == 1


def test_add_comment(ticket_client):
    client, service = ticket_client
    comment = Comment(
        id="c-2",
        ticket_id="t-1",
        author_id=CALLER.user_id,
        body="Looking into it",
        is_internal=True,
        created_at=NOW,
        attachments=["uploads/trace.log"],
    )
    service.add_comment = AsyncMock(return_value=comment)

    response = client.post(
        "/tickets/t-1/comments",
        json={"content": "Looking into it", "isInternal": True, "attachments": ["uploads/trace.log"]},
    )

    assert response.status_code == 201
    assert response.json()["isInternal"] is True
    service.add_comment.assert_awaited_once_with(
        CALLER,
        "t-1",
        "Looking into it",
        is_internal=True,
        attachments=["uploads/trace.log"],
    )


def test_approval_actions(ticket_client):
    client, service = ticket_client
    ticket = _make_ticket(status=TicketStatus.CANCELLED, cancelled_at=NOW)
    service.review_approval = AsyncMock(return_value=ticket)

    response = client.post(f"/approvals/{ticket.id}", json={"action": "reject", "reason": "Duplicate"})

    assert response.status_code == 200
    service.review_approval.assert_awaited_once_with(CALLER, ticket.id, approve=False, reason="Duplicate")

    invalid = client.post(f"/approvals/{ticket.id}", json={"action": "maybe"})
    assert invalid.status_code == 400


def test_pending_approvals(ticket_client):
    client, service = ticket_client
    service.list_pending_approvals = AsyncMock(return_value=[_make_ticket(priority=TicketPriority.URGENT)])

    response = client.get("/approvals")

    assert response.status_code == 200
    assert response.json()[0]["priority"] == "URGENT"


def test_assign_only_forwards_fields_present(ticket_client):
    client, service = ticket_client
    ticket = _make_ticket(status=TicketStatus.DEV_IN_PROGRESS, assigned_developer_id="u-dev")
    service.assign = AsyncMock(return_value=ticket)

    response = client.post(
        f"/pm/tickets/{ticket.id}/assign",
        json={"developerId": "u-dev", "startDevelopment": True},
    )

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "ticket": {
            "id": ticket.id,
            "status": "DEV_IN_PROGRESS",
            "assignedDeveloperId": "u-dev",
            "assignedQaId": None,
        },
    }
    service.assign.assert_awaited_once_with(CALLER, ticket.id, start_development=True, developer_id="u-dev")


def test_assignable_users(ticket_client):
    client, service = ticket_client
    developer = Actor(user_id="u-dev", email="dev@example.com", ticket_role=TicketRole.DEVELOPER, display_name="Dee")
    service.list_assignable_users = AsyncMock(return_value=AssignableUsers(developers=[developer], qa=[]))

    response = client.get("/pm/users")

    assert response.status_code == 200
    assert response.json() == {
        "developers": [
            {"id": "u-dev", "email": "dev@example.com", "displayName": "Dee", "ticketRole": "DEVELOPER"}
        ],
        "qa": [],
    }


def test_dashboard_stats(ticket_client):
    client, service = ticket_client
    service.ticket_stats = AsyncMock(
        return_value=TicketStats(total=4, for_approval=1, in_progress=2, completed=1, recent=[_make_ticket()])
    )

    response = client.get("/dashboard/stats")

    assert response.status_code == 200
    body = response.json()
    assert body["stats"] == {"total": 4, "forApproval": 1, "inProgress": 2, "completed": 1}
    assert len(body["recentTickets"]) == 1


def test_integration_requires_api_key(ticket_client):
    client, service = ticket_client

    response = client.post(
        "/external/sap/tickets",
        json={"sapPayload": {}, "sapResponse": {}, "formData": {}},
        headers={"x-api-key": "bad-key"},
    )

    assert response.status_code == 401
    assert response.json()["kind"] == "unauthenticated"
    service.create_integration_ticket.assert_not_awaited()


def test_integration_creates_ticket(ticket_client):
    client, service = ticket_client
    ticket = _make_ticket(status=TicketStatus.SUBMITTED, ticket_number="TKT-2501-0042")
    service.create_integration_ticket = AsyncMock(return_value=ticket)

    response = client.post(
        "/external/sap/tickets",
        json={"sapPayload": {"doc": 1}, "sapResponse": {"ok": False}, "formData": {"plant": "1000"}},
        headers={"x-api-key": "good-key"},
    )

    assert response.status_code == 200
    assert response.json() == {"success": True, "ticketNumber": "TKT-2501-0042", "ticketId": ticket.id}
    service.create_integration_ticket.assert_awaited_once_with(
        "good-key",
        sap_payload={"doc": 1},
        sap_response={"ok": False},
        form_data={"plant": "1000"},
    )


@pytest.mark.parametrize(
    ("error", "status_code"),
    [
        (UserNotFoundError("sap", "Configuration error - Submitter user not found"), 404),
        (OperationalError("INSERT", {}, Exception("disk full")), 500),
    ],
)
def test_integration_failures(ticket_client, error, status_code):
    client, service = ticket_client
    service.create_integration_ticket = AsyncMock(side_effect=error)

    response = client.post(
        "/external/sap/tickets",
        json={"sapPayload": {}, "sapResponse": {}, "formData": {}},
        headers={"x-api-key": "good-key"},
    )

    assert response.status_code == status_code


def test_integration_rejects_malformed_body(ticket_client):
    client, service = ticket_client

    response = client.post(
        "/external/sap/tickets",
        json={"sapPayload": "not-an-object"},
        headers={"x-api-key": "good-key"},
    )

    assert response.status_code == 400
    service.create_integration_ticket.assert_not_awaited()


def test_ping_reports_service_state():
    app = create_app()
    client = TestClient(app)

    response = client.get("/ping")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "ticketService": "unavailable"}


def test_requests_without_token_are_unauthenticated():
    app = create_app()
    directory = SimpleNamespace(resolve_token=AsyncMock(return_value=None))
    app.dependency_overrides[auth_deps.get_user_directory] = lambda: directory
    app.dependency_overrides[ticket_deps.get_ticket_service] = lambda: AsyncMock()
    client = TestClient(app)

    missing = client.get("/tickets")
    invalid = client.get("/tickets", headers={"Authorization": "Bearer nope"})

    assert missing.status_code == 401
    assert missing.json()["kind"] == "unauthenticated"
    assert invalid.status_code == 401
    directory.resolve_token.assert_awaited_once_with("nope")


def test_work_queue_defaults_to_submitted(ticket_client):
    client, service = ticket_client
    ticket = _make_ticket(status=TicketStatus.SUBMITTED, priority=TicketPriority.URGENT)
    service.list_manager_queue = AsyncMock(return_value=[ticket])

    response = client.get("/pm/tickets")

    assert response.status_code == 200
    assert [item["id"] for item in response.json()["tickets"]] == [ticket.id]
    service.list_manager_queue.assert_awaited_once_with(CALLER, TicketStatus.SUBMITTED)


@pytest.mark.parametrize(
    ("value", "expected"),
    [("all", None), ("QA_TESTING", TicketStatus.QA_TESTING)],
)
def test_work_queue_status_filter(ticket_client, value, expected):
    client, service = ticket_client
    service.list_manager_queue = AsyncMock(return_value=[])

    response = client.get("/pm/tickets", params={"status": value})

    assert response.status_code == 200
    assert response.json() == {"tickets": []}
    service.list_manager_queue.assert_awaited_once_with(CALLER, expected)


def test_work_queue_rejects_unknown_status(ticket_client):
    client, service = ticket_client

    response = client.get("/pm/tickets", params={"status": "ARCHIVED"})

    assert response.status_code == 400
    assert response.json()["kind"] == "validation_error"
    service.list_manager_queue.assert_not_awaited()


def test_unexpected_errors_return_structured_500():
    app = create_app()
    service = AsyncMock()
    service.list_history = AsyncMock(side_effect=RuntimeError("boom"))
    app.dependency_overrides[ticket_deps.get_ticket_service] = lambda: service
    app.dependency_overrides[auth_deps.get_current_actor] = lambda: CALLER
    client = TestClient(app, raise_server_exceptions=False)

    response = client.get("/tickets/t-1/history")

    assert response.status_code == 500
    assert response.json() == {"detail": "Internal server error", "kind": "internal"}
