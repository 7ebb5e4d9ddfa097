"""Request and response bodies shared by the route modules.

Payloads use camelCase on the wire; Python attributes stay snake_case.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ticketing.identity import TicketRole
from ticketing.tickets.state import TicketCategory, TicketPriority, TicketStatus


class ApiRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ApiResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)


class TicketCreateRequest(ApiRequest):
    title: str = Field(..., min_length=5, max_length=200)
    description: str = Field(..., min_length=20)
    category: TicketCategory
    priority: TicketPriority
    contact_email: str = Field(..., min_length=3)
    steps_to_reproduce: str | None = None
    contact_phone: str | None = None


class TicketCreatedResponse(ApiResponse):
    id: str
    ticket_number: str


class StatusChangeRequest(ApiRequest):
    status: TicketStatus
    reason: str | None = Field(default=None, max_length=2000)


class CancelRequest(ApiRequest):
    reason: str | None = Field(default=None, max_length=2000)


class ApprovalActionRequest(ApiRequest):
    action: Literal["approve", "reject"]
    reason: str | None = Field(default=None, max_length=2000)


class TicketProjectionResponse(ApiResponse):
    id: str
    status: TicketStatus
    updated_at: datetime


class TransitionResponse(ApiResponse):
    success: bool = True
    ticket: TicketProjectionResponse


class TicketResponse(ApiResponse):
    id: str
    ticket_number: str
    title: str
    description: str
    category: TicketCategory
    priority: TicketPriority
    status: TicketStatus
    submitter_id: str
    contact_email: str
    steps_to_reproduce: str | None = None
    contact_phone: str | None = None
    process_owner_id: str | None = None
    assigned_developer_id: str | None = None
    assigned_qa_id: str | None = None
    created_at: datetime
    updated_at: datetime
    submitted_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancelled_by_id: str | None = None
    cancellation_reason: str | None = None
    deployed_at: datetime | None = None


class HistoryEntryResponse(ApiResponse):
    id: str
    ticket_id: str
    from_status: TicketStatus | None
    to_status: TicketStatus
    actor_id: str
    reason: str
    created_at: datetime


class CommentCreateRequest(ApiRequest):
    content: str = Field(..., min_length=1, max_length=2000)
    is_internal: bool = False
    attachments: list[str] = Field(default_factory=list)


class CommentResponse(ApiResponse):
    id: str
    ticket_id: str
    author_id: str
    body: str
    is_internal: bool
    attachments: list[str]
    created_at: datetime


class TicketDetailResponse(TicketResponse):
    comments: list[CommentResponse]
    status_history: list[HistoryEntryResponse]


class PaginationResponse(ApiResponse):
    page: int
    limit: int
    total_count: int
    total_pages: int


class TicketListResponse(ApiResponse):
    tickets: list[TicketResponse]
    pagination: PaginationResponse


class WorkQueueResponse(ApiResponse):
    tickets: list[TicketResponse]


class AssignRequest(ApiRequest):
    developer_id: str | None = None
    qa_id: str | None = None
    start_development: bool = False


class AssignmentResponse(ApiResponse):
    id: str
    status: TicketStatus
    assigned_developer_id: str | None
    assigned_qa_id: str | None


class AssignResponse(ApiResponse):
    success: bool = True
    ticket: AssignmentResponse


class UserResponse(ApiResponse):
    id: str = Field(validation_alias="user_id")
    email: str
    display_name: str | None = None
    ticket_role: TicketRole


class AssignableUsersResponse(ApiResponse):
    developers: list[UserResponse]
    qa: list[UserResponse]


class DashboardCounts(ApiResponse):
    total: int
    for_approval: int
    in_progress: int
    completed: int


class DashboardStatsResponse(ApiResponse):
    stats: DashboardCounts
    recent_tickets: list[TicketResponse]


class IntegrationTicketRequest(ApiRequest):
    sap_payload: dict[str, Any]
    sap_response: dict[str, Any]
    form_data: dict[str, Any]


class IntegrationTicketResponse(ApiResponse):
    success: bool = True
    ticket_number: str
    ticket_id: str
