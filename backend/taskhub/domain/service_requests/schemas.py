from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ServiceRequestStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED_TO_CALL_CENTER = "assigned_to_call_center"
    CALLING_PROVIDER = "calling_provider"
    PROVIDER_CONTACTED = "provider_contacted"
    CALL_CENTER_APPROVED = "call_center_approved"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DISPUTED_AND_REFUNDED = "disputed_and_refunded"
    CANCELLED = "cancelled"


class AssignmentStatus(str, Enum):
    ASSIGNED = "assigned"
    CALLING = "calling"
    CONTACTED = "contacted"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


S = ServiceRequestStatus

REQUEST_TRANSITIONS: dict[ServiceRequestStatus, set[ServiceRequestStatus]] = {
    S.PENDING: {S.ASSIGNED_TO_CALL_CENTER, S.ACCEPTED, S.CANCELLED},
    # A released quote is its own disclosure gate, so it settles a request still in mediation.
    S.ASSIGNED_TO_CALL_CENTER: {S.CALLING_PROVIDER, S.CALL_CENTER_APPROVED, S.ACCEPTED, S.CANCELLED},
    S.CALLING_PROVIDER: {S.PROVIDER_CONTACTED, S.CALL_CENTER_APPROVED, S.ACCEPTED, S.CANCELLED},
    S.PROVIDER_CONTACTED: {S.CALL_CENTER_APPROVED, S.ACCEPTED, S.CANCELLED},
    S.CALL_CENTER_APPROVED: {S.ACCEPTED, S.IN_PROGRESS, S.CANCELLED},
    S.ACCEPTED: {S.IN_PROGRESS, S.CANCELLED},
    S.IN_PROGRESS: {S.COMPLETED, S.DISPUTED_AND_REFUNDED},
    S.COMPLETED: set(),
    S.DISPUTED_AND_REFUNDED: set(),
    S.CANCELLED: set(),
}

# Statuses in which the counter-party's identity and contact data are visible.
DISCLOSED_STATUSES = {
    S.CALL_CENTER_APPROVED,
    S.ACCEPTED,
    S.IN_PROGRESS,
    S.COMPLETED,
    S.DISPUTED_AND_REFUNDED,
}

MEDIATION_STATUSES = {S.ASSIGNED_TO_CALL_CENTER, S.CALLING_PROVIDER, S.PROVIDER_CONTACTED}

OPEN_ASSIGNMENT_STATUSES = {
    AssignmentStatus.ASSIGNED,
    AssignmentStatus.CALLING,
    AssignmentStatus.CONTACTED,
}


class ServiceRequestCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    job_id: str | None = None
    provider_id: str | None = None
    message: str | None = Field(None, max_length=2000)
    budget_cents: int | None = Field(None, gt=0)
    scheduled_date: datetime | None = None


class CallNotesRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    notes: str | None = Field(None, max_length=2000)
    provider_id: str | None = None


class CancelRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reason: str | None = Field(None, max_length=500)


class ServiceRequestView(BaseModel):
    request_id: str
    job_id: str | None = None
    status: ServiceRequestStatus
    message: str | None = None
    budget_cents: int | None = None
    scheduled_date: datetime | None = None
    created_at: datetime | None = None
    provider_id: str | None = None
    provider: dict[str, Any] | None = None
    client: dict[str, Any] | None = None
    task_details: dict[str, Any] | None = None
    has_address: bool = False
