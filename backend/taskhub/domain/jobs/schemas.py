from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class JobStatus(str, Enum):
    OPEN = "open"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class JobKind(str, Enum):
    TASK = "task"
    WORK_ORDER = "work_order"


JOB_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.OPEN: {JobStatus.ASSIGNED, JobStatus.CANCELLED},
    JobStatus.ASSIGNED: {JobStatus.IN_PROGRESS, JobStatus.CANCELLED},
    JobStatus.IN_PROGRESS: {JobStatus.COMPLETED, JobStatus.CANCELLED},
    JobStatus.COMPLETED: set(),
    JobStatus.CANCELLED: set(),
}


class JobCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    category_id: str = Field(min_length=1, max_length=64)
    kind: JobKind = JobKind.TASK
    title: str = Field(min_length=1, max_length=255)
    description: str = Field(min_length=1)
    location: str = Field(min_length=1, max_length=500)
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    budget_cents: int
    flexible_schedule: bool = False
    scheduled_date: datetime | None = None


class JobUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str | None = Field(None, min_length=1, max_length=255)
    description: str | None = Field(None, min_length=1)
    budget_cents: int | None = None
    flexible_schedule: bool | None = None
    scheduled_date: datetime | None = None
    status: JobStatus | None = None


class JobResponse(BaseModel):
    """Owner-facing view; includes the exact location."""

    model_config = ConfigDict(from_attributes=True)

    job_id: str
    client_id: str
    category_id: str
    kind: JobKind
    title: str
    description: str
    location: str
    latitude: float
    longitude: float
    budget_cents: int
    flexible_schedule: bool
    scheduled_date: datetime | None = None
    status: JobStatus
    created_at: datetime


class ProviderJobView(BaseModel):
    """What a provider may see before any disclosure gate has cleared."""

    job_id: str
    category_id: str
    kind: JobKind
    title: str
    description: str
    budget_cents: int
    flexible_schedule: bool
    scheduled_date: datetime | None = None
    status: JobStatus
    approximate_distance: str | None = None
    has_address: bool = False
