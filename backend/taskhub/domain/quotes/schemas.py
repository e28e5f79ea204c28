from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class QuoteStatus(str, Enum):
    PENDING = "pending"
    PRICE_APPROVED = "price_approved"
    TASK_REVIEWED = "task_reviewed"
    CUSTOMER_DETAILS_RELEASED = "customer_details_released"
    EXPIRED = "expired"


class QuoteGate(str, Enum):
    PRICE = "price_approved"
    TASK_REVIEW = "task_reviewed"
    DETAILS_RELEASE = "customer_details_released"


# Gate order; each gate requires every earlier one.
GATE_SEQUENCE: tuple[QuoteGate, ...] = (
    QuoteGate.PRICE,
    QuoteGate.TASK_REVIEW,
    QuoteGate.DETAILS_RELEASE,
)

GATE_STATUS = {
    QuoteGate.PRICE: QuoteStatus.PRICE_APPROVED,
    QuoteGate.TASK_REVIEW: QuoteStatus.TASK_REVIEWED,
    QuoteGate.DETAILS_RELEASE: QuoteStatus.CUSTOMER_DETAILS_RELEASED,
}

QUOTE_TRANSITIONS: dict[QuoteStatus, set[QuoteStatus]] = {
    QuoteStatus.PENDING: {QuoteStatus.PRICE_APPROVED},
    QuoteStatus.PRICE_APPROVED: {QuoteStatus.TASK_REVIEWED},
    QuoteStatus.TASK_REVIEWED: {QuoteStatus.CUSTOMER_DETAILS_RELEASED},
    QuoteStatus.CUSTOMER_DETAILS_RELEASED: {QuoteStatus.EXPIRED},
    QuoteStatus.EXPIRED: set(),
}


class QuoteSubmitRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    quote_amount_cents: int
    message: str = Field(max_length=2000)
    estimated_hours: float | None = Field(None, gt=0, le=1000)
    tools_provided: list[str] | None = None
    additional_services: str | None = Field(None, max_length=2000)


class QuoteResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    quote_id: str
    job_id: str
    provider_id: str
    quote_amount_cents: int
    estimated_hours: float | None = None
    message: str
    tools_provided: list[str] | None = None
    additional_services: str | None = None
    status: QuoteStatus
    price_approved: bool
    price_approved_at: datetime | None = None
    task_reviewed: bool
    task_reviewed_at: datetime | None = None
    customer_details_released: bool
    customer_details_released_at: datetime | None = None
    work_commencement_deadline: datetime | None = None
    work_started_at: datetime | None = None
    created_at: datetime
