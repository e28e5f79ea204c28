from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from taskhub.infra.db import Base
from taskhub.shared.clock import utcnow


class TaskQuote(Base):
    __tablename__ = "task_quotes"
    __table_args__ = (
        UniqueConstraint("job_id", "provider_id", name="uq_task_quotes_job_provider"),
        Index("ix_task_quotes_status_deadline", "status", "work_commencement_deadline"),
    )

    quote_id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    job_id: Mapped[str] = mapped_column(
        ForeignKey("jobs.job_id", ondelete="CASCADE"), nullable=False
    )
    provider_id: Mapped[str] = mapped_column(
        ForeignKey("service_providers.provider_id", ondelete="CASCADE"), nullable=False
    )
    quote_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    estimated_hours: Mapped[float | None] = mapped_column(Float)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    tools_provided: Mapped[list | None] = mapped_column(JSON)
    additional_services: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")

    price_approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    price_approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    price_approved_by: Mapped[str | None] = mapped_column(String(36))
    task_reviewed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    task_reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    task_reviewed_by: Mapped[str | None] = mapped_column(String(36))
    customer_details_released: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    customer_details_released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    customer_details_released_by: Mapped[str | None] = mapped_column(String(36))

    work_commencement_deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    work_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    expired_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False,
    )
