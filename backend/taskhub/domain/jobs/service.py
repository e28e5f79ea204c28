from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from taskhub.domain.errors import (
    AuthorizationError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from taskhub.domain.events import DomainEvent, EventBus, EventKind
from taskhub.domain.jobs.db_models import Job
from taskhub.domain.jobs.schemas import (
    JOB_TRANSITIONS,
    JobCreateRequest,
    JobStatus,
    JobUpdateRequest,
    ProviderJobView,
)
from taskhub.domain.users.db_models import UserRole
from taskhub.domain.users.schemas import Principal
from taskhub.domain.users.service import require_role
from taskhub.shared.clock import utcnow
from taskhub.shared.geo import approximate_distance

logger = logging.getLogger(__name__)


def ensure_transition(job: Job, target: JobStatus) -> None:
    current = JobStatus(job.status)
    allowed = JOB_TRANSITIONS[current]
    if not allowed:
        raise StateConflictError(detail=f"Job is already in terminal status: {current.value}")
    if target not in allowed:
        raise StateConflictError(
            detail=f"Cannot transition job from {current.value} to {target.value}"
        )


def _apply_status(job: Job, target: JobStatus) -> None:
    ensure_transition(job, target)
    job.status = target.value
    if target == JobStatus.COMPLETED:
        job.completed_at = utcnow()
    elif target == JobStatus.CANCELLED:
        job.cancelled_at = utcnow()


async def get_job(session: AsyncSession, job_id: str) -> Job:
    job = await session.get(Job, job_id)
    if job is None:
        raise NotFoundError(detail="Job not found")
    return job


async def get_owned_job(session: AsyncSession, actor: Principal, job_id: str) -> Job:
    job = await get_job(session, job_id)
    if job.client_id != actor.user_id:
        raise AuthorizationError(detail="Only the job owner may perform this action")
    return job


async def list_client_jobs(session: AsyncSession, client_id: str) -> list[Job]:
    result = await session.execute(
        select(Job).where(Job.client_id == client_id).order_by(Job.created_at.desc())
    )
    return list(result.scalars().all())


async def create_job(
    session: AsyncSession,
    bus: EventBus,
    client: Principal,
    payload: JobCreateRequest,
) -> Job:
    require_role(client, UserRole.CLIENT)
    errors = []
    for field_name in ("title", "description", "category_id", "location"):
        if not getattr(payload, field_name).strip():
            errors.append({"field": field_name, "message": "must not be blank"})
    if payload.budget_cents <= 0:
        errors.append({"field": "budget_cents", "message": "must be greater than zero"})
    if errors:
        raise ValidationError(detail="Invalid job", errors=errors)

    job = Job(
        client_id=client.user_id,
        category_id=payload.category_id.strip(),
        kind=payload.kind.value,
        title=payload.title.strip(),
        description=payload.description.strip(),
        location=payload.location.strip(),
        latitude=payload.latitude,
        longitude=payload.longitude,
        budget_cents=payload.budget_cents,
        flexible_schedule=payload.flexible_schedule,
        scheduled_date=payload.scheduled_date,
        status=JobStatus.OPEN.value,
    )
    session.add(job)
    await session.flush()
    logger.info(
        "job_created",
        extra={"extra": {"job_id": job.job_id, "kind": job.kind, "category_id": job.category_id}},
    )
    await bus.publish(session, DomainEvent(kind=EventKind.JOB_POSTED, entity_id=job.job_id))
    return job


async def update_job(
    session: AsyncSession,
    actor: Principal,
    job_id: str,
    patch: JobUpdateRequest,
) -> Job:
    job = await get_owned_job(session, actor, job_id)
    changes = patch.model_dump(exclude_unset=True)
    status = changes.pop("status", None)

    if changes:
        if JobStatus(job.status) != JobStatus.OPEN:
            raise StateConflictError(detail="Job details can only be edited while the job is open")
        budget = changes.get("budget_cents")
        if budget is not None and budget <= 0:
            raise ValidationError(
                detail="Invalid job",
                errors=[{"field": "budget_cents", "message": "must be greater than zero"}],
            )
        for field_name, value in changes.items():
            # scheduled_date is the only nullable field; None elsewhere means "unchanged".
            if value is None and field_name != "scheduled_date":
                continue
            setattr(job, field_name, value)

    if status is not None and JobStatus(status) != JobStatus(job.status):
        _apply_status(job, JobStatus(status))

    await session.flush()
    logger.info("job_updated", extra={"extra": {"job_id": job.job_id, "status": job.status}})
    return job


async def cancel_job(session: AsyncSession, actor: Principal, job_id: str) -> Job:
    return await update_job(session, actor, job_id, JobUpdateRequest(status=JobStatus.CANCELLED))


async def advance_job(session: AsyncSession, job: Job, target: JobStatus) -> Job:
    """Move a job forward on behalf of another workflow (quote release, payout)."""
    if JobStatus(job.status) == target:
        return job
    _apply_status(job, target)
    await session.flush()
    logger.info("job_advanced", extra={"extra": {"job_id": job.job_id, "status": job.status}})
    return job


def provider_job_view(job: Job, distance_km: float | None = None) -> ProviderJobView:
    return ProviderJobView(
        job_id=job.job_id,
        category_id=job.category_id,
        kind=job.kind,
        title=job.title,
        description=job.description,
        budget_cents=job.budget_cents,
        flexible_schedule=job.flexible_schedule,
        scheduled_date=job.scheduled_date,
        status=job.status,
        approximate_distance=approximate_distance(distance_km) if distance_km is not None else None,
        has_address=False,
    )
