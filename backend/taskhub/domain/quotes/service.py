"""Three-gate quote approval.

A provider's quote must clear price approval, then task review, then the
customer-detail release, in that order and only at the hands of the client who
owns the job. The release is the second disclosure gate (next to call-center
approval): it attaches the client's contact bundle to the provider
notification and starts the work-commencement clock.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from taskhub.domain.disclosure import build_disclosure
from taskhub.domain.errors import (
    AuthorizationError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from taskhub.domain.events import DomainEvent, EventBus, EventKind
from taskhub.domain.jobs import service as jobs_service
from taskhub.domain.jobs.db_models import Job
from taskhub.domain.jobs.schemas import JobStatus
from taskhub.domain.providers.db_models import ServiceProvider
from taskhub.domain.providers.service import (
    get_provider,
    get_provider_for_user,
    is_fully_verified,
)
from taskhub.domain.quotes.db_models import TaskQuote
from taskhub.domain.quotes.schemas import (
    GATE_SEQUENCE,
    GATE_STATUS,
    QUOTE_TRANSITIONS,
    QuoteGate,
    QuoteStatus,
    QuoteSubmitRequest,
)
from taskhub.domain.service_requests import service as requests_service
from taskhub.domain.users.db_models import UserRole
from taskhub.domain.users.schemas import Principal
from taskhub.domain.users.service import get_user, require_role
from taskhub.settings import settings
from taskhub.shared.clock import ensure_aware, utcnow

logger = logging.getLogger(__name__)

MIN_MESSAGE_LENGTH = 10

GATE_EVENTS = {
    QuoteGate.PRICE: EventKind.QUOTE_PRICE_APPROVED,
    QuoteGate.TASK_REVIEW: EventKind.QUOTE_TASK_REVIEWED,
    QuoteGate.DETAILS_RELEASE: EventKind.CUSTOMER_DETAILS_RELEASED,
}


def assert_gate_order(quote: TaskQuote) -> None:
    """Raise if a later gate is set while an earlier one is not."""
    earlier_cleared = True
    for gate in GATE_SEQUENCE:
        cleared = bool(getattr(quote, gate.value))
        if cleared and not earlier_cleared:
            raise StateConflictError(
                detail=f"Quote gate {gate.value} is set before an earlier gate"
            )
        earlier_cleared = cleared


def ensure_transition(quote: TaskQuote, target: QuoteStatus) -> None:
    current = QuoteStatus(quote.status)
    if target not in QUOTE_TRANSITIONS[current]:
        raise StateConflictError(
            detail=f"Cannot transition quote from {current.value} to {target.value}"
        )


async def get_quote(session: AsyncSession, quote_id: str) -> TaskQuote:
    quote = await session.get(TaskQuote, quote_id)
    if quote is None:
        raise NotFoundError(detail="Quote not found")
    return quote


async def list_quotes_for_job(
    session: AsyncSession, actor: Principal, job_id: str
) -> list[TaskQuote]:
    job = await jobs_service.get_owned_job(session, actor, job_id)
    result = await session.execute(
        sa.select(TaskQuote)
        .where(TaskQuote.job_id == job.job_id)
        .order_by(TaskQuote.created_at.asc())
    )
    return list(result.scalars().all())


async def list_quotes_for_provider(session: AsyncSession, actor: Principal) -> list[TaskQuote]:
    require_role(actor, UserRole.SERVICE_PROVIDER)
    provider = await get_provider_for_user(session, actor.user_id)
    result = await session.execute(
        sa.select(TaskQuote)
        .where(TaskQuote.provider_id == provider.provider_id)
        .order_by(TaskQuote.created_at.desc())
    )
    return list(result.scalars().all())


async def submit_quote(
    session: AsyncSession,
    bus: EventBus,
    provider_principal: Principal,
    job_id: str,
    payload: QuoteSubmitRequest,
) -> TaskQuote:
    require_role(provider_principal, UserRole.SERVICE_PROVIDER)
    provider = await get_provider_for_user(session, provider_principal.user_id)
    if not provider.is_active or not await is_fully_verified(session, provider.provider_id):
        raise AuthorizationError(detail="Only fully verified providers may submit quotes")

    errors = []
    if payload.quote_amount_cents <= 0:
        errors.append({"field": "quote_amount_cents", "message": "must be greater than zero"})
    if len(payload.message.strip()) < MIN_MESSAGE_LENGTH:
        errors.append(
            {"field": "message", "message": f"must be at least {MIN_MESSAGE_LENGTH} characters"}
        )
    if errors:
        raise ValidationError(detail="Invalid quote", errors=errors)

    job = await jobs_service.get_job(session, job_id)
    if JobStatus(job.status) != JobStatus.OPEN:
        raise StateConflictError(detail="Quotes can only be submitted for open jobs")
    if job.client_id == provider.user_id:
        raise ValidationError(detail="Providers cannot quote on their own jobs")

    existing = await session.execute(
        sa.select(TaskQuote.quote_id).where(
            TaskQuote.job_id == job.job_id, TaskQuote.provider_id == provider.provider_id
        )
    )
    if existing.scalar_one_or_none() is not None:
        raise StateConflictError(detail="A quote from this provider already exists for the job")

    quote = TaskQuote(
        job_id=job.job_id,
        provider_id=provider.provider_id,
        quote_amount_cents=payload.quote_amount_cents,
        estimated_hours=payload.estimated_hours,
        message=payload.message.strip(),
        tools_provided=payload.tools_provided,
        additional_services=payload.additional_services,
        status=QuoteStatus.PENDING.value,
    )
    savepoint = await session.begin_nested()
    try:
        session.add(quote)
        await session.flush()
    except IntegrityError as exc:
        await savepoint.rollback()
        raise StateConflictError(
            detail="A quote from this provider already exists for the job"
        ) from exc
    else:
        await savepoint.commit()

    logger.info(
        "quote_submitted",
        extra={
            "extra": {
                "quote_id": quote.quote_id,
                "job_id": job.job_id,
                "provider_id": provider.provider_id,
                "amount_cents": quote.quote_amount_cents,
            }
        },
    )
    await bus.publish(
        session,
        DomainEvent(
            kind=EventKind.QUOTE_SUBMITTED,
            entity_id=quote.quote_id,
            payload={
                "client_id": job.client_id,
                "job_id": job.job_id,
                "job_title": job.title,
                "provider_name": provider.business_name,
                "quote_amount_cents": quote.quote_amount_cents,
            },
        ),
    )
    return quote


async def _owned_quote(
    session: AsyncSession, client: Principal, quote_id: str
) -> tuple[TaskQuote, Job]:
    quote = await get_quote(session, quote_id)
    job = await jobs_service.get_job(session, quote.job_id)
    if job.client_id != client.user_id:
        raise AuthorizationError(detail="Only the job owner may approve this quote")
    return quote, job


def _check_gate(quote: TaskQuote, gate: QuoteGate) -> None:
    assert_gate_order(quote)
    if QuoteStatus(quote.status) == QuoteStatus.EXPIRED:
        raise StateConflictError(detail="Quote has expired")
    if getattr(quote, gate.value):
        raise StateConflictError(detail=f"Quote gate {gate.value} is already cleared")
    position = GATE_SEQUENCE.index(gate)
    for earlier in GATE_SEQUENCE[:position]:
        if not getattr(quote, earlier.value):
            raise StateConflictError(
                detail=f"Quote gate {gate.value} requires {earlier.value} first"
            )
    ensure_transition(quote, GATE_STATUS[gate])


def _mark_gate(quote: TaskQuote, gate: QuoteGate, actor: Principal, now: datetime) -> None:
    setattr(quote, gate.value, True)
    setattr(quote, f"{gate.value}_at", now)
    setattr(quote, f"{gate.value}_by", actor.user_id)
    quote.status = GATE_STATUS[gate].value
    assert_gate_order(quote)


async def _clear_gate(
    session: AsyncSession,
    client: Principal,
    quote_id: str,
    gate: QuoteGate,
) -> tuple[TaskQuote, Job, ServiceProvider]:
    quote, job = await _owned_quote(session, client, quote_id)
    _check_gate(quote, gate)
    provider = await get_provider(session, quote.provider_id)
    _mark_gate(quote, gate, client, utcnow())
    await session.flush()
    logger.info(
        "quote_gate_cleared",
        extra={"extra": {"quote_id": quote.quote_id, "gate": gate.value, "job_id": job.job_id}},
    )
    return quote, job, provider


async def approve_price(
    session: AsyncSession, bus: EventBus, client: Principal, quote_id: str
) -> TaskQuote:
    quote, job, provider = await _clear_gate(session, client, quote_id, QuoteGate.PRICE)
    await bus.publish(
        session,
        DomainEvent(
            kind=GATE_EVENTS[QuoteGate.PRICE],
            entity_id=quote.quote_id,
            payload={
                "provider_user_id": provider.user_id,
                "job_id": job.job_id,
                "job_title": job.title,
                "quote_amount_cents": quote.quote_amount_cents,
            },
        ),
    )
    return quote


async def approve_task_review(
    session: AsyncSession, bus: EventBus, client: Principal, quote_id: str
) -> TaskQuote:
    quote, job, provider = await _clear_gate(session, client, quote_id, QuoteGate.TASK_REVIEW)
    await bus.publish(
        session,
        DomainEvent(
            kind=GATE_EVENTS[QuoteGate.TASK_REVIEW],
            entity_id=quote.quote_id,
            payload={
                "provider_user_id": provider.user_id,
                "job_id": job.job_id,
                "job_title": job.title,
            },
        ),
    )
    return quote


async def release_customer_details(
    session: AsyncSession,
    bus: EventBus,
    client: Principal,
    quote_id: str,
    *,
    window_hours: int | None = None,
) -> TaskQuote:
    quote, job = await _owned_quote(session, client, quote_id)
    _check_gate(quote, QuoteGate.DETAILS_RELEASE)
    if JobStatus(job.status) != JobStatus.OPEN:
        raise StateConflictError(detail="Job has already been assigned to a provider")

    provider = await get_provider(session, quote.provider_id)
    client_user = await get_user(session, job.client_id)
    now = utcnow()
    hours = window_hours if window_hours is not None else settings.work_commencement_window_hours

    _mark_gate(quote, QuoteGate.DETAILS_RELEASE, client, now)
    quote.work_commencement_deadline = now + timedelta(hours=hours)
    await jobs_service.advance_job(session, job, JobStatus.ASSIGNED)
    request = await requests_service.accept_for_provider(session, bus, job, provider)
    await session.flush()

    disclosure = build_disclosure(client_user, job)
    disclosure["quote_id"] = quote.quote_id
    disclosure["request_id"] = request.request_id
    disclosure["work_commencement_deadline"] = quote.work_commencement_deadline.isoformat()
    logger.info(
        "customer_details_released",
        extra={
            "extra": {
                "quote_id": quote.quote_id,
                "job_id": job.job_id,
                "request_id": request.request_id,
                "provider_id": provider.provider_id,
            }
        },
    )
    await bus.publish(
        session,
        DomainEvent(
            kind=GATE_EVENTS[QuoteGate.DETAILS_RELEASE],
            entity_id=quote.quote_id,
            payload={
                "provider_user_id": provider.user_id,
                "client_id": job.client_id,
                "window_hours": hours,
                "disclosure": disclosure,
            },
        ),
    )
    return quote


async def start_work(
    session: AsyncSession, bus: EventBus, provider_principal: Principal, quote_id: str
) -> TaskQuote:
    require_role(provider_principal, UserRole.SERVICE_PROVIDER)
    quote = await get_quote(session, quote_id)
    provider = await get_provider(session, quote.provider_id)
    if provider.user_id != provider_principal.user_id:
        raise AuthorizationError(detail="Only the quoting provider may start this work")
    if QuoteStatus(quote.status) != QuoteStatus.CUSTOMER_DETAILS_RELEASED:
        raise StateConflictError(detail=f"Cannot start work on a quote in status {quote.status}")
    if quote.work_started_at is not None:
        raise StateConflictError(detail="Work has already started")
    now = utcnow()
    deadline = ensure_aware(quote.work_commencement_deadline)
    if deadline is not None and now > deadline:
        raise StateConflictError(detail="Work commencement deadline has passed")

    job = await jobs_service.get_job(session, quote.job_id)
    quote.work_started_at = now
    await jobs_service.advance_job(session, job, JobStatus.IN_PROGRESS)
    await session.flush()
    logger.info(
        "work_started",
        extra={"extra": {"quote_id": quote.quote_id, "job_id": job.job_id}},
    )
    await bus.publish(
        session,
        DomainEvent(
            kind=EventKind.WORK_STARTED,
            entity_id=quote.quote_id,
            payload={"client_id": job.client_id, "job_id": job.job_id, "job_title": job.title},
        ),
    )
    return quote


async def expire_overdue_quotes(
    session: AsyncSession, bus: EventBus, now: datetime | None = None
) -> int:
    now = now or utcnow()
    result = await session.execute(
        sa.select(TaskQuote, Job, ServiceProvider)
        .join(Job, Job.job_id == TaskQuote.job_id)
        .join(ServiceProvider, ServiceProvider.provider_id == TaskQuote.provider_id)
        .where(
            TaskQuote.status == QuoteStatus.CUSTOMER_DETAILS_RELEASED.value,
            TaskQuote.work_started_at.is_(None),
            TaskQuote.work_commencement_deadline.is_not(None),
            TaskQuote.work_commencement_deadline < now,
        )
        .order_by(TaskQuote.work_commencement_deadline.asc())
    )
    expired = 0
    for quote, job, provider in result.all():
        ensure_transition(quote, QuoteStatus.EXPIRED)
        quote.status = QuoteStatus.EXPIRED.value
        quote.expired_at = now
        await session.flush()
        expired += 1
        logger.warning(
            "work_commencement_expired",
            extra={"extra": {"quote_id": quote.quote_id, "job_id": job.job_id}},
        )
        await bus.publish(
            session,
            DomainEvent(
                kind=EventKind.WORK_COMMENCEMENT_EXPIRED,
                entity_id=quote.quote_id,
                payload={
                    "client_id": job.client_id,
                    "provider_user_id": provider.user_id,
                    "job_id": job.job_id,
                    "job_title": job.title,
                },
            ),
        )
    return expired
