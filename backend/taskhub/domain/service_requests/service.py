from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

import sqlalchemy as sa
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
from taskhub.domain.providers.db_models import ServiceProvider
from taskhub.domain.providers.service import get_provider
from taskhub.domain.service_requests.db_models import CallCenterAssignment, ServiceRequest
from taskhub.domain.service_requests.queue import MediatorQueue
from taskhub.domain.service_requests.schemas import (
    DISCLOSED_STATUSES,
    MEDIATION_STATUSES,
    OPEN_ASSIGNMENT_STATUSES,
    REQUEST_TRANSITIONS,
    AssignmentStatus,
    ServiceRequestCreate,
    ServiceRequestStatus,
    ServiceRequestView,
)
from taskhub.domain.users.db_models import User, UserRole
from taskhub.domain.users.schemas import Principal
from taskhub.domain.users.service import get_user, require_role
from taskhub.shared.clock import utcnow

logger = logging.getLogger(__name__)


def ensure_transition(request: ServiceRequest, target: ServiceRequestStatus) -> None:
    current = ServiceRequestStatus(request.status)
    allowed = REQUEST_TRANSITIONS[current]
    if not allowed:
        raise StateConflictError(
            detail=f"Service request is already in terminal status: {current.value}"
        )
    if target not in allowed:
        raise StateConflictError(
            detail=f"Cannot transition service request from {current.value} to {target.value}"
        )


async def advance_request(
    session: AsyncSession, request: ServiceRequest, target: ServiceRequestStatus
) -> ServiceRequest:
    ensure_transition(request, target)
    previous = request.status
    request.status = target.value
    await session.flush()
    logger.info(
        "service_request_transition",
        extra={
            "extra": {
                "request_id": request.request_id,
                "from": previous,
                "to": target.value,
            }
        },
    )
    return request


async def get_request(session: AsyncSession, request_id: str) -> ServiceRequest:
    request = await session.get(ServiceRequest, request_id)
    if request is None:
        raise NotFoundError(detail="Service request not found")
    return request


async def _open_assignment(
    session: AsyncSession, request: ServiceRequest
) -> CallCenterAssignment | None:
    result = await session.execute(
        sa.select(CallCenterAssignment)
        .where(
            CallCenterAssignment.request_id == request.request_id,
            CallCenterAssignment.mediator_id == request.assigned_mediator_id,
            CallCenterAssignment.status.in_([s.value for s in OPEN_ASSIGNMENT_STATUSES]),
        )
        .order_by(CallCenterAssignment.assigned_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _close_assignment(
    session: AsyncSession,
    request: ServiceRequest,
    status: AssignmentStatus,
    notes: str | None = None,
) -> None:
    assignment = await _open_assignment(session, request)
    if assignment is None:
        return
    assignment.status = status.value
    assignment.completed_at = utcnow()
    if notes:
        assignment.notes = notes


async def assign_mediator(
    session: AsyncSession,
    bus: EventBus,
    queue: MediatorQueue,
    request: ServiceRequest,
    *,
    exclude: tuple[str, ...] = (),
) -> CallCenterAssignment | None:
    mediator = await queue.next_mediator(session, exclude=exclude)
    if mediator is None:
        logger.warning(
            "no_mediator_available",
            extra={"extra": {"request_id": request.request_id, "status": request.status}},
        )
        return None
    if request.status == ServiceRequestStatus.PENDING.value:
        ensure_transition(request, ServiceRequestStatus.ASSIGNED_TO_CALL_CENTER)
    assignment = await queue.claim(
        session, request, mediator, expected_mediator_id=request.assigned_mediator_id
    )
    await bus.publish(
        session,
        DomainEvent(
            kind=EventKind.MEDIATOR_ASSIGNED,
            entity_id=request.request_id,
            payload={"mediator_id": mediator.user_id, "assignment_id": assignment.assignment_id},
        ),
    )
    return assignment


async def create_service_request(
    session: AsyncSession,
    bus: EventBus,
    queue: MediatorQueue,
    client: Principal,
    payload: ServiceRequestCreate,
) -> ServiceRequest:
    require_role(client, UserRole.CLIENT)
    if payload.job_id is None and payload.provider_id is None:
        raise ValidationError(detail="A service request needs a job_id or a provider_id")
    job = None
    if payload.job_id is not None:
        job = await jobs_service.get_owned_job(session, client, payload.job_id)
    if payload.provider_id is not None:
        provider = await get_provider(session, payload.provider_id)
        if not provider.is_active:
            raise ValidationError(detail="Service provider is not active")

    request = ServiceRequest(
        job_id=payload.job_id,
        provider_id=payload.provider_id,
        client_id=client.user_id,
        status=ServiceRequestStatus.PENDING.value,
        message=payload.message,
        budget_cents=payload.budget_cents or (job.budget_cents if job else None),
        scheduled_date=payload.scheduled_date or (job.scheduled_date if job else None),
    )
    session.add(request)
    await session.flush()
    logger.info(
        "service_request_created",
        extra={"extra": {"request_id": request.request_id, "job_id": request.job_id}},
    )
    await bus.publish(
        session,
        DomainEvent(kind=EventKind.SERVICE_REQUEST_CREATED, entity_id=request.request_id),
    )
    await assign_mediator(session, bus, queue, request)
    return request


async def _mediated_request(
    session: AsyncSession, mediator: Principal, request_id: str
) -> ServiceRequest:
    require_role(mediator, UserRole.CALL_CENTER)
    request = await get_request(session, request_id)
    if request.assigned_mediator_id != mediator.user_id:
        raise AuthorizationError(detail="Service request is assigned to another mediator")
    return request


async def _attach_provider(
    session: AsyncSession, request: ServiceRequest, provider_id: str | None
) -> None:
    if provider_id is None:
        return
    if request.provider_id is not None and request.provider_id != provider_id:
        raise StateConflictError(detail="Service request already has a matched provider")
    provider = await get_provider(session, provider_id)
    if not provider.is_active:
        raise ValidationError(detail="Service provider is not active")
    request.provider_id = provider.provider_id


async def start_call(
    session: AsyncSession, mediator: Principal, request_id: str
) -> ServiceRequest:
    request = await _mediated_request(session, mediator, request_id)
    if request.status != ServiceRequestStatus.CALLING_PROVIDER.value:
        ensure_transition(request, ServiceRequestStatus.CALLING_PROVIDER)
        request.status = ServiceRequestStatus.CALLING_PROVIDER.value
    assignment = await _open_assignment(session, request)
    if assignment is not None:
        assignment.status = AssignmentStatus.CALLING.value
        assignment.attempts = (assignment.attempts or 0) + 1
        assignment.last_attempt_at = utcnow()
    await session.flush()
    logger.info(
        "call_started",
        extra={
            "extra": {
                "request_id": request.request_id,
                "attempts": assignment.attempts if assignment else None,
            }
        },
    )
    return request


async def record_contact(
    session: AsyncSession,
    mediator: Principal,
    request_id: str,
    *,
    notes: str | None = None,
    provider_id: str | None = None,
) -> ServiceRequest:
    request = await _mediated_request(session, mediator, request_id)
    ensure_transition(request, ServiceRequestStatus.PROVIDER_CONTACTED)
    await _attach_provider(session, request, provider_id)
    request.status = ServiceRequestStatus.PROVIDER_CONTACTED.value
    request.contacted_at = utcnow()
    if notes:
        request.call_notes = notes
    assignment = await _open_assignment(session, request)
    if assignment is not None:
        assignment.status = AssignmentStatus.CONTACTED.value
        assignment.notes = notes or assignment.notes
    await session.flush()
    logger.info("provider_contacted", extra={"extra": {"request_id": request.request_id}})
    return request


async def approve_request(
    session: AsyncSession,
    bus: EventBus,
    mediator: Principal,
    request_id: str,
    *,
    notes: str | None = None,
    provider_id: str | None = None,
) -> ServiceRequest:
    request = await _mediated_request(session, mediator, request_id)
    ensure_transition(request, ServiceRequestStatus.CALL_CENTER_APPROVED)
    await _attach_provider(session, request, provider_id)
    if request.provider_id is None:
        raise ValidationError(detail="A provider must be matched before approval")

    provider = await get_provider(session, request.provider_id)
    client = await get_user(session, request.client_id)
    job = await session.get(Job, request.job_id) if request.job_id else None

    request.status = ServiceRequestStatus.CALL_CENTER_APPROVED.value
    request.approved_at = utcnow()
    if notes:
        request.call_notes = notes
    await _close_assignment(session, request, AssignmentStatus.COMPLETED, notes)
    await session.flush()

    disclosure = build_disclosure(client, job)
    disclosure["request_id"] = request.request_id
    logger.info(
        "service_request_approved",
        extra={"extra": {"request_id": request.request_id, "provider_id": provider.provider_id}},
    )
    await bus.publish(
        session,
        DomainEvent(
            kind=EventKind.SERVICE_APPROVED,
            entity_id=request.request_id,
            payload={
                "provider_user_id": provider.user_id,
                "client_id": request.client_id,
                "disclosure": disclosure,
            },
        ),
    )
    return request


async def cancel_request(
    session: AsyncSession,
    bus: EventBus,
    actor: Principal,
    request_id: str,
    *,
    reason: str | None = None,
) -> ServiceRequest:
    request = await get_request(session, request_id)
    is_owner = request.client_id == actor.user_id
    is_mediator = (
        actor.has_role(UserRole.CALL_CENTER) and request.assigned_mediator_id == actor.user_id
    )
    if not (is_owner or is_mediator or actor.has_role(UserRole.ADMIN)):
        raise AuthorizationError(detail="Not allowed to cancel this service request")
    ensure_transition(request, ServiceRequestStatus.CANCELLED)
    request.status = ServiceRequestStatus.CANCELLED.value
    request.cancel_reason = reason
    await _close_assignment(session, request, AssignmentStatus.CANCELLED, reason)
    await session.flush()

    provider_user_id = None
    if request.provider_id:
        provider = await session.get(ServiceProvider, request.provider_id)
        provider_user_id = provider.user_id if provider else None
    await bus.publish(
        session,
        DomainEvent(
            kind=EventKind.SERVICE_REQUEST_CANCELLED,
            entity_id=request.request_id,
            payload={
                "cancelled_by": actor.user_id,
                "client_id": request.client_id,
                "provider_user_id": provider_user_id,
                "mediator_id": request.assigned_mediator_id,
                "reason": reason,
            },
        ),
    )
    return request


async def accept_for_provider(
    session: AsyncSession, bus: EventBus, job: Job, provider: ServiceProvider
) -> ServiceRequest:
    """Open (or advance) the accepted request backing a released quote.

    A request for the job that is still with the call center is settled by the
    release: its assignment is cancelled and the mediator is told to stop.
    """
    result = await session.execute(
        sa.select(ServiceRequest)
        .where(
            ServiceRequest.job_id == job.job_id,
            sa.or_(
                ServiceRequest.provider_id == provider.provider_id,
                ServiceRequest.provider_id.is_(None),
            ),
            ServiceRequest.status.not_in(
                [
                    ServiceRequestStatus.CANCELLED.value,
                    ServiceRequestStatus.COMPLETED.value,
                    ServiceRequestStatus.DISPUTED_AND_REFUNDED.value,
                ]
            ),
        )
        .order_by(ServiceRequest.created_at.desc())
        .limit(1)
    )
    request = result.scalar_one_or_none()
    if request is None:
        request = ServiceRequest(
            job_id=job.job_id,
            provider_id=provider.provider_id,
            client_id=job.client_id,
            status=ServiceRequestStatus.PENDING.value,
            budget_cents=job.budget_cents,
            scheduled_date=job.scheduled_date,
        )
        session.add(request)
    request.provider_id = provider.provider_id
    await session.flush()
    current = ServiceRequestStatus(request.status)
    if current in MEDIATION_STATUSES:
        mediator_id = request.assigned_mediator_id
        await _close_assignment(
            session, request, AssignmentStatus.CANCELLED, "superseded by quote release"
        )
        request.approved_at = utcnow()
        await advance_request(session, request, ServiceRequestStatus.ACCEPTED)
        await bus.publish(
            session,
            DomainEvent(
                kind=EventKind.MEDIATION_SUPERSEDED,
                entity_id=request.request_id,
                payload={"mediator_id": mediator_id, "job_id": job.job_id},
            ),
        )
    elif current in {ServiceRequestStatus.PENDING, ServiceRequestStatus.CALL_CENTER_APPROVED}:
        await advance_request(session, request, ServiceRequestStatus.ACCEPTED)
    return request


async def list_requests_for(session: AsyncSession, actor: Principal) -> list[ServiceRequest]:
    stmt = sa.select(ServiceRequest)
    if actor.has_role(UserRole.CLIENT):
        stmt = stmt.where(ServiceRequest.client_id == actor.user_id)
    elif actor.has_role(UserRole.CALL_CENTER):
        stmt = stmt.where(ServiceRequest.assigned_mediator_id == actor.user_id)
    elif actor.has_role(UserRole.SERVICE_PROVIDER):
        stmt = stmt.join(
            ServiceProvider, ServiceProvider.provider_id == ServiceRequest.provider_id
        ).where(ServiceProvider.user_id == actor.user_id)
    elif not actor.has_role(UserRole.ADMIN):
        return []
    result = await session.execute(stmt.order_by(ServiceRequest.created_at.desc()))
    return list(result.scalars().all())


async def reassign_stale_assignments(
    session: AsyncSession,
    bus: EventBus,
    queue: MediatorQueue,
    *,
    stale_after: timedelta,
    now: datetime | None = None,
) -> dict[str, int]:
    now = now or utcnow()
    cutoff = now - stale_after
    result = await session.execute(
        sa.select(CallCenterAssignment, ServiceRequest, User)
        .join(ServiceRequest, ServiceRequest.request_id == CallCenterAssignment.request_id)
        .join(User, User.user_id == CallCenterAssignment.mediator_id)
        .where(
            CallCenterAssignment.status.in_([s.value for s in OPEN_ASSIGNMENT_STATUSES]),
            ServiceRequest.status.in_([s.value for s in MEDIATION_STATUSES]),
            ServiceRequest.assigned_mediator_id == CallCenterAssignment.mediator_id,
            sa.or_(CallCenterAssignment.assigned_at < cutoff, User.is_active.is_(False)),
        )
        .order_by(CallCenterAssignment.assigned_at.asc())
    )
    reassigned = 0
    stranded = 0
    for assignment, request, mediator in result.all():
        replacement = await queue.next_mediator(session, exclude=(mediator.user_id,))
        if replacement is None:
            # Nobody else is on shift; the current assignment stays open for the next sweep.
            stranded += 1
            continue
        # Expiry and the new claim land together or not at all.
        savepoint = await session.begin_nested()
        assignment.status = AssignmentStatus.EXPIRED.value
        assignment.completed_at = now
        try:
            new_assignment = await assign_mediator(
                session, bus, queue, request, exclude=(mediator.user_id,)
            )
        except StateConflictError:
            await savepoint.rollback()
            logger.info(
                "stale_reassign_conflict", extra={"extra": {"request_id": request.request_id}}
            )
            continue
        if new_assignment is None:
            await savepoint.rollback()
            stranded += 1
            continue
        await savepoint.commit()
        reassigned += 1

    pending = await session.execute(
        sa.select(ServiceRequest).where(
            ServiceRequest.status == ServiceRequestStatus.PENDING.value,
            ServiceRequest.assigned_mediator_id.is_(None),
        )
    )
    retried = 0
    for request in pending.scalars().all():
        try:
            if await assign_mediator(session, bus, queue, request) is not None:
                retried += 1
        except StateConflictError:
            continue
    await session.flush()
    return {"reassigned": reassigned, "stranded": stranded, "pending_assigned": retried}


def _provider_summary(provider: ServiceProvider, user: User | None) -> dict[str, Any]:
    summary: dict[str, Any] = {
        "provider_id": provider.provider_id,
        "business_name": provider.business_name,
    }
    if user is not None:
        summary.update({"name": user.display_name, "phone": user.phone, "email": user.email})
    return summary


async def client_request_view(session: AsyncSession, request: ServiceRequest) -> ServiceRequestView:
    view = ServiceRequestView(
        request_id=request.request_id,
        job_id=request.job_id,
        status=request.status,
        message=request.message,
        budget_cents=request.budget_cents,
        scheduled_date=request.scheduled_date,
        created_at=request.created_at,
    )
    if ServiceRequestStatus(request.status) in DISCLOSED_STATUSES and request.provider_id:
        provider = await session.get(ServiceProvider, request.provider_id)
        if provider is not None:
            user = await session.get(User, provider.user_id)
            view.provider_id = provider.provider_id
            view.provider = _provider_summary(provider, user)
    return view


async def provider_request_view(
    session: AsyncSession, request: ServiceRequest
) -> ServiceRequestView:
    view = ServiceRequestView(
        request_id=request.request_id,
        job_id=request.job_id,
        status=request.status,
        message=request.message,
        budget_cents=request.budget_cents,
        scheduled_date=request.scheduled_date,
        created_at=request.created_at,
        provider_id=request.provider_id,
    )
    if ServiceRequestStatus(request.status) in DISCLOSED_STATUSES:
        client = await get_user(session, request.client_id)
        job = await session.get(Job, request.job_id) if request.job_id else None
        disclosure = build_disclosure(client, job)
        view.client = disclosure["client_info"]
        view.task_details = disclosure["task_details"]
        view.has_address = True
    return view


async def request_view_for(
    session: AsyncSession, actor: Principal, request: ServiceRequest
) -> ServiceRequestView:
    if actor.user_id == request.client_id:
        return await client_request_view(session, request)
    if actor.has_role(UserRole.SERVICE_PROVIDER) and request.provider_id:
        provider = await session.get(ServiceProvider, request.provider_id)
        if provider is not None and provider.user_id == actor.user_id:
            return await provider_request_view(session, request)
    if actor.has_role(UserRole.ADMIN) or (
        actor.has_role(UserRole.CALL_CENTER) and request.assigned_mediator_id == actor.user_id
    ):
        # Mediators work the phones; they see both sides.
        view = await provider_request_view(session, request)
        client = await get_user(session, request.client_id)
        job = await session.get(Job, request.job_id) if request.job_id else None
        disclosure = build_disclosure(client, job)
        view.client = disclosure["client_info"]
        view.task_details = disclosure["task_details"]
        view.has_address = True
        return view
    raise AuthorizationError(detail="Not allowed to view this service request")
