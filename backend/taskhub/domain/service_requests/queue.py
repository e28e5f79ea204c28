from __future__ import annotations

import logging
from typing import Iterable, Protocol

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from taskhub.domain.errors import StateConflictError
from taskhub.domain.service_requests.db_models import CallCenterAssignment, ServiceRequest
from taskhub.domain.service_requests.schemas import AssignmentStatus, ServiceRequestStatus
from taskhub.domain.users.db_models import User, UserRole
from taskhub.shared.clock import utcnow

logger = logging.getLogger(__name__)


class MediatorQueue(Protocol):
    async def next_mediator(
        self, session: AsyncSession, *, exclude: Iterable[str] = ()
    ) -> User | None: ...

    async def claim(
        self,
        session: AsyncSession,
        request: ServiceRequest,
        mediator: User,
        *,
        expected_mediator_id: str | None,
    ) -> CallCenterAssignment: ...


class RoundRobinMediatorQueue:
    """Hands requests to the active mediator who was assigned least recently.

    ``claim`` is a compare-and-swap on the request row: it only succeeds while
    the request still has the mediator the caller saw, so two workers cannot
    both assign the same request.
    """

    async def next_mediator(
        self, session: AsyncSession, *, exclude: Iterable[str] = ()
    ) -> User | None:
        excluded = list(exclude)
        stmt = sa.select(User).where(
            User.role == UserRole.CALL_CENTER.value,
            User.is_active.is_(True),
        )
        if excluded:
            stmt = stmt.where(User.user_id.not_in(excluded))
        stmt = stmt.order_by(
            User.last_assigned_at.is_not(None),
            User.last_assigned_at.asc(),
            User.user_id.asc(),
        ).limit(1)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def claim(
        self,
        session: AsyncSession,
        request: ServiceRequest,
        mediator: User,
        *,
        expected_mediator_id: str | None,
    ) -> CallCenterAssignment:
        now = utcnow()
        current_status = request.status
        if current_status == ServiceRequestStatus.PENDING.value:
            target_status = ServiceRequestStatus.ASSIGNED_TO_CALL_CENTER.value
        else:
            target_status = current_status

        mediator_clause = (
            ServiceRequest.assigned_mediator_id.is_(None)
            if expected_mediator_id is None
            else ServiceRequest.assigned_mediator_id == expected_mediator_id
        )
        result = await session.execute(
            sa.update(ServiceRequest)
            .where(
                ServiceRequest.request_id == request.request_id,
                ServiceRequest.status == current_status,
                mediator_clause,
            )
            .values(
                status=target_status,
                assigned_mediator_id=mediator.user_id,
                assigned_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount != 1:
            raise StateConflictError(detail="Service request was assigned concurrently")

        mediator.last_assigned_at = now
        assignment = CallCenterAssignment(
            request_id=request.request_id,
            mediator_id=mediator.user_id,
            status=AssignmentStatus.ASSIGNED.value,
            attempts=0,
            assigned_at=now,
        )
        session.add(assignment)
        await session.flush()
        logger.info(
            "mediator_assigned",
            extra={
                "extra": {
                    "request_id": request.request_id,
                    "mediator_id": mediator.user_id,
                    "previous_mediator_id": expected_mediator_id,
                }
            },
        )
        return assignment
