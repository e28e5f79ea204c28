"""In-process domain event bus.

Services publish a ``DomainEvent`` after each meaningful state transition.
Handlers run in the publisher's session, so whatever they persist commits or
rolls back together with the transition that produced the event.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    JOB_POSTED = "job_posted"
    JOB_MATCHED = "job_matched"
    DOCUMENT_REVIEWED = "document_reviewed"
    SERVICE_REQUEST_CREATED = "service_request_created"
    MEDIATOR_ASSIGNED = "mediator_assigned"
    SERVICE_APPROVED = "service_approved"
    SERVICE_REQUEST_CANCELLED = "service_request_cancelled"
    MEDIATION_SUPERSEDED = "mediation_superseded"
    QUOTE_SUBMITTED = "quote_submitted"
    QUOTE_PRICE_APPROVED = "quote_price_approved"
    QUOTE_TASK_REVIEWED = "quote_task_reviewed"
    CUSTOMER_DETAILS_RELEASED = "customer_details_released"
    WORK_STARTED = "work_started"
    WORK_COMMENCEMENT_EXPIRED = "work_commencement_expired"
    PAYMENT_HELD = "payment_held"
    PAYMENT_FAILED = "payment_failed"
    WORK_SUBMITTED = "work_submitted"
    PAYMENT_RELEASED = "payment_released"
    PAYMENT_REFUNDED = "payment_refunded"


@dataclass(frozen=True)
class DomainEvent:
    kind: EventKind
    entity_id: str
    payload: dict[str, Any] = field(default_factory=dict)


EventHandler = Callable[[AsyncSession, DomainEvent], Awaitable[None]]


class EventBus:
    def __init__(self) -> None:
        self._handlers: dict[EventKind, list[EventHandler]] = defaultdict(list)

    def subscribe(self, kind: EventKind, handler: EventHandler) -> None:
        self._handlers[kind].append(handler)

    def handlers(self, kind: EventKind) -> list[EventHandler]:
        return list(self._handlers.get(kind, ()))

    async def publish(self, session: AsyncSession, event: DomainEvent) -> None:
        handlers = self.handlers(event.kind)
        logger.info(
            "domain_event",
            extra={
                "extra": {
                    "kind": event.kind.value,
                    "entity_id": event.entity_id,
                    "handlers": len(handlers),
                }
            },
        )
        for handler in handlers:
            await handler(session, event)
