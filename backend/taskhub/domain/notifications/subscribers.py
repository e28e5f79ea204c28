"""Translate domain events into persisted notifications.

Provider-facing payloads carry address or contact data only for the two
disclosure events (``service_approved`` and ``customer_details_released``).
"""

from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from taskhub.domain.events import DomainEvent, EventBus, EventKind
from taskhub.domain.notifications.service import NotificationDispatcher
from taskhub.domain.providers.db_models import DocumentType
from taskhub.domain.users.db_models import UserRole
from taskhub.domain.users.service import list_active_users


def _money(cents: int | None) -> str:
    return f"${(cents or 0) / 100:,.2f}"


def register(bus: EventBus, dispatcher: NotificationDispatcher) -> None:
    async def notify(
        session: AsyncSession,
        user_id: str | None,
        type: str,
        title: str,
        message: str,
        payload: dict[str, Any] | None = None,
    ) -> None:
        if not user_id:
            return
        await dispatcher.notify(
            session, user_id=user_id, type=type, title=title, message=message, payload=payload
        )

    async def on_job_matched(session: AsyncSession, event: DomainEvent) -> None:
        match = event.payload["match"]
        await notify(
            session,
            event.payload["provider_user_id"],
            "task_posted",
            "New job near you",
            f"{match['title']} ({match['distance']})",
            match,
        )

    async def on_document_reviewed(session: AsyncSession, event: DomainEvent) -> None:
        status = event.payload["status"]
        label = DocumentType(event.payload["document_type"]).value
        message = f"Your {label} document was {status}."
        if event.payload.get("notes"):
            message = f"{message} Notes: {event.payload['notes']}"
        await notify(
            session,
            event.payload["provider_user_id"],
            "document_verification",
            "Document review complete",
            message,
            {
                "document_id": event.entity_id,
                "document_type": event.payload["document_type"],
                "status": status,
            },
        )

    async def on_mediator_assigned(session: AsyncSession, event: DomainEvent) -> None:
        await notify(
            session,
            event.payload["mediator_id"],
            "call_center_assignment",
            "New service request assigned",
            "A service request is waiting for your call.",
            {"request_id": event.entity_id, "assignment_id": event.payload["assignment_id"]},
        )

    async def on_service_approved(session: AsyncSession, event: DomainEvent) -> None:
        disclosure = event.payload["disclosure"]
        await notify(
            session,
            event.payload["provider_user_id"],
            "service_approved",
            "Service request approved",
            "The call center approved this request. Client contact details are attached.",
            disclosure,
        )
        await notify(
            session,
            event.payload["client_id"],
            "service_approved",
            "Provider confirmed",
            "The call center confirmed a provider for your request.",
            {"request_id": event.entity_id},
        )

    async def on_request_cancelled(session: AsyncSession, event: DomainEvent) -> None:
        payload = {"request_id": event.entity_id, "reason": event.payload.get("reason")}
        cancelled_by = event.payload["cancelled_by"]
        recipients = [
            event.payload.get("client_id"),
            event.payload.get("provider_user_id"),
            event.payload.get("mediator_id"),
        ]
        for user_id in dict.fromkeys(r for r in recipients if r and r != cancelled_by):
            await notify(
                session,
                user_id,
                "service_request_cancelled",
                "Service request cancelled",
                "A service request you are involved in was cancelled.",
                payload,
            )

    async def on_mediation_superseded(session: AsyncSession, event: DomainEvent) -> None:
        await notify(
            session,
            event.payload["mediator_id"],
            "mediation_superseded",
            "No call needed",
            "The client released their details to a provider directly. "
            "This request is settled and needs no further calls.",
            {"request_id": event.entity_id, "job_id": event.payload["job_id"]},
        )

    async def on_quote_submitted(session: AsyncSession, event: DomainEvent) -> None:
        amount = _money(event.payload["quote_amount_cents"])
        await notify(
            session,
            event.payload["client_id"],
            "quote_submitted",
            "New quote received",
            f"{event.payload.get('provider_name') or 'A provider'} quoted {amount} "
            f"for {event.payload['job_title']}.",
            {
                "quote_id": event.entity_id,
                "job_id": event.payload["job_id"],
                "quote_amount_cents": event.payload["quote_amount_cents"],
            },
        )

    async def on_price_approved(session: AsyncSession, event: DomainEvent) -> None:
        await notify(
            session,
            event.payload["provider_user_id"],
            "price_approved",
            "Quote price accepted",
            "The client accepted your price. Work is not authorized until the client "
            "releases their details.",
            {"quote_id": event.entity_id, "job_id": event.payload["job_id"], "has_address": False},
        )

    async def on_task_reviewed(session: AsyncSession, event: DomainEvent) -> None:
        await notify(
            session,
            event.payload["provider_user_id"],
            "task_reviewed",
            "Task plan approved",
            f"The client approved the plan for {event.payload['job_title']}.",
            {"quote_id": event.entity_id, "job_id": event.payload["job_id"], "has_address": False},
        )

    async def on_details_released(session: AsyncSession, event: DomainEvent) -> None:
        hours = event.payload["window_hours"]
        await notify(
            session,
            event.payload["provider_user_id"],
            "customer_details_released",
            "Client details released",
            f"You must start the work within {hours} hours. Client contact details are attached.",
            event.payload["disclosure"],
        )

    async def on_work_started(session: AsyncSession, event: DomainEvent) -> None:
        await notify(
            session,
            event.payload["client_id"],
            "work_started",
            "Work has started",
            f"Your provider started work on {event.payload['job_title']}.",
            {"quote_id": event.entity_id, "job_id": event.payload["job_id"]},
        )

    async def on_commencement_expired(session: AsyncSession, event: DomainEvent) -> None:
        payload = {"quote_id": event.entity_id, "job_id": event.payload["job_id"]}
        await notify(
            session,
            event.payload["client_id"],
            "work_commencement_expired",
            "Provider did not start on time",
            f"Work on {event.payload['job_title']} did not start within the agreed window.",
            payload,
        )
        await notify(
            session,
            event.payload["provider_user_id"],
            "work_commencement_expired",
            "Commencement window missed",
            f"The start window for {event.payload['job_title']} has passed.",
            payload,
        )
        admins = await list_active_users(session, UserRole.ADMIN)
        await dispatcher.notify_many(
            session,
            user_ids=[admin.user_id for admin in admins],
            type="work_commencement_expired",
            title="Quote expired without commencement",
            message=f"Job {event.payload['job_id']} needs follow-up.",
            payload=payload,
        )

    async def on_payment_held(session: AsyncSession, event: DomainEvent) -> None:
        payload = {"payment_id": event.entity_id, "request_id": event.payload["request_id"]}
        await notify(
            session,
            event.payload["provider_user_id"],
            "payment_held",
            "Payment secured",
            f"{_money(event.payload['payout_amount_cents'])} is held in escrow for this job.",
            payload,
        )
        await notify(
            session,
            event.payload["client_id"],
            "payment_held",
            "Payment confirmed",
            f"Your payment of {_money(event.payload['amount_cents'])} is held in escrow.",
            payload,
        )

    async def on_payment_failed(session: AsyncSession, event: DomainEvent) -> None:
        await notify(
            session,
            event.payload["client_id"],
            "payment_failed",
            "Payment failed",
            "Your payment could not be completed. Please try another payment method.",
            {"payment_id": event.entity_id, "request_id": event.payload["request_id"]},
        )

    async def on_work_submitted(session: AsyncSession, event: DomainEvent) -> None:
        payload = {
            "payment_id": event.entity_id,
            "request_id": event.payload["request_id"],
            "photo_count": event.payload["photo_count"],
        }
        approvers = await list_active_users(session, UserRole.PAYMENT_APPROVER)
        await dispatcher.notify_many(
            session,
            user_ids=[approver.user_id for approver in approvers],
            type="work_submitted",
            title="Payment awaiting approval",
            message=f"Completed work is ready for review "
            f"({_money(event.payload['payout_amount_cents'])} payout).",
            payload=payload,
        )
        await notify(
            session,
            event.payload["client_id"],
            "work_submitted",
            "Work submitted",
            "Your provider submitted the completed work for approval.",
            payload,
        )

    async def on_payment_released(session: AsyncSession, event: DomainEvent) -> None:
        payload = {"payment_id": event.entity_id, "request_id": event.payload["request_id"]}
        await notify(
            session,
            event.payload["provider_user_id"],
            "payment_released",
            "Payment released",
            f"{_money(event.payload['payout_amount_cents'])} is on its way to your account.",
            payload,
        )
        await notify(
            session,
            event.payload["client_id"],
            "payment_released",
            "Job completed",
            "The work was approved and the provider has been paid.",
            payload,
        )

    async def on_payment_refunded(session: AsyncSession, event: DomainEvent) -> None:
        payload = {
            "payment_id": event.entity_id,
            "request_id": event.payload["request_id"],
            "reason": event.payload["reason"],
        }
        await notify(
            session,
            event.payload["client_id"],
            "payment_refunded",
            "Payment refunded",
            f"{_money(event.payload['total_amount_cents'])} was refunded to you.",
            payload,
        )
        await notify(
            session,
            event.payload["provider_user_id"],
            "payment_refunded",
            "Payment rejected",
            f"The completed work was not approved: {event.payload['reason']}",
            payload,
        )

    bus.subscribe(EventKind.JOB_MATCHED, on_job_matched)
    bus.subscribe(EventKind.DOCUMENT_REVIEWED, on_document_reviewed)
    bus.subscribe(EventKind.MEDIATOR_ASSIGNED, on_mediator_assigned)
    bus.subscribe(EventKind.SERVICE_APPROVED, on_service_approved)
    bus.subscribe(EventKind.SERVICE_REQUEST_CANCELLED, on_request_cancelled)
    bus.subscribe(EventKind.MEDIATION_SUPERSEDED, on_mediation_superseded)
    bus.subscribe(EventKind.QUOTE_SUBMITTED, on_quote_submitted)
    bus.subscribe(EventKind.QUOTE_PRICE_APPROVED, on_price_approved)
    bus.subscribe(EventKind.QUOTE_TASK_REVIEWED, on_task_reviewed)
    bus.subscribe(EventKind.CUSTOMER_DETAILS_RELEASED, on_details_released)
    bus.subscribe(EventKind.WORK_STARTED, on_work_started)
    bus.subscribe(EventKind.WORK_COMMENCEMENT_EXPIRED, on_commencement_expired)
    bus.subscribe(EventKind.PAYMENT_HELD, on_payment_held)
    bus.subscribe(EventKind.PAYMENT_FAILED, on_payment_failed)
    bus.subscribe(EventKind.WORK_SUBMITTED, on_work_submitted)
    bus.subscribe(EventKind.PAYMENT_RELEASED, on_payment_released)
    bus.subscribe(EventKind.PAYMENT_REFUNDED, on_payment_refunded)
