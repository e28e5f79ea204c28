"""Escrow ledger: authorize, hold, submit evidence, then release or refund.

Every processor call happens before the local row is mutated. A
``PaymentProcessorError`` therefore leaves the payment in its last
consistent status and the operation can simply be retried; the idempotency
keys make the retry safe on the processor side as well.
"""

from __future__ import annotations

import logging

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from taskhub.domain.errors import (
    AuthorizationError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from taskhub.domain.escrow.db_models import (
    EscrowPayment,
    ProviderBankAccount,
    WorkCompletionPhoto,
)
from taskhub.domain.escrow.fees import compute_fees
from taskhub.domain.escrow.processor import (
    INTENT_DECLINED,
    INTENT_SUCCEEDED,
    PaymentProcessor,
    ProcessorIntent,
)
from taskhub.domain.escrow.schemas import (
    ESCROW_TRANSITIONS,
    BankAccountRequest,
    EscrowStatus,
    PaymentIntentRequest,
    PhotoInput,
)
from taskhub.domain.events import DomainEvent, EventBus, EventKind
from taskhub.domain.jobs import service as jobs_service
from taskhub.domain.jobs.db_models import Job
from taskhub.domain.jobs.schemas import JobStatus
from taskhub.domain.providers.db_models import ServiceProvider
from taskhub.domain.providers.service import get_provider, get_provider_for_user
from taskhub.domain.service_requests import service as requests_service
from taskhub.domain.service_requests.schemas import ServiceRequestStatus
from taskhub.domain.users.db_models import UserRole
from taskhub.domain.users.schemas import Principal
from taskhub.domain.users.service import require_role
from taskhub.infra.metrics import metrics
from taskhub.settings import Settings, settings
from taskhub.shared.clock import utcnow

logger = logging.getLogger(__name__)

PAYABLE_REQUEST_STATUSES = {
    ServiceRequestStatus.CALL_CENTER_APPROVED,
    ServiceRequestStatus.ACCEPTED,
}


def ensure_transition(payment: EscrowPayment, target: EscrowStatus) -> None:
    current = EscrowStatus(payment.status)
    allowed = ESCROW_TRANSITIONS[current]
    if not allowed:
        raise StateConflictError(detail=f"Payment is already in terminal status: {current.value}")
    if target not in allowed:
        raise StateConflictError(
            detail=f"Cannot transition payment from {current.value} to {target.value}"
        )


def _set_status(payment: EscrowPayment, target: EscrowStatus) -> None:
    ensure_transition(payment, target)
    previous = payment.status
    payment.status = target.value
    metrics.record_escrow_transition(target.value)
    logger.info(
        "escrow_transition",
        extra={
            "extra": {
                "payment_id": payment.payment_id,
                "request_id": payment.request_id,
                "from": previous,
                "to": target.value,
            }
        },
    )


async def get_payment(session: AsyncSession, payment_id: str) -> EscrowPayment:
    payment = await session.get(EscrowPayment, payment_id)
    if payment is None:
        raise NotFoundError(detail="Payment not found")
    return payment


async def _existing_payment_id(session: AsyncSession, request_id: str) -> str | None:
    result = await session.execute(
        sa.select(EscrowPayment.payment_id).where(EscrowPayment.request_id == request_id)
    )
    return result.scalar_one_or_none()


async def create_payment_intent(
    session: AsyncSession,
    processor: PaymentProcessor,
    client: Principal,
    payload: PaymentIntentRequest,
    *,
    app_settings: Settings = settings,
) -> tuple[EscrowPayment, ProcessorIntent]:
    require_role(client, UserRole.CLIENT)
    request = await requests_service.get_request(session, payload.request_id)
    if request.client_id != client.user_id:
        raise AuthorizationError(detail="Only the requesting client may pay for this request")
    if request.provider_id is None:
        raise StateConflictError(detail="Service request has no matched provider yet")
    if ServiceRequestStatus(request.status) not in PAYABLE_REQUEST_STATUSES:
        raise StateConflictError(
            detail=f"Service request in status {request.status} cannot be paid"
        )
    if await _existing_payment_id(session, request.request_id) is not None:
        raise StateConflictError(detail="A payment already exists for this service request")

    fees = compute_fees(payload.amount_cents, app_settings.platform_fee_rate, app_settings.tax_rate)
    intent = await processor.authorize(
        amount_cents=fees.total_amount_cents,
        currency=app_settings.currency,
        idempotency_key=f"escrow-intent:{request.request_id}",
        metadata={
            "request_id": request.request_id,
            "client_id": request.client_id,
            "provider_id": request.provider_id,
        },
    )

    payment = EscrowPayment(
        request_id=request.request_id,
        client_id=request.client_id,
        provider_id=request.provider_id,
        processor_intent_ref=intent.ref,
        amount_cents=fees.amount_cents,
        platform_fee_cents=fees.platform_fee_cents,
        tax_cents=fees.tax_cents,
        total_amount_cents=fees.total_amount_cents,
        payout_amount_cents=fees.payout_amount_cents,
        currency=app_settings.currency,
        status=EscrowStatus.PENDING.value,
    )
    savepoint = await session.begin_nested()
    try:
        session.add(payment)
        await session.flush()
    except IntegrityError as exc:
        await savepoint.rollback()
        raise StateConflictError(
            detail="A payment already exists for this service request"
        ) from exc
    else:
        await savepoint.commit()

    metrics.record_escrow_transition(EscrowStatus.PENDING.value)
    logger.info(
        "escrow_intent_created",
        extra={
            "extra": {
                "payment_id": payment.payment_id,
                "request_id": request.request_id,
                "total_amount_cents": payment.total_amount_cents,
            }
        },
    )
    return payment, intent


async def _provider_user_id(session: AsyncSession, provider_id: str) -> str:
    provider = await get_provider(session, provider_id)
    return provider.user_id


async def confirm_payment(
    session: AsyncSession,
    bus: EventBus,
    processor: PaymentProcessor,
    client: Principal,
    payment_id: str,
) -> EscrowPayment:
    payment = await get_payment(session, payment_id)
    if payment.client_id != client.user_id:
        raise AuthorizationError(detail="Only the paying client may confirm this payment")
    if EscrowStatus(payment.status) != EscrowStatus.PENDING:
        raise StateConflictError(detail=f"Payment is already {payment.status}")

    intent = await processor.retrieve_intent(payment.processor_intent_ref)
    provider_user_id = await _provider_user_id(session, payment.provider_id)

    if intent.status in INTENT_DECLINED:
        _set_status(payment, EscrowStatus.FAILED)
        payment.failure_code = intent.status
        await session.flush()
        await bus.publish(
            session,
            DomainEvent(
                kind=EventKind.PAYMENT_FAILED,
                entity_id=payment.payment_id,
                payload={"client_id": payment.client_id, "request_id": payment.request_id},
            ),
        )
        return payment
    if intent.status != INTENT_SUCCEEDED:
        raise StateConflictError(
            detail=f"Payment processor reports intent status {intent.status}"
        )

    request = await requests_service.get_request(session, payment.request_id)
    requests_service.ensure_transition(request, ServiceRequestStatus.IN_PROGRESS)
    _set_status(payment, EscrowStatus.HELD)
    payment.held_at = utcnow()
    await requests_service.advance_request(session, request, ServiceRequestStatus.IN_PROGRESS)
    await session.flush()
    await bus.publish(
        session,
        DomainEvent(
            kind=EventKind.PAYMENT_HELD,
            entity_id=payment.payment_id,
            payload={
                "provider_user_id": provider_user_id,
                "client_id": payment.client_id,
                "request_id": payment.request_id,
                "amount_cents": payment.amount_cents,
                "payout_amount_cents": payment.payout_amount_cents,
            },
        ),
    )
    return payment


async def submit_work(
    session: AsyncSession,
    bus: EventBus,
    provider_principal: Principal,
    payment_id: str,
    photos: list[PhotoInput],
) -> EscrowPayment:
    require_role(provider_principal, UserRole.SERVICE_PROVIDER)
    payment = await get_payment(session, payment_id)
    provider = await get_provider(session, payment.provider_id)
    if provider.user_id != provider_principal.user_id:
        raise AuthorizationError(detail="Only the assigned provider may submit work")
    if not photos:
        raise ValidationError(
            detail="At least one completion photo is required",
            errors=[{"field": "photos", "message": "must not be empty"}],
        )
    ensure_transition(payment, EscrowStatus.AWAITING_APPROVAL)

    for photo in photos:
        session.add(
            WorkCompletionPhoto(
                request_id=payment.request_id,
                provider_id=provider.provider_id,
                photo_url=photo.photo_url,
                original_name=photo.original_name,
                description=photo.description,
            )
        )
    _set_status(payment, EscrowStatus.AWAITING_APPROVAL)
    payment.submitted_at = utcnow()
    await session.flush()
    await bus.publish(
        session,
        DomainEvent(
            kind=EventKind.WORK_SUBMITTED,
            entity_id=payment.payment_id,
            payload={
                "client_id": payment.client_id,
                "request_id": payment.request_id,
                "provider_name": provider.business_name,
                "photo_count": len(photos),
                "payout_amount_cents": payment.payout_amount_cents,
            },
        ),
    )
    return payment


async def get_bank_account(session: AsyncSession, provider_id: str) -> ProviderBankAccount | None:
    result = await session.execute(
        sa.select(ProviderBankAccount).where(ProviderBankAccount.provider_id == provider_id)
    )
    return result.scalar_one_or_none()


async def _complete_linked_job(session: AsyncSession, job_id: str | None) -> None:
    if job_id is None:
        return
    job = await session.get(Job, job_id)
    if job is not None and JobStatus(job.status) == JobStatus.IN_PROGRESS:
        await jobs_service.advance_job(session, job, JobStatus.COMPLETED)


async def approve_payment(
    session: AsyncSession,
    bus: EventBus,
    processor: PaymentProcessor,
    approver: Principal,
    payment_id: str,
) -> EscrowPayment:
    require_role(approver, UserRole.PAYMENT_APPROVER)
    payment = await get_payment(session, payment_id)
    ensure_transition(payment, EscrowStatus.RELEASED)
    account = await get_bank_account(session, payment.provider_id)
    if account is None:
        raise StateConflictError(detail="Provider has no payout account on file")
    request = await requests_service.get_request(session, payment.request_id)
    requests_service.ensure_transition(request, ServiceRequestStatus.COMPLETED)

    transfer_ref = await processor.transfer(
        amount_cents=payment.payout_amount_cents,
        currency=payment.currency,
        destination=account.external_account_ref,
        idempotency_key=f"escrow-transfer:{payment.payment_id}",
        metadata={"payment_id": payment.payment_id, "request_id": payment.request_id},
    )

    now = utcnow()
    _set_status(payment, EscrowStatus.RELEASED)
    payment.processor_transfer_ref = transfer_ref
    payment.approved_by = approver.user_id
    payment.approved_at = now
    payment.released_at = now
    await requests_service.advance_request(session, request, ServiceRequestStatus.COMPLETED)
    await _complete_linked_job(session, request.job_id)
    await session.flush()

    provider_user_id = await _provider_user_id(session, payment.provider_id)
    await bus.publish(
        session,
        DomainEvent(
            kind=EventKind.PAYMENT_RELEASED,
            entity_id=payment.payment_id,
            payload={
                "provider_user_id": provider_user_id,
                "client_id": payment.client_id,
                "request_id": payment.request_id,
                "payout_amount_cents": payment.payout_amount_cents,
            },
        ),
    )
    return payment


async def reject_payment(
    session: AsyncSession,
    bus: EventBus,
    processor: PaymentProcessor,
    approver: Principal,
    payment_id: str,
    *,
    reason: str,
) -> EscrowPayment:
    require_role(approver, UserRole.PAYMENT_APPROVER)
    if not reason or not reason.strip():
        raise ValidationError(
            detail="A rejection reason is required",
            errors=[{"field": "reason", "message": "must not be blank"}],
        )
    payment = await get_payment(session, payment_id)
    ensure_transition(payment, EscrowStatus.REFUNDED)
    request = await requests_service.get_request(session, payment.request_id)
    requests_service.ensure_transition(request, ServiceRequestStatus.DISPUTED_AND_REFUNDED)

    refund_ref = await processor.refund(
        intent_ref=payment.processor_intent_ref,
        amount_cents=payment.total_amount_cents,
        idempotency_key=f"escrow-refund:{payment.payment_id}",
        reason="requested_by_customer",
    )

    now = utcnow()
    _set_status(payment, EscrowStatus.REFUNDED)
    payment.processor_refund_ref = refund_ref
    payment.approved_by = approver.user_id
    payment.approved_at = now
    payment.refunded_at = now
    payment.refund_reason = reason.strip()
    await requests_service.advance_request(
        session, request, ServiceRequestStatus.DISPUTED_AND_REFUNDED
    )
    await session.flush()

    provider_user_id = await _provider_user_id(session, payment.provider_id)
    await bus.publish(
        session,
        DomainEvent(
            kind=EventKind.PAYMENT_REFUNDED,
            entity_id=payment.payment_id,
            payload={
                "provider_user_id": provider_user_id,
                "client_id": payment.client_id,
                "request_id": payment.request_id,
                "total_amount_cents": payment.total_amount_cents,
                "reason": payment.refund_reason,
            },
        ),
    )
    return payment


def mask_account_number(account_number: str) -> str:
    digits = "".join(ch for ch in account_number if ch.isalnum())
    if len(digits) < 4:
        raise ValidationError(detail="Account number is too short")
    return f"****{digits[-4:]}"


async def upsert_bank_account(
    session: AsyncSession, provider_principal: Principal, payload: BankAccountRequest
) -> ProviderBankAccount:
    require_role(provider_principal, UserRole.SERVICE_PROVIDER)
    provider = await get_provider_for_user(session, provider_principal.user_id)
    masked = mask_account_number(payload.account_number)
    account = await get_bank_account(session, provider.provider_id)
    if account is None:
        account = ProviderBankAccount(provider_id=provider.provider_id)
        session.add(account)
    account.external_account_ref = payload.external_account_ref
    account.account_holder_name = payload.account_holder_name
    account.bank_name = payload.bank_name
    account.masked_account_number = masked
    account.account_type = payload.account_type.value
    account.is_verified = False
    await session.flush()
    logger.info(
        "bank_account_saved",
        extra={"extra": {"provider_id": provider.provider_id, "account_id": account.account_id}},
    )
    return account


async def list_pending_approvals(
    session: AsyncSession, approver: Principal
) -> list[EscrowPayment]:
    require_role(approver, UserRole.PAYMENT_APPROVER, UserRole.ADMIN)
    result = await session.execute(
        sa.select(EscrowPayment)
        .where(EscrowPayment.status == EscrowStatus.AWAITING_APPROVAL.value)
        .order_by(EscrowPayment.submitted_at.asc())
    )
    return list(result.scalars().all())


async def list_payments_for_request(
    session: AsyncSession, actor: Principal, request_id: str
) -> list[EscrowPayment]:
    request = await requests_service.get_request(session, request_id)
    allowed = actor.user_id == request.client_id or actor.has_role(
        UserRole.PAYMENT_APPROVER, UserRole.ADMIN
    )
    if not allowed and request.provider_id is not None:
        provider = await session.get(ServiceProvider, request.provider_id)
        allowed = provider is not None and provider.user_id == actor.user_id
    if not allowed:
        raise AuthorizationError(detail="Not allowed to view payments for this request")
    result = await session.execute(
        sa.select(EscrowPayment)
        .where(EscrowPayment.request_id == request_id)
        .order_by(EscrowPayment.created_at.asc())
    )
    return list(result.scalars().all())


async def list_completion_photos(
    session: AsyncSession, request_id: str
) -> list[WorkCompletionPhoto]:
    result = await session.execute(
        sa.select(WorkCompletionPhoto)
        .where(WorkCompletionPhoto.request_id == request_id)
        .order_by(WorkCompletionPhoto.uploaded_at.asc())
    )
    return list(result.scalars().all())
