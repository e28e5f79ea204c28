import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from taskhub.api.deps import get_services, require_principal, require_roles
from taskhub.domain.escrow import schemas as escrow_schemas
from taskhub.domain.escrow import service as escrow_service
from taskhub.domain.users.db_models import UserRole
from taskhub.domain.users.schemas import Principal
from taskhub.infra.db import get_db_session
from taskhub.services import AppServices

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post(
    "/v1/payments/intents",
    response_model=escrow_schemas.PaymentIntentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_payment_intent(
    payload: escrow_schemas.PaymentIntentRequest,
    principal: Principal = Depends(require_roles(UserRole.CLIENT)),
    services: AppServices = Depends(get_services),
    session: AsyncSession = Depends(get_db_session),
) -> escrow_schemas.PaymentIntentResponse:
    payment, intent = await escrow_service.create_payment_intent(
        session, services.payment_processor, principal, payload
    )
    await session.commit()
    return escrow_schemas.PaymentIntentResponse(
        payment_id=payment.payment_id,
        client_secret=intent.client_secret,
        amount_cents=payment.amount_cents,
        platform_fee_cents=payment.platform_fee_cents,
        tax_cents=payment.tax_cents,
        total_amount_cents=payment.total_amount_cents,
        payout_amount_cents=payment.payout_amount_cents,
        currency=payment.currency,
        status=payment.status,
    )


@router.get(
    "/v1/payments/pending-approvals",
    response_model=list[escrow_schemas.EscrowPaymentResponse],
)
async def list_pending_approvals(
    principal: Principal = Depends(require_roles(UserRole.PAYMENT_APPROVER, UserRole.ADMIN)),
    session: AsyncSession = Depends(get_db_session),
) -> list[escrow_schemas.EscrowPaymentResponse]:
    payments = await escrow_service.list_pending_approvals(session, principal)
    return [escrow_schemas.EscrowPaymentResponse.model_validate(p) for p in payments]


@router.get(
    "/v1/service-requests/{request_id}/payments",
    response_model=list[escrow_schemas.EscrowPaymentResponse],
)
async def list_request_payments(
    request_id: str,
    principal: Principal = Depends(require_principal),
    session: AsyncSession = Depends(get_db_session),
) -> list[escrow_schemas.EscrowPaymentResponse]:
    payments = await escrow_service.list_payments_for_request(session, principal, request_id)
    return [escrow_schemas.EscrowPaymentResponse.model_validate(p) for p in payments]


@router.post(
    "/v1/payments/{payment_id}/confirm",
    response_model=escrow_schemas.EscrowPaymentResponse,
)
async def confirm_payment(
    payment_id: str,
    principal: Principal = Depends(require_roles(UserRole.CLIENT)),
    services: AppServices = Depends(get_services),
    session: AsyncSession = Depends(get_db_session),
) -> escrow_schemas.EscrowPaymentResponse:
    payment = await escrow_service.confirm_payment(
        session, services.bus, services.payment_processor, principal, payment_id
    )
    await session.commit()
    return escrow_schemas.EscrowPaymentResponse.model_validate(payment)


@router.post(
    "/v1/payments/{payment_id}/submit-work",
    response_model=escrow_schemas.EscrowPaymentResponse,
)
async def submit_work(
    payment_id: str,
    payload: escrow_schemas.SubmitWorkRequest,
    principal: Principal = Depends(require_roles(UserRole.SERVICE_PROVIDER)),
    services: AppServices = Depends(get_services),
    session: AsyncSession = Depends(get_db_session),
) -> escrow_schemas.EscrowPaymentResponse:
    payment = await escrow_service.submit_work(
        session, services.bus, principal, payment_id, payload.photos
    )
    await session.commit()
    return escrow_schemas.EscrowPaymentResponse.model_validate(payment)


@router.post(
    "/v1/payments/{payment_id}/approve",
    response_model=escrow_schemas.EscrowPaymentResponse,
)
async def approve_payment(
    payment_id: str,
    principal: Principal = Depends(require_roles(UserRole.PAYMENT_APPROVER)),
    services: AppServices = Depends(get_services),
    session: AsyncSession = Depends(get_db_session),
) -> escrow_schemas.EscrowPaymentResponse:
    payment = await escrow_service.approve_payment(
        session, services.bus, services.payment_processor, principal, payment_id
    )
    await session.commit()
    return escrow_schemas.EscrowPaymentResponse.model_validate(payment)


@router.post(
    "/v1/payments/{payment_id}/reject",
    response_model=escrow_schemas.EscrowPaymentResponse,
)
async def reject_payment(
    payment_id: str,
    payload: escrow_schemas.RejectPaymentRequest,
    principal: Principal = Depends(require_roles(UserRole.PAYMENT_APPROVER)),
    services: AppServices = Depends(get_services),
    session: AsyncSession = Depends(get_db_session),
) -> escrow_schemas.EscrowPaymentResponse:
    payment = await escrow_service.reject_payment(
        session,
        services.bus,
        services.payment_processor,
        principal,
        payment_id,
        reason=payload.reason,
    )
    await session.commit()
    return escrow_schemas.EscrowPaymentResponse.model_validate(payment)
