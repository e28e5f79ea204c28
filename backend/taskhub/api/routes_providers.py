import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from taskhub.api.deps import get_services, require_roles
from taskhub.domain.escrow import schemas as escrow_schemas
from taskhub.domain.escrow import service as escrow_service
from taskhub.domain.providers import schemas as provider_schemas
from taskhub.domain.providers import service as provider_service
from taskhub.domain.users.db_models import UserRole
from taskhub.domain.users.schemas import Principal
from taskhub.infra.db import get_db_session
from taskhub.services import AppServices

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post(
    "/v1/providers/me/documents",
    response_model=provider_schemas.DocumentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def register_document(
    payload: provider_schemas.DocumentCreateRequest,
    principal: Principal = Depends(require_roles(UserRole.SERVICE_PROVIDER)),
    session: AsyncSession = Depends(get_db_session),
) -> provider_schemas.DocumentResponse:
    provider = await provider_service.get_provider_for_user(session, principal.user_id)
    document = await provider_service.register_document(
        session,
        provider.provider_id,
        document_type=payload.document_type,
        document_ref=payload.document_ref,
    )
    await session.commit()
    return provider_schemas.DocumentResponse.model_validate(document)


@router.get(
    "/v1/providers/me/verification",
    response_model=provider_schemas.VerificationSummary,
)
async def verification_summary(
    principal: Principal = Depends(require_roles(UserRole.SERVICE_PROVIDER)),
    session: AsyncSession = Depends(get_db_session),
) -> provider_schemas.VerificationSummary:
    provider = await provider_service.get_provider_for_user(session, principal.user_id)
    documents = await provider_service.list_documents(session, provider.provider_id)
    return provider_schemas.VerificationSummary(
        provider_id=provider.provider_id,
        fully_verified=await provider_service.is_fully_verified(session, provider.provider_id),
        documents=[provider_schemas.DocumentResponse.model_validate(d) for d in documents],
    )


@router.post(
    "/v1/providers/documents/{document_id}/review",
    response_model=provider_schemas.DocumentResponse,
)
async def review_document(
    document_id: str,
    payload: provider_schemas.DocumentReviewRequest,
    principal: Principal = Depends(require_roles(UserRole.SERVICE_VERIFIER, UserRole.ADMIN)),
    services: AppServices = Depends(get_services),
    session: AsyncSession = Depends(get_db_session),
) -> provider_schemas.DocumentResponse:
    document = await provider_service.review_document(
        session,
        services.bus,
        principal,
        document_id,
        status=payload.status,
        notes=payload.notes,
    )
    await session.commit()
    return provider_schemas.DocumentResponse.model_validate(document)


@router.put(
    "/v1/providers/me/bank-account",
    response_model=escrow_schemas.BankAccountResponse,
)
async def upsert_bank_account(
    payload: escrow_schemas.BankAccountRequest,
    principal: Principal = Depends(require_roles(UserRole.SERVICE_PROVIDER)),
    session: AsyncSession = Depends(get_db_session),
) -> escrow_schemas.BankAccountResponse:
    account = await escrow_service.upsert_bank_account(session, principal, payload)
    await session.commit()
    return escrow_schemas.BankAccountResponse.model_validate(account)
