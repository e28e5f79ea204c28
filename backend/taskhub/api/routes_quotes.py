import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from taskhub.api.deps import get_services, require_roles
from taskhub.domain.quotes import schemas as quote_schemas
from taskhub.domain.quotes import service as quote_service
from taskhub.domain.users.db_models import UserRole
from taskhub.domain.users.schemas import Principal
from taskhub.infra.db import get_db_session
from taskhub.services import AppServices

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post(
    "/v1/jobs/{job_id}/quotes",
    response_model=quote_schemas.QuoteResponse,
    status_code=status.HTTP_201_CREATED,
)
async def submit_quote(
    job_id: str,
    payload: quote_schemas.QuoteSubmitRequest,
    principal: Principal = Depends(require_roles(UserRole.SERVICE_PROVIDER)),
    services: AppServices = Depends(get_services),
    session: AsyncSession = Depends(get_db_session),
) -> quote_schemas.QuoteResponse:
    quote = await quote_service.submit_quote(session, services.bus, principal, job_id, payload)
    await session.commit()
    return quote_schemas.QuoteResponse.model_validate(quote)


@router.get("/v1/jobs/{job_id}/quotes", response_model=list[quote_schemas.QuoteResponse])
async def list_job_quotes(
    job_id: str,
    principal: Principal = Depends(require_roles(UserRole.CLIENT)),
    session: AsyncSession = Depends(get_db_session),
) -> list[quote_schemas.QuoteResponse]:
    quotes = await quote_service.list_quotes_for_job(session, principal, job_id)
    return [quote_schemas.QuoteResponse.model_validate(quote) for quote in quotes]


@router.get("/v1/quotes/mine", response_model=list[quote_schemas.QuoteResponse])
async def list_my_quotes(
    principal: Principal = Depends(require_roles(UserRole.SERVICE_PROVIDER)),
    session: AsyncSession = Depends(get_db_session),
) -> list[quote_schemas.QuoteResponse]:
    quotes = await quote_service.list_quotes_for_provider(session, principal)
    return [quote_schemas.QuoteResponse.model_validate(quote) for quote in quotes]


@router.post("/v1/quotes/{quote_id}/approve-price", response_model=quote_schemas.QuoteResponse)
async def approve_price(
    quote_id: str,
    principal: Principal = Depends(require_roles(UserRole.CLIENT)),
    services: AppServices = Depends(get_services),
    session: AsyncSession = Depends(get_db_session),
) -> quote_schemas.QuoteResponse:
    quote = await quote_service.approve_price(session, services.bus, principal, quote_id)
    await session.commit()
    return quote_schemas.QuoteResponse.model_validate(quote)


@router.post("/v1/quotes/{quote_id}/approve-task", response_model=quote_schemas.QuoteResponse)
async def approve_task_review(
    quote_id: str,
    principal: Principal = Depends(require_roles(UserRole.CLIENT)),
    services: AppServices = Depends(get_services),
    session: AsyncSession = Depends(get_db_session),
) -> quote_schemas.QuoteResponse:
    quote = await quote_service.approve_task_review(session, services.bus, principal, quote_id)
    await session.commit()
    return quote_schemas.QuoteResponse.model_validate(quote)


@router.post("/v1/quotes/{quote_id}/release-details", response_model=quote_schemas.QuoteResponse)
async def release_customer_details(
    quote_id: str,
    principal: Principal = Depends(require_roles(UserRole.CLIENT)),
    services: AppServices = Depends(get_services),
    session: AsyncSession = Depends(get_db_session),
) -> quote_schemas.QuoteResponse:
    quote = await quote_service.release_customer_details(session, services.bus, principal, quote_id)
    await session.commit()
    return quote_schemas.QuoteResponse.model_validate(quote)


@router.post("/v1/quotes/{quote_id}/start", response_model=quote_schemas.QuoteResponse)
async def start_work(
    quote_id: str,
    principal: Principal = Depends(require_roles(UserRole.SERVICE_PROVIDER)),
    services: AppServices = Depends(get_services),
    session: AsyncSession = Depends(get_db_session),
) -> quote_schemas.QuoteResponse:
    quote = await quote_service.start_work(session, services.bus, principal, quote_id)
    await session.commit()
    return quote_schemas.QuoteResponse.model_validate(quote)
