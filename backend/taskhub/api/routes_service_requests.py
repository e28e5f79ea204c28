import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from taskhub.api.deps import get_services, require_principal, require_roles
from taskhub.domain.service_requests import schemas as request_schemas
from taskhub.domain.service_requests import service as request_service
from taskhub.domain.users.db_models import UserRole
from taskhub.domain.users.schemas import Principal
from taskhub.infra.db import get_db_session
from taskhub.services import AppServices

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post(
    "/v1/service-requests",
    response_model=request_schemas.ServiceRequestView,
    status_code=status.HTTP_201_CREATED,
)
async def create_service_request(
    payload: request_schemas.ServiceRequestCreate,
    principal: Principal = Depends(require_roles(UserRole.CLIENT)),
    services: AppServices = Depends(get_services),
    session: AsyncSession = Depends(get_db_session),
) -> request_schemas.ServiceRequestView:
    request = await request_service.create_service_request(
        session, services.bus, services.queue, principal, payload
    )
    view = await request_service.client_request_view(session, request)
    await session.commit()
    return view


@router.get("/v1/service-requests", response_model=list[request_schemas.ServiceRequestView])
async def list_service_requests(
    principal: Principal = Depends(require_principal),
    session: AsyncSession = Depends(get_db_session),
) -> list[request_schemas.ServiceRequestView]:
    requests = await request_service.list_requests_for(session, principal)
    return [await request_service.request_view_for(session, principal, r) for r in requests]


@router.get(
    "/v1/service-requests/{request_id}",
    response_model=request_schemas.ServiceRequestView,
)
async def get_service_request(
    request_id: str,
    principal: Principal = Depends(require_principal),
    session: AsyncSession = Depends(get_db_session),
) -> request_schemas.ServiceRequestView:
    request = await request_service.get_request(session, request_id)
    return await request_service.request_view_for(session, principal, request)


@router.post(
    "/v1/service-requests/{request_id}/call",
    response_model=request_schemas.ServiceRequestView,
)
async def start_call(
    request_id: str,
    principal: Principal = Depends(require_roles(UserRole.CALL_CENTER)),
    session: AsyncSession = Depends(get_db_session),
) -> request_schemas.ServiceRequestView:
    request = await request_service.start_call(session, principal, request_id)
    view = await request_service.request_view_for(session, principal, request)
    await session.commit()
    return view


@router.post(
    "/v1/service-requests/{request_id}/contacted",
    response_model=request_schemas.ServiceRequestView,
)
async def record_contact(
    request_id: str,
    payload: request_schemas.CallNotesRequest,
    principal: Principal = Depends(require_roles(UserRole.CALL_CENTER)),
    session: AsyncSession = Depends(get_db_session),
) -> request_schemas.ServiceRequestView:
    request = await request_service.record_contact(
        session, principal, request_id, notes=payload.notes, provider_id=payload.provider_id
    )
    view = await request_service.request_view_for(session, principal, request)
    await session.commit()
    return view


@router.post(
    "/v1/service-requests/{request_id}/approve",
    response_model=request_schemas.ServiceRequestView,
)
async def approve_service_request(
    request_id: str,
    payload: request_schemas.CallNotesRequest,
    principal: Principal = Depends(require_roles(UserRole.CALL_CENTER)),
    services: AppServices = Depends(get_services),
    session: AsyncSession = Depends(get_db_session),
) -> request_schemas.ServiceRequestView:
    request = await request_service.approve_request(
        session,
        services.bus,
        principal,
        request_id,
        notes=payload.notes,
        provider_id=payload.provider_id,
    )
    view = await request_service.request_view_for(session, principal, request)
    await session.commit()
    return view


@router.post(
    "/v1/service-requests/{request_id}/cancel",
    response_model=request_schemas.ServiceRequestView,
)
async def cancel_service_request(
    request_id: str,
    payload: request_schemas.CancelRequest,
    principal: Principal = Depends(require_principal),
    services: AppServices = Depends(get_services),
    session: AsyncSession = Depends(get_db_session),
) -> request_schemas.ServiceRequestView:
    request = await request_service.cancel_request(
        session, services.bus, principal, request_id, reason=payload.reason
    )
    view = await request_service.request_view_for(session, principal, request)
    await session.commit()
    return view
