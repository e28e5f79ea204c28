import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from taskhub.api.deps import get_services, require_principal, require_roles
from taskhub.domain.errors import AuthorizationError
from taskhub.domain.jobs import schemas as job_schemas
from taskhub.domain.jobs import service as job_service
from taskhub.domain.matching import service as matching_service
from taskhub.domain.providers.service import get_provider_for_user
from taskhub.domain.users.db_models import UserRole
from taskhub.domain.users.schemas import Principal
from taskhub.infra.db import get_db_session
from taskhub.services import AppServices
from taskhub.settings import settings
from taskhub.shared.geo import haversine_km

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post(
    "/v1/jobs",
    response_model=job_schemas.JobResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_job(
    payload: job_schemas.JobCreateRequest,
    principal: Principal = Depends(require_roles(UserRole.CLIENT)),
    services: AppServices = Depends(get_services),
    session: AsyncSession = Depends(get_db_session),
) -> job_schemas.JobResponse:
    job = await job_service.create_job(session, services.bus, principal, payload)
    await session.commit()
    return job_schemas.JobResponse.model_validate(job)


@router.get("/v1/jobs", response_model=list[job_schemas.JobResponse])
async def list_my_jobs(
    principal: Principal = Depends(require_roles(UserRole.CLIENT)),
    session: AsyncSession = Depends(get_db_session),
) -> list[job_schemas.JobResponse]:
    jobs = await job_service.list_client_jobs(session, principal.user_id)
    return [job_schemas.JobResponse.model_validate(job) for job in jobs]


@router.get("/v1/jobs/nearby", response_model=list[job_schemas.ProviderJobView])
async def list_nearby_jobs(
    principal: Principal = Depends(require_roles(UserRole.SERVICE_PROVIDER)),
    session: AsyncSession = Depends(get_db_session),
) -> list[job_schemas.ProviderJobView]:
    provider = await get_provider_for_user(session, principal.user_id)
    nearby = await matching_service.open_jobs_near_provider(session, provider, settings)
    return [job_service.provider_job_view(job, distance) for job, distance in nearby]


@router.get(
    "/v1/jobs/{job_id}",
    response_model=job_schemas.JobResponse | job_schemas.ProviderJobView,
)
async def get_job(
    job_id: str,
    principal: Principal = Depends(require_principal),
    session: AsyncSession = Depends(get_db_session),
) -> job_schemas.JobResponse | job_schemas.ProviderJobView:
    job = await job_service.get_job(session, job_id)
    if job.client_id == principal.user_id or principal.has_role(UserRole.ADMIN):
        return job_schemas.JobResponse.model_validate(job)
    if principal.has_role(UserRole.SERVICE_PROVIDER):
        provider = await get_provider_for_user(session, principal.user_id)
        distance = None
        if provider.latitude is not None and provider.longitude is not None:
            distance = haversine_km(job.latitude, job.longitude, provider.latitude, provider.longitude)
        return job_service.provider_job_view(job, distance)
    raise AuthorizationError(detail="Not allowed to view this job")


@router.patch("/v1/jobs/{job_id}", response_model=job_schemas.JobResponse)
async def update_job(
    job_id: str,
    patch: job_schemas.JobUpdateRequest,
    principal: Principal = Depends(require_roles(UserRole.CLIENT)),
    session: AsyncSession = Depends(get_db_session),
) -> job_schemas.JobResponse:
    job = await job_service.update_job(session, principal, job_id, patch)
    await session.commit()
    return job_schemas.JobResponse.model_validate(job)


@router.post("/v1/jobs/{job_id}/cancel", response_model=job_schemas.JobResponse)
async def cancel_job(
    job_id: str,
    principal: Principal = Depends(require_roles(UserRole.CLIENT)),
    session: AsyncSession = Depends(get_db_session),
) -> job_schemas.JobResponse:
    job = await job_service.cancel_job(session, principal, job_id)
    await session.commit()
    return job_schemas.JobResponse.model_validate(job)
