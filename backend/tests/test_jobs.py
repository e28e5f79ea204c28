import pytest

from taskhub.domain.errors import AuthorizationError, StateConflictError, ValidationError
from taskhub.domain.jobs import service as jobs_service
from taskhub.domain.jobs.schemas import JobCreateRequest, JobKind, JobStatus, JobUpdateRequest
from taskhub.domain.users.db_models import UserRole
from tests.factories import ORIGIN, create_client, create_open_job, create_user, principal


def _job_payload(**overrides) -> JobCreateRequest:
    data = {
        "category_id": "plumbing",
        "title": "Fix leaking sink",
        "description": "Kitchen sink drips under the cabinet.",
        "location": "123 Queen St W, Toronto",
        "latitude": ORIGIN[0],
        "longitude": ORIGIN[1],
        "budget_cents": 15000,
    }
    data.update(overrides)
    return JobCreateRequest(**data)


@pytest.mark.anyio
async def test_create_job_starts_open(async_session_maker, services):
    async with async_session_maker() as session:
        client = await create_client(session)
        job = await jobs_service.create_job(
            session, services.bus, principal(client), _job_payload(kind=JobKind.WORK_ORDER)
        )
        await session.commit()

        assert job.status == JobStatus.OPEN.value
        assert job.kind == JobKind.WORK_ORDER.value
        assert [j.job_id for j in await jobs_service.list_client_jobs(session, client.user_id)] == [
            job.job_id
        ]


@pytest.mark.anyio
async def test_create_job_validation(async_session_maker, services):
    async with async_session_maker() as session:
        client = await create_client(session)
        provider_user = await create_user(session, UserRole.SERVICE_PROVIDER)

        with pytest.raises(ValidationError) as exc_info:
            await jobs_service.create_job(
                session, services.bus, principal(client), _job_payload(title="   ", budget_cents=0)
            )
        fields = {error["field"] for error in exc_info.value.errors}
        assert fields == {"title", "budget_cents"}

        with pytest.raises(AuthorizationError):
            await jobs_service.create_job(
                session, services.bus, principal(provider_user), _job_payload()
            )


@pytest.mark.anyio
async def test_only_owner_may_update(async_session_maker, services):
    async with async_session_maker() as session:
        client = await create_client(session)
        other = await create_client(session, first_name="Other")
        job = await create_open_job(session, client)

        with pytest.raises(AuthorizationError):
            await jobs_service.update_job(
                session, principal(other), job.job_id, JobUpdateRequest(title="Mine now")
            )

        updated = await jobs_service.update_job(
            session,
            principal(client),
            job.job_id,
            JobUpdateRequest(title="Fix two sinks", budget_cents=20000),
        )
        assert (updated.title, updated.budget_cents) == ("Fix two sinks", 20000)


@pytest.mark.anyio
async def test_details_are_frozen_after_assignment(async_session_maker, services):
    async with async_session_maker() as session:
        client = await create_client(session)
        job = await create_open_job(session, client)
        await jobs_service.advance_job(session, job, JobStatus.ASSIGNED)

        with pytest.raises(StateConflictError):
            await jobs_service.update_job(
                session, principal(client), job.job_id, JobUpdateRequest(budget_cents=1)
            )


@pytest.mark.anyio
async def test_status_transitions_are_enforced(async_session_maker, services):
    async with async_session_maker() as session:
        client = await create_client(session)
        job = await create_open_job(session, client)

        with pytest.raises(StateConflictError):
            await jobs_service.update_job(
                session,
                principal(client),
                job.job_id,
                JobUpdateRequest(status=JobStatus.COMPLETED),
            )

        await jobs_service.advance_job(session, job, JobStatus.ASSIGNED)
        await jobs_service.advance_job(session, job, JobStatus.IN_PROGRESS)
        await jobs_service.advance_job(session, job, JobStatus.COMPLETED)
        assert job.completed_at is not None

        with pytest.raises(StateConflictError):
            await jobs_service.cancel_job(session, principal(client), job.job_id)


@pytest.mark.anyio
async def test_cancel_open_job(async_session_maker, services):
    async with async_session_maker() as session:
        client = await create_client(session)
        job = await create_open_job(session, client)

        cancelled = await jobs_service.cancel_job(session, principal(client), job.job_id)

        assert cancelled.status == JobStatus.CANCELLED.value
        assert cancelled.cancelled_at is not None
        with pytest.raises(StateConflictError):
            await jobs_service.advance_job(session, job, JobStatus.ASSIGNED)
