import pytest
import sqlalchemy as sa

from taskhub.domain.events import EventBus
from taskhub.domain.jobs import service as jobs_service
from taskhub.domain.jobs.schemas import JobCreateRequest, JobKind
from taskhub.domain.matching import service as matching_service
from taskhub.domain.notifications.db_models import Notification
from taskhub.domain.providers.db_models import DocumentType
from taskhub.infra.metrics import Metrics
from taskhub.settings import settings
from tests.factories import FAR, MID, NEAR, ORIGIN, create_client, create_provider, principal

FORBIDDEN_KEYS = {"address", "location", "latitude", "longitude", "client_id", "client_info", "phone", "email"}


def _job_request(**overrides) -> JobCreateRequest:
    data = {
        "category_id": "plumbing",
        "title": "Fix leaking sink",
        "description": "Kitchen sink drips under the cabinet.",
        "location": "123 Queen St W, Toronto",
        "latitude": ORIGIN[0],
        "longitude": ORIGIN[1],
        "budget_cents": 10000,
    }
    data.update(overrides)
    return JobCreateRequest(**data)


async def _task_posted(session) -> list[Notification]:
    result = await session.execute(sa.select(Notification).where(Notification.type == "task_posted"))
    return list(result.scalars().all())


@pytest.mark.anyio
async def test_posting_notifies_only_verified_nearby_providers(async_session_maker, services):
    async with async_session_maker() as session:
        client = await create_client(session)
        near_user, _ = await create_provider(session, location=NEAR)
        await create_provider(session, location=FAR, business_name="Far Away")
        await create_provider(session, location=NEAR, verified=False, business_name="Pending")
        await create_provider(
            session,
            location=NEAR,
            document_types=(DocumentType.IDENTITY, DocumentType.BANKING),
            business_name="No License",
        )
        await create_provider(session, location=NEAR, category_id="electrical", business_name="Sparks")
        await create_provider(session, location=NEAR, is_active=False, business_name="Retired")

        await jobs_service.create_job(session, services.bus, principal(client), _job_request())
        await session.commit()

        notifications = await _task_posted(session)
        assert [n.user_id for n in notifications] == [near_user.user_id]


@pytest.mark.anyio
async def test_match_payload_carries_no_location_or_client_data(async_session_maker, services):
    async with async_session_maker() as session:
        client = await create_client(session)
        await create_provider(session, location=NEAR)

        job = await jobs_service.create_job(session, services.bus, principal(client), _job_request())
        await session.commit()

        (notification,) = await _task_posted(session)
        payload = notification.payload
        assert payload["job_id"] == job.job_id
        assert payload["distance"] == "~3km away"
        assert payload["has_address"] is False
        assert not FORBIDDEN_KEYS & set(payload)
        assert "Queen St" not in notification.message
        assert client.user_id not in str(payload)


@pytest.mark.anyio
async def test_work_orders_use_wider_radius(async_session_maker, services):
    async with async_session_maker() as session:
        client = await create_client(session)
        mid_user, _ = await create_provider(session, location=MID)

        await jobs_service.create_job(session, services.bus, principal(client), _job_request())
        assert await _task_posted(session) == []

        await jobs_service.create_job(
            session, services.bus, principal(client), _job_request(kind=JobKind.WORK_ORDER)
        )
        await session.commit()
        notifications = await _task_posted(session)
        assert [n.user_id for n in notifications] == [mid_user.user_id]
        assert notifications[0].payload["distance"] == "~16km away"


@pytest.mark.anyio
async def test_client_who_is_also_provider_is_not_matched_to_own_job(async_session_maker, services):
    async with async_session_maker() as session:
        provider_user, _ = await create_provider(session, location=NEAR)
        client = await create_client(session)
        job = await jobs_service.create_job(session, services.bus, principal(client), _job_request())
        job.client_id = provider_user.user_id
        await session.flush()

        candidates = await matching_service.find_candidates(session, job, settings.job_match_radius_km)
        assert candidates == []


@pytest.mark.anyio
async def test_candidates_are_ordered_by_distance(async_session_maker, services):
    async with async_session_maker() as session:
        client = await create_client(session)
        mid_user, _ = await create_provider(session, location=MID, business_name="Mid")
        near_user, _ = await create_provider(session, location=NEAR, business_name="Near")
        job = await jobs_service.create_job(
            session, services.bus, principal(client), _job_request(kind=JobKind.WORK_ORDER)
        )

        candidates = await matching_service.find_candidates(
            session, job, settings.work_order_match_radius_km
        )
        assert [c.user_id for c in candidates] == [near_user.user_id, mid_user.user_id]


@pytest.mark.anyio
async def test_nearby_listing_for_provider(async_session_maker, services):
    async with async_session_maker() as session:
        client = await create_client(session)
        _, provider = await create_provider(session, location=NEAR)
        job = await jobs_service.create_job(session, services.bus, principal(client), _job_request())
        await jobs_service.create_job(
            session, services.bus, principal(client), _job_request(category_id="electrical")
        )

        nearby = await matching_service.open_jobs_near_provider(session, provider, settings)
        assert [(found.job_id, round(distance)) for found, distance in nearby] == [(job.job_id, 3)]

        view = jobs_service.provider_job_view(job, nearby[0][1])
        dumped = view.model_dump()
        assert dumped["approximate_distance"] == "~3km away"
        assert "location" not in dumped and "latitude" not in dumped


@pytest.mark.anyio
async def test_match_counts_reach_the_metrics_client(async_session_maker, services):
    async with async_session_maker() as session:
        client = await create_client(session)
        await create_provider(session, location=NEAR)
        await create_provider(session, location=MID, business_name="Midtown Plumbing")
        job = await jobs_service.create_job(
            session, services.bus, principal(client), _job_request(kind=JobKind.WORK_ORDER)
        )
        recorder = Metrics(enabled=True)

        candidates = await matching_service.match_job(
            session, EventBus(), job, settings, metrics_client=recorder
        )

        assert len(candidates) == 2
        assert recorder.registry.get_sample_value(
            "job_match_notifications_total", {"kind": job.kind}
        ) == 2
