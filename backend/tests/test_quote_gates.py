from datetime import timedelta

import pytest
import sqlalchemy as sa

from taskhub.domain.errors import AuthorizationError, StateConflictError, ValidationError
from taskhub.domain.jobs.db_models import Job
from taskhub.domain.notifications.db_models import Notification
from taskhub.domain.quotes import service as quote_service
from taskhub.domain.quotes.db_models import TaskQuote
from taskhub.domain.quotes.schemas import QuoteStatus, QuoteSubmitRequest
from taskhub.domain.service_requests.db_models import ServiceRequest
from taskhub.domain.users.db_models import UserRole
from taskhub.shared.clock import utcnow
from tests.factories import (
    FakeConnection,
    create_client,
    create_open_job,
    create_provider,
    create_user,
    principal,
)


def _quote_payload(**overrides) -> QuoteSubmitRequest:
    data = {"quote_amount_cents": 9000, "message": "I can fix this tomorrow morning."}
    data.update(overrides)
    return QuoteSubmitRequest(**data)


async def _seed(session):
    client = await create_client(session)
    provider_user, provider = await create_provider(session)
    job = await create_open_job(session, client)
    return client, provider_user, provider, job


async def _notifications(session, user_id: str, type_: str) -> list[Notification]:
    result = await session.execute(
        sa.select(Notification).where(Notification.user_id == user_id, Notification.type == type_)
    )
    return list(result.scalars().all())


@pytest.mark.anyio
async def test_gates_must_clear_in_order(async_session_maker, services):
    async with async_session_maker() as session:
        client, provider_user, _, job = await _seed(session)
        quote = await quote_service.submit_quote(
            session, services.bus, principal(provider_user), job.job_id, _quote_payload()
        )
        owner = principal(client)

        with pytest.raises(StateConflictError):
            await quote_service.approve_task_review(session, services.bus, owner, quote.quote_id)
        with pytest.raises(StateConflictError):
            await quote_service.release_customer_details(
                session, services.bus, owner, quote.quote_id
            )

        await quote_service.approve_price(session, services.bus, owner, quote.quote_id)
        with pytest.raises(StateConflictError):
            await quote_service.approve_price(session, services.bus, owner, quote.quote_id)
        with pytest.raises(StateConflictError):
            await quote_service.release_customer_details(
                session, services.bus, owner, quote.quote_id
            )

        await quote_service.approve_task_review(session, services.bus, owner, quote.quote_id)
        await quote_service.release_customer_details(session, services.bus, owner, quote.quote_id)
        await session.commit()

        assert quote.status == QuoteStatus.CUSTOMER_DETAILS_RELEASED.value
        assert quote.price_approved and quote.task_reviewed and quote.customer_details_released
        assert quote.price_approved_by == client.user_id
        assert quote.price_approved_at <= quote.task_reviewed_at <= quote.customer_details_released_at


@pytest.mark.anyio
async def test_only_job_owner_can_clear_gates(async_session_maker, services):
    async with async_session_maker() as session:
        _, provider_user, _, job = await _seed(session)
        stranger = await create_client(session, email="stranger@example.com")
        quote = await quote_service.submit_quote(
            session, services.bus, principal(provider_user), job.job_id, _quote_payload()
        )

        with pytest.raises(AuthorizationError):
            await quote_service.approve_price(
                session, services.bus, principal(stranger), quote.quote_id
            )
        assert quote.price_approved is False


@pytest.mark.anyio
async def test_early_gates_never_disclose_contact_details(async_session_maker, services):
    async with async_session_maker() as session:
        client, provider_user, _, job = await _seed(session)
        quote = await quote_service.submit_quote(
            session, services.bus, principal(provider_user), job.job_id, _quote_payload()
        )
        owner = principal(client)
        await quote_service.approve_price(session, services.bus, owner, quote.quote_id)
        await quote_service.approve_task_review(session, services.bus, owner, quote.quote_id)
        await session.commit()

        result = await session.execute(
            sa.select(Notification).where(Notification.user_id == provider_user.user_id)
        )
        for notification in result.scalars().all():
            assert "client_info" not in notification.payload
            assert notification.payload.get("has_address", False) is False
            assert "Queen St" not in notification.message


@pytest.mark.anyio
async def test_release_discloses_details_and_assigns_job(async_session_maker, services):
    async with async_session_maker() as session:
        client, provider_user, provider, job = await _seed(session)
        quote = await quote_service.submit_quote(
            session, services.bus, principal(provider_user), job.job_id, _quote_payload()
        )
        owner = principal(client)
        await quote_service.approve_price(session, services.bus, owner, quote.quote_id)
        await quote_service.approve_task_review(session, services.bus, owner, quote.quote_id)
        before = utcnow()
        await quote_service.release_customer_details(session, services.bus, owner, quote.quote_id)
        await session.commit()

        released = await _notifications(session, provider_user.user_id, "customer_details_released")
        assert len(released) == 1
        payload = released[0].payload
        assert payload["has_address"] is True
        assert payload["client_info"]["phone"] == "416-555-0199"
        assert payload["task_details"]["location"] == "123 Queen St W, Toronto"
        assert "24 hours" in released[0].message

        deadline = quote.work_commencement_deadline
        assert timedelta(hours=23, minutes=59) <= deadline - before <= timedelta(hours=24, minutes=1)

        refreshed_job = await session.get(Job, job.job_id)
        assert refreshed_job.status == "assigned"
        request = (
            await session.execute(sa.select(ServiceRequest).where(ServiceRequest.job_id == job.job_id))
        ).scalar_one()
        assert request.provider_id == provider.provider_id
        assert request.status == "accepted"


@pytest.mark.anyio
async def test_second_release_on_same_job_is_rejected(async_session_maker, services):
    async with async_session_maker() as session:
        client, first_user, _, job = await _seed(session)
        second_user, _ = await create_provider(session, business_name="Drain Kings")
        owner = principal(client)
        first = await quote_service.submit_quote(
            session, services.bus, principal(first_user), job.job_id, _quote_payload()
        )
        second = await quote_service.submit_quote(
            session, services.bus, principal(second_user), job.job_id, _quote_payload()
        )
        for quote in (first, second):
            await quote_service.approve_price(session, services.bus, owner, quote.quote_id)
            await quote_service.approve_task_review(session, services.bus, owner, quote.quote_id)
        await quote_service.release_customer_details(session, services.bus, owner, first.quote_id)

        with pytest.raises(StateConflictError):
            await quote_service.release_customer_details(
                session, services.bus, owner, second.quote_id
            )
        assert second.customer_details_released is False


@pytest.mark.anyio
async def test_submit_quote_validation(async_session_maker, services):
    async with async_session_maker() as session:
        client, provider_user, _, job = await _seed(session)
        actor = principal(provider_user)

        with pytest.raises(ValidationError) as exc_info:
            await quote_service.submit_quote(
                session,
                services.bus,
                actor,
                job.job_id,
                _quote_payload(quote_amount_cents=0, message="short"),
            )
        fields = {error["field"] for error in exc_info.value.errors}
        assert fields == {"quote_amount_cents", "message"}

        await quote_service.submit_quote(session, services.bus, actor, job.job_id, _quote_payload())
        with pytest.raises(StateConflictError):
            await quote_service.submit_quote(
                session, services.bus, actor, job.job_id, _quote_payload()
            )

        count = await session.scalar(sa.select(sa.func.count()).select_from(TaskQuote))
        assert count == 1
        submitted = await _notifications(session, client.user_id, "quote_submitted")
        assert len(submitted) == 1
        assert submitted[0].payload["quote_amount_cents"] == 9000


@pytest.mark.anyio
async def test_unverified_provider_cannot_quote(async_session_maker, services):
    async with async_session_maker() as session:
        client = await create_client(session)
        job = await create_open_job(session, client)
        unverified_user, _ = await create_provider(session, verified=False)
        partial_user, _ = await create_provider(
            session,
            document_types=(),
            business_name="No Docs",
        )

        for user in (unverified_user, partial_user):
            with pytest.raises(AuthorizationError):
                await quote_service.submit_quote(
                    session, services.bus, principal(user), job.job_id, _quote_payload()
                )


@pytest.mark.anyio
async def test_start_work_requires_release_and_owner(async_session_maker, services):
    async with async_session_maker() as session:
        client, provider_user, _, job = await _seed(session)
        other_user, _ = await create_provider(session, business_name="Other")
        quote = await quote_service.submit_quote(
            session, services.bus, principal(provider_user), job.job_id, _quote_payload()
        )
        owner = principal(client)

        with pytest.raises(StateConflictError):
            await quote_service.start_work(
                session, services.bus, principal(provider_user), quote.quote_id
            )

        await quote_service.approve_price(session, services.bus, owner, quote.quote_id)
        await quote_service.approve_task_review(session, services.bus, owner, quote.quote_id)
        await quote_service.release_customer_details(session, services.bus, owner, quote.quote_id)

        with pytest.raises(AuthorizationError):
            await quote_service.start_work(
                session, services.bus, principal(other_user), quote.quote_id
            )

        await quote_service.start_work(
            session, services.bus, principal(provider_user), quote.quote_id
        )
        await session.commit()
        assert quote.work_started_at is not None
        assert (await session.get(Job, job.job_id)).status == "in_progress"
        assert len(await _notifications(session, client.user_id, "work_started")) == 1

        with pytest.raises(StateConflictError):
            await quote_service.start_work(
                session, services.bus, principal(provider_user), quote.quote_id
            )


@pytest.mark.anyio
async def test_quote_listing_is_scoped(async_session_maker, services):
    async with async_session_maker() as session:
        client, provider_user, _, job = await _seed(session)
        await quote_service.submit_quote(
            session, services.bus, principal(provider_user), job.job_id, _quote_payload()
        )
        outsider = await create_user(session, UserRole.CLIENT, email="outsider@example.com")

        assert len(await quote_service.list_quotes_for_job(session, principal(client), job.job_id)) == 1
        assert len(await quote_service.list_quotes_for_provider(session, principal(provider_user))) == 1
        with pytest.raises(AuthorizationError):
            await quote_service.list_quotes_for_job(session, principal(outsider), job.job_id)


@pytest.mark.anyio
async def test_rolled_back_release_never_pushes_contact_details(async_session_maker, services):
    async with async_session_maker() as session:
        client, provider_user, _, job = await _seed(session)
        quote = await quote_service.submit_quote(
            session, services.bus, principal(provider_user), job.job_id, _quote_payload()
        )
        owner = principal(client)
        await quote_service.approve_price(session, services.bus, owner, quote.quote_id)
        await quote_service.approve_task_review(session, services.bus, owner, quote.quote_id)
        await session.commit()
        quote_id = quote.quote_id

    provider_socket = FakeConnection()
    await services.registry.add(provider_user.user_id, provider_socket)

    async with async_session_maker() as session:
        await quote_service.release_customer_details(session, services.bus, owner, quote_id)
        await session.rollback()

    assert provider_socket.sent == []
    async with async_session_maker() as session:
        assert await _notifications(session, provider_user.user_id, "customer_details_released") == []
        stored = await session.get(TaskQuote, quote_id)
        assert stored.status == QuoteStatus.TASK_REVIEWED.value

    async with async_session_maker() as session:
        await quote_service.release_customer_details(session, services.bus, owner, quote_id)
        await session.commit()

    (pushed,) = [
        message
        for message in provider_socket.sent
        if message["data"]["type"] == "customer_details_released"
    ]
    assert pushed["data"]["payload"]["client_info"]["phone"] == "416-555-0199"
