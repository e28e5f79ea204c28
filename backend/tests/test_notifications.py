import pytest

from taskhub.domain.errors import AuthorizationError, NotFoundError
from taskhub.domain.notifications import service as notification_service
from taskhub.domain.notifications.connections import ConnectionRegistry
from taskhub.domain.notifications.service import NotificationDispatcher
from taskhub.domain.users.db_models import UserRole
from tests.factories import FakeConnection, create_user


class BrokenRegistry(ConnectionRegistry):
    async def broadcast(self, user_id, message):
        raise RuntimeError("registry unavailable")


@pytest.mark.anyio
async def test_notify_persists_then_pushes(async_session_maker):
    registry = ConnectionRegistry()
    dispatcher = NotificationDispatcher(registry)
    connection = FakeConnection()

    async with async_session_maker() as session:
        user = await create_user(session, UserRole.CLIENT)
        await registry.add(user.user_id, connection)

        notification = await dispatcher.notify(
            session,
            user_id=user.user_id,
            type="quote_submitted",
            title="New quote received",
            message="Pipe Pros quoted $120.00",
            payload={"quote_id": "q-1"},
        )
        await session.commit()

    assert notification.is_read is False
    (pushed,) = connection.sent
    assert pushed["type"] == "notification"
    assert pushed["data"]["notification_id"] == notification.notification_id
    assert pushed["data"]["payload"] == {"quote_id": "q-1"}

    async with async_session_maker() as session:
        assert await notification_service.unread_count(session, user.user_id) == 1


@pytest.mark.anyio
async def test_push_failure_keeps_stored_notification(async_session_maker):
    dispatcher = NotificationDispatcher(BrokenRegistry())

    async with async_session_maker() as session:
        user = await create_user(session, UserRole.CLIENT)
        await dispatcher.notify(
            session, user_id=user.user_id, type="work_started", title="t", message="m"
        )
        await session.commit()

    async with async_session_maker() as session:
        items = await notification_service.list_notifications(session, user.user_id)
        assert [item.type for item in items] == ["work_started"]


@pytest.mark.anyio
async def test_notify_many_deduplicates_recipients(async_session_maker):
    dispatcher = NotificationDispatcher(ConnectionRegistry())

    async with async_session_maker() as session:
        admin = await create_user(session, UserRole.ADMIN)
        created = await dispatcher.notify_many(
            session,
            user_ids=[admin.user_id, admin.user_id],
            type="work_commencement_expired",
            title="t",
            message="m",
        )
        assert len(created) == 1


@pytest.mark.anyio
async def test_read_state_is_per_owner(async_session_maker):
    dispatcher = NotificationDispatcher(ConnectionRegistry())

    async with async_session_maker() as session:
        owner = await create_user(session, UserRole.CLIENT)
        other = await create_user(session, UserRole.CLIENT)
        first = await dispatcher.notify(
            session, user_id=owner.user_id, type="a", title="t", message="m"
        )
        await dispatcher.notify(session, user_id=owner.user_id, type="b", title="t", message="m")
        await dispatcher.notify(session, user_id=other.user_id, type="c", title="t", message="m")

        with pytest.raises(AuthorizationError):
            await notification_service.mark_read(session, other.user_id, first.notification_id)
        with pytest.raises(NotFoundError):
            await notification_service.mark_read(session, owner.user_id, "missing")

        await notification_service.mark_read(session, owner.user_id, first.notification_id)
        assert await notification_service.unread_count(session, owner.user_id) == 1
        unread = await notification_service.list_notifications(
            session, owner.user_id, unread_only=True
        )
        assert [item.type for item in unread] == ["b"]

        assert await notification_service.mark_all_read(session, owner.user_id) == 1
        assert await notification_service.unread_count(session, owner.user_id) == 0
        assert await notification_service.unread_count(session, other.user_id) == 1


@pytest.mark.anyio
async def test_push_waits_for_commit_and_rollback_drops_it(async_session_maker):
    registry = ConnectionRegistry()
    dispatcher = NotificationDispatcher(registry)
    connection = FakeConnection()

    async with async_session_maker() as session:
        user = await create_user(session, UserRole.CLIENT)
        await session.commit()
        await registry.add(user.user_id, connection)

        await dispatcher.notify(
            session, user_id=user.user_id, type="service_approved", title="t", message="m"
        )
        assert connection.sent == []

        await session.rollback()
        await session.commit()

    assert connection.sent == []
    async with async_session_maker() as session:
        assert await notification_service.unread_count(session, user.user_id) == 0


@pytest.mark.anyio
async def test_uncommitted_notifications_are_dropped_on_close(async_session_maker):
    registry = ConnectionRegistry()
    dispatcher = NotificationDispatcher(registry)
    connection = FakeConnection()

    async with async_session_maker() as session:
        user = await create_user(session, UserRole.CLIENT)
        await session.commit()
    await registry.add(user.user_id, connection)

    async with async_session_maker() as session:
        await dispatcher.notify(
            session, user_id=user.user_id, type="work_started", title="t", message="m"
        )

    async with async_session_maker() as session:
        await session.commit()
        assert await notification_service.unread_count(session, user.user_id) == 0
    assert connection.sent == []
