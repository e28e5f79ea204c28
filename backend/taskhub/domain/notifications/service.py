from __future__ import annotations

import logging
from functools import partial
from typing import Any

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from taskhub.domain.errors import AuthorizationError, NotFoundError
from taskhub.domain.notifications.connections import ConnectionRegistry
from taskhub.domain.notifications.db_models import Notification
from taskhub.infra.db import run_after_commit

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """Durable write first, best-effort live push second.

    The row is written in the caller's transaction. Its push is queued on the
    session and only goes out once that transaction commits; a rollback drops
    it, so a recipient never sees a notification (or disclosure payload) that
    was not stored.
    """

    def __init__(self, registry: ConnectionRegistry, metrics_client=None) -> None:  # noqa: ANN001
        self.registry = registry
        self._metrics = metrics_client

    async def notify(
        self,
        session: AsyncSession,
        *,
        user_id: str,
        type: str,
        title: str,
        message: str,
        payload: dict[str, Any] | None = None,
    ) -> Notification:
        notification = Notification(
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            payload=dict(payload or {}),
            is_read=False,
        )
        session.add(notification)
        await session.flush()
        run_after_commit(session, partial(self._deliver, notification))
        return notification

    async def notify_many(
        self,
        session: AsyncSession,
        *,
        user_ids: list[str],
        type: str,
        title: str,
        message: str,
        payload: dict[str, Any] | None = None,
    ) -> list[Notification]:
        created = []
        for user_id in dict.fromkeys(user_ids):
            created.append(
                await self.notify(
                    session,
                    user_id=user_id,
                    type=type,
                    title=title,
                    message=message,
                    payload=payload,
                )
            )
        return created

    async def _deliver(self, notification: Notification) -> None:
        if self._metrics is not None:
            self._metrics.record_notification(notification.type)
        await self._push(notification)

    async def _push(self, notification: Notification) -> None:
        try:
            delivered = await self.registry.broadcast(
                notification.user_id,
                {"type": "notification", "data": serialize_notification(notification)},
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "notification_push_failed",
                extra={
                    "extra": {
                        "notification_id": notification.notification_id,
                        "error": type(exc).__name__,
                    }
                },
            )
            self._record_push("failed")
            return
        self._record_push("delivered" if delivered else "offline", max(delivered, 1))

    def _record_push(self, outcome: str, count: int = 1) -> None:
        if self._metrics is not None:
            self._metrics.record_notification_push(outcome, count)


def serialize_notification(notification: Notification) -> dict[str, Any]:
    created_at = notification.created_at
    return {
        "notification_id": notification.notification_id,
        "user_id": notification.user_id,
        "type": notification.type,
        "title": notification.title,
        "message": notification.message,
        "payload": notification.payload or {},
        "is_read": notification.is_read,
        "created_at": created_at.isoformat() if created_at else None,
    }


async def list_notifications(
    session: AsyncSession,
    user_id: str,
    *,
    unread_only: bool = False,
    limit: int = 50,
) -> list[Notification]:
    stmt = sa.select(Notification).where(Notification.user_id == user_id)
    if unread_only:
        stmt = stmt.where(Notification.is_read.is_(False))
    stmt = stmt.order_by(Notification.created_at.desc(), Notification.notification_id).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def unread_count(session: AsyncSession, user_id: str) -> int:
    result = await session.execute(
        sa.select(sa.func.count())
        .select_from(Notification)
        .where(Notification.user_id == user_id, Notification.is_read.is_(False))
    )
    return int(result.scalar_one())


async def mark_read(session: AsyncSession, user_id: str, notification_id: str) -> Notification:
    notification = await session.get(Notification, notification_id)
    if notification is None:
        raise NotFoundError(detail="Notification not found")
    if notification.user_id != user_id:
        raise AuthorizationError(detail="Notification belongs to another user")
    notification.is_read = True
    await session.flush()
    return notification


async def mark_all_read(session: AsyncSession, user_id: str) -> int:
    result = await session.execute(
        sa.update(Notification)
        .where(Notification.user_id == user_id, Notification.is_read.is_(False))
        .values(is_read=True)
    )
    return result.rowcount or 0
