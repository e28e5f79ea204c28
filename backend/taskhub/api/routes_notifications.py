import logging

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect
from sqlalchemy.ext.asyncio import AsyncSession

from taskhub.api.deps import _secret_for, principal_from_token, require_principal
from taskhub.domain.errors import DomainError
from taskhub.domain.notifications import schemas as notification_schemas
from taskhub.domain.notifications import service as notification_service
from taskhub.domain.users.schemas import Principal
from taskhub.infra.db import get_db_session, get_session_factory
from taskhub.services import resolve_services

router = APIRouter()
logger = logging.getLogger(__name__)

WS_CLOSE_UNAUTHORIZED = 4001


@router.get("/v1/notifications", response_model=notification_schemas.NotificationListResponse)
async def list_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    principal: Principal = Depends(require_principal),
    session: AsyncSession = Depends(get_db_session),
) -> notification_schemas.NotificationListResponse:
    items = await notification_service.list_notifications(
        session, principal.user_id, unread_only=unread_only, limit=limit
    )
    return notification_schemas.NotificationListResponse(
        items=[notification_schemas.NotificationResponse.model_validate(n) for n in items],
        unread_count=await notification_service.unread_count(session, principal.user_id),
    )


@router.post(
    "/v1/notifications/read-all",
    response_model=notification_schemas.MarkAllReadResponse,
)
async def mark_all_read(
    principal: Principal = Depends(require_principal),
    session: AsyncSession = Depends(get_db_session),
) -> notification_schemas.MarkAllReadResponse:
    updated = await notification_service.mark_all_read(session, principal.user_id)
    await session.commit()
    return notification_schemas.MarkAllReadResponse(updated=updated)


@router.post(
    "/v1/notifications/{notification_id}/read",
    response_model=notification_schemas.NotificationResponse,
)
async def mark_read(
    notification_id: str,
    principal: Principal = Depends(require_principal),
    session: AsyncSession = Depends(get_db_session),
) -> notification_schemas.NotificationResponse:
    notification = await notification_service.mark_read(session, principal.user_id, notification_id)
    await session.commit()
    return notification_schemas.NotificationResponse.model_validate(notification)


async def _handle_message(websocket: WebSocket, session_factory, principal: Principal, data) -> None:  # noqa: ANN001
    message_type = data.get("type") if isinstance(data, dict) else None
    if message_type == "ping":
        await websocket.send_json({"type": "pong"})
        return
    if message_type == "get_unread_count":
        async with session_factory() as session:
            count = await notification_service.unread_count(session, principal.user_id)
        await websocket.send_json({"type": "unread_count", "unread_count": count})
        return
    if message_type == "mark_read":
        notification_id = str(data.get("notification_id") or "")
        success = True
        async with session_factory() as session:
            try:
                await notification_service.mark_read(session, principal.user_id, notification_id)
                await session.commit()
            except DomainError:
                success = False
            count = await notification_service.unread_count(session, principal.user_id)
        await websocket.send_json(
            {
                "type": "mark_read_response",
                "notification_id": notification_id,
                "success": success,
                "unread_count": count,
            }
        )
        return
    if message_type == "mark_all_read":
        async with session_factory() as session:
            updated = await notification_service.mark_all_read(session, principal.user_id)
            await session.commit()
        await websocket.send_json({"type": "mark_all_read_response", "count": updated})
        return
    await websocket.send_json({"type": "error", "message": f"Unknown message type: {message_type}"})


@router.websocket("/v1/ws")
async def notifications_socket(websocket: WebSocket, token: str | None = Query(None)) -> None:
    session_factory = getattr(websocket.app.state, "db_session_factory", None) or get_session_factory()
    services = resolve_services(websocket.app)
    try:
        async with session_factory() as session:
            principal = await principal_from_token(session, token, _secret_for(websocket))
            unread = await notification_service.unread_count(session, principal.user_id)
    except HTTPException:
        await websocket.close(code=WS_CLOSE_UNAUTHORIZED)
        return
    if services is None:
        await websocket.close(code=1011)
        return

    registry = services.registry
    await websocket.accept()
    await registry.add(principal.user_id, websocket)
    try:
        await websocket.send_json(
            {
                "type": "connection_established",
                "user_id": principal.user_id,
                "unread_count": unread,
            }
        )
        while True:
            try:
                data = await websocket.receive_json()
            except ValueError:
                await websocket.send_json({"type": "error", "message": "Invalid JSON"})
                continue
            await _handle_message(websocket, session_factory, principal, data)
    except WebSocketDisconnect:
        pass
    finally:
        await registry.remove(principal.user_id, websocket)
