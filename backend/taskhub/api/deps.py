from __future__ import annotations

import logging

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from taskhub.domain.users.db_models import User, UserRole
from taskhub.domain.users.schemas import Principal
from taskhub.infra.auth import decode_access_token
from taskhub.infra.db import get_db_session
from taskhub.infra.logging import update_log_context
from taskhub.services import AppServices, resolve_services
from taskhub.settings import settings

logger = logging.getLogger(__name__)


def _get_bearer_token(request: Request) -> str | None:
    authorization: str | None = request.headers.get("Authorization")
    if authorization and authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1]
    return None


def _secret_for(request: Request) -> str:
    app_settings = getattr(request.app.state, "app_settings", None) or settings
    return app_settings.auth_secret_key


async def principal_from_token(session: AsyncSession, token: str | None, secret: str) -> Principal:
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    try:
        payload = decode_access_token(token, secret)
    except Exception:  # noqa: BLE001
        logger.info("access_token_invalid")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    try:
        user_id = str(payload["sub"])
        role = UserRole(payload.get("role"))
    except (KeyError, ValueError):
        logger.info("access_token_payload_invalid")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")

    user = await session.get(User, user_id)
    if user is None or not user.is_active or user.role != role.value:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return Principal(user_id=user_id, role=role)


async def require_principal(
    request: Request, session: AsyncSession = Depends(get_db_session)
) -> Principal:
    principal = await principal_from_token(session, _get_bearer_token(request), _secret_for(request))
    request.state.principal = principal
    update_log_context(user_id=principal.user_id, role=principal.role.value)
    return principal


def require_roles(*roles: UserRole):
    async def _require(principal: Principal = Depends(require_principal)) -> Principal:
        if roles and not principal.has_role(*roles):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
        return principal

    return _require


def get_services(request: Request) -> AppServices:
    services = resolve_services(request.app)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Services not initialised"
        )
    return services
