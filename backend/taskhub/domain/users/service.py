from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from taskhub.domain.errors import AuthorizationError, NotFoundError
from taskhub.domain.users.db_models import User, UserRole
from taskhub.domain.users.schemas import Principal


def require_role(actor: Principal, *roles: UserRole) -> None:
    if not actor.has_role(*roles):
        allowed = ", ".join(role.value for role in roles)
        raise AuthorizationError(detail=f"Requires role: {allowed}")


async def get_user(session: AsyncSession, user_id: str) -> User:
    user = await session.get(User, user_id)
    if user is None:
        raise NotFoundError(detail="User not found")
    return user


async def list_active_users(session: AsyncSession, role: UserRole) -> list[User]:
    result = await session.execute(
        select(User)
        .where(User.role == role.value, User.is_active.is_(True))
        .order_by(User.user_id)
    )
    return list(result.scalars().all())
