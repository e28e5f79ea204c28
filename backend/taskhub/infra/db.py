import logging
from typing import Any, AsyncGenerator, Awaitable, Callable

from sqlalchemy import event
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from taskhub.infra.tracing import instrument_sqlalchemy
from taskhub.settings import settings

Base = declarative_base()

import taskhub.infra.models  # noqa: F401,E402

logger = logging.getLogger(__name__)

AFTER_COMMIT_KEY = "taskhub.after_commit"


def run_after_commit(session: AsyncSession, callback: Callable[[], Awaitable[None]]) -> None:
    """Queue ``callback`` until the session's outer transaction commits.

    The queue is discarded on rollback or close, so work that depends on rows
    written in this transaction (live pushes) never runs for rows that were
    never stored.
    """
    session.info.setdefault(AFTER_COMMIT_KEY, []).append(callback)


class TaskhubSession(AsyncSession):
    async def commit(self) -> None:
        await super().commit()
        callbacks = self.info.pop(AFTER_COMMIT_KEY, [])
        for callback in callbacks:
            await callback()

    async def rollback(self) -> None:
        self.info.pop(AFTER_COMMIT_KEY, None)
        await super().rollback()

    async def close(self) -> None:
        self.info.pop(AFTER_COMMIT_KEY, None)
        await super().close()


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[TaskhubSession] | None = None


def _engine_options(database_url: str) -> dict[str, Any]:
    options: dict[str, Any] = {"pool_pre_ping": True}
    if database_url.startswith(("postgresql://", "postgresql+")):
        # SQLite (tests, local dev) has no pool sizing or server-side statement timeout.
        options["pool_size"] = settings.database_pool_size
        options["max_overflow"] = settings.database_max_overflow
        options["pool_timeout"] = settings.database_pool_timeout_seconds
        options["connect_args"] = {
            "options": f"-c statement_timeout={int(settings.database_statement_timeout_ms)}"
        }
    return options


def _watch_pool_timeouts(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "handle_error")
    def _on_error(context):  # noqa: ANN001
        if isinstance(context.original_exception or context.sqlalchemy_exception, PoolTimeoutError):
            logger.warning(
                "db_pool_timeout",
                extra={"extra": {"statement": str(context.statement) if context.statement else None}},
            )


def get_session_factory() -> async_sessionmaker[TaskhubSession]:
    global _engine, _session_factory
    if _session_factory is None:
        _engine = create_async_engine(settings.database_url, **_engine_options(settings.database_url))
        _watch_pool_timeouts(_engine)
        instrument_sqlalchemy(_engine.sync_engine)
        # Services hand ORM rows back to routes after commit.
        _session_factory = async_sessionmaker(_engine, class_=TaskhubSession, expire_on_commit=False)
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one session per request, closed when the response is sent."""
    async with get_session_factory()() as session:
        yield session


async def dispose_engine() -> None:
    global _engine, _session_factory
    engine, _engine, _session_factory = _engine, None, None
    if engine is not None:
        await engine.dispose()
