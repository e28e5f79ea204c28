"""Periodic marketplace sweeps.

``python -m taskhub.jobs.run --once`` runs every sweep a single time; without
``--once`` the sweeps repeat every ``--interval`` seconds. Each sweep commits in
its own session so one failing sweep does not roll back the others.
"""

import argparse
import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskhub.domain.quotes import service as quote_service
from taskhub.domain.service_requests import service as request_service
from taskhub.infra.db import get_session_factory
from taskhub.infra.logging import clear_log_context, configure_logging, update_log_context
from taskhub.services import AppServices, build_app_services
from taskhub.settings import settings

logger = logging.getLogger(__name__)

Sweep = Callable[[AsyncSession, AppServices], Awaitable[dict[str, int]]]


async def run_commencement_deadlines(session: AsyncSession, services: AppServices) -> dict[str, int]:
    return {"expired": await quote_service.expire_overdue_quotes(session, services.bus)}


async def run_stale_assignments(session: AsyncSession, services: AppServices) -> dict[str, int]:
    stale_after = timedelta(minutes=settings.call_center_assignment_stale_minutes)
    return await request_service.reassign_stale_assignments(
        session, services.bus, services.queue, stale_after=stale_after
    )


SWEEPS: dict[str, Sweep] = {
    "commencement-deadlines": run_commencement_deadlines,
    "stale-assignments": run_stale_assignments,
}


async def run_sweep(
    name: str, session_factory: async_sessionmaker, services: AppServices
) -> dict[str, int]:
    update_log_context(job=name)
    try:
        async with session_factory() as session:
            counts = await SWEEPS[name](session, services)
            await session.commit()
        logger.info("job_complete", extra={"extra": {"job": name, **counts}})
        services.metrics.record_job_success(name)
        return counts
    except Exception as exc:  # noqa: BLE001
        services.metrics.record_job_error(name, type(exc).__name__)
        logger.warning("job_failed", extra={"extra": {"job": name, "reason": type(exc).__name__}})
        return {}
    finally:
        clear_log_context()


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run scheduled marketplace sweeps")
    parser.add_argument("--job", action="append", dest="jobs", choices=sorted(SWEEPS), help="Sweep to run")
    parser.add_argument("--interval", type=int, default=60, help="Seconds between passes")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    return parser.parse_args(argv)


async def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    configure_logging()
    services = build_app_services(settings)
    session_factory = get_session_factory()
    names = args.jobs or list(SWEEPS)

    while True:
        for name in names:
            await run_sweep(name, session_factory, services)
        if args.once:
            return
        await asyncio.sleep(max(args.interval, 1))


if __name__ == "__main__":
    asyncio.run(main())
