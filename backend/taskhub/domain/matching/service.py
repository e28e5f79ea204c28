"""Privacy-gated matching of newly posted jobs to nearby verified providers.

Everything this module emits is provider-facing before any disclosure gate
has cleared, so payloads carry a rounded distance and never an address,
coordinates or anything identifying the client.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from taskhub.domain.events import DomainEvent, EventBus, EventKind
from taskhub.domain.jobs.db_models import Job
from taskhub.domain.jobs.schemas import JobKind, JobStatus
from taskhub.domain.providers.db_models import ServiceProvider
from taskhub.domain.providers.service import fully_verified_provider_ids
from taskhub.infra.metrics import Metrics
from taskhub.settings import Settings
from taskhub.shared.geo import approximate_distance, haversine_km

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MatchCandidate:
    provider_id: str
    user_id: str
    distance_km: float


def radius_for(job: Job, app_settings: Settings) -> float:
    if JobKind(job.kind) == JobKind.WORK_ORDER:
        return app_settings.work_order_match_radius_km
    return app_settings.job_match_radius_km


async def find_candidates(session: AsyncSession, job: Job, radius_km: float) -> list[MatchCandidate]:
    result = await session.execute(
        select(ServiceProvider).where(
            ServiceProvider.category_id == job.category_id,
            ServiceProvider.is_active.is_(True),
            ServiceProvider.latitude.is_not(None),
            ServiceProvider.longitude.is_not(None),
        )
    )
    in_radius: list[MatchCandidate] = []
    for provider in result.scalars().all():
        if provider.user_id == job.client_id:
            continue
        distance = haversine_km(job.latitude, job.longitude, provider.latitude, provider.longitude)
        if distance <= radius_km:
            in_radius.append(MatchCandidate(provider.provider_id, provider.user_id, distance))

    verified = await fully_verified_provider_ids(session, [c.provider_id for c in in_radius])
    candidates = [candidate for candidate in in_radius if candidate.provider_id in verified]
    candidates.sort(key=lambda candidate: (candidate.distance_km, candidate.provider_id))
    return candidates


def build_match_payload(job: Job, distance_km: float) -> dict[str, Any]:
    return {
        "job_id": job.job_id,
        "title": job.title,
        "category_id": job.category_id,
        "kind": job.kind,
        "budget_cents": job.budget_cents,
        "distance": approximate_distance(distance_km),
        "has_address": False,
    }


async def match_job(
    session: AsyncSession,
    bus: EventBus,
    job: Job,
    app_settings: Settings,
    metrics_client: Metrics | None = None,
) -> list[MatchCandidate]:
    if JobStatus(job.status) != JobStatus.OPEN:
        return []
    radius_km = radius_for(job, app_settings)
    candidates = await find_candidates(session, job, radius_km)
    for candidate in candidates:
        await bus.publish(
            session,
            DomainEvent(
                kind=EventKind.JOB_MATCHED,
                entity_id=job.job_id,
                payload={
                    "provider_user_id": candidate.user_id,
                    "match": build_match_payload(job, candidate.distance_km),
                },
            ),
        )
    if metrics_client is not None:
        metrics_client.record_match(job.kind, len(candidates))
    logger.info(
        "job_matched",
        extra={
            "extra": {
                "job_id": job.job_id,
                "radius_km": radius_km,
                "candidates": len(candidates),
            }
        },
    )
    return candidates


async def open_jobs_near_provider(
    session: AsyncSession, provider: ServiceProvider, app_settings: Settings
) -> list[tuple[Job, float]]:
    if provider.latitude is None or provider.longitude is None:
        return []
    result = await session.execute(
        select(Job)
        .where(Job.category_id == provider.category_id, Job.status == JobStatus.OPEN.value)
        .order_by(Job.created_at.desc())
    )
    nearby = []
    for job in result.scalars().all():
        distance = haversine_km(job.latitude, job.longitude, provider.latitude, provider.longitude)
        if distance <= radius_for(job, app_settings):
            nearby.append((job, distance))
    return nearby


def register(
    bus: EventBus, app_settings: Settings, metrics_client: Metrics | None = None
) -> None:
    async def on_job_posted(session: AsyncSession, event: DomainEvent) -> None:
        job = await session.get(Job, event.entity_id)
        if job is None:
            return
        await match_job(session, bus, job, app_settings, metrics_client)

    bus.subscribe(EventKind.JOB_POSTED, on_job_posted)
