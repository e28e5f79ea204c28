from __future__ import annotations

import logging
from collections import defaultdict
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from taskhub.domain.errors import NotFoundError, StateConflictError, ValidationError
from taskhub.domain.events import DomainEvent, EventBus, EventKind
from taskhub.domain.providers.db_models import (
    DocumentType,
    ProviderDocument,
    ServiceProvider,
    VerificationStatus,
)
from taskhub.domain.users.db_models import UserRole
from taskhub.domain.users.schemas import Principal
from taskhub.domain.users.service import require_role
from taskhub.shared.clock import utcnow

logger = logging.getLogger(__name__)

REQUIRED_DOCUMENT_TYPES = {DocumentType.IDENTITY.value, DocumentType.BANKING.value}
PROFESSIONAL_DOCUMENT_TYPES = {DocumentType.LICENSE.value, DocumentType.CERTIFICATE.value}
REVIEW_OUTCOMES = {VerificationStatus.APPROVED, VerificationStatus.REJECTED}


def _is_complete(approved_types: set[str]) -> bool:
    return REQUIRED_DOCUMENT_TYPES <= approved_types and bool(
        approved_types & PROFESSIONAL_DOCUMENT_TYPES
    )


async def get_provider(session: AsyncSession, provider_id: str) -> ServiceProvider:
    provider = await session.get(ServiceProvider, provider_id)
    if provider is None:
        raise NotFoundError(detail="Service provider not found")
    return provider


async def get_provider_for_user(session: AsyncSession, user_id: str) -> ServiceProvider:
    result = await session.execute(
        select(ServiceProvider).where(ServiceProvider.user_id == user_id).limit(1)
    )
    provider = result.scalar_one_or_none()
    if provider is None:
        raise NotFoundError(detail="No service provider profile for this user")
    return provider


async def fully_verified_provider_ids(
    session: AsyncSession, provider_ids: Iterable[str]
) -> set[str]:
    ids = list(provider_ids)
    if not ids:
        return set()
    result = await session.execute(
        select(ProviderDocument.provider_id, ProviderDocument.document_type).where(
            ProviderDocument.provider_id.in_(ids),
            ProviderDocument.verification_status == VerificationStatus.APPROVED.value,
        )
    )
    approved: dict[str, set[str]] = defaultdict(set)
    for provider_id, document_type in result.all():
        approved[provider_id].add(document_type)
    return {provider_id for provider_id, types in approved.items() if _is_complete(types)}


async def is_fully_verified(session: AsyncSession, provider_id: str) -> bool:
    return provider_id in await fully_verified_provider_ids(session, [provider_id])


async def register_document(
    session: AsyncSession,
    provider_id: str,
    *,
    document_type: DocumentType,
    document_ref: str,
) -> ProviderDocument:
    await get_provider(session, provider_id)
    if not document_ref.strip():
        raise ValidationError(detail="document_ref is required")
    document = ProviderDocument(
        provider_id=provider_id,
        document_type=document_type.value,
        document_ref=document_ref.strip(),
        verification_status=VerificationStatus.PENDING.value,
    )
    session.add(document)
    await session.flush()
    return document


async def review_document(
    session: AsyncSession,
    bus: EventBus,
    verifier: Principal,
    document_id: str,
    *,
    status: VerificationStatus,
    notes: str | None = None,
) -> ProviderDocument:
    require_role(verifier, UserRole.SERVICE_VERIFIER, UserRole.ADMIN)
    if status not in REVIEW_OUTCOMES:
        raise ValidationError(detail="Review outcome must be approved or rejected")
    document = await session.get(ProviderDocument, document_id)
    if document is None:
        raise NotFoundError(detail="Document not found")
    if document.verification_status in {s.value for s in REVIEW_OUTCOMES}:
        raise StateConflictError(
            detail=f"Document already reviewed ({document.verification_status})"
        )

    document.verification_status = status.value
    document.verified_by = verifier.user_id
    document.verified_at = utcnow()
    document.notes = notes
    await session.flush()

    provider = await get_provider(session, document.provider_id)
    logger.info(
        "provider_document_reviewed",
        extra={
            "extra": {
                "document_id": document.document_id,
                "provider_id": provider.provider_id,
                "status": status.value,
            }
        },
    )
    await bus.publish(
        session,
        DomainEvent(
            kind=EventKind.DOCUMENT_REVIEWED,
            entity_id=document.document_id,
            payload={
                "provider_user_id": provider.user_id,
                "document_type": document.document_type,
                "status": status.value,
                "notes": notes,
            },
        ),
    )
    return document


async def list_documents(session: AsyncSession, provider_id: str) -> list[ProviderDocument]:
    result = await session.execute(
        select(ProviderDocument)
        .where(ProviderDocument.provider_id == provider_id)
        .order_by(ProviderDocument.created_at.asc())
    )
    return list(result.scalars().all())
