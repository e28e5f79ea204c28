from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from taskhub.domain.providers.db_models import DocumentType, VerificationStatus


class DocumentCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    document_type: DocumentType
    document_ref: str = Field(min_length=1, max_length=500)


class DocumentReviewRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: VerificationStatus
    notes: str | None = Field(None, max_length=1000)


class DocumentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    document_id: str
    provider_id: str
    document_type: DocumentType
    verification_status: VerificationStatus
    notes: str | None = None
    verified_at: datetime | None = None
    created_at: datetime


class VerificationSummary(BaseModel):
    provider_id: str
    fully_verified: bool
    documents: list[DocumentResponse]
