from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class SigningJobStatus(str, Enum):
    QUEUED = "queued"
    SUBMITTED = "submitted"
    AWAITING_CALLBACK = "awaiting_callback"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = frozenset(
    {
        SigningJobStatus.QUEUED.value,
        SigningJobStatus.SUBMITTED.value,
        SigningJobStatus.AWAITING_CALLBACK.value,
    }
)
CANCELLABLE_STATUSES = frozenset({SigningJobStatus.QUEUED.value, SigningJobStatus.SUBMITTED.value})


class SigningJobCreated(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    job_id: UUID
    application_id: UUID
    status: SigningJobStatus


class SigningJobOut(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)

    id: UUID
    application_id: UUID
    status: SigningJobStatus
    attempts: int
    max_attempts: int
    last_error: str | None = None
    not_before: datetime | None = None
    template_ref: str
    provider_document_id: str | None = None
    signed_document_ref: str | None = None
    field_map_digest: str | None = None
    submitted_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    cancelled_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
