from __future__ import annotations

from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class PipelineStage(str, Enum):
    NEW = "New"
    REQUIRES_DOCS = "Requires Docs"
    IN_REVIEW = "In Review"
    OFF_TO_LENDER = "Off to Lender"
    ACCEPTED = "Accepted"
    DENIED = "Denied"


class DocumentStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class LenderDecision(str, Enum):
    ACCEPTED = "accepted"
    DENIED = "denied"


class DocumentStats(BaseModel):
    total: int = 0
    accepted: int = 0
    pending: int = 0
    rejected: int = 0
    missing_types: list[str] = Field(default_factory=list)
    rejected_types: list[str] = Field(default_factory=list)
    pending_types: list[str] = Field(default_factory=list)
    required_types: list[str] = Field(default_factory=list)


class PipelineStatusResponse(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    application_id: UUID
    current_stage: PipelineStage
    suggested_stage: PipelineStage
    needs_update: bool
    reason: str
    degraded: bool = False
    document_stats: DocumentStats


class StageApplyResponse(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    application_id: UUID
    previous_stage: PipelineStage
    current_stage: PipelineStage
    changed: bool
    reason: str
    degraded: bool = False


class LenderResponseRequest(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    decision: LenderDecision


class StageOverrideRequest(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    stage: PipelineStage
    reason: str = Field(min_length=1, max_length=1000)


class SmartFieldsResponse(BaseModel):
    application_id: UUID
    fields: dict[str, str]
    field_count: int
    expected_field_count: int
    digest: str
    is_valid: bool
    missing_fields: list[str]
    warnings: list[str]

