import uuid

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import UUID

from app.db.base import Base


JOB_STATUSES = (
    "queued",
    "submitted",
    "awaiting_callback",
    "completed",
    "failed",
    "cancelled",
)

ACTIVE_JOB_STATUSES = ("queued", "submitted", "awaiting_callback")


class SigningJob(Base):
    __tablename__ = "signing_jobs"
    __allow_unmapped__ = True
    __table_args__ = (
        CheckConstraint(
            "status IN ('queued', 'submitted', 'awaiting_callback', 'completed', 'failed', 'cancelled')",
            name="ck_signing_job_status",
        ),
        CheckConstraint("attempts >= 0", name="ck_signing_job_attempts_nonneg"),
        CheckConstraint("max_attempts >= 1", name="ck_signing_job_max_attempts_positive"),
        # One non-terminal job per application, enforced by the database.
        Index(
            "uq_signing_jobs_active_application",
            "application_id",
            unique=True,
            postgresql_where=text("status IN ('queued', 'submitted', 'awaiting_callback')"),
        ),
        Index("ix_signing_jobs_due", "status", "not_before"),
        Index("ix_signing_jobs_provider_document_id", "provider_document_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    application_id = Column(
        UUID(as_uuid=True),
        ForeignKey("applications.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status = Column(String(30), nullable=False, default="queued")
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=5)
    last_error = Column(Text, nullable=True)
    not_before = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    template_ref = Column(String(255), nullable=False)
    provider_document_id = Column(String(128), nullable=True)
    signed_document_ref = Column(String(1024), nullable=True)
    field_map_digest = Column(String(64), nullable=True)
    requested_by = Column(UUID(as_uuid=True), nullable=True)
    submitted_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status not in ACTIVE_JOB_STATUSES
