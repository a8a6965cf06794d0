import uuid

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Numeric,
    String,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID

from app.db.base import Base


STAGES = (
    "New",
    "Requires Docs",
    "In Review",
    "Off to Lender",
    "Accepted",
    "Denied",
)

LENDER_DECISIONS = ("accepted", "denied")


class Application(Base):
    __tablename__ = "applications"
    __allow_unmapped__ = True
    __table_args__ = (
        CheckConstraint(
            "stage IN ('New', 'Requires Docs', 'In Review', 'Off to Lender', 'Accepted', 'Denied')",
            name="ck_application_stage",
        ),
        CheckConstraint(
            "lender_decision IS NULL OR lender_decision IN ('accepted', 'denied')",
            name="ck_application_lender_decision",
        ),
        CheckConstraint("requested_amount IS NULL OR requested_amount >= 0", name="ck_application_amount_nonneg"),
        Index("ix_applications_stage", "stage"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    stage = Column(String(30), nullable=False, default="New")
    requested_amount = Column(Numeric(18, 2), nullable=True)
    form_data = Column(JSONB, nullable=False, default=dict)
    form_version = Column(String(16), nullable=True)
    lender_product_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    product_category = Column(String(64), nullable=True)
    upload_bypassed = Column(Boolean, nullable=False, default=False)
    sent_to_lender_at = Column(DateTime(timezone=True), nullable=True)
    lender_decision = Column(String(20), nullable=True)
    lender_decided_at = Column(DateTime(timezone=True), nullable=True)
    signing_job_id = Column(UUID(as_uuid=True), nullable=True)
    signing_document_id = Column(String(128), nullable=True)
    signed_document_ref = Column(String(1024), nullable=True)
    signed_at = Column(DateTime(timezone=True), nullable=True)
    submitted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
