import uuid

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import UUID

from app.db.base import Base


DOCUMENT_TYPES = (
    "accounts_payable",
    "accounts_receivable",
    "articles_of_incorporation",
    "balance_sheet",
    "bank_statements",
    "business_license",
    "business_plan",
    "cash_flow_statement",
    "collateral_docs",
    "drivers_license_front_back",
    "equipment_quote",
    "financial_statements",
    "invoice_samples",
    "other",
    "personal_financial_statement",
    "personal_guarantee",
    "profit_loss_statement",
    "proof_of_identity",
    "signed_application",
    "supplier_agreement",
    "tax_returns",
    "void_pad",
)

DOCUMENT_STATUSES = ("pending", "accepted", "rejected")


class ApplicationDocument(Base):
    __tablename__ = "application_documents"
    __allow_unmapped__ = True
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'accepted', 'rejected')",
            name="ck_application_document_status",
        ),
        Index(
            "ix_application_documents_current",
            "application_id",
            "document_type",
            postgresql_where=text("superseded_at IS NULL"),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    application_id = Column(
        UUID(as_uuid=True),
        ForeignKey("applications.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    document_type = Column(String(64), nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    file_name = Column(String(255), nullable=True)
    storage_key = Column(String(1024), nullable=True)
    rejection_reason = Column(Text, nullable=True)
    superseded_at = Column(DateTime(timezone=True), nullable=True)
    superseded_by_id = Column(UUID(as_uuid=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
