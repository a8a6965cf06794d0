"""Create pipeline, signing and webhook tables"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_pipeline_signing"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
            server_onupdate=sa.func.now(),
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "lender_products",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("lender_name", sa.String(length=255), nullable=False),
        sa.Column("category", sa.String(length=64), nullable=False),
        sa.Column(
            "required_documents",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
    )
    op.create_index("ix_lender_products_category", "lender_products", ["category"])

    op.create_table(
        "applications",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("stage", sa.String(length=30), nullable=False, server_default="New"),
        sa.Column("requested_amount", sa.Numeric(18, 2), nullable=True),
        sa.Column("form_data", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("form_version", sa.String(length=16), nullable=True),
        sa.Column("lender_product_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("product_category", sa.String(length=64), nullable=True),
        sa.Column("upload_bypassed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("sent_to_lender_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("lender_decision", sa.String(length=20), nullable=True),
        sa.Column("lender_decided_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("signing_job_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("signing_document_id", sa.String(length=128), nullable=True),
        sa.Column("signed_document_ref", sa.String(length=1024), nullable=True),
        sa.Column("signed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("submitted_at", sa.TIMESTAMP(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "stage IN ('New', 'Requires Docs', 'In Review', 'Off to Lender', 'Accepted', 'Denied')",
            name="ck_application_stage",
        ),
        sa.CheckConstraint(
            "lender_decision IS NULL OR lender_decision IN ('accepted', 'denied')",
            name="ck_application_lender_decision",
        ),
        sa.CheckConstraint("requested_amount IS NULL OR requested_amount >= 0", name="ck_application_amount_nonneg"),
    )
    op.create_index("ix_applications_stage", "applications", ["stage"])
    op.create_index("ix_applications_lender_product_id", "applications", ["lender_product_id"])

    op.create_table(
        "application_documents",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "application_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("applications.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("document_type", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("file_name", sa.String(length=255), nullable=True),
        sa.Column("storage_key", sa.String(length=1024), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("superseded_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("superseded_by_id", postgresql.UUID(as_uuid=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('pending', 'accepted', 'rejected')",
            name="ck_application_document_status",
        ),
    )
    op.create_index("ix_application_documents_application_id", "application_documents", ["application_id"])
    op.create_index(
        "ix_application_documents_current",
        "application_documents",
        ["application_id", "document_type"],
        postgresql_where=sa.text("superseded_at IS NULL"),
    )

    op.create_table(
        "signing_jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "application_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("applications.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", sa.String(length=30), nullable=False, server_default="queued"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default=sa.text("5")),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("not_before", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("template_ref", sa.String(length=255), nullable=False),
        sa.Column("provider_document_id", sa.String(length=128), nullable=True),
        sa.Column("signed_document_ref", sa.String(length=1024), nullable=True),
        sa.Column("field_map_digest", sa.String(length=64), nullable=True),
        sa.Column("requested_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("submitted_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("completed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("failed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.TIMESTAMP(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('queued', 'submitted', 'awaiting_callback', 'completed', 'failed', 'cancelled')",
            name="ck_signing_job_status",
        ),
        sa.CheckConstraint("attempts >= 0", name="ck_signing_job_attempts_nonneg"),
        sa.CheckConstraint("max_attempts >= 1", name="ck_signing_job_max_attempts_positive"),
    )
    op.create_index("ix_signing_jobs_application_id", "signing_jobs", ["application_id"])
    op.create_index(
        "uq_signing_jobs_active_application",
        "signing_jobs",
        ["application_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('queued', 'submitted', 'awaiting_callback')"),
    )
    op.create_index("ix_signing_jobs_due", "signing_jobs", ["status", "not_before"])
    op.create_index("ix_signing_jobs_provider_document_id", "signing_jobs", ["provider_document_id"])

    op.create_table(
        "webhook_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("payload", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("received_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("processed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.UniqueConstraint("event_id", name="uq_webhook_events_event_id"),
        sa.CheckConstraint("status IN ('pending', 'processed', 'error')", name="ck_webhook_event_status"),
    )
    op.create_index("ix_webhook_events_status_received", "webhook_events", ["status", "received_at"])

    op.create_table(
        "audit_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("actor_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("resource_type", sa.String(length=255), nullable=False),
        sa.Column("resource_id", sa.String(length=255), nullable=False),
        sa.Column("old_value", sa.JSON(), nullable=True),
        sa.Column("new_value", sa.JSON(), nullable=True),
        sa.Column("changes", sa.JSON(), nullable=True),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_audit_logs_resource", "audit_logs", ["resource_type", "resource_id"])


def downgrade() -> None:
    op.drop_index("ix_audit_logs_resource", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_webhook_events_status_received", table_name="webhook_events")
    op.drop_table("webhook_events")
    op.drop_index("ix_signing_jobs_provider_document_id", table_name="signing_jobs")
    op.drop_index("ix_signing_jobs_due", table_name="signing_jobs")
    op.drop_index("uq_signing_jobs_active_application", table_name="signing_jobs")
    op.drop_index("ix_signing_jobs_application_id", table_name="signing_jobs")
    op.drop_table("signing_jobs")
    op.drop_index("ix_application_documents_current", table_name="application_documents")
    op.drop_index("ix_application_documents_application_id", table_name="application_documents")
    op.drop_table("application_documents")
    op.drop_index("ix_applications_lender_product_id", table_name="applications")
    op.drop_index("ix_applications_stage", table_name="applications")
    op.drop_table("applications")
    op.drop_index("ix_lender_products_category", table_name="lender_products")
    op.drop_table("lender_products")
