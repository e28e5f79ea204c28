"""initial marketplace schema

Revision ID: 0001_initial
Revises: 
Create Date: 2026-01-05 00:00:00
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _created_at(name: str = "created_at") -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)


def _updated_at() -> sa.Column:
    return sa.Column(
        "updated_at",
        sa.DateTime(timezone=True),
        server_default=sa.func.now(),
        # ORM-managed updated_at (no database trigger).
        nullable=False,
    )


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("user_id", sa.String(length=36), primary_key=True),
        sa.Column("role", sa.String(length=32), nullable=False),
        sa.Column("first_name", sa.String(length=100)),
        sa.Column("last_name", sa.String(length=100)),
        sa.Column("email", sa.String(length=255), unique=True),
        sa.Column("phone", sa.String(length=50)),
        sa.Column("address", sa.String(length=500)),
        sa.Column("latitude", sa.Float()),
        sa.Column("longitude", sa.Float()),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("last_assigned_at", sa.DateTime(timezone=True)),
        _created_at(),
    )
    op.create_index("ix_users_role_active", "users", ["role", "is_active"])

    op.create_table(
        "service_providers",
        sa.Column("provider_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "user_id",
            sa.String(length=36),
            sa.ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("category_id", sa.String(length=64), nullable=False),
        sa.Column("business_name", sa.String(length=255)),
        sa.Column("latitude", sa.Float()),
        sa.Column("longitude", sa.Float()),
        sa.Column("hourly_rate_cents", sa.Integer()),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        _created_at(),
    )
    op.create_index(
        "ix_service_providers_category_active", "service_providers", ["category_id", "is_active"]
    )

    op.create_table(
        "provider_documents",
        sa.Column("document_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "provider_id",
            sa.String(length=36),
            sa.ForeignKey("service_providers.provider_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("document_type", sa.String(length=32), nullable=False),
        sa.Column("document_ref", sa.String(length=500), nullable=False),
        sa.Column("verification_status", sa.String(length=32), nullable=False),
        sa.Column("verified_by", sa.String(length=36)),
        sa.Column("verified_at", sa.DateTime(timezone=True)),
        sa.Column("notes", sa.String(length=1000)),
        _created_at(),
    )
    op.create_index(
        "ix_provider_documents_provider_type", "provider_documents", ["provider_id", "document_type"]
    )

    op.create_table(
        "jobs",
        sa.Column("job_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "client_id",
            sa.String(length=36),
            sa.ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("category_id", sa.String(length=64), nullable=False),
        sa.Column("kind", sa.String(length=16), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("location", sa.String(length=500), nullable=False),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("budget_cents", sa.Integer(), nullable=False),
        sa.Column("flexible_schedule", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("scheduled_date", sa.DateTime(timezone=True)),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_jobs_client_status", "jobs", ["client_id", "status"])
    op.create_index("ix_jobs_category_status", "jobs", ["category_id", "status"])

    op.create_table(
        "service_requests",
        sa.Column("request_id", sa.String(length=36), primary_key=True),
        sa.Column("job_id", sa.String(length=36), sa.ForeignKey("jobs.job_id", ondelete="SET NULL")),
        sa.Column(
            "provider_id",
            sa.String(length=36),
            sa.ForeignKey("service_providers.provider_id", ondelete="SET NULL"),
        ),
        sa.Column(
            "client_id",
            sa.String(length=36),
            sa.ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("message", sa.Text()),
        sa.Column("budget_cents", sa.Integer()),
        sa.Column("scheduled_date", sa.DateTime(timezone=True)),
        sa.Column(
            "assigned_mediator_id",
            sa.String(length=36),
            sa.ForeignKey("users.user_id", ondelete="SET NULL"),
        ),
        sa.Column("assigned_at", sa.DateTime(timezone=True)),
        sa.Column("contacted_at", sa.DateTime(timezone=True)),
        sa.Column("approved_at", sa.DateTime(timezone=True)),
        sa.Column("call_notes", sa.Text()),
        sa.Column("cancel_reason", sa.String(length=500)),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_service_requests_client_status", "service_requests", ["client_id", "status"])
    op.create_index(
        "ix_service_requests_provider_status", "service_requests", ["provider_id", "status"]
    )
    op.create_index(
        "ix_service_requests_mediator_status",
        "service_requests",
        ["assigned_mediator_id", "status"],
    )

    op.create_table(
        "call_center_assignments",
        sa.Column("assignment_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "request_id",
            sa.String(length=36),
            sa.ForeignKey("service_requests.request_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "mediator_id",
            sa.String(length=36),
            sa.ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("attempts", sa.Integer(), server_default="0", nullable=False),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True)),
        sa.Column("notes", sa.Text()),
        _created_at("assigned_at"),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
    )
    op.create_index(
        "ix_call_center_assignments_request", "call_center_assignments", ["request_id", "status"]
    )
    op.create_index(
        "ix_call_center_assignments_mediator", "call_center_assignments", ["mediator_id", "status"]
    )

    op.create_table(
        "task_quotes",
        sa.Column("quote_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "job_id",
            sa.String(length=36),
            sa.ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "provider_id",
            sa.String(length=36),
            sa.ForeignKey("service_providers.provider_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("quote_amount_cents", sa.Integer(), nullable=False),
        sa.Column("estimated_hours", sa.Float()),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("tools_provided", sa.JSON()),
        sa.Column("additional_services", sa.Text()),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("price_approved", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("price_approved_at", sa.DateTime(timezone=True)),
        sa.Column("price_approved_by", sa.String(length=36)),
        sa.Column("task_reviewed", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("task_reviewed_at", sa.DateTime(timezone=True)),
        sa.Column("task_reviewed_by", sa.String(length=36)),
        sa.Column(
            "customer_details_released", sa.Boolean(), server_default=sa.false(), nullable=False
        ),
        sa.Column("customer_details_released_at", sa.DateTime(timezone=True)),
        sa.Column("customer_details_released_by", sa.String(length=36)),
        sa.Column("work_commencement_deadline", sa.DateTime(timezone=True)),
        sa.Column("work_started_at", sa.DateTime(timezone=True)),
        sa.Column("expired_at", sa.DateTime(timezone=True)),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint("job_id", "provider_id", name="uq_task_quotes_job_provider"),
    )
    op.create_index(
        "ix_task_quotes_status_deadline", "task_quotes", ["status", "work_commencement_deadline"]
    )

    op.create_table(
        "escrow_payments",
        sa.Column("payment_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "request_id",
            sa.String(length=36),
            sa.ForeignKey("service_requests.request_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("client_id", sa.String(length=36), sa.ForeignKey("users.user_id"), nullable=False),
        sa.Column(
            "provider_id",
            sa.String(length=36),
            sa.ForeignKey("service_providers.provider_id"),
            nullable=False,
        ),
        sa.Column("processor_intent_ref", sa.String(length=255), nullable=False),
        sa.Column("processor_transfer_ref", sa.String(length=255)),
        sa.Column("processor_refund_ref", sa.String(length=255)),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("platform_fee_cents", sa.Integer(), nullable=False),
        sa.Column("tax_cents", sa.Integer(), nullable=False),
        sa.Column("total_amount_cents", sa.Integer(), nullable=False),
        sa.Column("payout_amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=8), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("held_at", sa.DateTime(timezone=True)),
        sa.Column("submitted_at", sa.DateTime(timezone=True)),
        sa.Column("approved_by", sa.String(length=36)),
        sa.Column("approved_at", sa.DateTime(timezone=True)),
        sa.Column("released_at", sa.DateTime(timezone=True)),
        sa.Column("refunded_at", sa.DateTime(timezone=True)),
        sa.Column("refund_reason", sa.Text()),
        sa.Column("failure_code", sa.String(length=64)),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint("request_id", name="uq_escrow_payments_request"),
    )
    op.create_index("ix_escrow_payments_status", "escrow_payments", ["status"])
    op.create_index("ix_escrow_payments_provider", "escrow_payments", ["provider_id"])

    op.create_table(
        "work_completion_photos",
        sa.Column("photo_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "request_id",
            sa.String(length=36),
            sa.ForeignKey("service_requests.request_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "provider_id",
            sa.String(length=36),
            sa.ForeignKey("service_providers.provider_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("photo_url", sa.String(length=1024), nullable=False),
        sa.Column("original_name", sa.String(length=255)),
        sa.Column("description", sa.Text()),
        _created_at("uploaded_at"),
    )
    op.create_index("ix_work_completion_photos_request", "work_completion_photos", ["request_id"])

    op.create_table(
        "provider_bank_accounts",
        sa.Column("account_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "provider_id",
            sa.String(length=36),
            sa.ForeignKey("service_providers.provider_id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("external_account_ref", sa.String(length=255), nullable=False),
        sa.Column("account_holder_name", sa.String(length=255), nullable=False),
        sa.Column("bank_name", sa.String(length=255)),
        sa.Column("masked_account_number", sa.String(length=16), nullable=False),
        sa.Column("account_type", sa.String(length=32), nullable=False),
        sa.Column("is_verified", sa.Boolean(), server_default=sa.false(), nullable=False),
        _created_at(),
        _updated_at(),
    )

    op.create_table(
        "notifications",
        sa.Column("notification_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "user_id",
            sa.String(length=36),
            sa.ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("type", sa.String(length=64), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("is_read", sa.Boolean(), server_default=sa.false(), nullable=False),
        _created_at(),
    )
    op.create_index("ix_notifications_user_created", "notifications", ["user_id", "created_at"])
    op.create_index("ix_notifications_user_unread", "notifications", ["user_id", "is_read"])


def downgrade() -> None:
    op.drop_table("notifications")
    op.drop_table("provider_bank_accounts")
    op.drop_table("work_completion_photos")
    op.drop_table("escrow_payments")
    op.drop_table("task_quotes")
    op.drop_table("call_center_assignments")
    op.drop_table("service_requests")
    op.drop_table("jobs")
    op.drop_table("provider_documents")
    op.drop_table("service_providers")
    op.drop_table("users")
