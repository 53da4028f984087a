"""staging core

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None

ACTIVE_REQUEST_PREDICATE = "status NOT IN ('hd_ready', 'failed')"


def _is_postgresql() -> bool:
    return op.get_bind().dialect.name == "postgresql"


def upgrade() -> None:
    op.create_table(
        "profiles",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("full_name", sa.String(length=120), nullable=True),
        sa.Column("plan", sa.String(length=32), nullable=False, server_default="free"),
        sa.Column("credits_remaining", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("credits_used", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("stripe_customer_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email", name="uq_profiles_email"),
    )
    op.create_index("ix_profiles_email", "profiles", ["email"], unique=False)

    op.create_table(
        "projects",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("original_image_url", sa.String(length=1000), nullable=True),
        sa.Column("status", sa.String(length=24), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["user_id"], ["profiles.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_projects_user_created_at", "projects", ["user_id", "created_at"], unique=False)

    op.create_table(
        "staging_requests",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("project_id", sa.String(length=36), nullable=False),
        sa.Column("style", sa.String(length=40), nullable=False),
        sa.Column("original_image_url", sa.String(length=1000), nullable=False),
        sa.Column("options_hash", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="preview_generating"),
        sa.Column("preview_job_id", sa.String(length=128), nullable=True),
        sa.Column("hd_job_id", sa.String(length=128), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("approved_by", sa.String(length=64), nullable=True),
        sa.Column("regen_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("hd_credit_deducted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["user_id"], ["profiles.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "status IN ('preview_generating', 'preview_ready', 'approved', 'hd_generating', 'hd_ready', 'failed')",
            name="ck_staging_requests_status",
        ),
        sa.CheckConstraint("regen_count >= 0", name="ck_staging_requests_regen_count"),
    )
    op.create_index(
        "ix_staging_requests_project_hash_status",
        "staging_requests",
        ["project_id", "options_hash", "status"],
        unique=False,
    )
    op.create_index(
        "uq_staging_requests_active_project_hash",
        "staging_requests",
        ["project_id", "options_hash"],
        unique=True,
        postgresql_where=sa.text(ACTIVE_REQUEST_PREDICATE),
        sqlite_where=sa.text(ACTIVE_REQUEST_PREDICATE),
    )
    op.create_index(
        "ix_staging_requests_user_created_at",
        "staging_requests",
        ["user_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_staging_requests_status_updated_at",
        "staging_requests",
        ["status", "updated_at"],
        unique=False,
    )

    op.create_table(
        "staging_outputs",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("request_id", sa.String(length=36), nullable=False),
        sa.Column("output_type", sa.String(length=16), nullable=False),
        sa.Column("storage_path", sa.String(length=500), nullable=False),
        sa.Column("url", sa.String(length=2000), nullable=True),
        sa.Column("mime_type", sa.String(length=64), nullable=False, server_default="image/png"),
        sa.Column("width", sa.Integer(), nullable=True),
        sa.Column("height", sa.Integer(), nullable=True),
        sa.Column("watermarked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("file_size_bytes", sa.Integer(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["request_id"], ["staging_requests.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("request_id", "output_type", name="uq_staging_outputs_request_type"),
        sa.CheckConstraint("output_type IN ('preview', 'hd')", name="ck_staging_outputs_output_type"),
    )

    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("request_id", sa.String(length=36), nullable=True),
        sa.Column("project_id", sa.String(length=36), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["user_id"], ["profiles.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["request_id"], ["staging_requests.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_credit_transactions_user_created_at",
        "credit_transactions",
        ["user_id", "created_at"],
        unique=False,
    )
    op.create_index("ix_credit_transactions_request", "credit_transactions", ["request_id"], unique=False)

    op.create_table(
        "preview_rate_limits",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("regen_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", name="uq_preview_rate_limits_user"),
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=True),
        sa.Column("event", sa.String(length=64), nullable=False),
        sa.Column("resource_id", sa.String(length=64), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_audit_logs_resource_created_at",
        "audit_logs",
        ["resource_id", "created_at"],
        unique=False,
    )
    op.create_index("ix_audit_logs_user_created_at", "audit_logs", ["user_id", "created_at"], unique=False)

    op.create_table(
        "stripe_events",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("event_id", sa.String(length=128), nullable=False),
        sa.Column("event_type", sa.String(length=80), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="received"),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("error_message", sa.String(length=255), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["user_id"], ["profiles.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("event_id", name="uq_stripe_events_event_id"),
    )
    op.create_index("ix_stripe_events_created_at", "stripe_events", ["created_at"], unique=False)
    op.create_index(
        "ix_stripe_events_user_created_at",
        "stripe_events",
        ["user_id", "created_at"],
        unique=False,
    )

    if _is_postgresql():
        # Ledger rows are append-only.
        op.execute(
            """
            CREATE OR REPLACE FUNCTION credit_transactions_append_only()
            RETURNS trigger AS $$
            BEGIN
                RAISE EXCEPTION 'credit_transactions amounts are immutable';
            END;
            $$ LANGUAGE plpgsql;
            """
        )
        op.execute(
            """
            CREATE TRIGGER trg_credit_transactions_append_only
            BEFORE UPDATE OF user_id, amount, description ON credit_transactions
            FOR EACH ROW EXECUTE FUNCTION credit_transactions_append_only();
            """
        )


def downgrade() -> None:
    if _is_postgresql():
        op.execute("DROP TRIGGER IF EXISTS trg_credit_transactions_append_only ON credit_transactions")
        op.execute("DROP FUNCTION IF EXISTS credit_transactions_append_only()")

    op.drop_index("ix_stripe_events_user_created_at", table_name="stripe_events")
    op.drop_index("ix_stripe_events_created_at", table_name="stripe_events")
    op.drop_table("stripe_events")

    op.drop_index("ix_audit_logs_user_created_at", table_name="audit_logs")
    op.drop_index("ix_audit_logs_resource_created_at", table_name="audit_logs")
    op.drop_table("audit_logs")

    op.drop_table("preview_rate_limits")

    op.drop_index("ix_credit_transactions_request", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_user_created_at", table_name="credit_transactions")
    op.drop_table("credit_transactions")

    op.drop_table("staging_outputs")

    op.drop_index("ix_staging_requests_status_updated_at", table_name="staging_requests")
    op.drop_index("ix_staging_requests_user_created_at", table_name="staging_requests")
    op.drop_index("uq_staging_requests_active_project_hash", table_name="staging_requests")
    op.drop_index("ix_staging_requests_project_hash_status", table_name="staging_requests")
    op.drop_table("staging_requests")

    op.drop_index("ix_projects_user_created_at", table_name="projects")
    op.drop_table("projects")

    op.drop_index("ix_profiles_email", table_name="profiles")
    op.drop_table("profiles")
