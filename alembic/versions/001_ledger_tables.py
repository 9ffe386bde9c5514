"""Create ledger and reconciliation tables.

Revision ID: 001_ledger_tables
Revises:
Create Date: 2026-10-19

Creates the deal ledger (origins, stages, contacts, deals, deal_activities,
transactions) and the reconciliation state tables (replication_rules,
replication_queue, replication_logs, activity_duplicates, import_jobs).

Uniqueness that the reconciliation jobs rely on is enforced here:
- uq_deals_external_id: CSV upserts key on external_id
- uq_deals_replica_origin: one replica per (source deal, target origin)
- uq_transactions_external_id: transaction ingestion is idempotent
- uq_activity_duplicates_duplicate: an activity is flagged at most once
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

# revision identifiers, used by Alembic.
revision: str = "001_ledger_tables"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id() -> sa.Column:
    return sa.Column(
        "id",
        UUID(as_uuid=True),
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        server_default=sa.func.now(),
        nullable=False,
    )


def _updated_at() -> sa.Column:
    return sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True)


def _json(name: str, default: str) -> sa.Column:
    return sa.Column(
        name,
        sa.JSON(),
        server_default=sa.text(f"'{default}'::json"),
        nullable=False,
    )


def upgrade() -> None:
    op.execute('CREATE EXTENSION IF NOT EXISTS "pgcrypto"')

    # ── origins / stages ────────────────────────────────────────────────

    op.create_table(
        "origins",
        _id(),
        sa.Column("name", sa.String(200), nullable=False),
        _created_at(),
    )

    op.create_table(
        "stages",
        _id(),
        sa.Column("origin_id", UUID(as_uuid=True), nullable=False),
        sa.Column("stage_name", sa.String(200), nullable=False),
        sa.Column("stage_order", sa.Integer(), server_default=sa.text("0"), nullable=False),
        _created_at(),
    )
    op.create_index("ix_stages_origin_id", "stages", ["origin_id"])

    # ── contacts ────────────────────────────────────────────────────────

    op.create_table(
        "contacts",
        _id(),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("phone", sa.String(50), nullable=True),
        _json("tags", "[]"),
        sa.Column("origin_id", UUID(as_uuid=True), nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_contacts_email", "contacts", ["email"])

    # ── deals ───────────────────────────────────────────────────────────

    op.create_table(
        "deals",
        _id(),
        sa.Column("external_id", sa.String(200), nullable=True),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("value", sa.Float(), nullable=True),
        sa.Column("contact_id", UUID(as_uuid=True), nullable=True),
        sa.Column("origin_id", UUID(as_uuid=True), nullable=True),
        sa.Column("stage_id", UUID(as_uuid=True), nullable=True),
        sa.Column("owner_id", sa.String(255), nullable=True),
        sa.Column("owner_profile_id", sa.String(100), nullable=True),
        _json("tags", "[]"),
        _json("custom_fields", "{}"),
        sa.Column("replicated_from_deal_id", UUID(as_uuid=True), nullable=True),
        sa.Column("replicated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "data_source",
            sa.String(50),
            server_default=sa.text("'manual'"),
            nullable=False,
        ),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint("external_id", name="uq_deals_external_id"),
        sa.UniqueConstraint(
            "replicated_from_deal_id", "origin_id", name="uq_deals_replica_origin"
        ),
    )
    op.create_index("ix_deals_contact_id", "deals", ["contact_id"])
    op.create_index("ix_deals_origin_id", "deals", ["origin_id"])

    op.create_table(
        "deal_activities",
        _id(),
        sa.Column("deal_id", UUID(as_uuid=True), nullable=False),
        sa.Column("activity_type", sa.String(50), nullable=False),
        sa.Column("from_stage", sa.String(200), nullable=True),
        sa.Column("to_stage", sa.String(200), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        _json("metadata_json", "{}"),
        _created_at(),
    )
    op.create_index("ix_deal_activities_deal_id", "deal_activities", ["deal_id"])
    op.create_index(
        "ix_deal_activities_type_created",
        "deal_activities",
        ["activity_type", "created_at"],
    )

    # ── transactions ────────────────────────────────────────────────────

    op.create_table(
        "transactions",
        _id(),
        sa.Column("external_id", sa.String(200), nullable=False),
        sa.Column("customer_name", sa.String(300), nullable=True),
        sa.Column("customer_email", sa.String(255), nullable=True),
        sa.Column("customer_phone", sa.String(50), nullable=True),
        sa.Column("product_name", sa.String(300), nullable=True),
        sa.Column("product_category", sa.String(100), nullable=True),
        sa.Column("product_price", sa.Float(), nullable=True),
        sa.Column("sale_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "count_in_dashboard",
            sa.Boolean(),
            server_default=sa.text("false"),
            nullable=False,
        ),
        sa.Column("net_value", sa.Float(), nullable=True),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint("external_id", name="uq_transactions_external_id"),
    )
    op.create_index("ix_transactions_sale_date", "transactions", ["sale_date"])

    # ── replication ─────────────────────────────────────────────────────

    op.create_table(
        "replication_rules",
        _id(),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("source_origin_id", UUID(as_uuid=True), nullable=False),
        sa.Column("source_stage_id", UUID(as_uuid=True), nullable=False),
        sa.Column("target_origin_id", UUID(as_uuid=True), nullable=False),
        sa.Column("target_stage_id", UUID(as_uuid=True), nullable=False),
        sa.Column("match_condition", sa.JSON(), nullable=True),
        sa.Column(
            "copy_custom_fields",
            sa.Boolean(),
            server_default=sa.text("true"),
            nullable=False,
        ),
        sa.Column("priority", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        _created_at(),
        _updated_at(),
    )
    op.create_index(
        "ix_replication_rules_source",
        "replication_rules",
        ["source_origin_id", "source_stage_id", "is_active"],
    )

    op.create_table(
        "replication_queue",
        _id(),
        sa.Column("deal_id", UUID(as_uuid=True), nullable=False),
        sa.Column("origin_id", UUID(as_uuid=True), nullable=True),
        sa.Column("stage_id", UUID(as_uuid=True), nullable=True),
        sa.Column(
            "status",
            sa.String(20),
            server_default=sa.text("'pending'"),
            nullable=False,
        ),
        sa.Column("attempts", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        _created_at(),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_replication_queue_status", "replication_queue", ["status"])

    op.create_table(
        "replication_logs",
        _id(),
        sa.Column("rule_id", UUID(as_uuid=True), nullable=False),
        sa.Column("source_deal_id", UUID(as_uuid=True), nullable=False),
        sa.Column("target_deal_id", UUID(as_uuid=True), nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        _json("metadata_json", "{}"),
        _created_at(),
    )

    # ── duplicate review ────────────────────────────────────────────────

    op.create_table(
        "activity_duplicates",
        _id(),
        sa.Column("deal_id", UUID(as_uuid=True), nullable=False),
        sa.Column("original_activity_id", UUID(as_uuid=True), nullable=False),
        sa.Column("duplicate_activity_id", UUID(as_uuid=True), nullable=False),
        sa.Column("from_stage", sa.String(200), nullable=True),
        sa.Column("to_stage", sa.String(200), nullable=True),
        sa.Column("gap_seconds", sa.Float(), nullable=False),
        sa.Column(
            "status",
            sa.String(20),
            server_default=sa.text("'pending'"),
            nullable=False,
        ),
        sa.Column(
            "detected_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reviewed_by", sa.String(255), nullable=True),
        sa.UniqueConstraint(
            "duplicate_activity_id", name="uq_activity_duplicates_duplicate"
        ),
    )
    op.create_index("ix_activity_duplicates_status", "activity_duplicates", ["status"])

    # ── import jobs ─────────────────────────────────────────────────────

    op.create_table(
        "import_jobs",
        _id(),
        sa.Column(
            "job_type",
            sa.String(50),
            server_default=sa.text("'import_deals_csv'"),
            nullable=False,
        ),
        sa.Column(
            "status",
            sa.String(20),
            server_default=sa.text("'pending'"),
            nullable=False,
        ),
        sa.Column("file_path", sa.String(500), nullable=False),
        sa.Column("origin_id", sa.String(100), nullable=True),
        sa.Column("owner_email", sa.String(255), nullable=True),
        sa.Column("total_processed", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("total_skipped", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("current_chunk", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("total_chunks", sa.Integer(), nullable=True),
        sa.Column("total_lines", sa.Integer(), nullable=True),
        sa.Column("attempts", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("contacts_created", sa.Integer(), server_default=sa.text("0"), nullable=False),
        _json("errors", "[]"),
        _json("processed_contact_origins", "[]"),
        sa.Column("error_message", sa.Text(), nullable=True),
        _created_at(),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_import_jobs_status", "import_jobs", ["status"])


def downgrade() -> None:
    op.drop_table("import_jobs")
    op.drop_table("activity_duplicates")
    op.drop_table("replication_logs")
    op.drop_table("replication_queue")
    op.drop_table("replication_rules")
    op.drop_table("transactions")
    op.drop_table("deal_activities")
    op.drop_table("deals")
    op.drop_table("contacts")
    op.drop_table("stages")
    op.drop_table("origins")
