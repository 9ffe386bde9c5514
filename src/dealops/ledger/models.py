"""Ledger persistence models -- contacts, deals, transactions and the reconciliation tables.

SQLAlchemy models sharing the single declarative Base:
- OriginModel / StageModel: Pipelines and their workflow steps
- ContactModel: Person records, created on first sighting
- DealModel: The authoritative deal ledger (with replication lineage)
- DealActivityModel: Audit trail of stage changes, ownership transfers, replications
- TransactionModel: External payment records (speculative "newsale-" or authoritative)
- ReplicationRuleModel / ReplicationQueueModel / ReplicationLogModel: Replication engine state
- ActivityDuplicateModel: Duplicate stage-change candidates awaiting review
- ImportJobModel: Persisted progress of background CSV imports

No foreign key constraints between ledger tables; referential integrity is
enforced by the repository, matching how upstream sources write rows out of
order (webhooks before contacts, imports before stages).
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.dealops.core.database import Base


def _uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )


def _created_at() -> Mapped[datetime]:
    return mapped_column(DateTime(timezone=True), server_default=func.now())


def _updated_at() -> Mapped[datetime | None]:
    return mapped_column(DateTime(timezone=True), onupdate=func.now(), nullable=True)


class OriginModel(Base):
    """Named intake channel / pipeline a deal belongs to."""

    __tablename__ = "origins"

    id: Mapped[uuid.UUID] = _uuid_pk()
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    created_at: Mapped[datetime] = _created_at()


class StageModel(Base):
    """Step within an origin's workflow."""

    __tablename__ = "stages"

    id: Mapped[uuid.UUID] = _uuid_pk()
    origin_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    stage_name: Mapped[str] = mapped_column(String(200), nullable=False)
    stage_order: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    created_at: Mapped[datetime] = _created_at()


class ContactModel(Base):
    """Person record. Created on first sighting, updated on repeat sightings, never deleted."""

    __tablename__ = "contacts"

    id: Mapped[uuid.UUID] = _uuid_pk()
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    tags: Mapped[list] = mapped_column(JSON, default=list, server_default=text("'[]'::json"))
    origin_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime | None] = _updated_at()


class DealModel(Base):
    """Ledger entry for a sales opportunity.

    ``replicated_from_deal_id`` is the lineage pointer: null for originals,
    the source deal id for replicas. The composite unique constraint makes
    "one replica per (source, target origin)" a database guarantee.
    """

    __tablename__ = "deals"
    __table_args__ = (
        UniqueConstraint("external_id", name="uq_deals_external_id"),
        UniqueConstraint(
            "replicated_from_deal_id",
            "origin_id",
            name="uq_deals_replica_origin",
        ),
    )

    id: Mapped[uuid.UUID] = _uuid_pk()
    external_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    value: Mapped[float | None] = mapped_column(Float, nullable=True)
    contact_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True, index=True)
    origin_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True, index=True)
    stage_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    owner_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    owner_profile_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    tags: Mapped[list] = mapped_column(JSON, default=list, server_default=text("'[]'::json"))
    custom_fields: Mapped[dict] = mapped_column(JSON, default=dict, server_default=text("'{}'::json"))
    replicated_from_deal_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), nullable=True
    )
    replicated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    data_source: Mapped[str] = mapped_column(
        String(50), default="manual", server_default=text("'manual'")
    )
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime | None] = _updated_at()


class DealActivityModel(Base):
    """Audit entry on a deal (stage_change, owner_change, replication, creation)."""

    __tablename__ = "deal_activities"

    id: Mapped[uuid.UUID] = _uuid_pk()
    deal_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    activity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    from_stage: Mapped[str | None] = mapped_column(String(200), nullable=True)
    to_stage: Mapped[str | None] = mapped_column(String(200), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict] = mapped_column(JSON, default=dict, server_default=text("'{}'::json"))
    created_at: Mapped[datetime] = _created_at()


class TransactionModel(Base):
    """External sale record.

    Speculative rows carry the ``newsale-`` prefix on ``external_id`` and stay
    out of dashboards (``count_in_dashboard = false``) until promoted.
    """

    __tablename__ = "transactions"
    __table_args__ = (
        UniqueConstraint("external_id", name="uq_transactions_external_id"),
    )

    id: Mapped[uuid.UUID] = _uuid_pk()
    external_id: Mapped[str] = mapped_column(String(200), nullable=False)
    customer_name: Mapped[str | None] = mapped_column(String(300), nullable=True)
    customer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    customer_phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    product_name: Mapped[str | None] = mapped_column(String(300), nullable=True)
    product_category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    product_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    sale_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    count_in_dashboard: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false")
    )
    net_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime | None] = _updated_at()


class ReplicationRuleModel(Base):
    """Copy deals entering (source origin, source stage) into a target pipeline."""

    __tablename__ = "replication_rules"

    id: Mapped[uuid.UUID] = _uuid_pk()
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    source_origin_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    source_stage_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    target_origin_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    target_stage_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    match_condition: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    copy_custom_fields: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default=text("true")
    )
    priority: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime | None] = _updated_at()


class ReplicationQueueModel(Base):
    """Pending replication work item with a bounded retry counter."""

    __tablename__ = "replication_queue"

    id: Mapped[uuid.UUID] = _uuid_pk()
    deal_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    origin_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    stage_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), default="pending", server_default=text("'pending'"), index=True
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = _created_at()
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ReplicationLogModel(Base):
    """Rule-level audit of each replica created."""

    __tablename__ = "replication_logs"

    id: Mapped[uuid.UUID] = _uuid_pk()
    rule_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    source_deal_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    target_deal_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    metadata_json: Mapped[dict] = mapped_column(JSON, default=dict, server_default=text("'{}'::json"))
    created_at: Mapped[datetime] = _created_at()


class ActivityDuplicateModel(Base):
    """A stage-change activity recorded twice within the gap threshold."""

    __tablename__ = "activity_duplicates"
    __table_args__ = (
        UniqueConstraint("duplicate_activity_id", name="uq_activity_duplicates_duplicate"),
    )

    id: Mapped[uuid.UUID] = _uuid_pk()
    deal_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    original_activity_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    duplicate_activity_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    from_stage: Mapped[str | None] = mapped_column(String(200), nullable=True)
    to_stage: Mapped[str | None] = mapped_column(String(200), nullable=True)
    gap_seconds: Mapped[float] = mapped_column(Float, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default="pending", server_default=text("'pending'"), index=True
    )
    detected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reviewed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)


class ImportJobModel(Base):
    """Background CSV import advanced one chunk at a time."""

    __tablename__ = "import_jobs"

    id: Mapped[uuid.UUID] = _uuid_pk()
    job_type: Mapped[str] = mapped_column(
        String(50), default="import_deals_csv", server_default=text("'import_deals_csv'")
    )
    status: Mapped[str] = mapped_column(
        String(20), default="pending", server_default=text("'pending'"), index=True
    )
    file_path: Mapped[str] = mapped_column(String(500), nullable=False)
    origin_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    owner_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    total_processed: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    total_skipped: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    current_chunk: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    total_chunks: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_lines: Mapped[int | None] = mapped_column(Integer, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    contacts_created: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    errors: Mapped[list] = mapped_column(JSON, default=list, server_default=text("'[]'::json"))
    processed_contact_origins: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = _created_at()
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
