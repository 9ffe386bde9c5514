"""Pydantic schemas for the deal ledger and its reconciliation routines.

Defines all structured types passed between repository, services and API:
- Enums: ActivityType, DuplicateStatus, QueueStatus, ConditionType, ConditionOperator
- Ledger records: ContactRead/Create, StageRead, DealRead/Create/Upsert,
  DealActivityCreate/Read, TransactionRead
- Replication: MatchCondition, ReplicationRuleCreate/Read, QueueItemRead,
  ReplicationDetail, ReplicationResult
- Duplicate review: DuplicateCandidate, DuplicateActivityRead, DuplicateDetectionStats
- Orphan promotion: OrphanMatch, PromotedTransaction, OrphanPromotionSummary/Report
- Distribution: WorkerQuota, WorkerAssignmentSummary, DistributionResult
- CSV import: ImportErrorDetail, ImportStats, ImportJobRead
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Union

from pydantic import BaseModel, ConfigDict, Field

# Closed union of permitted custom-field values (no nested structures)
CustomFieldValue = Union[str, int, float, bool, None]
CustomFields = dict[str, CustomFieldValue]


# ── Enums ───────────────────────────────────────────────────────────────────


class ActivityType(str, Enum):
    """Kinds of deal activity written by the reconciliation routines."""

    STAGE_CHANGE = "stage_change"
    OWNER_CHANGE = "owner_change"
    REPLICATION = "replication"
    CREATION = "creation"


class DuplicateStatus(str, Enum):
    """Review state of a duplicate stage-change candidate."""

    PENDING = "pending"
    IGNORED = "ignored"
    DELETED = "deleted"


class QueueStatus(str, Enum):
    """Lifecycle of a persisted work item (replication queue item or import job)."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ConditionType(str, Enum):
    PRODUCT_NAME = "product_name"
    TAGS = "tags"
    CUSTOM_FIELD = "custom_field"


class ConditionOperator(str, Enum):
    CONTAINS = "contains"
    EQUALS = "equals"
    INCLUDES_ANY = "includes_any"
    INCLUDES_ALL = "includes_all"


# ── Ledger Records ──────────────────────────────────────────────────────────


class ContactCreate(BaseModel):
    """Schema for creating a contact on first sighting."""

    name: str
    email: str | None = None
    phone: str | None = None
    tags: list[str] = Field(default_factory=list)
    origin_id: str | None = None


class ContactRead(BaseModel):
    id: str
    name: str
    email: str | None = None
    phone: str | None = None
    tags: list[str] = Field(default_factory=list)
    origin_id: str | None = None
    created_at: datetime | None = None


class StageRead(BaseModel):
    id: str
    origin_id: str
    stage_name: str
    stage_order: int = 0


class DealCreate(BaseModel):
    """Schema for inserting a new deal (replicas, manual entries)."""

    name: str
    external_id: str | None = None
    value: float | None = None
    contact_id: str | None = None
    origin_id: str | None = None
    stage_id: str | None = None
    owner_id: str | None = None
    owner_profile_id: str | None = None
    tags: list[str] = Field(default_factory=list)
    custom_fields: CustomFields = Field(default_factory=dict)
    replicated_from_deal_id: str | None = None
    replicated_at: datetime | None = None
    data_source: str = "manual"


class DealUpsert(BaseModel):
    """One converted CSV row, upserted by ``external_id``."""

    external_id: str
    name: str
    value: float | None = None
    contact_id: str | None = None
    origin_id: str | None = None
    stage_id: str | None = None
    owner_id: str | None = None
    owner_profile_id: str | None = None
    tags: list[str] | None = None
    custom_fields: CustomFields = Field(default_factory=dict)
    data_source: str = "csv_import"
    line: int = 0


class DealRead(BaseModel):
    """Schema for reading a deal (includes lineage fields)."""

    id: str
    external_id: str | None = None
    name: str
    value: float | None = None
    contact_id: str | None = None
    origin_id: str | None = None
    stage_id: str | None = None
    owner_id: str | None = None
    owner_profile_id: str | None = None
    tags: list[str] = Field(default_factory=list)
    custom_fields: CustomFields = Field(default_factory=dict)
    replicated_from_deal_id: str | None = None
    replicated_at: datetime | None = None
    data_source: str = "manual"
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_replica(self) -> bool:
        return self.replicated_from_deal_id is not None


class DealActivityCreate(BaseModel):
    deal_id: str
    activity_type: ActivityType
    description: str | None = None
    from_stage: str | None = None
    to_stage: str | None = None
    metadata: dict = Field(default_factory=dict)


class DealActivityRead(BaseModel):
    id: str
    deal_id: str
    activity_type: str
    from_stage: str | None = None
    to_stage: str | None = None
    description: str | None = None
    metadata: dict = Field(default_factory=dict)
    created_at: datetime


class TransactionRead(BaseModel):
    """External sale record (speculative or authoritative)."""

    id: str
    external_id: str
    customer_name: str | None = None
    customer_email: str | None = None
    customer_phone: str | None = None
    product_name: str | None = None
    product_category: str | None = None
    product_price: float | None = None
    sale_date: datetime
    count_in_dashboard: bool = False
    net_value: float | None = None


# ── Replication ─────────────────────────────────────────────────────────────


class MatchCondition(BaseModel):
    """Typed predicate a deal must satisfy for a rule to fire."""

    type: ConditionType
    operator: ConditionOperator | None = None
    values: list[str] = Field(default_factory=list)
    field: str | None = None


class ReplicationRuleCreate(BaseModel):
    name: str
    source_origin_id: str
    source_stage_id: str
    target_origin_id: str
    target_stage_id: str
    match_condition: MatchCondition | None = None
    copy_custom_fields: bool = True
    priority: int = 0
    is_active: bool = True


class ReplicationRuleRead(ReplicationRuleCreate):
    id: str
    created_at: datetime | None = None


class QueueItemRead(BaseModel):
    id: str
    deal_id: str
    origin_id: str | None = None
    stage_id: str | None = None
    status: QueueStatus = QueueStatus.PENDING
    attempts: int = 0
    error_message: str | None = None
    created_at: datetime | None = None
    claimed_at: datetime | None = None


class ReplicationDetail(BaseModel):
    rule_id: str
    rule_name: str
    target_deal_id: str


class ReplicationResult(BaseModel):
    """Outcome of evaluating every rule for one deal."""

    deal_id: str
    success: bool = True
    message: str = ""
    replications: int = 0
    details: list[ReplicationDetail] | None = None
    error: str | None = None


# ── Duplicate Review ────────────────────────────────────────────────────────


class DuplicateCandidate(BaseModel):
    deal_id: str
    original_activity_id: str
    duplicate_activity_id: str
    from_stage: str | None = None
    to_stage: str | None = None
    gap_seconds: float


class DuplicateActivityRead(DuplicateCandidate):
    id: str
    status: DuplicateStatus = DuplicateStatus.PENDING
    detected_at: datetime | None = None
    reviewed_at: datetime | None = None
    reviewed_by: str | None = None


class DuplicateDetectionStats(BaseModel):
    analyzed: int = 0
    duplicates_found: int = 0
    duplicates_inserted: int = 0
    duplicates_marked: int = 0


# ── Orphan Promotion ────────────────────────────────────────────────────────


class OrphanMatch(BaseModel):
    """A speculative transaction skipped because an authoritative twin exists."""

    transaction_id: str
    external_id: str
    customer_name: str | None = None
    customer_email: str | None = None
    product_price: float | None = None
    matched_transaction_id: str
    matched_external_id: str


class PromotedTransaction(BaseModel):
    transaction_id: str
    external_id: str
    customer_name: str | None = None
    customer_email: str | None = None
    product_price: float | None = None
    net_value: float
    sale_date: datetime


class OrphanPromotionSummary(BaseModel):
    total_newsale_candidates: int = 0
    skipped_by_email_match: int = 0
    skipped_by_name_match: int = 0
    total_true_orphans: int = 0
    total_promoted: int = 0
    total_net_value_added: float = 0.0


class OrphanPromotionReport(BaseModel):
    dry_run: bool = False
    net_value_factor: float
    start_date: datetime
    end_date: datetime
    summary: OrphanPromotionSummary = Field(default_factory=OrphanPromotionSummary)
    skipped_by_email: list[OrphanMatch] = Field(default_factory=list)
    skipped_by_name: list[OrphanMatch] = Field(default_factory=list)
    promoted_transactions: list[PromotedTransaction] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


# ── Distribution ────────────────────────────────────────────────────────────


class WorkerQuota(BaseModel):
    """One roster entry: who receives deals and how many per pass."""

    identifier: str
    name: str = ""
    quota: int = Field(ge=0)
    profile_id: str | None = None


class WorkerAssignmentSummary(BaseModel):
    name: str
    email: str
    assigned: int = 0


class DistributionResult(BaseModel):
    message: str = ""
    updated: int = 0
    activities_created: int = 0
    errors: list[str] = Field(default_factory=list)
    distribution: list[WorkerAssignmentSummary] = Field(default_factory=list)


# ── CSV Import ──────────────────────────────────────────────────────────────


class ImportErrorDetail(BaseModel):
    line: int
    external_id: str
    error: str


class ImportStats(BaseModel):
    """Aggregate result of a synchronous import (camelCase ``errorDetails`` on the wire)."""

    model_config = ConfigDict(populate_by_name=True)

    total: int = 0
    imported: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    contacts_created: int = 0
    error_details: list[ImportErrorDetail] = Field(
        default_factory=list, serialization_alias="errorDetails"
    )
    duration_seconds: float = 0.0


class ImportJobRead(BaseModel):
    id: str
    job_type: str = "import_deals_csv"
    status: QueueStatus = QueueStatus.PENDING
    file_path: str
    origin_id: str | None = None
    owner_email: str | None = None
    total_processed: int = 0
    total_skipped: int = 0
    current_chunk: int = 0
    total_chunks: int | None = None
    total_lines: int | None = None
    contacts_created: int = 0
    attempts: int = 0
    errors: list[dict] = Field(default_factory=list)
    processed_contact_origins: list[str] = Field(default_factory=list)
    error_message: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
