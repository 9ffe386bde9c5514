"""Ledger repository -- async persistence for every reconciliation routine.

Provides LedgerRepository with the session_factory callable pattern: each
method opens its own session, so one failing write never poisons the rest
of a batch. Handles conversion between SQLAlchemy models and Pydantic
schemas (UUIDs become strings at this boundary).

Idempotency guards are expressed as conditional writes instead of
read-then-write, so two overlapping runs cannot both act on the same row:
- promote_transaction: UPDATE ... WHERE count_in_dashboard = false
- claim_queue_item: UPDATE ... WHERE status = 'pending'
- assign_owner: UPDATE ... WHERE owner_id IS NULL
- create_replica: unique (replicated_from_deal_id, origin_id)
- insert_duplicates: ON CONFLICT (duplicate_activity_id) DO NOTHING
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable, Iterable
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import Update, case, delete, func, literal_column, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.dealops.ledger.errors import InvalidInputError
from src.dealops.ledger.models import (
    ActivityDuplicateModel,
    ContactModel,
    DealActivityModel,
    DealModel,
    ImportJobModel,
    ReplicationLogModel,
    ReplicationQueueModel,
    ReplicationRuleModel,
    StageModel,
    TransactionModel,
)
from src.dealops.ledger.schemas import (
    ContactCreate,
    ContactRead,
    DealActivityCreate,
    DealActivityRead,
    DealCreate,
    DealRead,
    DealUpsert,
    DuplicateActivityRead,
    DuplicateCandidate,
    DuplicateStatus,
    ImportJobRead,
    MatchCondition,
    QueueItemRead,
    QueueStatus,
    ReplicationRuleCreate,
    ReplicationRuleRead,
    StageRead,
    TransactionRead,
)

logger = structlog.get_logger(__name__)

DUPLICATE_INSERT_BATCH = 100


def _uuid(value: str | uuid.UUID) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise InvalidInputError(f"Invalid id: {value}")


def _opt_uuid(value: str | None) -> uuid.UUID | None:
    return _uuid(value) if value else None


def _str(value: uuid.UUID | None) -> str | None:
    return str(value) if value is not None else None


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_contact(model: ContactModel) -> ContactRead:
    return ContactRead(
        id=str(model.id),
        name=model.name,
        email=model.email,
        phone=model.phone,
        tags=model.tags or [],
        origin_id=_str(model.origin_id),
        created_at=model.created_at,
    )


def _model_to_stage(model: StageModel) -> StageRead:
    return StageRead(
        id=str(model.id),
        origin_id=str(model.origin_id),
        stage_name=model.stage_name,
        stage_order=model.stage_order or 0,
    )


def _model_to_deal(model: DealModel) -> DealRead:
    """Convert DealModel to DealRead schema."""
    return DealRead(
        id=str(model.id),
        external_id=model.external_id,
        name=model.name,
        value=model.value,
        contact_id=_str(model.contact_id),
        origin_id=_str(model.origin_id),
        stage_id=_str(model.stage_id),
        owner_id=model.owner_id,
        owner_profile_id=model.owner_profile_id,
        tags=model.tags or [],
        custom_fields=model.custom_fields or {},
        replicated_from_deal_id=_str(model.replicated_from_deal_id),
        replicated_at=model.replicated_at,
        data_source=model.data_source or "manual",
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_activity(model: DealActivityModel) -> DealActivityRead:
    return DealActivityRead(
        id=str(model.id),
        deal_id=str(model.deal_id),
        activity_type=model.activity_type,
        from_stage=model.from_stage,
        to_stage=model.to_stage,
        description=model.description,
        metadata=model.metadata_json or {},
        created_at=model.created_at,
    )


def _model_to_transaction(model: TransactionModel) -> TransactionRead:
    return TransactionRead(
        id=str(model.id),
        external_id=model.external_id,
        customer_name=model.customer_name,
        customer_email=model.customer_email,
        customer_phone=model.customer_phone,
        product_name=model.product_name,
        product_category=model.product_category,
        product_price=model.product_price,
        sale_date=model.sale_date,
        count_in_dashboard=bool(model.count_in_dashboard),
        net_value=model.net_value,
    )


def _model_to_rule(model: ReplicationRuleModel) -> ReplicationRuleRead:
    condition = None
    if model.match_condition:
        condition = MatchCondition.model_validate(model.match_condition)
    return ReplicationRuleRead(
        id=str(model.id),
        name=model.name,
        source_origin_id=str(model.source_origin_id),
        source_stage_id=str(model.source_stage_id),
        target_origin_id=str(model.target_origin_id),
        target_stage_id=str(model.target_stage_id),
        match_condition=condition,
        copy_custom_fields=bool(model.copy_custom_fields),
        priority=model.priority or 0,
        is_active=bool(model.is_active),
        created_at=model.created_at,
    )


def _model_to_queue_item(model: ReplicationQueueModel) -> QueueItemRead:
    return QueueItemRead(
        id=str(model.id),
        deal_id=str(model.deal_id),
        origin_id=_str(model.origin_id),
        stage_id=_str(model.stage_id),
        status=QueueStatus(model.status),
        attempts=model.attempts or 0,
        error_message=model.error_message,
        created_at=model.created_at,
        claimed_at=model.claimed_at,
    )


def _model_to_duplicate(model: ActivityDuplicateModel) -> DuplicateActivityRead:
    return DuplicateActivityRead(
        id=str(model.id),
        deal_id=str(model.deal_id),
        original_activity_id=str(model.original_activity_id),
        duplicate_activity_id=str(model.duplicate_activity_id),
        from_stage=model.from_stage,
        to_stage=model.to_stage,
        gap_seconds=model.gap_seconds,
        status=DuplicateStatus(model.status),
        detected_at=model.detected_at,
        reviewed_at=model.reviewed_at,
        reviewed_by=model.reviewed_by,
    )


def _model_to_import_job(model: ImportJobModel) -> ImportJobRead:
    return ImportJobRead(
        id=str(model.id),
        job_type=model.job_type,
        status=QueueStatus(model.status),
        file_path=model.file_path,
        origin_id=model.origin_id,
        owner_email=model.owner_email,
        total_processed=model.total_processed or 0,
        total_skipped=model.total_skipped or 0,
        current_chunk=model.current_chunk or 0,
        total_chunks=model.total_chunks,
        total_lines=model.total_lines,
        contacts_created=model.contacts_created or 0,
        attempts=model.attempts or 0,
        errors=model.errors or [],
        processed_contact_origins=model.processed_contact_origins or [],
        error_message=model.error_message,
        created_at=model.created_at,
        started_at=model.started_at,
        completed_at=model.completed_at,
    )


# ── Guarded Statements ──────────────────────────────────────────────────────


def promote_transaction_stmt(transaction_id: str, net_value: float) -> Update:
    """Promote only while the row is still uncounted."""
    return (
        update(TransactionModel)
        .where(
            TransactionModel.id == _uuid(transaction_id),
            TransactionModel.count_in_dashboard.is_(False),
        )
        .values(
            count_in_dashboard=True,
            net_value=net_value,
            updated_at=func.now(),
        )
    )


def claim_queue_item_stmt(item_id: str) -> Update:
    """Move a queue item pending -> processing; no-op if another run got it first."""
    return (
        update(ReplicationQueueModel)
        .where(
            ReplicationQueueModel.id == _uuid(item_id),
            ReplicationQueueModel.status == QueueStatus.PENDING.value,
        )
        .values(status=QueueStatus.PROCESSING.value, claimed_at=func.now())
    )


def release_stale_queue_items_stmt(stale_before: datetime, max_attempts: int) -> Update:
    """Return items stuck in processing since before ``stale_before`` to the queue.

    The interrupted run counts as an attempt; items out of attempts fail.
    """
    attempts = ReplicationQueueModel.attempts + 1
    return (
        update(ReplicationQueueModel)
        .where(
            ReplicationQueueModel.status == QueueStatus.PROCESSING.value,
            or_(
                ReplicationQueueModel.claimed_at.is_(None),
                ReplicationQueueModel.claimed_at < stale_before,
            ),
        )
        .values(
            attempts=attempts,
            status=case(
                (attempts >= max_attempts, QueueStatus.FAILED.value),
                else_=QueueStatus.PENDING.value,
            ),
            error_message="Claim expired before the item was finished",
            claimed_at=None,
        )
    )


def assign_owner_stmt(
    deal_id: str,
    owner_id: str,
    owner_profile_id: str | None,
    tags: list[str],
) -> Update:
    """Write an owner onto a deal that is still unowned."""
    return (
        update(DealModel)
        .where(
            DealModel.id == _uuid(deal_id),
            DealModel.owner_id.is_(None),
        )
        .values(
            owner_id=owner_id,
            owner_profile_id=owner_profile_id,
            tags=tags,
            updated_at=func.now(),
        )
    )


# ── Repository ──────────────────────────────────────────────────────────────


class LedgerRepository:
    """Async persistence for contacts, deals, transactions and reconciliation state.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Contacts & Stages ───────────────────────────────────────────────────

    async def list_contacts(self) -> list[ContactRead]:
        """Load every contact (used to build import lookup caches)."""
        async for session in self._session_factory():
            result = await session.execute(select(ContactModel))
            return [_model_to_contact(m) for m in result.scalars().all()]

    async def create_contact(self, data: ContactCreate) -> ContactRead:
        async for session in self._session_factory():
            model = ContactModel(
                name=data.name,
                email=data.email,
                phone=data.phone,
                tags=list(data.tags),
                origin_id=_opt_uuid(data.origin_id),
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_contact(model)

    async def list_stages(self, origin_id: str | None = None) -> list[StageRead]:
        async for session in self._session_factory():
            stmt = select(StageModel)
            if origin_id:
                stmt = stmt.where(StageModel.origin_id == _uuid(origin_id))
            result = await session.execute(stmt)
            return [_model_to_stage(m) for m in result.scalars().all()]

    async def get_stage(self, stage_id: str) -> StageRead | None:
        async for session in self._session_factory():
            model = await session.get(StageModel, _uuid(stage_id))
            return _model_to_stage(model) if model else None

    # ── Deals ───────────────────────────────────────────────────────────────

    async def get_deal(self, deal_id: str) -> DealRead | None:
        async for session in self._session_factory():
            model = await session.get(DealModel, _uuid(deal_id))
            return _model_to_deal(model) if model else None

    async def find_replica(
        self, source_deal_id: str, target_origin_id: str
    ) -> DealRead | None:
        """Return the existing replica of a deal in a target origin, if any."""
        async for session in self._session_factory():
            stmt = select(DealModel).where(
                DealModel.replicated_from_deal_id == _uuid(source_deal_id),
                DealModel.origin_id == _uuid(target_origin_id),
            )
            result = await session.execute(stmt)
            model = result.scalars().first()
            return _model_to_deal(model) if model else None

    async def create_replica(self, data: DealCreate) -> DealRead | None:
        """Insert a replica deal.

        Returns:
            The created deal, or None when a concurrent run already created
            the replica for the same (source deal, target origin).
        """
        async for session in self._session_factory():
            model = DealModel(
                external_id=data.external_id,
                name=data.name,
                value=data.value,
                contact_id=_opt_uuid(data.contact_id),
                origin_id=_opt_uuid(data.origin_id),
                stage_id=_opt_uuid(data.stage_id),
                owner_id=data.owner_id,
                owner_profile_id=data.owner_profile_id,
                tags=list(data.tags),
                custom_fields=dict(data.custom_fields),
                replicated_from_deal_id=_opt_uuid(data.replicated_from_deal_id),
                replicated_at=data.replicated_at,
                data_source=data.data_source,
            )
            session.add(model)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info(
                    "ledger.replica_already_exists",
                    source_deal_id=data.replicated_from_deal_id,
                    target_origin_id=data.origin_id,
                )
                return None
            await session.refresh(model)
            return _model_to_deal(model)

    async def update_deal_stage(self, deal_id: str, stage_id: str) -> DealRead | None:
        async for session in self._session_factory():
            model = await session.get(DealModel, _uuid(deal_id))
            if model is None:
                return None
            model.stage_id = _uuid(stage_id)
            model.updated_at = datetime.now(timezone.utc)
            await session.commit()
            await session.refresh(model)
            return _model_to_deal(model)

    async def list_unassigned_deals(
        self, origin_id: str, contact_emails: list[str] | None = None
    ) -> list[DealRead]:
        """Deals in an origin with no owner, optionally limited to contact emails."""
        async for session in self._session_factory():
            stmt = select(DealModel).where(
                DealModel.origin_id == _uuid(origin_id),
                DealModel.owner_id.is_(None),
            )
            if contact_emails is not None:
                emails = [e.strip().lower() for e in contact_emails if e and e.strip()]
                contact_ids = select(ContactModel.id).where(
                    func.lower(ContactModel.email).in_(emails)
                )
                stmt = stmt.where(DealModel.contact_id.in_(contact_ids))
            result = await session.execute(stmt.order_by(DealModel.created_at))
            return [_model_to_deal(m) for m in result.scalars().all()]

    async def assign_owner(
        self,
        deal_id: str,
        owner_id: str,
        owner_profile_id: str | None,
        tags: list[str],
    ) -> bool:
        """Set the owner of an unowned deal. False if it was claimed meanwhile."""
        async for session in self._session_factory():
            result = await session.execute(
                assign_owner_stmt(deal_id, owner_id, owner_profile_id, tags)
            )
            await session.commit()
            return result.rowcount == 1

    async def upsert_deals(self, rows: list[DealUpsert]) -> tuple[int, int]:
        """Insert-or-update deals by external_id in one statement.

        Missing foreign keys on an incoming row never erase existing links.

        Returns:
            (inserted, updated) counts.
        """
        if not rows:
            return 0, 0
        values = [
            {
                "external_id": row.external_id,
                "name": row.name,
                "value": row.value,
                "contact_id": _opt_uuid(row.contact_id),
                "origin_id": _opt_uuid(row.origin_id),
                "stage_id": _opt_uuid(row.stage_id),
                "owner_id": row.owner_id,
                "owner_profile_id": row.owner_profile_id,
                "tags": row.tags or [],
                "custom_fields": dict(row.custom_fields),
                "data_source": row.data_source,
            }
            for row in rows
        ]
        stmt = pg_insert(DealModel).values(values)
        excluded = stmt.excluded
        stmt = stmt.on_conflict_do_update(
            index_elements=[DealModel.external_id],
            set_={
                "name": excluded.name,
                "value": func.coalesce(excluded.value, DealModel.value),
                "contact_id": func.coalesce(excluded.contact_id, DealModel.contact_id),
                "origin_id": func.coalesce(excluded.origin_id, DealModel.origin_id),
                "stage_id": func.coalesce(excluded.stage_id, DealModel.stage_id),
                "owner_id": func.coalesce(excluded.owner_id, DealModel.owner_id),
                "owner_profile_id": func.coalesce(
                    excluded.owner_profile_id, DealModel.owner_profile_id
                ),
                "tags": case(
                    (func.json_array_length(excluded.tags) == 0, DealModel.tags),
                    else_=excluded.tags,
                ),
                "custom_fields": excluded.custom_fields,
                "updated_at": func.now(),
            },
        ).returning(DealModel.id, literal_column("(xmax = 0)").label("inserted"))

        async for session in self._session_factory():
            result = await session.execute(stmt)
            flags = [bool(row.inserted) for row in result.all()]
            await session.commit()
            inserted = sum(flags)
            return inserted, len(flags) - inserted

    # ── Activities ──────────────────────────────────────────────────────────

    async def add_activity(self, data: DealActivityCreate) -> DealActivityRead:
        async for session in self._session_factory():
            model = DealActivityModel(
                deal_id=_uuid(data.deal_id),
                activity_type=data.activity_type.value,
                from_stage=data.from_stage,
                to_stage=data.to_stage,
                description=data.description,
                metadata_json=dict(data.metadata),
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_activity(model)

    async def list_stage_changes(self, since: datetime) -> list[DealActivityRead]:
        """Stage-change activities since a timestamp, ordered by deal then time."""
        async for session in self._session_factory():
            stmt = (
                select(DealActivityModel)
                .where(
                    DealActivityModel.activity_type == "stage_change",
                    DealActivityModel.created_at >= since,
                )
                .order_by(DealActivityModel.deal_id, DealActivityModel.created_at)
            )
            result = await session.execute(stmt)
            return [_model_to_activity(m) for m in result.scalars().all()]

    async def mark_activities_duplicate(self, activity_ids: Iterable[str]) -> int:
        """Merge ``is_duplicate: true`` into each activity's metadata."""
        ids = [_uuid(a) for a in activity_ids]
        if not ids:
            return 0
        async for session in self._session_factory():
            result = await session.execute(
                select(DealActivityModel).where(DealActivityModel.id.in_(ids))
            )
            models = result.scalars().all()
            for model in models:
                model.metadata_json = {**(model.metadata_json or {}), "is_duplicate": True}
            await session.commit()
            return len(models)

    async def delete_activity(self, activity_id: str) -> bool:
        async for session in self._session_factory():
            result = await session.execute(
                delete(DealActivityModel).where(DealActivityModel.id == _uuid(activity_id))
            )
            await session.commit()
            return result.rowcount == 1

    # ── Transactions ────────────────────────────────────────────────────────

    async def list_speculative_transactions(
        self, start: datetime, end: datetime, prefix: str
    ) -> list[TransactionRead]:
        """Uncounted transactions whose external id carries the speculative prefix."""
        async for session in self._session_factory():
            stmt = (
                select(TransactionModel)
                .where(
                    TransactionModel.external_id.startswith(prefix),
                    TransactionModel.count_in_dashboard.is_(False),
                    TransactionModel.sale_date >= start,
                    TransactionModel.sale_date <= end,
                )
                .order_by(TransactionModel.sale_date)
            )
            result = await session.execute(stmt)
            return [_model_to_transaction(m) for m in result.scalars().all()]

    async def list_authoritative_transactions(
        self,
        start: datetime,
        end: datetime,
        prefix: str,
        categories: Iterable[str | None],
    ) -> list[TransactionRead]:
        """Transactions without the speculative prefix in the given categories."""
        categories = set(categories)
        named = [c for c in categories if c is not None]
        category_filter = TransactionModel.product_category.in_(named)
        if None in categories:
            category_filter = or_(category_filter, TransactionModel.product_category.is_(None))
        async for session in self._session_factory():
            stmt = select(TransactionModel).where(
                ~TransactionModel.external_id.startswith(prefix),
                TransactionModel.sale_date >= start,
                TransactionModel.sale_date <= end,
                category_filter,
            )
            result = await session.execute(stmt)
            return [_model_to_transaction(m) for m in result.scalars().all()]

    async def promote_transaction(self, transaction_id: str, net_value: float) -> bool:
        """Count a speculative transaction. False if it was already promoted."""
        async for session in self._session_factory():
            result = await session.execute(
                promote_transaction_stmt(transaction_id, net_value)
            )
            await session.commit()
            return result.rowcount == 1

    # ── Replication Rules & Logs ────────────────────────────────────────────

    async def list_rules(self) -> list[ReplicationRuleRead]:
        async for session in self._session_factory():
            result = await session.execute(
                select(ReplicationRuleModel).order_by(ReplicationRuleModel.priority)
            )
            return [_model_to_rule(m) for m in result.scalars().all()]

    async def list_active_rules(
        self, origin_id: str, stage_id: str
    ) -> list[ReplicationRuleRead]:
        """Active rules for a (source origin, source stage), by ascending priority."""
        async for session in self._session_factory():
            stmt = (
                select(ReplicationRuleModel)
                .where(
                    ReplicationRuleModel.source_origin_id == _uuid(origin_id),
                    ReplicationRuleModel.source_stage_id == _uuid(stage_id),
                    ReplicationRuleModel.is_active.is_(True),
                )
                .order_by(ReplicationRuleModel.priority)
            )
            result = await session.execute(stmt)
            return [_model_to_rule(m) for m in result.scalars().all()]

    async def create_rule(self, data: ReplicationRuleCreate) -> ReplicationRuleRead:
        async for session in self._session_factory():
            model = ReplicationRuleModel(
                name=data.name,
                source_origin_id=_uuid(data.source_origin_id),
                source_stage_id=_uuid(data.source_stage_id),
                target_origin_id=_uuid(data.target_origin_id),
                target_stage_id=_uuid(data.target_stage_id),
                match_condition=(
                    data.match_condition.model_dump(mode="json")
                    if data.match_condition
                    else None
                ),
                copy_custom_fields=data.copy_custom_fields,
                priority=data.priority,
                is_active=data.is_active,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_rule(model)

    async def add_replication_log(
        self,
        rule_id: str,
        source_deal_id: str,
        target_deal_id: str | None,
        status: str,
        metadata: dict[str, Any],
    ) -> None:
        async for session in self._session_factory():
            session.add(
                ReplicationLogModel(
                    rule_id=_uuid(rule_id),
                    source_deal_id=_uuid(source_deal_id),
                    target_deal_id=_opt_uuid(target_deal_id),
                    status=status,
                    metadata_json=metadata,
                )
            )
            await session.commit()

    async def has_replication_log(self, source_deal_id: str, target_deal_id: str) -> bool:
        async for session in self._session_factory():
            stmt = (
                select(ReplicationLogModel.id)
                .where(
                    ReplicationLogModel.source_deal_id == _uuid(source_deal_id),
                    ReplicationLogModel.target_deal_id == _uuid(target_deal_id),
                )
                .limit(1)
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none() is not None

    # ── Replication Queue ───────────────────────────────────────────────────

    async def enqueue_replication(
        self, deal_id: str, origin_id: str | None, stage_id: str | None
    ) -> QueueItemRead:
        async for session in self._session_factory():
            model = ReplicationQueueModel(
                deal_id=_uuid(deal_id),
                origin_id=_opt_uuid(origin_id),
                stage_id=_opt_uuid(stage_id),
                status=QueueStatus.PENDING.value,
                attempts=0,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_queue_item(model)

    async def list_pending_queue_items(
        self, limit: int, max_attempts: int
    ) -> list[QueueItemRead]:
        """Oldest pending items that still have retry budget."""
        async for session in self._session_factory():
            stmt = (
                select(ReplicationQueueModel)
                .where(
                    ReplicationQueueModel.status == QueueStatus.PENDING.value,
                    ReplicationQueueModel.attempts < max_attempts,
                )
                .order_by(ReplicationQueueModel.created_at)
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_model_to_queue_item(m) for m in result.scalars().all()]

    async def claim_queue_item(self, item_id: str) -> bool:
        async for session in self._session_factory():
            result = await session.execute(claim_queue_item_stmt(item_id))
            await session.commit()
            return result.rowcount == 1

    async def release_stale_queue_items(self, stale_before: datetime, max_attempts: int) -> int:
        async for session in self._session_factory():
            result = await session.execute(
                release_stale_queue_items_stmt(stale_before, max_attempts)
            )
            await session.commit()
            return result.rowcount

    async def complete_queue_item(self, item_id: str) -> None:
        async for session in self._session_factory():
            await session.execute(
                update(ReplicationQueueModel)
                .where(ReplicationQueueModel.id == _uuid(item_id))
                .values(
                    status=QueueStatus.COMPLETED.value,
                    error_message=None,
                    processed_at=func.now(),
                )
            )
            await session.commit()

    async def record_queue_failure(
        self, item_id: str, attempts: int, status: QueueStatus, error: str
    ) -> None:
        async for session in self._session_factory():
            await session.execute(
                update(ReplicationQueueModel)
                .where(ReplicationQueueModel.id == _uuid(item_id))
                .values(attempts=attempts, status=status.value, error_message=error)
            )
            await session.commit()

    # ── Activity Duplicates ─────────────────────────────────────────────────

    async def insert_duplicates(self, candidates: list[DuplicateCandidate]) -> int:
        """Insert duplicate records, skipping ones already recorded. Returns inserted count."""
        inserted = 0
        for start in range(0, len(candidates), DUPLICATE_INSERT_BATCH):
            batch = candidates[start:start + DUPLICATE_INSERT_BATCH]
            stmt = (
                pg_insert(ActivityDuplicateModel)
                .values(
                    [
                        {
                            "deal_id": _uuid(c.deal_id),
                            "original_activity_id": _uuid(c.original_activity_id),
                            "duplicate_activity_id": _uuid(c.duplicate_activity_id),
                            "from_stage": c.from_stage,
                            "to_stage": c.to_stage,
                            "gap_seconds": c.gap_seconds,
                            "status": DuplicateStatus.PENDING.value,
                        }
                        for c in batch
                    ]
                )
                .on_conflict_do_nothing(index_elements=["duplicate_activity_id"])
                .returning(ActivityDuplicateModel.id)
            )
            async for session in self._session_factory():
                result = await session.execute(stmt)
                inserted += len(result.all())
                await session.commit()
        return inserted

    async def list_duplicates(
        self, status: DuplicateStatus | None = None
    ) -> list[DuplicateActivityRead]:
        async for session in self._session_factory():
            stmt = select(ActivityDuplicateModel).order_by(
                ActivityDuplicateModel.detected_at.desc()
            )
            if status is not None:
                stmt = stmt.where(ActivityDuplicateModel.status == status.value)
            result = await session.execute(stmt)
            return [_model_to_duplicate(m) for m in result.scalars().all()]

    async def get_duplicate(self, duplicate_id: str) -> DuplicateActivityRead | None:
        async for session in self._session_factory():
            model = await session.get(ActivityDuplicateModel, _uuid(duplicate_id))
            return _model_to_duplicate(model) if model else None

    async def count_duplicates_by_status(self) -> dict[str, int]:
        async for session in self._session_factory():
            stmt = select(
                ActivityDuplicateModel.status, func.count(ActivityDuplicateModel.id)
            ).group_by(ActivityDuplicateModel.status)
            result = await session.execute(stmt)
            return {status: count for status, count in result.all()}

    async def update_duplicate_status(
        self, duplicate_id: str, status: DuplicateStatus, reviewer: str | None
    ) -> DuplicateActivityRead | None:
        async for session in self._session_factory():
            model = await session.get(ActivityDuplicateModel, _uuid(duplicate_id))
            if model is None:
                return None
            model.status = status.value
            model.reviewed_at = datetime.now(timezone.utc)
            model.reviewed_by = reviewer
            await session.commit()
            await session.refresh(model)
            return _model_to_duplicate(model)

    async def bulk_update_duplicate_status(
        self,
        from_status: DuplicateStatus,
        to_status: DuplicateStatus,
        reviewer: str | None,
    ) -> int:
        async for session in self._session_factory():
            result = await session.execute(
                update(ActivityDuplicateModel)
                .where(ActivityDuplicateModel.status == from_status.value)
                .values(
                    status=to_status.value,
                    reviewed_at=func.now(),
                    reviewed_by=reviewer,
                )
            )
            await session.commit()
            return result.rowcount

    # ── Import Jobs ─────────────────────────────────────────────────────────

    async def create_import_job(
        self, file_path: str, origin_id: str | None, owner_email: str | None
    ) -> ImportJobRead:
        async for session in self._session_factory():
            model = ImportJobModel(
                file_path=file_path,
                origin_id=origin_id,
                owner_email=owner_email,
                status=QueueStatus.PENDING.value,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_import_job(model)

    async def get_import_job(self, job_id: str) -> ImportJobRead | None:
        async for session in self._session_factory():
            model = await session.get(ImportJobModel, _uuid(job_id))
            return _model_to_import_job(model) if model else None

    async def next_import_job(self) -> ImportJobRead | None:
        """Oldest job that is pending or was interrupted mid-way."""
        async for session in self._session_factory():
            stmt = (
                select(ImportJobModel)
                .where(
                    ImportJobModel.status.in_(
                        [QueueStatus.PENDING.value, QueueStatus.PROCESSING.value]
                    )
                )
                .order_by(ImportJobModel.created_at)
                .limit(1)
            )
            result = await session.execute(stmt)
            model = result.scalars().first()
            return _model_to_import_job(model) if model else None

    async def update_import_job(self, job_id: str, **fields: Any) -> None:
        """Persist progress fields (status values may be QueueStatus members)."""
        values = {
            key: value.value if isinstance(value, QueueStatus) else value
            for key, value in fields.items()
        }
        async for session in self._session_factory():
            await session.execute(
                update(ImportJobModel)
                .where(ImportJobModel.id == _uuid(job_id))
                .values(**values)
            )
            await session.commit()
