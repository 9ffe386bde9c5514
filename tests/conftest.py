"""Shared fixtures for ledger tests.

Provides:
- InMemoryLedgerRepository: dict-backed stand-in for LedgerRepository that
  honours the same conditional writes (promote once, claim once, assign only
  unowned deals, one replica per source and target origin)
- repo / settings / ledger fixtures wiring LedgerServices around it
"""

from __future__ import annotations

import random
import uuid
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from src.dealops.config import Settings
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
    QueueItemRead,
    QueueStatus,
    ReplicationRuleCreate,
    ReplicationRuleRead,
    StageRead,
    TransactionRead,
)
from src.dealops.ledger.services import LedgerServices

BASE_TIME = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# ── In-Memory Test Double ────────────────────────────────────────────────────


class InMemoryLedgerRepository:
    """In-memory LedgerRepository for testing without database."""

    def __init__(self) -> None:
        self.contacts: dict[str, ContactRead] = {}
        self.stages: dict[str, StageRead] = {}
        self.deals: dict[str, DealRead] = {}
        self.activities: dict[str, DealActivityRead] = {}
        self.transactions: dict[str, TransactionRead] = {}
        self.rules: dict[str, ReplicationRuleRead] = {}
        self.replication_logs: list[dict[str, Any]] = []
        self.queue: dict[str, QueueItemRead] = {}
        self.duplicates: dict[str, DuplicateActivityRead] = {}
        self.import_jobs: dict[str, ImportJobRead] = {}
        self.upsert_calls: list[list[DealUpsert]] = []
        self._clock = BASE_TIME

    def _tick(self) -> datetime:
        self._clock += timedelta(milliseconds=1)
        return self._clock

    # ── Seeding helpers ─────────────────────────────────────────────────

    def seed_stage(self, origin_id: str, stage_name: str, stage_order: int = 0) -> StageRead:
        stage = StageRead(
            id=_new_id(), origin_id=origin_id, stage_name=stage_name, stage_order=stage_order
        )
        self.stages[stage.id] = stage
        return stage

    def seed_contact(self, name: str, email: str | None = None, phone: str | None = None) -> ContactRead:
        contact = ContactRead(id=_new_id(), name=name, email=email, phone=phone)
        self.contacts[contact.id] = contact
        return contact

    def seed_deal(self, **fields: Any) -> DealRead:
        fields.setdefault("name", "Deal")
        deal = DealRead(id=fields.pop("id", _new_id()), created_at=self._tick(), **fields)
        self.deals[deal.id] = deal
        return deal

    def seed_transaction(self, external_id: str, sale_date: datetime, **fields: Any) -> TransactionRead:
        tx = TransactionRead(id=_new_id(), external_id=external_id, sale_date=sale_date, **fields)
        self.transactions[tx.id] = tx
        return tx

    def seed_stage_change(
        self,
        deal_id: str,
        from_stage: str | None,
        to_stage: str | None,
        created_at: datetime,
        metadata: dict | None = None,
    ) -> DealActivityRead:
        activity = DealActivityRead(
            id=_new_id(),
            deal_id=deal_id,
            activity_type="stage_change",
            from_stage=from_stage,
            to_stage=to_stage,
            metadata=metadata or {},
            created_at=created_at,
        )
        self.activities[activity.id] = activity
        return activity

    def activities_for(self, deal_id: str, activity_type: str | None = None) -> list[DealActivityRead]:
        return [
            a
            for a in self.activities.values()
            if a.deal_id == deal_id and (activity_type is None or a.activity_type == activity_type)
        ]

    # ── Contacts & Stages ───────────────────────────────────────────────

    async def list_contacts(self) -> list[ContactRead]:
        return list(self.contacts.values())

    async def create_contact(self, data: ContactCreate) -> ContactRead:
        contact = ContactRead(id=_new_id(), created_at=self._tick(), **data.model_dump())
        self.contacts[contact.id] = contact
        return contact

    async def list_stages(self, origin_id: str | None = None) -> list[StageRead]:
        return [s for s in self.stages.values() if not origin_id or s.origin_id == origin_id]

    async def get_stage(self, stage_id: str) -> StageRead | None:
        return self.stages.get(stage_id)

    # ── Deals ───────────────────────────────────────────────────────────

    async def get_deal(self, deal_id: str) -> DealRead | None:
        return self.deals.get(deal_id)

    async def find_replica(self, source_deal_id: str, target_origin_id: str) -> DealRead | None:
        for deal in self.deals.values():
            if deal.replicated_from_deal_id == source_deal_id and deal.origin_id == target_origin_id:
                return deal
        return None

    async def create_replica(self, data: DealCreate) -> DealRead | None:
        if await self.find_replica(data.replicated_from_deal_id, data.origin_id):
            return None
        deal = DealRead(id=_new_id(), created_at=self._tick(), **data.model_dump())
        self.deals[deal.id] = deal
        return deal

    async def update_deal_stage(self, deal_id: str, stage_id: str) -> DealRead | None:
        deal = self.deals.get(deal_id)
        if deal is None:
            return None
        deal = deal.model_copy(update={"stage_id": stage_id, "updated_at": self._tick()})
        self.deals[deal_id] = deal
        return deal

    async def list_unassigned_deals(
        self, origin_id: str, contact_emails: list[str] | None = None
    ) -> list[DealRead]:
        deals = [d for d in self.deals.values() if d.origin_id == origin_id and d.owner_id is None]
        if contact_emails is not None:
            emails = {e.strip().lower() for e in contact_emails if e and e.strip()}
            contact_ids = {
                c.id for c in self.contacts.values() if c.email and c.email.lower() in emails
            }
            deals = [d for d in deals if d.contact_id in contact_ids]
        return deals

    async def assign_owner(
        self, deal_id: str, owner_id: str, owner_profile_id: str | None, tags: list[str]
    ) -> bool:
        deal = self.deals.get(deal_id)
        if deal is None or deal.owner_id is not None:
            return False
        self.deals[deal_id] = deal.model_copy(
            update={"owner_id": owner_id, "owner_profile_id": owner_profile_id, "tags": list(tags)}
        )
        return True

    async def upsert_deals(self, rows: list[DealUpsert]) -> tuple[int, int]:
        self.upsert_calls.append(list(rows))
        by_external = {d.external_id: d for d in self.deals.values() if d.external_id}
        inserted = updated = 0
        for row in rows:
            existing = by_external.get(row.external_id)
            if existing is None:
                deal = DealRead(
                    id=_new_id(),
                    created_at=self._tick(),
                    **row.model_dump(exclude={"line", "tags"}),
                    tags=row.tags or [],
                )
                inserted += 1
            else:
                deal = existing.model_copy(
                    update={
                        "name": row.name,
                        "value": row.value if row.value is not None else existing.value,
                        "contact_id": row.contact_id or existing.contact_id,
                        "origin_id": row.origin_id or existing.origin_id,
                        "stage_id": row.stage_id or existing.stage_id,
                        "owner_id": row.owner_id or existing.owner_id,
                        "owner_profile_id": row.owner_profile_id or existing.owner_profile_id,
                        "tags": row.tags or existing.tags,
                        "custom_fields": dict(row.custom_fields),
                        "updated_at": self._tick(),
                    }
                )
                updated += 1
            self.deals[deal.id] = deal
            by_external[row.external_id] = deal
        return inserted, updated

    # ── Activities ──────────────────────────────────────────────────────

    async def add_activity(self, data: DealActivityCreate) -> DealActivityRead:
        activity = DealActivityRead(
            id=_new_id(),
            deal_id=data.deal_id,
            activity_type=data.activity_type.value,
            from_stage=data.from_stage,
            to_stage=data.to_stage,
            description=data.description,
            metadata=dict(data.metadata),
            created_at=self._tick(),
        )
        self.activities[activity.id] = activity
        return activity

    async def list_stage_changes(self, since: datetime) -> list[DealActivityRead]:
        rows = [
            a
            for a in self.activities.values()
            if a.activity_type == "stage_change" and a.created_at >= since
        ]
        return sorted(rows, key=lambda a: (a.deal_id, a.created_at))

    async def mark_activities_duplicate(self, activity_ids: Iterable[str]) -> int:
        marked = 0
        for activity_id in activity_ids:
            activity = self.activities.get(activity_id)
            if activity is None:
                continue
            self.activities[activity_id] = activity.model_copy(
                update={"metadata": {**activity.metadata, "is_duplicate": True}}
            )
            marked += 1
        return marked

    async def delete_activity(self, activity_id: str) -> bool:
        return self.activities.pop(activity_id, None) is not None

    # ── Transactions ────────────────────────────────────────────────────

    async def list_speculative_transactions(
        self, start: datetime, end: datetime, prefix: str
    ) -> list[TransactionRead]:
        rows = [
            t
            for t in self.transactions.values()
            if t.external_id.startswith(prefix)
            and not t.count_in_dashboard
            and start <= t.sale_date <= end
        ]
        return sorted(rows, key=lambda t: t.sale_date)

    async def list_authoritative_transactions(
        self,
        start: datetime,
        end: datetime,
        prefix: str,
        categories: Iterable[str | None],
    ) -> list[TransactionRead]:
        categories = set(categories)
        return [
            t
            for t in self.transactions.values()
            if not t.external_id.startswith(prefix)
            and start <= t.sale_date <= end
            and t.product_category in categories
        ]

    async def promote_transaction(self, transaction_id: str, net_value: float) -> bool:
        tx = self.transactions.get(transaction_id)
        if tx is None or tx.count_in_dashboard:
            return False
        self.transactions[transaction_id] = tx.model_copy(
            update={"count_in_dashboard": True, "net_value": net_value}
        )
        return True

    # ── Replication ─────────────────────────────────────────────────────

    async def list_rules(self) -> list[ReplicationRuleRead]:
        return sorted(self.rules.values(), key=lambda r: r.priority)

    async def list_active_rules(self, origin_id: str, stage_id: str) -> list[ReplicationRuleRead]:
        return [
            r
            for r in await self.list_rules()
            if r.is_active and r.source_origin_id == origin_id and r.source_stage_id == stage_id
        ]

    async def create_rule(self, data: ReplicationRuleCreate) -> ReplicationRuleRead:
        rule = ReplicationRuleRead(id=_new_id(), created_at=self._tick(), **data.model_dump())
        self.rules[rule.id] = rule
        return rule

    async def add_replication_log(
        self,
        rule_id: str,
        source_deal_id: str,
        target_deal_id: str | None,
        status: str,
        metadata: dict[str, Any],
    ) -> None:
        self.replication_logs.append(
            {
                "rule_id": rule_id,
                "source_deal_id": source_deal_id,
                "target_deal_id": target_deal_id,
                "status": status,
                "metadata": metadata,
            }
        )

    async def has_replication_log(self, source_deal_id: str, target_deal_id: str) -> bool:
        return any(
            log["source_deal_id"] == source_deal_id and log["target_deal_id"] == target_deal_id
            for log in self.replication_logs
        )

    async def enqueue_replication(
        self, deal_id: str, origin_id: str | None, stage_id: str | None
    ) -> QueueItemRead:
        item = QueueItemRead(
            id=_new_id(),
            deal_id=deal_id,
            origin_id=origin_id,
            stage_id=stage_id,
            created_at=self._tick(),
        )
        self.queue[item.id] = item
        return item

    async def list_pending_queue_items(self, limit: int, max_attempts: int) -> list[QueueItemRead]:
        rows = [
            q
            for q in self.queue.values()
            if q.status == QueueStatus.PENDING and q.attempts < max_attempts
        ]
        return sorted(rows, key=lambda q: q.created_at)[:limit]

    async def claim_queue_item(self, item_id: str) -> bool:
        item = self.queue.get(item_id)
        if item is None or item.status != QueueStatus.PENDING:
            return False
        self.queue[item_id] = item.model_copy(
            update={"status": QueueStatus.PROCESSING, "claimed_at": datetime.now(timezone.utc)}
        )
        return True

    async def release_stale_queue_items(self, stale_before: datetime, max_attempts: int) -> int:
        released = 0
        for item in list(self.queue.values()):
            if item.status != QueueStatus.PROCESSING:
                continue
            if item.claimed_at is not None and item.claimed_at >= stale_before:
                continue
            attempts = item.attempts + 1
            self.queue[item.id] = item.model_copy(
                update={
                    "attempts": attempts,
                    "status": (
                        QueueStatus.FAILED if attempts >= max_attempts else QueueStatus.PENDING
                    ),
                    "error_message": "Claim expired before the item was finished",
                    "claimed_at": None,
                }
            )
            released += 1
        return released

    async def complete_queue_item(self, item_id: str) -> None:
        self.queue[item_id] = self.queue[item_id].model_copy(
            update={"status": QueueStatus.COMPLETED, "error_message": None}
        )

    async def record_queue_failure(
        self, item_id: str, attempts: int, status: QueueStatus, error: str
    ) -> None:
        self.queue[item_id] = self.queue[item_id].model_copy(
            update={"attempts": attempts, "status": status, "error_message": error}
        )

    # ── Activity Duplicates ─────────────────────────────────────────────

    async def insert_duplicates(self, candidates: list[DuplicateCandidate]) -> int:
        recorded = {d.duplicate_activity_id for d in self.duplicates.values()}
        inserted = 0
        for candidate in candidates:
            if candidate.duplicate_activity_id in recorded:
                continue
            record = DuplicateActivityRead(
                id=_new_id(), detected_at=self._tick(), **candidate.model_dump()
            )
            self.duplicates[record.id] = record
            recorded.add(candidate.duplicate_activity_id)
            inserted += 1
        return inserted

    async def list_duplicates(
        self, status: DuplicateStatus | None = None
    ) -> list[DuplicateActivityRead]:
        rows = [d for d in self.duplicates.values() if status is None or d.status == status]
        return sorted(rows, key=lambda d: d.detected_at, reverse=True)

    async def get_duplicate(self, duplicate_id: str) -> DuplicateActivityRead | None:
        return self.duplicates.get(duplicate_id)

    async def count_duplicates_by_status(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for record in self.duplicates.values():
            counts[record.status.value] = counts.get(record.status.value, 0) + 1
        return counts

    async def update_duplicate_status(
        self, duplicate_id: str, status: DuplicateStatus, reviewer: str | None
    ) -> DuplicateActivityRead | None:
        record = self.duplicates.get(duplicate_id)
        if record is None:
            return None
        record = record.model_copy(
            update={"status": status, "reviewed_by": reviewer, "reviewed_at": self._tick()}
        )
        self.duplicates[duplicate_id] = record
        return record

    async def bulk_update_duplicate_status(
        self, from_status: DuplicateStatus, to_status: DuplicateStatus, reviewer: str | None
    ) -> int:
        changed = 0
        for record in list(self.duplicates.values()):
            if record.status == from_status:
                await self.update_duplicate_status(record.id, to_status, reviewer)
                changed += 1
        return changed

    # ── Import Jobs ─────────────────────────────────────────────────────

    async def create_import_job(
        self, file_path: str, origin_id: str | None, owner_email: str | None
    ) -> ImportJobRead:
        job = ImportJobRead(
            id=_new_id(),
            file_path=file_path,
            origin_id=origin_id,
            owner_email=owner_email,
            created_at=self._tick(),
        )
        self.import_jobs[job.id] = job
        return job

    async def get_import_job(self, job_id: str) -> ImportJobRead | None:
        return self.import_jobs.get(job_id)

    async def next_import_job(self) -> ImportJobRead | None:
        waiting = [
            j
            for j in self.import_jobs.values()
            if j.status in (QueueStatus.PENDING, QueueStatus.PROCESSING)
        ]
        return min(waiting, key=lambda j: j.created_at) if waiting else None

    async def update_import_job(self, job_id: str, **fields: Any) -> None:
        self.import_jobs[job_id] = self.import_jobs[job_id].model_copy(update=fields)


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def repo() -> InMemoryLedgerRepository:
    return InMemoryLedgerRepository()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        IMPORT_STORAGE_DIR=str(tmp_path / "imports"),
        IMPORT_CHUNK_DELAY_SECONDS=0,
        SCHEDULER_ENABLED=False,
    )


@pytest.fixture
def ledger(repo, settings) -> LedgerServices:
    return LedgerServices(repo, settings, rng=random.Random(7))
