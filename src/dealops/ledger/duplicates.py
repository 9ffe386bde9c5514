"""Duplicate stage-change detection and review.

The CRM sync occasionally records the same stage transition twice within a
few seconds. The detector walks each deal's recent stage-change history and,
for every event, measures the gap to the previous event on the same deal
with the same (from_stage, to_stage) pair. Gaps at or under the threshold
produce a pending DuplicateActivity record and flag the later activity with
``metadata.is_duplicate``.

Nothing is deleted automatically: a reviewer sets each record to ``ignored``
or ``deleted`` (the latter removes the duplicate activity row).
"""

from __future__ import annotations

import time
from collections import defaultdict
from datetime import datetime, timedelta, timezone

import structlog

from src.dealops.core.monitoring import (
    reconciliation_run_duration_seconds,
    record_reconciliation,
)
from src.dealops.ledger.errors import InvalidInputError, NotFoundError
from src.dealops.ledger.schemas import (
    DealActivityRead,
    DuplicateActivityRead,
    DuplicateCandidate,
    DuplicateDetectionStats,
    DuplicateStatus,
)

logger = structlog.get_logger(__name__)

OPERATION = "duplicate_detection"


def find_duplicate_candidates(
    activities: list[DealActivityRead], gap_seconds: float
) -> list[DuplicateCandidate]:
    """Pure pass over stage-change activities (any order, any number of deals)."""
    by_deal: dict[str, list[DealActivityRead]] = defaultdict(list)
    for activity in activities:
        by_deal[activity.deal_id].append(activity)

    candidates: list[DuplicateCandidate] = []
    for deal_id, events in by_deal.items():
        events.sort(key=lambda a: a.created_at)
        previous_by_pair: dict[tuple[str | None, str | None], DealActivityRead] = {}
        for event in events:
            pair = (event.from_stage, event.to_stage)
            previous = previous_by_pair.get(pair)
            previous_by_pair[pair] = event
            if previous is None or event.metadata.get("is_duplicate"):
                continue
            gap = (event.created_at - previous.created_at).total_seconds()
            if gap <= gap_seconds:
                candidates.append(
                    DuplicateCandidate(
                        deal_id=deal_id,
                        original_activity_id=previous.id,
                        duplicate_activity_id=event.id,
                        from_stage=event.from_stage,
                        to_stage=event.to_stage,
                        gap_seconds=round(gap, 3),
                    )
                )
    return candidates


class DuplicateActivityDetector:
    """Detects and manages review of duplicate stage-change activities.

    Args:
        repository: LedgerRepository.
        gap_seconds: Maximum gap for two identical transitions to count as one.
        lookback_days: Default history window for detect().
    """

    def __init__(self, repository, gap_seconds: float = 60, lookback_days: int = 7) -> None:
        self._repo = repository
        self._gap_seconds = gap_seconds
        self._lookback_days = lookback_days

    async def detect(self, days_back: int | None = None) -> DuplicateDetectionStats:
        days = self._lookback_days if days_back is None else days_back
        if days <= 0:
            raise InvalidInputError("days_back must be positive")

        started = time.perf_counter()
        since = datetime.now(timezone.utc) - timedelta(days=days)
        activities = await self._repo.list_stage_changes(since)
        candidates = find_duplicate_candidates(activities, self._gap_seconds)

        stats = DuplicateDetectionStats(
            analyzed=len(activities),
            duplicates_found=len(candidates),
        )
        if candidates:
            stats.duplicates_inserted = await self._repo.insert_duplicates(candidates)
            stats.duplicates_marked = await self._repo.mark_activities_duplicate(
                c.duplicate_activity_id for c in candidates
            )

        record_reconciliation(OPERATION, "found", stats.duplicates_inserted)
        reconciliation_run_duration_seconds.labels(operation=OPERATION).observe(
            time.perf_counter() - started
        )
        logger.info("duplicates.detection_completed", days_back=days, **stats.model_dump())
        return stats

    async def list_duplicates(
        self, status: DuplicateStatus | None = None
    ) -> list[DuplicateActivityRead]:
        return await self._repo.list_duplicates(status)

    async def duplicate_stats(self) -> dict[str, int]:
        """Count records per review status (all statuses present, plus ``total``)."""
        counts = await self._repo.count_duplicates_by_status()
        stats = {status.value: counts.get(status.value, 0) for status in DuplicateStatus}
        stats["total"] = sum(stats.values())
        return stats

    async def set_status(
        self,
        duplicate_id: str,
        status: DuplicateStatus,
        reviewer: str | None = None,
    ) -> DuplicateActivityRead:
        """Apply a review decision; ``deleted`` also removes the duplicate activity.

        Raises:
            NotFoundError: If no duplicate record has this id.
        """
        existing = await self._repo.get_duplicate(duplicate_id)
        if existing is None:
            raise NotFoundError(f"Duplicate record {duplicate_id} not found")

        if status == DuplicateStatus.DELETED and existing.status != DuplicateStatus.DELETED:
            removed = await self._repo.delete_activity(existing.duplicate_activity_id)
            logger.info(
                "duplicates.activity_deleted",
                duplicate_id=duplicate_id,
                activity_id=existing.duplicate_activity_id,
                removed=removed,
                reviewer=reviewer,
            )
            record_reconciliation(OPERATION, "deleted")

        updated = await self._repo.update_duplicate_status(duplicate_id, status, reviewer)
        if updated is None:
            raise NotFoundError(f"Duplicate record {duplicate_id} not found")
        logger.info(
            "duplicates.status_changed",
            duplicate_id=duplicate_id,
            status=status.value,
            reviewer=reviewer,
        )
        return updated

    async def ignore_all_pending(self, reviewer: str | None = None) -> int:
        count = await self._repo.bulk_update_duplicate_status(
            DuplicateStatus.PENDING, DuplicateStatus.IGNORED, reviewer
        )
        record_reconciliation(OPERATION, "ignored", count)
        logger.info("duplicates.pending_ignored", count=count, reviewer=reviewer)
        return count
