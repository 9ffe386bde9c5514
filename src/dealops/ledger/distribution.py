"""Quota-based batch distribution of unowned deals.

Candidates are shuffled uniformly, then handed out by walking the roster in
its configured order: each worker receives up to their quota before the walk
advances, and the walk wraps to the first worker when candidates outnumber
the sum of quotas. Workers with a zero quota are never assigned anything.
"""

from __future__ import annotations

import random
from datetime import datetime, timezone

import structlog

from src.dealops.core.monitoring import record_reconciliation
from src.dealops.ledger.errors import InvalidInputError
from src.dealops.ledger.schemas import (
    ActivityType,
    DealActivityCreate,
    DealRead,
    DistributionResult,
    WorkerAssignmentSummary,
    WorkerQuota,
)

logger = structlog.get_logger(__name__)

OPERATION = "distribution"


def plan_distribution(
    candidates: list[DealRead],
    roster: list[WorkerQuota],
    rng: random.Random | None = None,
) -> list[tuple[DealRead, WorkerQuota]]:
    """Pair every candidate with a worker.

    Args:
        candidates: Deals to assign (not mutated).
        roster: Workers in walk order with their per-pass quotas.
        rng: Random source for the shuffle (seed it for reproducible plans).

    Returns:
        (deal, worker) pairs in shuffled order.

    Raises:
        InvalidInputError: If no worker has a positive quota.
    """
    workers = [w for w in roster if w.quota > 0]
    if not workers:
        raise InvalidInputError("Distribution roster has no worker with a positive quota")

    shuffled = list(candidates)
    (rng or random.Random()).shuffle(shuffled)

    plan: list[tuple[DealRead, WorkerQuota]] = []
    index = 0
    given = 0
    for deal in shuffled:
        worker = workers[index]
        plan.append((deal, worker))
        given += 1
        if given >= worker.quota:
            index = (index + 1) % len(workers)
            given = 0
    return plan


class BatchDistributor:
    """Assigns unowned deals of an origin to a roster of workers.

    Args:
        repository: LedgerRepository.
        roster: Default roster (used when a run does not supply one).
        origin_id: Default origin to draw candidates from.
        tag: Tag appended to every distributed deal.
        rng: Random source for the shuffle.
    """

    def __init__(
        self,
        repository,
        roster: list[WorkerQuota] | None = None,
        origin_id: str | None = None,
        tag: str = "Lead-Lancamento",
        rng: random.Random | None = None,
    ) -> None:
        self._repo = repository
        self._roster = list(roster or [])
        self._origin_id = origin_id or None
        self._tag = tag
        self._rng = rng or random.Random()

    async def distribute(
        self,
        origin_id: str | None = None,
        roster: list[WorkerQuota] | None = None,
        contact_emails: list[str] | None = None,
    ) -> DistributionResult:
        origin_id = origin_id or self._origin_id
        roster = roster if roster else self._roster
        if not origin_id:
            raise InvalidInputError("origin_id is required (no default origin configured)")
        if not roster:
            raise InvalidInputError("A distribution roster is required")

        candidates = await self._repo.list_unassigned_deals(origin_id, contact_emails)
        summary = {
            w.identifier: WorkerAssignmentSummary(name=w.name or w.identifier, email=w.identifier)
            for w in roster
        }
        if not candidates:
            return DistributionResult(
                message="No unowned deals found to distribute",
                distribution=list(summary.values()),
            )

        plan = plan_distribution(candidates, roster, self._rng)
        result = DistributionResult()
        distributed_at = datetime.now(timezone.utc).isoformat()

        for deal, worker in plan:
            tags = deal.tags if self._tag in deal.tags else [*deal.tags, self._tag]
            try:
                assigned = await self._repo.assign_owner(
                    deal.id, worker.identifier, worker.profile_id, tags
                )
            except Exception as exc:
                logger.warning(
                    "distribution.assign_failed",
                    deal_id=deal.id,
                    worker=worker.identifier,
                    exc_info=True,
                )
                result.errors.append(f"Deal {deal.id}: {exc}")
                continue
            if not assigned:
                result.errors.append(f"Deal {deal.id}: already has an owner")
                continue

            result.updated += 1
            summary[worker.identifier].assigned += 1

            try:
                await self._repo.add_activity(
                    DealActivityCreate(
                        deal_id=deal.id,
                        activity_type=ActivityType.OWNER_CHANGE,
                        description=f"Assigned to {worker.name or worker.identifier} by batch distribution",
                        metadata={
                            "new_owner": worker.identifier,
                            "new_owner_name": worker.name,
                            "new_owner_profile_id": worker.profile_id,
                            "tag_added": self._tag,
                            "distributed_at": distributed_at,
                            "batch_operation": "batch-distribution",
                        },
                    )
                )
            except Exception:
                logger.warning("distribution.activity_failed", deal_id=deal.id, exc_info=True)
                continue
            result.activities_created += 1

        active_workers = sum(1 for w in roster if w.quota > 0)
        result.message = f"Distributed {result.updated} deals to {active_workers} workers"
        result.distribution = list(summary.values())

        record_reconciliation(OPERATION, "assigned", result.updated)
        record_reconciliation(OPERATION, "error", len(result.errors))
        logger.info(
            "distribution.completed",
            origin_id=origin_id,
            candidates=len(candidates),
            updated=result.updated,
            errors=len(result.errors),
        )
        return result
