"""Rule-based deal replication across pipelines.

When a deal enters a stage, every active rule for (origin, stage) is
evaluated in ascending priority. A rule whose match condition holds copies
the deal into the rule's target origin and stage, with a lineage pointer
(``replicated_from_deal_id``) back to the source.

Invariants:
- A replica is never itself used as a replication source (loop prevention).
- At most one replica exists per (source deal, target origin); the database
  unique constraint makes a concurrent second insert a no-op.
- Queue items follow pending -> processing -> completed | failed, with the
  attempt counter capped at REPLICATION_MAX_ATTEMPTS. A claim older than the
  claim timeout is released back to pending (or failed, if out of attempts).
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import structlog

from src.dealops.core.monitoring import record_reconciliation
from src.dealops.ledger.errors import DealNotFoundError, InvalidInputError
from src.dealops.ledger.schemas import (
    ActivityType,
    ConditionOperator,
    ConditionType,
    DealActivityCreate,
    DealCreate,
    DealRead,
    MatchCondition,
    QueueItemRead,
    QueueStatus,
    ReplicationDetail,
    ReplicationResult,
    ReplicationRuleCreate,
    ReplicationRuleRead,
)

logger = structlog.get_logger(__name__)

OPERATION = "replication"


# ── Match Conditions ────────────────────────────────────────────────────────


def _text_matches(text: str, values: list[str], operator: ConditionOperator | None) -> bool:
    text = text.lower()
    if operator == ConditionOperator.EQUALS:
        return any(text == v.lower() for v in values)
    return any(v.lower() in text for v in values)


def _tags_match(tags: list[str], values: list[str], operator: ConditionOperator | None) -> bool:
    tag_set = {t.lower() for t in tags}
    if operator == ConditionOperator.INCLUDES_ALL:
        return all(v.lower() in tag_set for v in values)
    return any(v.lower() in tag_set for v in values)


def matches_condition(deal: DealRead, condition: MatchCondition | None) -> bool:
    """Evaluate a rule's match condition against a deal.

    An absent condition, or one with no values, always matches. Operators
    that do not apply to the condition type fall back to the type's default
    (``contains`` for text, ``includes_any`` for tags).
    """
    if condition is None or not condition.values:
        return True

    if condition.type == ConditionType.PRODUCT_NAME:
        return _text_matches(deal.name or "", condition.values, condition.operator)

    if condition.type == ConditionType.TAGS:
        return _tags_match(deal.tags, condition.values, condition.operator)

    if condition.type == ConditionType.CUSTOM_FIELD:
        if not condition.field or not deal.custom_fields:
            return False
        raw = deal.custom_fields.get(condition.field)
        value = "" if raw is None else str(raw)
        return _text_matches(value, condition.values, condition.operator)

    return True


def replica_external_id(source_deal_id: str, target_origin_id: str) -> str:
    return f"replicated-{source_deal_id}-{target_origin_id}"


# ── Engine ──────────────────────────────────────────────────────────────────


class ReplicationEngine:
    """Evaluates replication rules for deals and drains the replication queue.

    Args:
        repository: LedgerRepository.
        max_attempts: Attempts after which a queue item is marked failed.
        batch_size: Queue items processed per run.
        claim_timeout_seconds: Age after which a processing item is requeued.
    """

    def __init__(
        self,
        repository,
        max_attempts: int = 3,
        batch_size: int = 50,
        claim_timeout_seconds: float = 300,
    ) -> None:
        self._repo = repository
        self._max_attempts = max_attempts
        self._batch_size = batch_size
        self._claim_timeout = claim_timeout_seconds

    # ── Rules ───────────────────────────────────────────────────────────────

    async def list_rules(self) -> list[ReplicationRuleRead]:
        return await self._repo.list_rules()

    async def create_rule(self, data: ReplicationRuleCreate) -> ReplicationRuleRead:
        if data.source_origin_id == data.target_origin_id:
            raise InvalidInputError("Target origin must differ from source origin")
        rule = await self._repo.create_rule(data)
        logger.info("replication.rule_created", rule_id=rule.id, name=rule.name)
        return rule

    # ── Single Deal ─────────────────────────────────────────────────────────

    async def replicate_deal(
        self,
        deal_id: str,
        origin_id: str | None = None,
        stage_id: str | None = None,
    ) -> ReplicationResult:
        """Apply every matching rule to one deal.

        ``origin_id`` / ``stage_id`` identify the stage that was entered
        (default: the deal's current position).

        Raises:
            DealNotFoundError: If the deal does not exist.
        """
        deal = await self._repo.get_deal(deal_id)
        if deal is None:
            raise DealNotFoundError(deal_id)

        if deal.is_replica:
            logger.info("replication.skipped_replica", deal_id=deal_id)
            return ReplicationResult(
                deal_id=deal_id, message="Skipped - deal is a replica", replications=0
            )

        origin_id = origin_id or deal.origin_id
        stage_id = stage_id or deal.stage_id
        if not origin_id or not stage_id:
            return ReplicationResult(
                deal_id=deal_id, message="Deal has no origin or stage", replications=0
            )

        rules = await self._repo.list_active_rules(origin_id, stage_id)
        if not rules:
            return ReplicationResult(deal_id=deal_id, message="No matching rules", replications=0)

        details: list[ReplicationDetail] = []
        for rule in rules:
            if not matches_condition(deal, rule.match_condition):
                continue
            try:
                detail = await self._apply_rule(deal, rule, origin_id)
            except Exception:
                logger.error(
                    "replication.rule_failed",
                    deal_id=deal_id,
                    rule_id=rule.id,
                    exc_info=True,
                )
                record_reconciliation(OPERATION, "error")
                continue
            if detail is not None:
                details.append(detail)

        return ReplicationResult(
            deal_id=deal_id,
            message=f"Processed {len(details)} replications",
            replications=len(details),
            details=details,
        )

    async def _apply_rule(
        self, deal: DealRead, rule: ReplicationRuleRead, source_origin_id: str
    ) -> ReplicationDetail | None:
        existing = await self._repo.find_replica(deal.id, rule.target_origin_id)
        if existing is not None:
            if not await self._repo.has_replication_log(deal.id, existing.id):
                # Replica committed but its audit rows were lost
                await self._write_audit(deal, rule, existing, source_origin_id)
                logger.info(
                    "replication.audit_backfilled",
                    deal_id=deal.id,
                    replica_id=existing.id,
                    rule_id=rule.id,
                )
                return None
            logger.debug(
                "replication.replica_exists",
                deal_id=deal.id,
                target_origin_id=rule.target_origin_id,
                replica_id=existing.id,
            )
            return None

        replica = await self._repo.create_replica(
            DealCreate(
                name=deal.name,
                external_id=replica_external_id(deal.id, rule.target_origin_id),
                value=deal.value,
                contact_id=deal.contact_id,
                origin_id=rule.target_origin_id,
                stage_id=rule.target_stage_id,
                owner_id=deal.owner_id,
                owner_profile_id=deal.owner_profile_id,
                tags=list(deal.tags),
                custom_fields=dict(deal.custom_fields) if rule.copy_custom_fields else {},
                replicated_from_deal_id=deal.id,
                replicated_at=datetime.now(timezone.utc),
                data_source="replication",
            )
        )
        if replica is None:
            return None

        await self._write_audit(deal, rule, replica, source_origin_id)
        record_reconciliation(OPERATION, "replicated")
        logger.info(
            "replication.replica_created",
            deal_id=deal.id,
            replica_id=replica.id,
            rule_id=rule.id,
            rule_name=rule.name,
        )
        return ReplicationDetail(rule_id=rule.id, rule_name=rule.name, target_deal_id=replica.id)

    async def _write_audit(
        self,
        deal: DealRead,
        rule: ReplicationRuleRead,
        replica: DealRead,
        source_origin_id: str,
    ) -> None:
        """Record the replication on both deals, then the rule log.

        The log row is written last: its presence marks the audit complete.
        """
        await self._repo.add_activity(
            DealActivityCreate(
                deal_id=deal.id,
                activity_type=ActivityType.REPLICATION,
                description=f'Deal replicated to pipeline "{rule.name}" - ID: {replica.id}',
                metadata={
                    "rule_id": rule.id,
                    "target_deal_id": replica.id,
                    "target_origin_id": rule.target_origin_id,
                },
            )
        )
        await self._repo.add_activity(
            DealActivityCreate(
                deal_id=replica.id,
                activity_type=ActivityType.CREATION,
                description=f"Deal created automatically by replication of deal {deal.id}",
                metadata={
                    "source_deal_id": deal.id,
                    "rule_id": rule.id,
                    "rule_name": rule.name,
                },
            )
        )
        await self._repo.add_replication_log(
            rule_id=rule.id,
            source_deal_id=deal.id,
            target_deal_id=replica.id,
            status="success",
            metadata={
                "rule_name": rule.name,
                "source_origin": source_origin_id,
                "target_origin": rule.target_origin_id,
                "match_condition": (
                    rule.match_condition.model_dump(mode="json")
                    if rule.match_condition
                    else None
                ),
            },
        )

    # ── Queue ───────────────────────────────────────────────────────────────

    async def release_stale_items(self) -> int:
        """Requeue items whose claim outlived the claim timeout (crashed or cut-off runs)."""
        stale_before = datetime.now(timezone.utc) - timedelta(seconds=self._claim_timeout)
        released = await self._repo.release_stale_queue_items(stale_before, self._max_attempts)
        if released:
            logger.warning("replication.stale_items_released", released=released)
            record_reconciliation(OPERATION, "queue_released", released)
        return released

    async def process_queue(self) -> list[ReplicationResult]:
        """Claim and process up to batch_size pending queue items, oldest first.

        A failure while claiming or recording an item's outcome is logged and
        reported for that item only; the item stays claimed until its claim
        expires and release_stale_items puts it back.
        """
        await self.release_stale_items()
        items = await self._repo.list_pending_queue_items(self._batch_size, self._max_attempts)
        results: list[ReplicationResult] = []
        for item in items:
            try:
                if not await self._repo.claim_queue_item(item.id):
                    logger.debug("replication.item_already_claimed", item_id=item.id)
                    continue
                results.append(await self._process_item(item))
            except Exception as exc:
                logger.error(
                    "replication.item_bookkeeping_failed",
                    item_id=item.id,
                    deal_id=item.deal_id,
                    exc_info=True,
                )
                record_reconciliation(OPERATION, "queue_error")
                results.append(
                    ReplicationResult(deal_id=item.deal_id, success=False, error=str(exc))
                )
        if results:
            logger.info(
                "replication.queue_processed",
                processed=len(results),
                failed=sum(1 for r in results if not r.success),
            )
        return results

    async def _process_item(self, item: QueueItemRead) -> ReplicationResult:
        try:
            result = await self.replicate_deal(item.deal_id, item.origin_id, item.stage_id)
        except Exception as exc:
            attempts = item.attempts + 1
            status = (
                QueueStatus.FAILED if attempts >= self._max_attempts else QueueStatus.PENDING
            )
            logger.warning(
                "replication.item_failed",
                item_id=item.id,
                deal_id=item.deal_id,
                attempts=attempts,
                status=status.value,
                exc_info=True,
            )
            await self._repo.record_queue_failure(item.id, attempts, status, str(exc))
            record_reconciliation(OPERATION, "queue_failed")
            return ReplicationResult(deal_id=item.deal_id, success=False, error=str(exc))

        await self._repo.complete_queue_item(item.id)
        return result

    async def process(
        self, deal_id: str | None = None, process_queue: bool = False
    ) -> list[ReplicationResult]:
        """Entry point for a direct deal run or a queue drain."""
        if deal_id:
            return [await self.replicate_deal(deal_id)]
        if process_queue:
            return await self.process_queue()
        raise InvalidInputError("Provide deal_id or process_queue")

    # ── Stage Entry ─────────────────────────────────────────────────────────

    async def move_deal_stage(
        self, deal_id: str, stage_id: str, actor: str | None = None
    ) -> DealRead:
        """Move a deal to a stage, log the transition and queue replication.

        Raises:
            DealNotFoundError: If the deal does not exist.
            InvalidInputError: If the stage does not exist.
        """
        deal = await self._repo.get_deal(deal_id)
        if deal is None:
            raise DealNotFoundError(deal_id)
        target = await self._repo.get_stage(stage_id)
        if target is None:
            raise InvalidInputError(f"Unknown stage: {stage_id}")
        if deal.stage_id == target.id:
            return deal

        current = await self._repo.get_stage(deal.stage_id) if deal.stage_id else None
        moved = await self._repo.update_deal_stage(deal_id, target.id)
        if moved is None:
            raise DealNotFoundError(deal_id)

        await self._repo.add_activity(
            DealActivityCreate(
                deal_id=deal_id,
                activity_type=ActivityType.STAGE_CHANGE,
                from_stage=current.stage_name if current else None,
                to_stage=target.stage_name,
                description=f"Stage changed to {target.stage_name}",
                metadata={"actor": actor} if actor else {},
            )
        )
        if not moved.is_replica:
            await self._repo.enqueue_replication(deal_id, moved.origin_id, target.id)

        logger.info(
            "replication.stage_entered",
            deal_id=deal_id,
            from_stage=current.stage_name if current else None,
            to_stage=target.stage_name,
            actor=actor,
        )
        return moved
