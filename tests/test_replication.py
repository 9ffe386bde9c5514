"""Tests for rule-based deal replication and the replication queue."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from src.dealops.ledger.errors import DealNotFoundError, InvalidInputError
from src.dealops.ledger.replication import (
    ReplicationEngine,
    matches_condition,
    replica_external_id,
)
from src.dealops.ledger.schemas import (
    ConditionOperator,
    ConditionType,
    DealRead,
    MatchCondition,
    QueueStatus,
    ReplicationRuleCreate,
)

SOURCE_ORIGIN = str(uuid.uuid4())
TARGET_ORIGIN = str(uuid.uuid4())
OTHER_ORIGIN = str(uuid.uuid4())


def _deal(**fields) -> DealRead:
    fields.setdefault("name", "Mentoria Premium")
    return DealRead(id="d1", **fields)


def _claim_long_ago(repo, item_id):
    repo.queue[item_id] = repo.queue[item_id].model_copy(
        update={
            "status": QueueStatus.PROCESSING,
            "claimed_at": datetime.now(timezone.utc) - timedelta(hours=1),
        }
    )


@pytest.fixture
def engine(repo) -> ReplicationEngine:
    return ReplicationEngine(repo, max_attempts=3)


@pytest.fixture
def pipeline(repo):
    """Source stage "Won" replicating into the target pipeline's "Onboarding"."""
    won = repo.seed_stage(SOURCE_ORIGIN, "Won")
    lead = repo.seed_stage(SOURCE_ORIGIN, "Lead")
    onboarding = repo.seed_stage(TARGET_ORIGIN, "Onboarding")
    return {"won": won, "lead": lead, "onboarding": onboarding}


async def _rule(repo, pipeline, **fields):
    fields.setdefault("name", "Won to onboarding")
    return await repo.create_rule(
        ReplicationRuleCreate(
            source_origin_id=SOURCE_ORIGIN,
            source_stage_id=pipeline["won"].id,
            target_origin_id=fields.pop("target_origin_id", TARGET_ORIGIN),
            target_stage_id=pipeline["onboarding"].id,
            **fields,
        )
    )


class TestMatchCondition:
    def test_absent_or_empty_condition_matches(self):
        assert matches_condition(_deal(), None)
        assert matches_condition(_deal(), MatchCondition(type=ConditionType.TAGS, values=[]))

    def test_product_name_contains_case_insensitive(self):
        cond = MatchCondition(type=ConditionType.PRODUCT_NAME, values=["premium"])
        assert matches_condition(_deal(), cond)
        assert not matches_condition(_deal(name="Basic plan"), cond)

    def test_product_name_equals(self):
        cond = MatchCondition(
            type=ConditionType.PRODUCT_NAME,
            operator=ConditionOperator.EQUALS,
            values=["mentoria premium"],
        )
        assert matches_condition(_deal(), cond)
        assert not matches_condition(_deal(name="Mentoria Premium 2"), cond)

    def test_tags_any_and_all(self):
        deal = _deal(tags=["VIP", "launch"])
        any_cond = MatchCondition(type=ConditionType.TAGS, values=["vip", "other"])
        all_cond = MatchCondition(
            type=ConditionType.TAGS,
            operator=ConditionOperator.INCLUDES_ALL,
            values=["vip", "other"],
        )
        assert matches_condition(deal, any_cond)
        assert not matches_condition(deal, all_cond)

    def test_custom_field(self):
        cond = MatchCondition(type=ConditionType.CUSTOM_FIELD, field="plan", values=["gold"])
        assert matches_condition(_deal(custom_fields={"plan": "Gold Annual"}), cond)
        assert not matches_condition(_deal(custom_fields={"plan": None}), cond)
        assert not matches_condition(_deal(custom_fields={}), cond)

    def test_custom_field_without_field_name_fails(self):
        cond = MatchCondition(type=ConditionType.CUSTOM_FIELD, values=["gold"])
        assert not matches_condition(_deal(custom_fields={"plan": "gold"}), cond)


class TestReplicateDeal:
    @pytest.mark.asyncio
    async def test_creates_replica_with_lineage(self, repo, engine, pipeline):
        rule = await _rule(repo, pipeline)
        deal = repo.seed_deal(
            name="Mentoria",
            value=1500.0,
            origin_id=SOURCE_ORIGIN,
            stage_id=pipeline["won"].id,
            owner_id="sdr@x.com",
            tags=["vip"],
            custom_fields={"plan": "gold"},
        )

        result = await engine.replicate_deal(deal.id)

        assert result.replications == 1
        replica = repo.deals[result.details[0].target_deal_id]
        assert replica.replicated_from_deal_id == deal.id
        assert replica.origin_id == TARGET_ORIGIN
        assert replica.stage_id == pipeline["onboarding"].id
        assert replica.external_id == replica_external_id(deal.id, TARGET_ORIGIN)
        assert replica.value == 1500.0
        assert replica.owner_id == "sdr@x.com"
        assert replica.custom_fields == {"plan": "gold"}
        assert replica.data_source == "replication"
        assert repo.replication_logs[0]["rule_id"] == rule.id
        assert repo.replication_logs[0]["status"] == "success"
        assert len(repo.activities_for(deal.id, "replication")) == 1
        assert len(repo.activities_for(replica.id, "creation")) == 1

    @pytest.mark.asyncio
    async def test_second_run_is_idempotent(self, repo, engine, pipeline):
        await _rule(repo, pipeline)
        deal = repo.seed_deal(origin_id=SOURCE_ORIGIN, stage_id=pipeline["won"].id)

        await engine.replicate_deal(deal.id)
        second = await engine.replicate_deal(deal.id)

        assert second.replications == 0
        replicas = [d for d in repo.deals.values() if d.replicated_from_deal_id == deal.id]
        assert len(replicas) == 1

    @pytest.mark.asyncio
    async def test_missing_audit_backfilled_on_next_run(self, repo, engine, pipeline):
        rule = await _rule(repo, pipeline)
        deal = repo.seed_deal(origin_id=SOURCE_ORIGIN, stage_id=pipeline["won"].id)
        repo.add_replication_log = AsyncMock(side_effect=ConnectionError("db blip"))

        first = await engine.replicate_deal(deal.id)

        assert first.replications == 0
        assert repo.replication_logs == []
        del repo.add_replication_log

        second = await engine.replicate_deal(deal.id)

        replicas = [d for d in repo.deals.values() if d.replicated_from_deal_id == deal.id]
        assert len(replicas) == 1
        assert second.replications == 0
        assert repo.replication_logs[0]["rule_id"] == rule.id
        assert repo.replication_logs[0]["target_deal_id"] == replicas[0].id
        assert await repo.has_replication_log(deal.id, replicas[0].id)

        await engine.replicate_deal(deal.id)

        assert len(repo.replication_logs) == 1

    @pytest.mark.asyncio
    async def test_replica_is_never_a_source(self, repo, engine, pipeline):
        await _rule(repo, pipeline)
        replica = repo.seed_deal(
            origin_id=SOURCE_ORIGIN,
            stage_id=pipeline["won"].id,
            replicated_from_deal_id="original",
        )

        result = await engine.replicate_deal(replica.id)

        assert result.replications == 0
        assert result.message == "Skipped - deal is a replica"

    @pytest.mark.asyncio
    async def test_custom_fields_not_copied_when_disabled(self, repo, engine, pipeline):
        await _rule(repo, pipeline, copy_custom_fields=False)
        deal = repo.seed_deal(
            origin_id=SOURCE_ORIGIN, stage_id=pipeline["won"].id, custom_fields={"plan": "gold"}
        )

        result = await engine.replicate_deal(deal.id)

        assert repo.deals[result.details[0].target_deal_id].custom_fields == {}

    @pytest.mark.asyncio
    async def test_non_matching_condition_skips_rule(self, repo, engine, pipeline):
        await _rule(
            repo,
            pipeline,
            match_condition=MatchCondition(type=ConditionType.TAGS, values=["vip"]),
        )
        deal = repo.seed_deal(origin_id=SOURCE_ORIGIN, stage_id=pipeline["won"].id, tags=["cold"])

        result = await engine.replicate_deal(deal.id)

        assert result.replications == 0
        assert result.details == []

    @pytest.mark.asyncio
    async def test_rules_applied_in_priority_order(self, repo, engine, pipeline):
        await _rule(repo, pipeline, name="second", priority=5, target_origin_id=OTHER_ORIGIN)
        await _rule(repo, pipeline, name="first", priority=1)
        deal = repo.seed_deal(origin_id=SOURCE_ORIGIN, stage_id=pipeline["won"].id)

        result = await engine.replicate_deal(deal.id)

        assert [d.rule_name for d in result.details] == ["first", "second"]

    @pytest.mark.asyncio
    async def test_no_rules(self, repo, engine, pipeline):
        deal = repo.seed_deal(origin_id=SOURCE_ORIGIN, stage_id=pipeline["lead"].id)

        result = await engine.replicate_deal(deal.id)

        assert result.message == "No matching rules"

    @pytest.mark.asyncio
    async def test_unknown_deal_raises(self, engine):
        with pytest.raises(DealNotFoundError):
            await engine.replicate_deal("missing")

    @pytest.mark.asyncio
    async def test_failing_rule_does_not_block_others(self, repo, engine, pipeline):
        await _rule(repo, pipeline, name="broken", priority=1, target_origin_id=OTHER_ORIGIN)
        await _rule(repo, pipeline, name="healthy", priority=2)
        deal = repo.seed_deal(origin_id=SOURCE_ORIGIN, stage_id=pipeline["won"].id)
        real_find = repo.find_replica

        async def find(source_deal_id, target_origin_id):
            if target_origin_id == OTHER_ORIGIN:
                raise RuntimeError("boom")
            return await real_find(source_deal_id, target_origin_id)

        repo.find_replica = AsyncMock(side_effect=find)

        result = await engine.replicate_deal(deal.id)

        assert [d.rule_name for d in result.details] == ["healthy"]


class TestQueue:
    @pytest.mark.asyncio
    async def test_stage_move_enqueues_and_queue_replicates(self, repo, engine, pipeline):
        await _rule(repo, pipeline)
        deal = repo.seed_deal(origin_id=SOURCE_ORIGIN, stage_id=pipeline["lead"].id)

        moved = await engine.move_deal_stage(deal.id, pipeline["won"].id, actor="ana@x.com")

        assert moved.stage_id == pipeline["won"].id
        change = repo.activities_for(deal.id, "stage_change")[0]
        assert (change.from_stage, change.to_stage) == ("Lead", "Won")
        assert change.metadata == {"actor": "ana@x.com"}
        item = next(iter(repo.queue.values()))
        assert item.status == QueueStatus.PENDING

        results = await engine.process_queue()

        assert results[0].replications == 1
        assert repo.queue[item.id].status == QueueStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_moving_replica_does_not_enqueue(self, repo, engine, pipeline):
        replica = repo.seed_deal(
            origin_id=SOURCE_ORIGIN, stage_id=pipeline["lead"].id, replicated_from_deal_id="x"
        )

        await engine.move_deal_stage(replica.id, pipeline["won"].id)

        assert repo.queue == {}

    @pytest.mark.asyncio
    async def test_same_stage_is_a_no_op(self, repo, engine, pipeline):
        deal = repo.seed_deal(origin_id=SOURCE_ORIGIN, stage_id=pipeline["won"].id)

        await engine.move_deal_stage(deal.id, pipeline["won"].id)

        assert repo.queue == {}
        assert repo.activities_for(deal.id) == []

    @pytest.mark.asyncio
    async def test_unknown_stage_rejected(self, repo, engine):
        deal = repo.seed_deal(origin_id=SOURCE_ORIGIN)

        with pytest.raises(InvalidInputError):
            await engine.move_deal_stage(deal.id, "no-such-stage")

    @pytest.mark.asyncio
    async def test_item_fails_after_max_attempts(self, repo, engine):
        item = await repo.enqueue_replication("ghost-deal", SOURCE_ORIGIN, None)

        for expected_attempts in (1, 2):
            results = await engine.process_queue()
            assert results[0].success is False
            assert repo.queue[item.id].attempts == expected_attempts
            assert repo.queue[item.id].status == QueueStatus.PENDING

        await engine.process_queue()

        assert repo.queue[item.id].attempts == 3
        assert repo.queue[item.id].status == QueueStatus.FAILED
        assert "ghost-deal" in repo.queue[item.id].error_message
        assert await engine.process_queue() == []

    @pytest.mark.asyncio
    async def test_claimed_item_skipped(self, repo, engine):
        await repo.enqueue_replication("d1", SOURCE_ORIGIN, None)
        repo.claim_queue_item = AsyncMock(return_value=False)

        assert await engine.process_queue() == []

    @pytest.mark.asyncio
    async def test_outcome_write_failure_reported_per_item(self, repo, engine):
        first = await repo.enqueue_replication("ghost-1", SOURCE_ORIGIN, None)
        second = await repo.enqueue_replication("ghost-2", SOURCE_ORIGIN, None)
        repo.record_queue_failure = AsyncMock(side_effect=ConnectionError("db blip"))

        results = await engine.process_queue()

        assert [r.deal_id for r in results] == ["ghost-1", "ghost-2"]
        assert all(r.success is False for r in results)
        assert results[0].error == "db blip"
        assert repo.record_queue_failure.await_count == 2
        assert repo.queue[first.id].status == QueueStatus.PROCESSING
        assert repo.queue[second.id].status == QueueStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_completion_write_failure_does_not_block_batch(self, repo, engine, pipeline):
        first = repo.seed_deal(origin_id=SOURCE_ORIGIN, stage_id=pipeline["won"].id)
        second = repo.seed_deal(origin_id=SOURCE_ORIGIN, stage_id=pipeline["won"].id)
        await repo.enqueue_replication(first.id, SOURCE_ORIGIN, pipeline["won"].id)
        await repo.enqueue_replication(second.id, SOURCE_ORIGIN, pipeline["won"].id)
        real_complete = repo.complete_queue_item
        calls = []

        async def complete(item_id):
            calls.append(item_id)
            if len(calls) == 1:
                raise ConnectionError("db blip")
            return await real_complete(item_id)

        repo.complete_queue_item = AsyncMock(side_effect=complete)

        results = await engine.process_queue()

        assert [r.success for r in results] == [False, True]
        assert repo.queue[calls[0]].status == QueueStatus.PROCESSING
        assert repo.queue[calls[1]].status == QueueStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_fresh_claim_is_not_released(self, repo, engine):
        item = await repo.enqueue_replication("d1", SOURCE_ORIGIN, None)
        await repo.claim_queue_item(item.id)

        assert await engine.release_stale_items() == 0
        assert repo.queue[item.id].status == QueueStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_expired_claim_requeued_and_reprocessed(self, repo, engine, pipeline):
        await _rule(repo, pipeline)
        deal = repo.seed_deal(origin_id=SOURCE_ORIGIN, stage_id=pipeline["won"].id)
        item = await repo.enqueue_replication(deal.id, SOURCE_ORIGIN, pipeline["won"].id)
        _claim_long_ago(repo, item.id)

        results = await engine.process_queue()

        assert results[0].replications == 1
        stored = repo.queue[item.id]
        assert stored.status == QueueStatus.COMPLETED
        assert stored.attempts == 1

    @pytest.mark.asyncio
    async def test_expired_claim_out_of_attempts_fails(self, repo):
        engine = ReplicationEngine(repo, max_attempts=1)
        item = await repo.enqueue_replication("d1", SOURCE_ORIGIN, None)
        _claim_long_ago(repo, item.id)

        assert await engine.process_queue() == []
        stored = repo.queue[item.id]
        assert stored.status == QueueStatus.FAILED
        assert stored.attempts == 1
        assert stored.claimed_at is None
        assert stored.error_message == "Claim expired before the item was finished"

    @pytest.mark.asyncio
    async def test_process_requires_target(self, engine):
        with pytest.raises(InvalidInputError):
            await engine.process()


class TestRules:
    @pytest.mark.asyncio
    async def test_same_source_and_target_origin_rejected(self, engine, pipeline):
        with pytest.raises(InvalidInputError):
            await engine.create_rule(
                ReplicationRuleCreate(
                    name="loop",
                    source_origin_id=SOURCE_ORIGIN,
                    source_stage_id=pipeline["won"].id,
                    target_origin_id=SOURCE_ORIGIN,
                    target_stage_id=pipeline["lead"].id,
                )
            )
