"""Deal replication endpoints: queue processing and rule administration."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from src.dealops.api.deps import get_ledger
from src.dealops.ledger.schemas import (
    ReplicationResult,
    ReplicationRuleCreate,
    ReplicationRuleRead,
)
from src.dealops.ledger.services import LedgerServices

router = APIRouter(prefix="/replication", tags=["replication"])


class ProcessReplicationRequest(BaseModel):
    """Either a single deal or a queue drain."""

    deal_id: str | None = None
    process_queue: bool = False


class ProcessReplicationResponse(BaseModel):
    success: bool = True
    message: str | None = None
    processed: int = 0
    results: list[ReplicationResult] = Field(default_factory=list)


class RuleListResponse(BaseModel):
    success: bool = True
    rules: list[ReplicationRuleRead] = Field(default_factory=list)


class RuleResponse(BaseModel):
    success: bool = True
    rule: ReplicationRuleRead


@router.post("/process", response_model=ProcessReplicationResponse, response_model_exclude_none=True)
async def process_replication(
    body: ProcessReplicationRequest,
    ledger: LedgerServices = Depends(get_ledger),
) -> ProcessReplicationResponse:
    """Replicate one deal (``deal_id``) or drain the queue (``process_queue``)."""
    results = await ledger.replication_engine.process(
        deal_id=body.deal_id, process_queue=body.process_queue
    )
    if not results:
        return ProcessReplicationResponse(message="No items to process", processed=0)
    return ProcessReplicationResponse(processed=len(results), results=results)


@router.get("/rules", response_model=RuleListResponse)
async def list_rules(ledger: LedgerServices = Depends(get_ledger)) -> RuleListResponse:
    return RuleListResponse(rules=await ledger.replication_engine.list_rules())


@router.post("/rules", response_model=RuleResponse, status_code=201)
async def create_rule(
    body: ReplicationRuleCreate,
    ledger: LedgerServices = Depends(get_ledger),
) -> RuleResponse:
    rule = await ledger.replication_engine.create_rule(body)
    return RuleResponse(rule=rule)
