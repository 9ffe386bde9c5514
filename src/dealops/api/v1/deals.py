"""Deal stage transitions (entry point of the replication queue)."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from src.dealops.api.deps import get_actor, get_ledger
from src.dealops.ledger.schemas import DealRead
from src.dealops.ledger.services import LedgerServices

router = APIRouter(prefix="/deals", tags=["deals"])


class MoveStageRequest(BaseModel):
    stage_id: str


class DealResponse(BaseModel):
    success: bool = True
    deal: DealRead


@router.patch("/{deal_id}/stage", response_model=DealResponse)
async def move_deal_stage(
    deal_id: str,
    body: MoveStageRequest,
    ledger: LedgerServices = Depends(get_ledger),
    actor: str | None = Depends(get_actor),
) -> DealResponse:
    """Move a deal to another stage, log the change and queue replication."""
    deal = await ledger.replication_engine.move_deal_stage(deal_id, body.stage_id, actor)
    return DealResponse(deal=deal)
