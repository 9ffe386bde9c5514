"""Orphan transaction promotion endpoint."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from src.dealops.api.deps import get_ledger
from src.dealops.ledger.schemas import OrphanPromotionReport
from src.dealops.ledger.services import LedgerServices

router = APIRouter(prefix="/transactions/orphans", tags=["orphans"])


class PromoteOrphansRequest(BaseModel):
    """Request body for an orphan promotion run (every field optional)."""

    start_date: datetime | None = None
    end_date: datetime | None = None
    dry_run: bool = False
    net_value_factor: float | None = Field(default=None, gt=0)


class PromoteOrphansResponse(OrphanPromotionReport):
    success: bool = True


@router.post("/promote", response_model=PromoteOrphansResponse)
async def promote_orphans(
    body: PromoteOrphansRequest | None = None,
    ledger: LedgerServices = Depends(get_ledger),
) -> PromoteOrphansResponse:
    """Promote speculative transactions that have no authoritative twin."""
    body = body or PromoteOrphansRequest()
    report = await ledger.orphan_promoter.promote(
        start_date=body.start_date,
        end_date=body.end_date,
        dry_run=body.dry_run,
        net_value_factor=body.net_value_factor,
    )
    return PromoteOrphansResponse(success=True, **report.model_dump())
