"""Batch lead distribution endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from src.dealops.api.deps import get_ledger
from src.dealops.ledger.schemas import DistributionResult, WorkerQuota
from src.dealops.ledger.services import LedgerServices

router = APIRouter(prefix="/distribution", tags=["distribution"])


class DistributeRequest(BaseModel):
    """Optional overrides; the configured origin and roster apply otherwise."""

    origin_id: str | None = None
    roster: list[WorkerQuota] | None = None
    contact_emails: list[str] | None = None


class DistributeResponse(DistributionResult):
    success: bool = True


@router.post("/batch", response_model=DistributeResponse)
async def distribute_batch(
    body: DistributeRequest | None = None,
    ledger: LedgerServices = Depends(get_ledger),
) -> DistributeResponse:
    """Shuffle the unowned deals of an origin and hand them out by quota."""
    body = body or DistributeRequest()
    result = await ledger.distributor.distribute(
        origin_id=body.origin_id,
        roster=body.roster,
        contact_emails=body.contact_emails,
    )
    return DistributeResponse(success=True, **result.model_dump())
