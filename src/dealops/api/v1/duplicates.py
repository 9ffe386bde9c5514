"""Duplicate stage-change detection and review endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from src.dealops.api.deps import get_actor, get_ledger
from src.dealops.ledger.schemas import (
    DuplicateActivityRead,
    DuplicateDetectionStats,
    DuplicateStatus,
)
from src.dealops.ledger.services import LedgerServices

router = APIRouter(prefix="/activities/duplicates", tags=["duplicates"])


# ── Request / Response Schemas ──────────────────────────────────────────────


class DetectDuplicatesRequest(BaseModel):
    days_back: int | None = Field(default=None, gt=0, le=365)


class DetectDuplicatesResponse(BaseModel):
    success: bool = True
    stats: DuplicateDetectionStats


class DuplicateListResponse(BaseModel):
    success: bool = True
    duplicates: list[DuplicateActivityRead] = Field(default_factory=list)


class DuplicateStatsResponse(BaseModel):
    success: bool = True
    stats: dict[str, int] = Field(default_factory=dict)


class UpdateDuplicateRequest(BaseModel):
    status: DuplicateStatus


class DuplicateResponse(BaseModel):
    success: bool = True
    duplicate: DuplicateActivityRead


class IgnorePendingResponse(BaseModel):
    success: bool = True
    updated: int = 0


# ── Endpoints ───────────────────────────────────────────────────────────────


@router.post("/detect", response_model=DetectDuplicatesResponse)
async def detect_duplicates(
    body: DetectDuplicatesRequest | None = None,
    ledger: LedgerServices = Depends(get_ledger),
) -> DetectDuplicatesResponse:
    """Scan recent stage changes and record duplicate candidates."""
    days_back = body.days_back if body else None
    stats = await ledger.duplicate_detector.detect(days_back=days_back)
    return DetectDuplicatesResponse(stats=stats)


@router.get("", response_model=DuplicateListResponse)
async def list_duplicates(
    status: DuplicateStatus | None = Query(default=None),
    ledger: LedgerServices = Depends(get_ledger),
) -> DuplicateListResponse:
    duplicates = await ledger.duplicate_detector.list_duplicates(status)
    return DuplicateListResponse(duplicates=duplicates)


@router.get("/stats", response_model=DuplicateStatsResponse)
async def duplicate_stats(
    ledger: LedgerServices = Depends(get_ledger),
) -> DuplicateStatsResponse:
    stats = await ledger.duplicate_detector.duplicate_stats()
    return DuplicateStatsResponse(stats=stats)


@router.patch("/{duplicate_id}", response_model=DuplicateResponse)
async def update_duplicate(
    duplicate_id: str,
    body: UpdateDuplicateRequest,
    ledger: LedgerServices = Depends(get_ledger),
    actor: str | None = Depends(get_actor),
) -> DuplicateResponse:
    """Record a review decision (``deleted`` also removes the duplicate activity)."""
    duplicate = await ledger.duplicate_detector.set_status(duplicate_id, body.status, actor)
    return DuplicateResponse(duplicate=duplicate)


@router.post("/ignore-pending", response_model=IgnorePendingResponse)
async def ignore_pending(
    ledger: LedgerServices = Depends(get_ledger),
    actor: str | None = Depends(get_actor),
) -> IgnorePendingResponse:
    updated = await ledger.duplicate_detector.ignore_all_pending(actor)
    return IgnorePendingResponse(updated=updated)
