"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.dealops.api.v1 import deals, distribution, duplicates, imports, orphans, replication

router = APIRouter(prefix="/api/v1")

router.include_router(orphans.router)
router.include_router(duplicates.router)
router.include_router(replication.router)
router.include_router(deals.router)
router.include_router(distribution.router)
router.include_router(imports.router)
