"""FastAPI dependencies for the reconciliation endpoints.

Services live on ``app.state.ledger`` (set in the lifespan); endpoints
resolve them through get_ledger so a missing initialization surfaces as 503.
"""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from src.dealops.ledger.services import LedgerServices


def get_ledger(request: Request) -> LedgerServices:
    """Retrieve LedgerServices from app.state, 503 if not available."""
    ledger = getattr(request.app.state, "ledger", None)
    if ledger is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Ledger services not initialized",
        )
    return ledger


def get_actor(request: Request) -> str | None:
    """Caller identity for audit fields (set by the authenticating gateway)."""
    actor = request.headers.get("X-User-Email")
    return actor.strip().lower() if actor and actor.strip() else None
