"""CSV deal import endpoints.

Files up to IMPORT_ASYNC_THRESHOLD_BYTES are imported inline and the
response carries the aggregate stats. Larger files are stored and queued as
an import job (202); clients poll GET /imports/jobs/{id}.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, File, Form, UploadFile, status
from fastapi.responses import JSONResponse

from src.dealops.api.deps import get_actor, get_ledger
from src.dealops.ledger.csv_import import decode_csv
from src.dealops.ledger.errors import InvalidInputError, NotFoundError
from src.dealops.ledger.schemas import QueueStatus
from src.dealops.ledger.services import LedgerServices

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/imports", tags=["imports"])


@router.post("/deals")
async def import_deals(
    file: UploadFile = File(...),
    origin_id: str | None = Form(default=None),
    owner_email: str | None = Form(default=None),
    ledger: LedgerServices = Depends(get_ledger),
    actor: str | None = Depends(get_actor),
) -> JSONResponse:
    """Import deals from an uploaded CSV file."""
    data = await file.read()
    if not data.strip():
        raise InvalidInputError("No CSV file content was uploaded")

    settings = ledger.settings
    origin_id = origin_id or settings.IMPORT_DEFAULT_ORIGIN_ID or None
    owner_email = owner_email or None
    logger.info(
        "imports.file_received",
        filename=file.filename,
        size=len(data),
        origin_id=origin_id,
        actor=actor,
    )

    if len(data) > settings.IMPORT_ASYNC_THRESHOLD_BYTES:
        job = await ledger.import_runner.submit(file.filename or "upload.csv", data, origin_id, owner_email)
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content={
                "success": True,
                "message": "Import queued for background processing",
                "job": job.model_dump(mode="json"),
            },
        )

    stats = await ledger.csv_importer.import_text(decode_csv(data), origin_id, owner_email)
    return JSONResponse(
        content={
            "success": True,
            "message": "Import completed",
            "stats": stats.model_dump(mode="json", by_alias=True),
        },
    )


@router.get("/jobs/{job_id}")
async def get_import_job(
    job_id: str,
    ledger: LedgerServices = Depends(get_ledger),
) -> JSONResponse:
    job = await ledger.repository.get_import_job(job_id)
    if job is None:
        raise NotFoundError(f"Import job {job_id} not found")
    return JSONResponse(content={"success": True, "job": job.model_dump(mode="json")})


@router.post("/jobs/process")
async def process_import_jobs(ledger: LedgerServices = Depends(get_ledger)) -> JSONResponse:
    """Advance the oldest unfinished import job by one chunk."""
    job = await ledger.import_runner.advance()
    if job is None:
        return JSONResponse(content={"success": True, "message": "No pending import jobs", "job": None})
    return JSONResponse(
        content={
            "success": True,
            "message": f"Chunk {job.current_chunk}/{job.total_chunks} processed",
            "is_complete": job.status == QueueStatus.COMPLETED,
            "job": job.model_dump(mode="json"),
        },
    )
