"""Background loops for the recurring reconciliation routines.

Task functions are decoupled from the loop runner so tests can call them
directly:
1. process_replication_queue: drain pending replication queue items
2. advance_import_jobs: process the next chunk of a background CSV import
3. detect_duplicates: scan recent stage changes for duplicates

Each task catches and logs its own failure so one bad iteration never stops
the loop.
"""

from __future__ import annotations

import asyncio

import structlog

from src.dealops.config import Settings

logger = structlog.get_logger(__name__)


def setup_reconciliation_tasks(replication_engine, import_runner, duplicate_detector) -> dict:
    """Build the dict of task name -> async callable."""

    async def process_replication_queue_task():
        try:
            results = await replication_engine.process_queue()
            logger.info("scheduler.replication_queue_processed", processed=len(results))
            return len(results)
        except Exception:
            logger.warning("scheduler.replication_queue_failed", exc_info=True)
            return 0

    async def advance_import_jobs_task():
        try:
            job = await import_runner.advance()
            if job is not None:
                logger.info(
                    "scheduler.import_job_advanced",
                    job_id=job.id,
                    status=job.status.value,
                    chunk=job.current_chunk,
                    total_chunks=job.total_chunks,
                )
            return job
        except Exception:
            logger.warning("scheduler.import_job_failed", exc_info=True)
            return None

    async def detect_duplicates_task():
        try:
            stats = await duplicate_detector.detect()
            logger.info("scheduler.duplicates_detected", found=stats.duplicates_found)
            return stats
        except Exception:
            logger.warning("scheduler.duplicate_detection_failed", exc_info=True)
            return None

    return {
        "process_replication_queue": process_replication_queue_task,
        "advance_import_jobs": advance_import_jobs_task,
        "detect_duplicates": detect_duplicates_task,
    }


def task_intervals(settings: Settings) -> dict[str, int]:
    return {
        "process_replication_queue": settings.REPLICATION_QUEUE_INTERVAL_SECONDS,
        "advance_import_jobs": settings.IMPORT_JOBS_INTERVAL_SECONDS,
        "detect_duplicates": settings.DUPLICATE_DETECTION_INTERVAL_SECONDS,
    }


async def start_scheduler_background(
    tasks: dict, intervals: dict[str, int], app_state
) -> list[asyncio.Task]:
    """Start each task as an asyncio loop and keep references on app_state.

    Args:
        tasks: Dict mapping task name to async callable.
        intervals: Seconds between runs per task name (default one hour).
        app_state: FastAPI app.state object for storing task references.
    """
    background_tasks: list[asyncio.Task] = []

    for task_name, task_fn in tasks.items():
        interval = intervals.get(task_name, 3600)

        async def _loop(fn=task_fn, name=task_name, sleep=interval):
            while True:
                try:
                    await asyncio.sleep(sleep)
                    await fn()
                except asyncio.CancelledError:
                    logger.info("scheduler.task_cancelled", task=name)
                    break
                except Exception:
                    logger.warning("scheduler.task_loop_error", task=name, exc_info=True)

        background_tasks.append(asyncio.create_task(_loop(), name=f"reconciliation_{task_name}"))

    app_state.scheduler_tasks = background_tasks
    logger.info(
        "scheduler.background_tasks_started",
        task_count=len(background_tasks),
        tasks=list(tasks.keys()),
    )
    return background_tasks


async def stop_scheduler_background(app_state) -> None:
    tasks = getattr(app_state, "scheduler_tasks", [])
    for task in tasks:
        task.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
    app_state.scheduler_tasks = []
