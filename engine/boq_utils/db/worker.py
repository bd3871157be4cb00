"""
Background worker for the BOQ Ledger engine.

Polls the job queue for import jobs and hands each one to the processor
registered for its type. Processors claim their own run, report progress
and save the result artifact, so a crash here never leaves a run half-owned.

Run standalone with:  python -m boq_utils.db.worker
"""

import sys
import signal
import asyncio
from typing import Any, Awaitable, Callable, Dict, List

from boq_utils.db.job_queue import get_pending_jobs, JobType
from boq_utils.db.connection import init_db, DB_TYPE
from boq_utils.core.log import setup_logging, account_tool_logger, set_logger, get_logger
from boq_utils.core.warnings_config import configure_warning_filters
from boq_utils.vault import secrets

WORKER_POLL_INTERVAL = secrets.get_int("worker_poll_interval", 5)
WORKER_BATCH_SIZE = secrets.get_int("worker_batch_size", 5)

JobProcessor = Callable[[str, Dict[str, Any]], Awaitable[Dict[str, Any]]]

_job_processors: Dict[str, JobProcessor] = {}


def register_job_processor(job_type: str, processor: JobProcessor):
    _job_processors[job_type] = processor
    get_logger().info(f"Registered processor for job type: {job_type}")


def register_all_processors():
    from boq_tools.boq_reconcile.job_processors import (
        process_boq_import_replace_job,
        process_boq_import_merge_job,
    )

    register_job_processor(JobType.BOQ_IMPORT_REPLACE.value, process_boq_import_replace_job)
    register_job_processor(JobType.BOQ_IMPORT_MERGE.value, process_boq_import_merge_job)


async def process_job(job_id: str, job: Dict[str, Any]) -> Dict[str, Any]:
    """
    Dispatch one job to its processor.

    Raises:
        ValueError: If the job has no type or no processor is registered for it
    """
    job_type = job.get("type")
    if not job_type:
        raise ValueError(f"Job {job_id} has no type")
    processor = _job_processors.get(job_type)
    if processor is None:
        raise ValueError(f"No processor registered for job type: {job_type}")

    log = get_logger()
    log.info(f"Processing job {job_id} of type {job_type}")
    try:
        return await processor(job_id, job)
    except Exception as e:
        log.exception(f"Job {job_id} processing failed: {e}")
        raise


async def run_batch(jobs: List[Dict[str, Any]]) -> int:
    """Process a batch of pending jobs concurrently; returns how many finished cleanly."""
    log = get_logger()

    async def _one(job: Dict[str, Any]) -> bool:
        try:
            await process_job(job["id"], job)
        except Exception as e:
            # The processor already marked its run failed
            log.error(f"Job {job['id']} failed: {e}")
            return False
        log.info(f"Job {job['id']} finished")
        return True

    outcomes = await asyncio.gather(*(_one(job) for job in jobs))
    return sum(outcomes)


async def _wait(shutdown_event: asyncio.Event, seconds: float):
    try:
        await asyncio.wait_for(shutdown_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass


async def worker_loop(shutdown_event: asyncio.Event):
    """Poll until shutdown_event is set."""
    set_logger(account_tool_logger("SYSTEM", "worker"), tool_name="worker", request_type="WORKER")
    log = get_logger()
    log.info("Worker loop started")

    while not shutdown_event.is_set():
        try:
            pending = get_pending_jobs(limit=WORKER_BATCH_SIZE)
            if not pending:
                await _wait(shutdown_event, WORKER_POLL_INTERVAL)
                continue

            log.info(f"Found {len(pending)} pending jobs")
            await run_batch(pending)
            await _wait(shutdown_event, 1)
        except asyncio.CancelledError:
            break
        except Exception as e:
            log.exception(f"Error in worker loop: {e}")
            await _wait(shutdown_event, WORKER_POLL_INTERVAL)

    log.info("Worker loop stopped")


def run_worker():
    setup_logging()
    configure_warning_filters()
    set_logger(account_tool_logger("SYSTEM", "worker"), tool_name="worker", request_type="WORKER")
    log = get_logger()

    if DB_TYPE == "postgres":
        log.info("Initializing database...")
        init_db()
        set_logger(account_tool_logger("SYSTEM", "worker"), tool_name="worker", request_type="WORKER")

    register_all_processors()
    log.info(f"Starting job worker (db={DB_TYPE}, batch={WORKER_BATCH_SIZE})")

    shutdown_event = asyncio.Event()

    def _on_signal(signum, frame):
        log.info(f"Received signal {signum}, shutting down...")
        shutdown_event.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    try:
        asyncio.run(worker_loop(shutdown_event))
    except KeyboardInterrupt:
        log.info("Worker interrupted")
    except Exception as e:
        log.exception(f"Worker crashed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    run_worker()
