"""
Database utilities for the BOQ Ledger engine.

This module provides database connection, job queue and final-account ledger
management. Supports both real PostgreSQL and a mock in-memory implementation
for development/testing.
"""

from boq_utils.db.connection import get_db_connection, init_db
from boq_utils.db.job_queue import (
    create_job,
    get_job,
    get_jobs_by_account,
    claim_job_run,
    get_job_run,
    get_latest_job_run,
    update_job_run_status,
    update_job_run_progress,
    cancel_job,
    is_job_run_cancelled,
    save_job_artifact,
    get_job_artifacts,
    get_pending_jobs,
    JobStatus,
    JobType,
)

__all__ = [
    "get_db_connection",
    "init_db",
    "create_job",
    "get_job",
    "get_jobs_by_account",
    "claim_job_run",
    "get_job_run",
    "get_latest_job_run",
    "update_job_run_status",
    "update_job_run_progress",
    "cancel_job",
    "is_job_run_cancelled",
    "save_job_artifact",
    "get_job_artifacts",
    "get_pending_jobs",
    "JobStatus",
    "JobType",
]
