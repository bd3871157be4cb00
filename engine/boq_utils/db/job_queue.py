"""
Job queue for BOQ import jobs.

A job is an immutable request (type + JSON payload). Every attempt to execute
it is a run; runs own status, progress and error, and results are stored as
artifacts of the run that produced them.

schema
- jobs: (id, type, payload JSONB, account_id, user_id, created_at)
- job_runs: (id, job_id, attempt_no, status, progress JSONB, error, created_at,
  started_at, completed_at), unique on (job_id, attempt_no)
- job_artifacts: (id, run_id, artifact_type, data JSONB, created_at)

Claiming: a job is claimable when it has no runs or its latest run failed.
A cancelled run is final; no later status write can overwrite it.
"""

import json
import uuid
from enum import Enum
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from boq_utils.db.connection import pg_cursor, DB_TYPE, _mock_db
from boq_utils.core.log import account_tool_logger, set_logger, get_logger


class JobStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobType(str, Enum):
    BOQ_IMPORT_REPLACE = "boq_import_replace"
    BOQ_IMPORT_MERGE = "boq_import_merge"


_TERMINAL = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)
_ACTIVE = (JobStatus.PENDING.value, JobStatus.IN_PROGRESS.value)

_LATEST_RUN_SQL = """
    SELECT * FROM job_runs
    WHERE job_id = %s
    ORDER BY attempt_no DESC, created_at DESC
    LIMIT 1
"""


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _decoded(row: Optional[Dict[str, Any]], field: str) -> Optional[Dict[str, Any]]:
    """Row as a dict with its JSON column decoded (psycopg2 may hand back str)."""
    if row is None:
        return None
    row = dict(row)
    if isinstance(row.get(field), str):
        row[field] = json.loads(row[field])
    return row


def _mock_run(job_id: str, attempt_no: int, status: JobStatus, now: datetime) -> Dict[str, Any]:
    stamp = now.isoformat()
    run = {
        "id": _new_id(),
        "job_id": job_id,
        "attempt_no": attempt_no,
        "status": status.value,
        "progress": {},
        "error": None,
        "created_at": stamp,
        "started_at": stamp if status == JobStatus.IN_PROGRESS else None,
        "completed_at": stamp if status in _TERMINAL else None,
    }
    _mock_db["job_runs"][run["id"]] = run
    return run


def _next_attempt(latest: Optional[Dict[str, Any]]) -> Optional[int]:
    """Attempt number for a new claim, or None when the job is not claimable."""
    if latest is None:
        return 1
    if latest["status"] != JobStatus.FAILED.value:
        return None
    return int(latest["attempt_no"]) + 1


# Jobs
def create_job(
    job_type: str,
    payload: Dict[str, Any],
    account_id: Optional[str] = None,
    user_id: Optional[str] = None,
) -> str:
    """
    Enqueue a job and return its id.

    Args:
        job_type: JobType value, e.g. "boq_import_replace"
        payload: Processor input, e.g. {"account_id": ..., "sections": [...]}
        account_id: Final account the job belongs to
        user_id: Requesting user
    """
    set_logger(account_tool_logger(account_id or payload.get("account_id"), "job_queue"))
    log = get_logger()
    job_id = _new_id()
    now = _utcnow_naive()

    if DB_TYPE == "postgres":
        try:
            with pg_cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO jobs (id, type, payload, account_id, user_id, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (job_id, job_type, json.dumps(payload), account_id, user_id, now),
                )
        except Exception as e:
            log.error(f"Failed to create {job_type} job: {e}")
            raise
    else:
        _mock_db["jobs"][job_id] = {
            "id": job_id,
            "type": job_type,
            "payload": payload,
            "account_id": account_id,
            "user_id": user_id,
            "created_at": now.isoformat(),
        }

    log.debug(f"Created job {job_id} of type {job_type}")
    return job_id


def get_job(job_id: str) -> Optional[Dict[str, Any]]:
    if DB_TYPE != "postgres":
        return _mock_db["jobs"].get(job_id)
    with pg_cursor() as cur:
        cur.execute("SELECT * FROM jobs WHERE id = %s", (job_id,))
        return _decoded(cur.fetchone(), "payload")


def get_jobs_by_account(
    account_id: str,
    user_id: Optional[str] = None,
    job_type: Optional[str] = None,
    limit: int = 100,
) -> List[Dict[str, Any]]:
    """Jobs of a final account, newest first, optionally narrowed by user and type."""
    filters = {"account_id": account_id, "user_id": user_id, "type": job_type}
    filters = {k: v for k, v in filters.items() if v}

    if DB_TYPE != "postgres":
        jobs = [
            job
            for job in list(_mock_db["jobs"].values())
            if all(job.get(k) == v for k, v in filters.items())
        ]
        jobs.sort(key=lambda j: j.get("created_at", ""), reverse=True)
        return jobs[:limit]

    where = " AND ".join(f"{column} = %s" for column in filters)
    with pg_cursor() as cur:
        cur.execute(
            f"SELECT * FROM jobs WHERE {where} ORDER BY created_at DESC LIMIT %s",
            [*filters.values(), limit],
        )
        return [_decoded(r, "payload") for r in cur.fetchall()]


# Runs
def claim_job_run(job_id: str) -> Optional[Dict[str, Any]]:
    """
    Start a new in-progress run for a claimable job.

    Returns:
        {"run_id", "attempt_no"} or None when the job is unknown, running,
        finished or cancelled
    """
    now = _utcnow_naive()

    if DB_TYPE != "postgres":
        if job_id not in _mock_db["jobs"]:
            return None
        attempt_no = _next_attempt(get_latest_job_run(job_id))
        if attempt_no is None:
            return None
        run = _mock_run(job_id, attempt_no, JobStatus.IN_PROGRESS, now)
        return {"run_id": run["id"], "attempt_no": attempt_no}

    run_id = _new_id()
    with pg_cursor() as cur:
        # Row lock serializes concurrent workers claiming the same job
        cur.execute("SELECT id FROM jobs WHERE id = %s FOR UPDATE", (job_id,))
        if cur.fetchone() is None:
            return None
        cur.execute(_LATEST_RUN_SQL, (job_id,))
        attempt_no = _next_attempt(cur.fetchone())
        if attempt_no is None:
            return None
        cur.execute(
            """
            INSERT INTO job_runs (id, job_id, attempt_no, status, created_at, started_at)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (run_id, job_id, attempt_no, JobStatus.IN_PROGRESS.value, now, now),
        )
    return {"run_id": run_id, "attempt_no": attempt_no}


def get_job_run(run_id: str) -> Optional[Dict[str, Any]]:
    if DB_TYPE != "postgres":
        return _mock_db["job_runs"].get(run_id)
    with pg_cursor() as cur:
        cur.execute("SELECT * FROM job_runs WHERE id = %s", (run_id,))
        return _decoded(cur.fetchone(), "progress")


def get_latest_job_run(job_id: str) -> Optional[Dict[str, Any]]:
    if DB_TYPE != "postgres":
        runs = [r for r in list(_mock_db["job_runs"].values()) if r["job_id"] == job_id]
        if not runs:
            return None
        return max(runs, key=lambda r: (r["attempt_no"], r["created_at"]))
    with pg_cursor() as cur:
        cur.execute(_LATEST_RUN_SQL, (job_id,))
        return _decoded(cur.fetchone(), "progress")


def update_job_run_status(
    run_id: str,
    status: JobStatus,
    error: Optional[str] = None,
) -> bool:
    """
    Set a run's status, stamping started_at/completed_at as appropriate.

    Returns:
        False if the run is unknown or already cancelled
    """
    now = _utcnow_naive()
    changes: Dict[str, Any] = {"status": status.value}
    if status == JobStatus.IN_PROGRESS:
        changes["started_at"] = now
    elif status in _TERMINAL:
        changes["completed_at"] = now
    if error:
        changes["error"] = error

    if DB_TYPE != "postgres":
        run = _mock_db["job_runs"].get(run_id)
        if run is None or run["status"] == JobStatus.CANCELLED.value:
            return False
        run.update(
            {k: v.isoformat() if isinstance(v, datetime) else v for k, v in changes.items()}
        )
        updated = True
    else:
        assignments = ", ".join(f"{column} = %s" for column in changes)
        try:
            with pg_cursor() as cur:
                cur.execute(
                    f"UPDATE job_runs SET {assignments} WHERE id = %s AND status <> %s",
                    [*changes.values(), run_id, JobStatus.CANCELLED.value],
                )
                updated = cur.rowcount > 0
        except Exception as e:
            get_logger().error(f"Failed to update run {run_id} status: {e}")
            raise

    if updated:
        get_logger().debug(f"Run {run_id} -> {status.value}")
    return updated


def update_job_run_progress(run_id: str, progress: Dict[str, Any]) -> bool:
    """Replace a run's progress dict, e.g. {"stage": "importing", "completed": 3, "total": 8}."""
    if DB_TYPE != "postgres":
        run = _mock_db["job_runs"].get(run_id)
        if run is None:
            return False
        run["progress"] = progress
        return True
    with pg_cursor() as cur:
        cur.execute(
            "UPDATE job_runs SET progress = %s WHERE id = %s",
            (json.dumps(progress), run_id),
        )
        return cur.rowcount > 0


def _insert_cancelled_first_run(job_id: str) -> bool:
    """Block an unclaimed job with a cancelled attempt 1. False if a worker got there first."""
    now = _utcnow_naive()
    if DB_TYPE != "postgres":
        if get_latest_job_run(job_id) is not None:
            return False
        _mock_run(job_id, 1, JobStatus.CANCELLED, now)
        return True
    with pg_cursor() as cur:
        cur.execute(
            """
            INSERT INTO job_runs (id, job_id, attempt_no, status, created_at, completed_at)
            VALUES (%s, %s, 1, %s, %s, %s)
            ON CONFLICT (job_id, attempt_no) DO NOTHING
            """,
            (_new_id(), job_id, JobStatus.CANCELLED.value, now, now),
        )
        return cur.rowcount > 0


def cancel_job(job_id: str) -> bool:
    """
    Request cancellation of a job.

    An active run is marked cancelled and the import stops before its next
    section. A job nobody has claimed yet gets a cancelled run so it is never
    picked up.

    Returns:
        True if the job is now cancelled, False if unknown or already finished
    """
    log = get_logger()
    if get_job(job_id) is None:
        return False

    run = get_latest_job_run(job_id)
    if run is None:
        if _insert_cancelled_first_run(job_id):
            log.info(f"Cancelled job {job_id} before it started")
            return True
        run = get_latest_job_run(job_id)

    if run["status"] not in _ACTIVE:
        return run["status"] == JobStatus.CANCELLED.value
    updated = update_job_run_status(run["id"], JobStatus.CANCELLED)
    if updated:
        log.info(f"Cancellation requested for job {job_id} (run {run['id']})")
    return updated


def is_job_run_cancelled(run_id: str) -> bool:
    run = get_job_run(run_id)
    return bool(run) and run["status"] == JobStatus.CANCELLED.value


# Artifacts
def save_job_artifact(
    run_id: str,
    artifact_type: str,
    data: Optional[Dict[str, Any]] = None,
) -> str:
    artifact_id = _new_id()
    now = _utcnow_naive()

    if DB_TYPE != "postgres":
        _mock_db["job_artifacts"][artifact_id] = {
            "id": artifact_id,
            "run_id": run_id,
            "artifact_type": artifact_type,
            "data": data,
            "created_at": now.isoformat(),
        }
    else:
        with pg_cursor() as cur:
            cur.execute(
                """
                INSERT INTO job_artifacts (id, run_id, artifact_type, data, created_at)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (artifact_id, run_id, artifact_type, json.dumps(data) if data else None, now),
            )

    get_logger().debug(f"Saved {artifact_type} artifact {artifact_id} for run {run_id}")
    return artifact_id


def get_job_artifacts(
    run_id: str,
    artifact_type: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Artifacts of a run in creation order, optionally of one type."""
    if DB_TYPE != "postgres":
        artifacts = [
            a
            for a in list(_mock_db["job_artifacts"].values())
            if a["run_id"] == run_id and artifact_type in (None, a["artifact_type"])
        ]
        return sorted(artifacts, key=lambda a: a["created_at"])

    query = "SELECT * FROM job_artifacts WHERE run_id = %s"
    params: List[Any] = [run_id]
    if artifact_type:
        query += " AND artifact_type = %s"
        params.append(artifact_type)
    with pg_cursor() as cur:
        cur.execute(query + " ORDER BY created_at ASC", params)
        return [_decoded(r, "data") for r in cur.fetchall()]


# Worker helpers
def get_pending_jobs(
    job_type: Optional[str] = None,
    limit: int = 10,
) -> List[Dict[str, Any]]:
    """
    Claimable jobs, oldest first, each with latest_attempt and latest_status.
    """
    if DB_TYPE != "postgres":
        jobs = []
        for job in list(_mock_db["jobs"].values()):
            if job_type and job["type"] != job_type:
                continue
            latest = get_latest_job_run(job["id"])
            if _next_attempt(latest) is None:
                continue
            jobs.append(
                {
                    **job,
                    "latest_attempt": latest["attempt_no"] if latest else 0,
                    "latest_status": latest["status"] if latest else None,
                }
            )
        jobs.sort(key=lambda j: j["created_at"])
        return jobs[:limit]

    query = """
        WITH latest_runs AS (
            SELECT DISTINCT ON (job_id)
                   job_id, attempt_no AS latest_attempt, status AS latest_status
            FROM job_runs
            ORDER BY job_id, attempt_no DESC, created_at DESC
        )
        SELECT j.*, COALESCE(lr.latest_attempt, 0) AS latest_attempt, lr.latest_status
        FROM jobs j
        LEFT JOIN latest_runs lr ON lr.job_id = j.id
        WHERE (lr.latest_status IS NULL OR lr.latest_status = 'failed')
    """
    params: List[Any] = []
    if job_type:
        query += " AND j.type = %s"
        params.append(job_type)
    params.append(limit)
    with pg_cursor() as cur:
        cur.execute(query + " ORDER BY j.created_at ASC LIMIT %s", params)
        return [_decoded(r, "payload") for r in cur.fetchall()]
