"""
Job Queue Integration for BOQ ledger imports.
"""

from typing import Dict, Any, Optional

from boq_utils.db.job_queue import (
    create_job,
    cancel_job,
    get_job,
    get_latest_job_run,
    get_job_artifacts,
    get_jobs_by_account,
    JobStatus,
    JobType,
)
from boq_utils.core.log import account_tool_logger, set_logger, get_logger


def create_boq_import_job(
    job_type: JobType,
    account_id: str,
    sections: list[Dict[str, Any]],
    user_id: Optional[str] = None,
    user_name: Optional[str] = None,
    payload_fields: Optional[Dict[str, Any]] = None,
    **kwargs,
) -> str:
    payload = {
        "account_id": account_id,
        "user_name": user_name,
        "sections": sections,
    }
    payload.update(kwargs)
    if payload_fields:
        payload.update(payload_fields)

    job_id = create_job(
        job_type=job_type.value,
        payload=payload,
        account_id=account_id,
        user_id=user_id,
    )

    set_logger(account_tool_logger(account_id or "SYSTEM", "job_queue"))
    log = get_logger()
    log.debug("Created %s job %s for account %s (%d sections)", job_type.value, job_id, account_id, len(sections))
    return job_id


def _find_job(account_id: str, job_type: Optional[JobType], job_id: Optional[str]) -> Optional[Dict[str, Any]]:
    if job_id:
        job = get_job(job_id)
        if job and job.get("account_id") == account_id:
            return job
        return None
    jobs = get_jobs_by_account(
        account_id=account_id,
        job_type=job_type.value if job_type else None,
        limit=1,
    )
    return jobs[0] if jobs else None


def get_job_status_response(
    account_id: str,
    job_type: Optional[JobType] = None,
    job_id: Optional[str] = None,
) -> Dict[str, Any]:
    job = _find_job(account_id, job_type, job_id)
    if not job:
        return {"status": "pending", "message": "No job found"}

    job_id = job["id"]
    run = get_latest_job_run(job_id)

    if not run:
        return {"status": "in progress", "message": "Job is pending", "job_id": job_id}

    run_status = run.get("status")

    if run_status == JobStatus.COMPLETED.value:
        artifacts = get_job_artifacts(run["id"])
        data = {a.get("artifact_type"): a.get("data") for a in artifacts}
        return {
            "status": "completed",
            "data": data.get("result", data),
            "job_id": job_id,
            "run_id": run["id"],
        }

    if run_status == JobStatus.CANCELLED.value:
        # A cancelled run may still have recorded what it finished before stopping.
        artifacts = get_job_artifacts(run["id"], artifact_type="result")
        response = {
            "status": "cancelled",
            "progress": run.get("progress", {}),
            "job_id": job_id,
            "run_id": run["id"],
        }
        if artifacts:
            response["data"] = artifacts[0].get("data")
        return response

    if run_status == JobStatus.FAILED.value:
        return {
            "status": "error",
            "error": run.get("error", "Job failed"),
            "job_id": job_id,
            "run_id": run["id"],
        }

    if run_status == JobStatus.IN_PROGRESS.value:
        return {
            "status": "in progress",
            "progress": run.get("progress", {}),
            "job_id": job_id,
            "run_id": run["id"],
        }

    if run_status == JobStatus.PENDING.value:
        return {
            "status": "in progress",
            "message": "Job is pending",
            "job_id": job_id,
            "run_id": run["id"],
        }

    return {
        "status": "unknown",
        "message": f"Unknown run status: {run_status}",
        "job_id": job_id,
        "run_id": run["id"],
    }


def cancel_boq_import_job(
    account_id: str,
    job_type: Optional[JobType] = None,
    job_id: Optional[str] = None,
) -> Dict[str, Any]:
    job = _find_job(account_id, job_type, job_id)
    if not job:
        return {"status": "error", "error": "No job found"}
    if not cancel_job(job["id"]):
        return {
            "status": "error",
            "error": "Job already finished",
            "job_id": job["id"],
        }
    return {"status": "cancelled", "job_id": job["id"]}
