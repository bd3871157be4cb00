"""
Job processors for BOQ ledger imports.
"""

from typing import Dict, Any

from boq_utils.db.job_queue import (
    claim_job_run,
    is_job_run_cancelled,
    update_job_run_status,
    update_job_run_progress,
    save_job_artifact,
    JobStatus,
)
from boq_utils.core.log import account_tool_logger, set_logger, get_logger
from boq_tools.boq_reconcile.boq_reconcile_models import ImportMode, MergeKey


async def _process_boq_import_job(job_id: str, job: Dict[str, Any], mode: ImportMode) -> Dict[str, Any]:
    from boq_tools.boq_reconcile.boq_reconcile import _do_import_workflow

    payload = job.get("payload", {})
    account_id = job.get("account_id") or payload.get("account_id")
    tool = f"boq_import_{mode.value}"

    worker_logger = account_tool_logger(account_id, tool)
    set_logger(
        worker_logger,
        tool_name=f"{tool}_worker",
        account_id=account_id or "unknown",
        ip_address=payload.get("remote_ip", "no_ip"),
        request_type="WORKER",
        user_name=payload.get("user_name") or "Anonymous",
        job_id=job_id,
    )
    log = get_logger()

    claim = claim_job_run(job_id)
    if not claim:
        log.debug(
            "Skipping job %s: already claimed or not retryable (latest_status=%s)",
            job_id,
            job.get("latest_status"),
        )
        return {"skipped": True, "reason": "not_claimable"}
    run_id = claim["run_id"]

    try:
        def progress_callback(progress: Dict[str, Any]):
            update_job_run_progress(run_id, progress)

        def should_cancel() -> bool:
            return is_job_run_cancelled(run_id)

        result = await _do_import_workflow(
            account_id=account_id,
            sections=payload.get("sections"),
            mode=mode,
            merge_key=MergeKey(payload.get("merge_key") or MergeKey.ITEM_CODE.value),
            user_name=payload.get("user_name"),
            progress_callback=progress_callback,
            should_cancel=should_cancel,
        )

        save_job_artifact(run_id, "result", result.get("result", result))
        if result["result"].get("cancelled"):
            log.info("Run %s stopped after cancellation", run_id)
        elif update_job_run_status(run_id, JobStatus.COMPLETED):
            log.debug("Run %s completed successfully", run_id)
        return result
    except Exception as e:
        error_msg = str(e)
        log.exception("Run %s failed: %s", run_id, e)
        update_job_run_status(run_id, JobStatus.FAILED, error=error_msg)
        raise


async def process_boq_import_replace_job(job_id: str, job: Dict[str, Any]) -> Dict[str, Any]:
    return await _process_boq_import_job(job_id, job, ImportMode.REPLACE)


async def process_boq_import_merge_job(job_id: str, job: Dict[str, Any]) -> Dict[str, Any]:
    return await _process_boq_import_job(job_id, job, ImportMode.MERGE)
