"""
Final-account queue-facing orchestration.

- import / merge, GET: poll the latest import job
- import / merge, POST: enqueue a batch import job (or import one section directly)
- reconcile, POST: compare parsed sections against the ledger
- cancel, POST: cancel the running import job
- worker processors call the workflow functions defined here
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError

from boq_utils.core.errors import BoqImportError, ImportValidationError, _make_error_payload
from boq_utils.core.log import account_tool_logger, set_logger, get_logger
from boq_utils.db import ledger
from boq_utils.db.job_queue import JobType
from boq_tools.boq_import.boq_import_models import ParsedSection
from boq_tools.boq_reconcile.boq_reconcile_engine import ReconciliationEngine
from boq_tools.boq_reconcile.boq_reconcile_models import ImportMode, LedgerEntry, MergeKey
from boq_tools.boq_reconcile.boq_reconcile_status import summarize
from boq_tools.boq_reconcile.job_queue_integration import (
    cancel_boq_import_job,
    create_boq_import_job,
    get_job_status_response,
)


ProgressCallback = Optional[Callable[[Dict[str, Any]], None]]
CancelCheck = Optional[Callable[[], bool]]

_JOB_TYPES: Dict[str, JobType] = {
    "import": JobType.BOQ_IMPORT_REPLACE,
    "merge": JobType.BOQ_IMPORT_MERGE,
}
_MODES: Dict[str, ImportMode] = {
    "import": ImportMode.REPLACE,
    "merge": ImportMode.MERGE,
}


def _emit_progress(progress_callback: ProgressCallback, **payload: Any) -> None:
    if progress_callback:
        progress_callback(payload)


def load_sections(raw_sections: Any) -> list[ParsedSection]:
    """
    Rebuild parsed sections from their JSON form (as returned by /boq-parse).

    Raises:
        ImportValidationError: If the list is missing or a section is malformed
    """
    if not isinstance(raw_sections, list) or not raw_sections:
        raise ImportValidationError("sections must be a non-empty list")
    try:
        return [ParsedSection.model_validate(s) for s in raw_sections]
    except ValidationError as e:
        raise ImportValidationError(f"Invalid section payload: {e.error_count()} errors") from e


async def _do_import_workflow(
    *,
    account_id: str,
    sections: list[Dict[str, Any]],
    mode: ImportMode,
    merge_key: MergeKey = MergeKey.ITEM_CODE,
    user_name: str | None = None,
    progress_callback: ProgressCallback = None,
    should_cancel: CancelCheck = None,
) -> Dict[str, Any]:
    logger = get_logger()
    start_t = time.perf_counter()
    parsed = load_sections(sections)

    _emit_progress(
        progress_callback,
        stage="importing",
        completed=0,
        total=len(parsed),
        message=f"Importing {len(parsed)} sections ({mode.value})",
    )
    engine = ReconciliationEngine()
    summary = await engine.import_sections(
        account_id,
        parsed,
        mode,
        key=merge_key,
        progress_callback=progress_callback,
        should_cancel=should_cancel,
    )
    logger.info(
        f"{mode.value} import for {account_id} by {user_name or 'unknown'} "
        f"finished in {time.perf_counter() - start_t:.2f}s"
    )
    return {
        "result": {
            "analysisType": "merge" if mode == ImportMode.MERGE else "import",
            **summary.to_dict(),
        }
    }


def _ledger_entries(account_id: str) -> list[LedgerEntry]:
    return [
        LedgerEntry(
            section_code=row["section_code"],
            section_name=row.get("section_name") or "",
            item_code=row.get("item_code") or "",
            provenance_id=row.get("provenance_id"),
            contract_amount=float(row.get("contract_amount") or 0),
            bill_number=row.get("bill_number"),
        )
        for row in ledger.get_ledger_snapshot(account_id)
    ]


async def _do_reconcile_workflow(
    *,
    account_id: str,
    sections: list[Dict[str, Any]],
) -> Dict[str, Any]:
    parsed = load_sections(sections)
    entries = await asyncio.to_thread(_ledger_entries, account_id)
    summary = summarize(parsed, entries)
    get_logger().info(
        f"Reconciled {summary.sections_total} sections for {account_id}: "
        f"{summary.fully_reconciled} reconciled, {summary.near_match} near, "
        f"{summary.mismatched} mismatched, variance {summary.variance:.2f}"
    )
    return {"result": {"analysisType": "reconcile", **summary.model_dump(mode="json")}}


async def _do_single_section_import(
    *,
    account_id: str,
    sections: list[Dict[str, Any]],
    section_code: str,
    mode: ImportMode,
    merge_key: MergeKey,
) -> Dict[str, Any]:
    parsed = load_sections(sections)
    result = await ReconciliationEngine().import_section(
        account_id, parsed, section_code, mode, merge_key
    )
    return {"status": "completed", "result": result.model_dump(mode="json")}


async def final_account_main(
    *,
    account_id: str | None = None,
    request_method: str | None = None,
    analysis_type: str | None = None,
    sections: list[Dict[str, Any]] | None = None,
    section_code: str | None = None,
    merge_key: str | None = None,
    job_id: str | None = None,
    remote_ip: str | None = None,
    user_name: str | None = None,
    user_id: str | None = None,
    compute_reimport: bool = True,
) -> Dict[str, Any]:
    base_logger = account_tool_logger(account_id, "final_account")
    set_logger(
        base_logger,
        tool_name="final_account_main",
        account_id=account_id or "unknown",
        ip_address=remote_ip or "no_ip",
        request_type=request_method or "N/A",
        user_name=user_name or "Anonymous",
    )
    logger = get_logger()

    if not account_id:
        return {"status": "error", "error": "account_id is required"}

    normalized_type = (analysis_type or "").strip().lower()
    if normalized_type not in ("import", "merge", "reconcile", "cancel"):
        return {
            "status": "error",
            "error": f"Unsupported analysis_type: {analysis_type}. Allowed: import, merge, reconcile, cancel",
        }

    try:
        key = MergeKey(merge_key or MergeKey.ITEM_CODE.value)
    except ValueError:
        return {"status": "error", "error": f"Unsupported merge_key: {merge_key}"}

    if normalized_type == "cancel":
        if request_method != "POST":
            return {"status": "error", "error": "cancel requires POST"}
        return cancel_boq_import_job(account_id, job_id=job_id)

    if normalized_type == "reconcile":
        if request_method != "POST":
            return {"status": "error", "error": "reconcile requires POST"}
        try:
            result = await _do_reconcile_workflow(account_id=account_id, sections=sections)
        except ImportValidationError as exc:
            return _make_error_payload("validate", exc)
        return {"status": "completed", **result}

    job_type = _JOB_TYPES[normalized_type]
    mode = _MODES[normalized_type]

    if request_method == "GET":
        return get_job_status_response(account_id=account_id, job_type=job_type, job_id=job_id)

    if request_method == "POST":
        if section_code:
            try:
                return await _do_single_section_import(
                    account_id=account_id,
                    sections=sections,
                    section_code=section_code,
                    mode=mode,
                    merge_key=key,
                )
            except ImportValidationError as exc:
                return _make_error_payload("validate", exc, {"section_code": section_code})
            except BoqImportError as exc:
                logger.error(f"Import of section {section_code} failed: {exc}")
                return _make_error_payload("persist", exc, {"section_code": section_code})

        try:
            load_sections(sections)
        except ImportValidationError as exc:
            return _make_error_payload("validate", exc)

        if not compute_reimport:
            response = get_job_status_response(account_id=account_id, job_type=job_type)
            if response.get("status") == "completed":
                return response

        new_job_id = create_boq_import_job(
            job_type=job_type,
            account_id=account_id,
            sections=sections,
            user_id=user_id,
            user_name=user_name,
            payload_fields={"analysis_type": normalized_type, "merge_key": key.value},
            remote_ip=remote_ip,
        )
        logger.info("Created %s job %s for account %s", job_type.value, new_job_id, account_id)
        return {
            "status": "in progress",
            "message": f"BOQ {normalized_type} job created for {account_id}",
            "job_id": new_job_id,
        }

    return {"status": "error", "error": f"Unsupported request method: {request_method}"}
