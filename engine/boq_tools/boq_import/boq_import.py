"""
BOQ import request-facing orchestration.

- parse: decode an uploaded workbook and return its bills/sections
- retry: re-parse one section with the positional fallback strategy

Parsing is synchronous and CPU-bound, so the async entry point pushes it onto a
worker thread like the other workflow functions do.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, Mapping, Optional

from boq_utils.core.errors import WorkbookDecodeError, _make_error_payload
from boq_utils.core.log import account_tool_logger, set_logger, get_logger
from boq_utils.vault import secrets
from boq_tools.boq_import.boq_import_fallback import retry_section
from boq_tools.boq_import.boq_import_models import ParseResult
from boq_tools.boq_import.boq_import_parse_excel import (
    WorkbookSource,
    group_bills,
    load_workbook_grid,
    parse_workbook,
)


def get_tenant_bill_map() -> Optional[Dict[str, int]]:
    """Tenant -> bill number override from settings, None for the built-in table."""
    raw = secrets.get_json("boq_tenant_bill_map", default=None)
    if not isinstance(raw, Mapping):
        return None
    try:
        return {str(k).lower(): int(v) for k, v in raw.items()}
    except (TypeError, ValueError):
        get_logger().warning("boq_tenant_bill_map has non-integer bill numbers, ignoring it")
        return None


def parse_boq_workbook(
    source: WorkbookSource,
    source_name: Optional[str] = None,
) -> ParseResult:
    logger = get_logger()
    start_t = time.perf_counter()
    grid = load_workbook_grid(source, source_name)
    result = parse_workbook(grid, get_tenant_bill_map())
    logger.info(
        f"Parsed {result.source_file}: {len(result.bills)} bills, "
        f"{len(result.sections)} sections, {len(result.skipped_sheets)} sheets skipped "
        f"in {time.perf_counter() - start_t:.2f}s (rules {result.ruleset_version})"
    )
    return result


def retry_boq_section(
    source: WorkbookSource,
    section_code: str,
    source_name: Optional[str] = None,
    previous_attempts: int = 1,
) -> ParseResult:
    """
    Re-parse one section of a workbook with the positional strategy.

    Returns:
        A ParseResult in which only that section may have changed

    Raises:
        KeyError: If the workbook has no section with that code
    """
    logger = get_logger()
    grid = load_workbook_grid(source, source_name)
    result = parse_workbook(grid, get_tenant_bill_map())
    previous = result.get_section(section_code)
    if previous is None:
        raise KeyError(f"Section {section_code} not found in {result.source_file}")
    if previous_attempts > previous.parse_attempts:
        previous = previous.model_copy(update={"parse_attempts": previous_attempts})

    sheet = grid.get_sheet(previous.sheet_name)
    retried = retry_section(previous, sheet.rows if sheet else [])
    logger.info(
        f"Retry of section {section_code}: {retried.item_count} items, "
        f"strategy {retried.last_parse_strategy.value}, attempt {retried.parse_attempts}"
    )

    sections = [retried if s.section_code == section_code else s for s in result.sections]
    bills, ordered = group_bills(sections)
    return result.model_copy(update={"bills": tuple(bills), "sections": tuple(ordered)})


async def boq_parse_main(
    *,
    file_bytes: bytes | None = None,
    file_name: str | None = None,
    account_id: str | None = None,
    analysis_type: str | None = None,
    section_code: str | None = None,
    previous_attempts: int = 1,
    request_method: str | None = None,
    remote_ip: str | None = None,
    user_name: str | None = None,
) -> Dict[str, Any]:
    base_logger = account_tool_logger(account_id, "boq_parse")
    set_logger(
        base_logger,
        tool_name="boq_parse_main",
        account_id=account_id or "unknown",
        ip_address=remote_ip or "no_ip",
        request_type=request_method or "N/A",
        user_name=user_name or "Anonymous",
    )
    logger = get_logger()

    if not file_bytes:
        return {"status": "error", "error": "file is required"}

    normalized_type = (analysis_type or "parse").strip().lower()
    if normalized_type not in ("parse", "retry"):
        return {
            "status": "error",
            "error": f"Unsupported analysis_type: {analysis_type}. Allowed: parse, retry",
        }
    if normalized_type == "retry" and not section_code:
        return {"status": "error", "error": "sectionCode is required for retry"}

    try:
        if normalized_type == "parse":
            result = await asyncio.to_thread(parse_boq_workbook, file_bytes, file_name)
        else:
            result = await asyncio.to_thread(
                retry_boq_section, file_bytes, section_code, file_name, previous_attempts
            )
    except WorkbookDecodeError as exc:
        logger.error(f"Workbook decode failed for {file_name}: {exc}")
        return _make_error_payload("decode", exc, {"source_file": file_name})
    except KeyError as exc:
        return _make_error_payload("retry", exc.args[0] if exc.args else exc)

    return {
        "status": "completed",
        "result": {"analysisType": normalized_type, **result.to_dict()},
    }
