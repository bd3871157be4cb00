"""
Fallback Parser: positional-column extraction used on manual retry.

Assumes column 0 = item code, 1 = description, 2 = unit, 3 = quantity and takes
the amount from the right-most positive cell at or beyond column 4.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from boq_tools.boq_import.boq_import_models import ParsedSection, ParseStrategy
from boq_tools.boq_import.boq_import_rows import (
    ExtractionContext,
    ExtractionResult,
    RawRow,
    build_section,
    classify_rows,
    clean_item_code,
    parse_number,
)

logger = logging.getLogger("BoqLedgerBE")

CODE_COL = 0
DESCRIPTION_COL = 1
UNIT_COL = 2
QUANTITY_COL = 3
FIRST_AMOUNT_COL = 4
MIN_START_DESCRIPTION_LENGTH = 5


def _cell(row: Sequence[str], idx: int) -> str:
    return str(row[idx] or "").strip() if idx < len(row) else ""


def find_data_start(rows: Sequence[Sequence[str]]) -> Optional[int]:
    """First row with a letter-leading code and a description longer than 5 chars."""
    for i, row in enumerate(rows):
        if clean_item_code(_cell(row, CODE_COL)) and len(_cell(row, DESCRIPTION_COL)) > MIN_START_DESCRIPTION_LENGTH:
            return i
    return None


def _rightmost_amount(row: Sequence[str]) -> float:
    for c in range(len(row) - 1, FIRST_AMOUNT_COL - 1, -1):
        value = parse_number(row[c])
        if value > 0:
            return value
    return 0.0


def parse_positional(
    rows: Sequence[Sequence[str]],
    context: ExtractionContext,
) -> ExtractionResult:
    """
    Alternative strategy: read cells by fixed position instead of header roles.

    Returns an empty result when no data-start row exists.
    """
    start = find_data_start(rows)
    if start is None:
        return ExtractionResult()

    def read(i: int, row: Sequence[str]) -> RawRow:
        quantity_text = _cell(row, QUANTITY_COL)
        return RawRow(
            row_index=context.row_offset + i,
            item_code=_cell(row, CODE_COL),
            description=_cell(row, DESCRIPTION_COL),
            unit=_cell(row, UNIT_COL),
            quantity_text=quantity_text,
            quantity=parse_number(quantity_text),
            amount=_rightmost_amount(row),
        )

    return classify_rows((read(i, rows[i]) for i in range(start, len(rows))), context)


def retry_section(previous: ParsedSection, rows: Sequence[Sequence[str]]) -> ParsedSection:
    """
    Re-parse a section with the positional strategy.

    Args:
        previous: The section as last parsed
        rows: All rows of the section's worksheet

    Returns:
        The new section if it has strictly more items than ``previous``,
        otherwise ``previous`` with its attempt counter bumped
    """
    row_end = previous.row_end if previous.row_end is not None else len(rows)
    context = ExtractionContext(
        sheet_name=previous.sheet_name,
        section_code=previous.section_code,
        section_name=previous.section_name,
        bill_number=previous.bill_number,
        bill_name=previous.bill_name,
        row_offset=previous.row_start,
    )
    result = parse_positional(rows[previous.row_start:row_end], context)
    attempts = previous.parse_attempts + 1

    if len(result.items) > previous.item_count:
        logger.info(
            f"[{previous.sheet_name}] positional retry of {previous.section_code} "
            f"found {len(result.items)} items (was {previous.item_count})"
        )
        return build_section(
            context,
            result,
            strategy=ParseStrategy.ALTERNATIVE,
            parse_attempts=attempts,
            row_start=previous.row_start,
            row_end=previous.row_end,
        )

    logger.info(
        f"[{previous.sheet_name}] positional retry of {previous.section_code} "
        f"did not improve on {previous.item_count} items"
    )
    return previous.model_copy(update={"parse_attempts": attempts})
