"""
Row Classifier & Extractor.

Walks the rows below a detected header and turns them into ParsedItems:
numbers are normalised, total rows are skipped (their amount is remembered as
the stated total), each row is typed, Prime-Cost items are flagged and Profit
& Attendance rows are folded into the Prime-Cost item they refer to.

The same row rules serve the positional fallback parser, which only differs in
how it reads cells out of a row (see ``classify_rows``).
"""

from __future__ import annotations

import math
import logging
from dataclasses import dataclass, field
from numbers import Number
from typing import Any, Iterable, Optional, Sequence

from boq_tools.boq_import.boq_import_columns import ColumnMap
from boq_tools.boq_import.boq_import_confidence import score_confidence
from boq_tools.boq_import.boq_import_models import (
    ItemType,
    ParsedItem,
    ParsedSection,
    ParseStrategy,
    RowType,
)
from boq_tools.boq_import.boq_import_rules import (
    CURRENCY_CHARS,
    DECIMAL_COMMA,
    HEADER_CODE,
    PERCENT_TOKEN,
    PRIME_COST_EXCLUSION_RULE,
    PRIME_COST_RULES,
    PROFIT_ATTENDANCE_RULES,
    PROVISIONAL_SUM_RULE,
    RATE_ONLY_RULE,
    SUBHEADER_CODE,
    SUBTOTAL_DESCRIPTION_RULES,
    TOTAL_ROW_RULES,
    ColumnRole,
    first_match,
)

logger = logging.getLogger("BoqLedgerBE")


def parse_number(value: Any) -> float:
    """
    Parse a spreadsheet cell into a float.

    "R 1 234,56" -> 1234.56, "24 500,00" -> 24500.0, "1,234.50" -> 1234.5.
    A trailing ",dd" is a decimal comma (dots are then thousands separators);
    otherwise commas are thousands separators. Anything non-numeric is 0.
    """
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, Number):
        number = float(value)
        return number if math.isfinite(number) else 0.0

    text = CURRENCY_CHARS.sub("", str(value))
    if not text:
        return 0.0
    if DECIMAL_COMMA.search(text):
        text = text.replace(".", "").replace(",", ".")
    else:
        text = text.replace(",", "")
    try:
        number = float(text)
    except ValueError:
        return 0.0
    return number if math.isfinite(number) else 0.0


@dataclass
class ExtractionContext:
    """Identity of the section being extracted."""

    sheet_name: str
    section_code: str
    section_name: str
    bill_number: int
    bill_name: str
    row_offset: int = 0

    def provenance(self, row_index: int) -> str:
        return f"{self.sheet_name}!R{row_index + 1}"


@dataclass
class RawRow:
    """Cell values of one row, already read out by column role or position."""

    row_index: int
    item_code: str
    description: str
    unit: str = ""
    quantity_text: str = ""
    quantity: float = 0.0
    supply_rate: float = 0.0
    install_rate: float = 0.0
    rate: float = 0.0
    amount: float = 0.0


@dataclass
class ProfitAttendanceRow:
    row_index: int
    position: int
    description: str
    percent: float


@dataclass
class ExtractionResult:
    items: list[ParsedItem] = field(default_factory=list)
    boq_total: float = 0.0
    stated_total: Optional[float] = None
    header_row_index: Optional[int] = None
    skipped_total_rows: int = 0
    profit_attendance_rows: int = 0
    unresolved_profit_attendance: int = 0


def clean_item_code(code: str) -> str:
    """Item codes must start with a letter; anything else is cleared."""
    code = (code or "").strip()
    return code if code[:1].isalpha() else ""


def is_total_row(item_code: str, description: str) -> bool:
    for text in (item_code, description):
        if text and first_match(TOTAL_ROW_RULES, text.strip().lower()):
            return True
    return False


def _is_all_caps(text: str) -> bool:
    return any(c.isalpha() for c in text) and text == text.upper()


def classify_row_type(
    item_code: str,
    description: str,
    unit: str,
    quantity: float,
    amount: float,
) -> RowType:
    """First matching type wins: header, description, subheader, else item."""
    if HEADER_CODE.match(item_code) and _is_all_caps(description) and not unit:
        return RowType.HEADER
    if not item_code and quantity == 0 and amount == 0:
        return RowType.DESCRIPTION
    if SUBHEADER_CODE.match(item_code) and not unit and quantity == 0:
        return RowType.SUBHEADER
    return RowType.ITEM


def _header_or_subtotal(
    row_type: RowType,
    item_code: str,
    description: str,
    unit: str,
    quantity: float,
) -> bool:
    if row_type == RowType.HEADER:
        return True
    if first_match(SUBTOTAL_DESCRIPTION_RULES, description):
        return True
    return bool(HEADER_CODE.match(item_code)) and not unit and quantity == 0


def is_header_or_subtotal(item: ParsedItem) -> bool:
    """Rows that never count towards a section total."""
    return _header_or_subtotal(
        item.row_type, item.item_code, item.description, item.unit, item.quantity
    )


def detect_prime_cost(item_code: str, description: str) -> tuple[bool, ItemType]:
    """
    Flag Prime-Cost / Provisional-Sum rows.

    Preliminaries and general-conditions wording never counts as Prime Cost.
    """
    if PRIME_COST_EXCLUSION_RULE.matches(description):
        return False, ItemType.MEASURED
    combined = f"{item_code} {description}".strip()
    if not first_match(PRIME_COST_RULES, combined):
        return False, ItemType.MEASURED
    if PROVISIONAL_SUM_RULE.matches(description):
        return True, ItemType.PS
    return True, ItemType.PC


def profit_attendance_percent(description: str, quantity: float) -> float:
    """
    Percentage carried by a Profit & Attendance row, 0 if it is not one.

    Taken from an explicit "%" token, else from the quantity column when it
    lies in (0, 100]. The unit column is ignored; P&A rows often carry "sum".
    """
    if not first_match(PROFIT_ATTENDANCE_RULES, description):
        return 0.0
    m = PERCENT_TOKEN.search(description)
    if m:
        percent = float(m.group(1).replace(",", "."))
        if 0 < percent <= 100:
            return percent
    if 0 < quantity <= 100:
        return float(quantity)
    return 0.0


def _code_referenced(code: str, text: str) -> bool:
    if not code:
        return False
    upper = text.upper()
    target = code.upper()
    start = upper.find(target)
    while start >= 0:
        end = start + len(target)
        before = upper[start - 1] if start > 0 else " "
        after = upper[end] if end < len(upper) else " "
        if not before.isalnum() and not (after.isalnum() or after == "."):
            return True
        start = upper.find(target, start + 1)
    return False


def find_referenced_prime_cost(items: Sequence[dict], pa: ProfitAttendanceRow) -> Optional[int]:
    """
    Index of the Prime-Cost item whose code the P&A row names.

    Preceding items are searched nearest first, then following ones.
    """
    order = list(range(pa.position - 1, -1, -1)) + list(range(pa.position, len(items)))
    for idx in order:
        item = items[idx]
        if item["is_prime_cost"] and _code_referenced(item["item_code"], pa.description):
            return idx
    return None


def nearest_preceding_prime_cost(items: Sequence[dict], position: int) -> Optional[int]:
    """
    Backward index scan from ``position - 1`` to 0.

    Tie-break: the Prime-Cost item closest above the P&A row wins, i.e. the
    most recently seen one.
    """
    for idx in range(min(position, len(items)) - 1, -1, -1):
        if items[idx]["is_prime_cost"]:
            return idx
    return None


def classify_rows(raw_rows: Iterable[RawRow], context: ExtractionContext) -> ExtractionResult:
    """
    Apply the validity, skip and classification rules to rows read out by a strategy.
    """
    drafts: list[dict] = []
    pa_rows: list[ProfitAttendanceRow] = []
    result = ExtractionResult()
    stated_total: Optional[float] = None

    for raw in raw_rows:
        item_code = clean_item_code(raw.item_code)
        description = (raw.description or "").strip()
        unit = (raw.unit or "").strip()

        if not item_code and not description:
            continue

        if is_total_row(item_code, description):
            result.skipped_total_rows += 1
            if raw.amount > 0 and (stated_total is None or raw.amount > stated_total):
                stated_total = raw.amount
            logger.debug(f"[{context.sheet_name}] skipped total row {raw.row_index + 1}: {description}")
            continue

        if raw.amount == 0 and RATE_ONLY_RULE.matches(raw.quantity_text):
            continue

        percent = profit_attendance_percent(description, raw.quantity)
        if percent > 0:
            pa_rows.append(
                ProfitAttendanceRow(
                    row_index=raw.row_index,
                    position=len(drafts),
                    description=description,
                    percent=percent,
                )
            )
            continue

        total_rate = raw.rate if raw.rate > 0 else raw.supply_rate + raw.install_rate
        amount = raw.amount if raw.amount > 0 else raw.quantity * total_rate
        amount = round(amount, 2)

        row_type = classify_row_type(item_code, description, unit, raw.quantity, amount)
        if row_type == RowType.HEADER:
            is_prime_cost, item_type = False, ItemType.MEASURED
        else:
            is_prime_cost, item_type = detect_prime_cost(item_code, description)

        drafts.append(
            {
                "row_index": raw.row_index,
                "item_code": item_code,
                "description": description,
                "unit": unit,
                "quantity": raw.quantity,
                "supply_rate": raw.supply_rate,
                "install_rate": raw.install_rate,
                "total_rate": total_rate,
                "amount": amount,
                "section_code": context.section_code,
                "section_name": context.section_name,
                "bill_number": context.bill_number,
                "bill_name": context.bill_name,
                "row_type": row_type,
                "is_prime_cost": is_prime_cost,
                "item_type": item_type,
                "profit_attendance_percent": 0.0,
                "provenance_id": context.provenance(raw.row_index),
            }
        )

    for pa in pa_rows:
        target = find_referenced_prime_cost(drafts, pa)
        if target is None:
            target = nearest_preceding_prime_cost(drafts, pa.position)
        if target is None:
            result.unresolved_profit_attendance += 1
            logger.warning(
                f"[{context.sheet_name}] P&A row {pa.row_index + 1} ({pa.percent}%) "
                f"has no Prime-Cost item to apply to: {pa.description}"
            )
            continue
        drafts[target]["profit_attendance_percent"] = pa.percent

    result.profit_attendance_rows = len(pa_rows)
    result.items = [ParsedItem(**d) for d in drafts]
    result.boq_total = round(
        sum(item.amount for item in result.items if not is_header_or_subtotal(item)), 2
    )
    result.stated_total = stated_total
    return result


def _cell(row: Sequence[str], idx: Optional[int]) -> str:
    if idx is None or idx >= len(row):
        return ""
    return str(row[idx] or "").strip()


def extract_items(
    rows: Sequence[Sequence[str]],
    column_map: ColumnMap,
    context: ExtractionContext,
) -> ExtractionResult:
    """
    Standard strategy: read cells through the detected column roles.

    Args:
        rows: Worksheet rows (or an inline-section slice of them)
        column_map: Header detected within ``rows``
        context: Section identity; ``row_offset`` maps slice rows to sheet rows
    """

    def read(i: int, row: Sequence[str]) -> RawRow:
        quantity_text = _cell(row, column_map.index(ColumnRole.QUANTITY))
        return RawRow(
            row_index=context.row_offset + i,
            item_code=_cell(row, column_map.index(ColumnRole.ITEM_CODE)),
            description=_cell(row, column_map.index(ColumnRole.DESCRIPTION)),
            unit=_cell(row, column_map.index(ColumnRole.UNIT)),
            quantity_text=quantity_text,
            quantity=parse_number(quantity_text),
            supply_rate=parse_number(_cell(row, column_map.index(ColumnRole.SUPPLY_RATE))),
            install_rate=parse_number(_cell(row, column_map.index(ColumnRole.INSTALL_RATE))),
            rate=parse_number(_cell(row, column_map.index(ColumnRole.RATE))),
            amount=parse_number(_cell(row, column_map.index(ColumnRole.AMOUNT))),
        )

    start = column_map.header_row + 1
    result = classify_rows(
        (read(i, rows[i]) for i in range(start, len(rows))),
        context,
    )
    result.header_row_index = context.row_offset + column_map.header_row
    return result


def build_section(
    context: ExtractionContext,
    result: ExtractionResult,
    *,
    strategy: ParseStrategy = ParseStrategy.STANDARD,
    parse_attempts: int = 1,
    row_start: int = 0,
    row_end: Optional[int] = None,
) -> ParsedSection:
    """Wrap an extraction into a scored ParsedSection."""
    items = tuple(result.items)
    return ParsedSection(
        section_code=context.section_code,
        section_name=context.section_name,
        bill_number=context.bill_number,
        bill_name=context.bill_name,
        sheet_name=context.sheet_name,
        items=items,
        item_count=len(items),
        boq_total=result.boq_total,
        stated_total=result.stated_total,
        prime_cost_count=sum(1 for item in items if item.is_prime_cost),
        extraction_confidence=score_confidence(items, result.boq_total),
        parse_attempts=parse_attempts,
        last_parse_strategy=strategy,
        row_start=row_start,
        row_end=row_end,
        header_row_index=result.header_row_index,
    )
