"""
Excel BOQ extraction module using openpyxl.

Decodes a workbook into a ``WorkbookGrid`` (sheet names plus a rectangular
grid of stringified cells per sheet) and runs the per-sheet pipeline over it:
Sheet Classifier -> Column Detector -> Row Classifier & Extractor ->
Confidence Scorer.

Supported formats:
- .xlsx / .xlsm (Excel 2007+)

Usage:
    from boq_tools.boq_import.boq_import_parse_excel import load_workbook_grid, parse_workbook

    grid = load_workbook_grid("boq.xlsx")
    result = parse_workbook(grid)
"""

from __future__ import annotations

import io
import logging
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, BinaryIO, Mapping, Optional, Union

import openpyxl

from boq_utils.core.errors import WorkbookDecodeError
from boq_tools.boq_import.boq_import_columns import detect_columns
from boq_tools.boq_import.boq_import_models import (
    Bill,
    ParsedSection,
    ParseResult,
    SkippedSheet,
)
from boq_tools.boq_import.boq_import_rows import (
    ExtractionContext,
    ExtractionResult,
    build_section,
    extract_items,
)
from boq_tools.boq_import.boq_import_rules import (
    HEADER_SCAN_LIMIT,
    INLINE_BILL_NUMBER,
    INLINE_BILL_SCAN_ROWS,
    INLINE_HEADER_SCAN_ROWS,
    INLINE_MAX_SHEETS,
    INLINE_MIN_SECTIONS,
    INLINE_SECTION,
    INLINE_SUMMARY_PAGE,
    RULESET_VERSION,
)
from boq_tools.boq_import.boq_import_sheets import classify_workbook_sheets, natural_sort_key

logger = logging.getLogger("BoqLedgerBE")

WorkbookSource = Union[str, Path, bytes, BinaryIO]


@dataclass
class SheetGrid:
    """
    One worksheet as a rectangular grid of stringified cells.

    Attributes:
        name: Sheet name
        rows: Row-major cell text, every row padded to the same width
        dimensions: Declared range (e.g. "A1:F40")
    """

    name: str
    rows: list[list[str]]
    dimensions: str = "A1:A1"

    @property
    def width(self) -> int:
        return len(self.rows[0]) if self.rows else 0


@dataclass
class WorkbookGrid:
    source_file: str
    sheets: list[SheetGrid] = field(default_factory=list)

    @property
    def sheet_names(self) -> list[str]:
        return [s.name for s in self.sheets]

    def get_sheet(self, name: str) -> Optional[SheetGrid]:
        return next((s for s in self.sheets if s.name == name), None)


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def load_workbook_grid(source: WorkbookSource, source_name: Optional[str] = None) -> WorkbookGrid:
    """
    Decode a workbook into a WorkbookGrid.

    Args:
        source: Path, raw bytes or binary file object
        source_name: Name reported in results (defaults to the path name)

    Raises:
        WorkbookDecodeError: If the workbook cannot be read at all
    """
    if isinstance(source, (str, Path)):
        name = source_name or Path(source).name
        handle: Any = str(source)
    elif isinstance(source, (bytes, bytearray)):
        name = source_name or "upload.xlsx"
        handle = io.BytesIO(source)
    else:
        name = source_name or getattr(source, "name", None) or "upload.xlsx"
        handle = source

    try:
        workbook = openpyxl.load_workbook(handle, data_only=True)
    except Exception as e:
        raise WorkbookDecodeError(f"Could not read workbook {name}: {e}") from e

    try:
        sheets = []
        for worksheet in workbook.worksheets:
            width = worksheet.max_column or 0
            rows = [
                [_cell_text(v) for v in row]
                for row in worksheet.iter_rows(
                    min_row=1, max_row=worksheet.max_row, max_col=width, values_only=True
                )
            ]
            sheets.append(
                SheetGrid(name=worksheet.title, rows=rows, dimensions=worksheet.dimensions)
            )
    except Exception as e:
        raise WorkbookDecodeError(f"Could not read workbook {name}: {e}") from e
    finally:
        workbook.close()

    logger.debug(f"Decoded workbook {name}: {len(sheets)} sheets")
    return WorkbookGrid(source_file=name, sheets=sheets)


def _joined(row: list[str]) -> str:
    return " ".join(c for c in row if c).strip()


def _extract_block(
    rows: list[list[str]],
    context: ExtractionContext,
    *,
    scan_limit: int,
    row_start: int = 0,
    row_end: Optional[int] = None,
) -> ParsedSection:
    column_map = detect_columns(rows, scan_limit=scan_limit)
    if column_map is None:
        logger.info(f"[{context.sheet_name}] no header row found for {context.section_code}")
        return build_section(context, ExtractionResult(), row_start=row_start, row_end=row_end)
    result = extract_items(rows, column_map, context)
    return build_section(context, result, row_start=row_start, row_end=row_end)


def parse_inline_sections(grid: WorkbookGrid) -> list[ParsedSection]:
    """
    Split a single-sheet workbook on "SECTION <letter> - <name>" rows.

    Applies to workbooks of at most three sheets whose first sheet holds at
    least two such rows. Returns [] when the layout does not apply.
    """
    if not grid.sheets or len(grid.sheets) > INLINE_MAX_SHEETS:
        return []
    sheet = grid.sheets[0]
    rows = sheet.rows

    starts: list[tuple[int, str, str]] = []
    for i, row in enumerate(rows):
        m = INLINE_SECTION.match(_joined(row))
        if m:
            starts.append((i, m.group(1).upper(), m.group(2).strip()))
    if len(starts) < INLINE_MIN_SECTIONS:
        return []

    bill_number, bill_name = 1, "Bill 1"
    for row in rows[:INLINE_BILL_SCAN_ROWS]:
        m = INLINE_BILL_NUMBER.search(_joined(row))
        if m:
            bill_number = int(m.group(1))
            bill_name = _joined(row)
            break

    sections = []
    for n, (start, letter, name) in enumerate(starts):
        end = starts[n + 1][0] if n + 1 < len(starts) else len(rows)
        for i in range(start, end):
            if INLINE_SUMMARY_PAGE.match(_joined(rows[i])):
                end = i
                break
        context = ExtractionContext(
            sheet_name=sheet.name,
            section_code=letter,
            section_name=name or f"Section {letter}",
            bill_number=bill_number,
            bill_name=bill_name,
            row_offset=start,
        )
        sections.append(
            _extract_block(
                rows[start:end],
                context,
                scan_limit=INLINE_HEADER_SCAN_ROWS,
                row_start=start,
                row_end=end,
            )
        )
    logger.info(f"[{sheet.name}] single-sheet layout with {len(sections)} inline sections")
    return sections


def _dedupe_section_codes(sections: list[ParsedSection]) -> list[ParsedSection]:
    seen: Counter = Counter()
    unique = []
    for section in sections:
        seen[section.section_code] += 1
        count = seen[section.section_code]
        if count == 1:
            unique.append(section)
            continue
        code = f"{section.section_code}-{count}"
        while code in seen:
            count += 1
            code = f"{section.section_code}-{count}"
        seen[code] += 1
        items = tuple(i.model_copy(update={"section_code": code}) for i in section.items)
        unique.append(section.model_copy(update={"section_code": code, "items": items}))
    return unique


def group_bills(sections: list[ParsedSection]) -> tuple[list[Bill], list[ParsedSection]]:
    """Group sections into bills; bills by number, sections in natural code order."""
    by_bill: dict[int, list[ParsedSection]] = {}
    bill_names: dict[int, str] = {}
    for section in sections:
        by_bill.setdefault(section.bill_number, []).append(section)
        bill_names.setdefault(section.bill_number, section.bill_name)

    bills = []
    ordered: list[ParsedSection] = []
    for number in sorted(by_bill):
        members = sorted(by_bill[number], key=lambda s: natural_sort_key(s.section_code))
        bills.append(Bill(bill_number=number, bill_name=bill_names[number], sections=tuple(members)))
        ordered.extend(members)
    return bills, ordered


def parse_workbook(
    grid: WorkbookGrid,
    tenant_bill_map: Optional[Mapping[str, int]] = None,
) -> ParseResult:
    """
    Run the standard extraction over every in-scope sheet of a workbook.

    Sheets without a detectable header still produce a section (zero items,
    confidence failed) so that the positional retry can be offered for them.
    """
    skipped: list[SkippedSheet] = []
    sections = parse_inline_sections(grid)

    if not sections:
        for sheet, verdict in zip(grid.sheets, classify_workbook_sheets(grid.sheet_names, tenant_bill_map)):
            if verdict.skip:
                logger.debug(f"Skipping sheet {sheet.name!r}: {verdict.skip_reason}")
                skipped.append(SkippedSheet(sheet_name=sheet.name, reason=verdict.skip_reason or "skipped"))
                continue
            context = ExtractionContext(
                sheet_name=sheet.name,
                section_code=verdict.section_code,
                section_name=verdict.section_name,
                bill_number=verdict.bill_number,
                bill_name=verdict.bill_name,
            )
            section = _extract_block(sheet.rows, context, scan_limit=HEADER_SCAN_LIMIT)
            logger.info(
                f"[{sheet.name}] bill {section.bill_number} section {section.section_code}: "
                f"{section.item_count} items, confidence {section.extraction_confidence.value}"
            )
            sections.append(section)

    bills, ordered = group_bills(_dedupe_section_codes(sections))
    return ParseResult(
        source_file=grid.source_file,
        ruleset_version=RULESET_VERSION,
        bills=tuple(bills),
        sections=tuple(ordered),
        skipped_sheets=tuple(skipped),
    )


def parse_excel(source: WorkbookSource, source_name: Optional[str] = None, **kwargs) -> ParseResult:
    """Convenience wrapper: decode and parse in one call."""
    return parse_workbook(load_workbook_grid(source, source_name), **kwargs)
