"""
Sheet Classifier: decide whether a worksheet is in scope and derive its
bill number, section code and section name from the sheet name.
"""

from __future__ import annotations

import re
from typing import Iterable, Mapping, Optional

from boq_tools.boq_import.boq_import_models import SheetClassification
from boq_tools.boq_import.boq_import_rules import (
    DEFAULT_TENANT_BILL_MAP,
    DOTTED_SHEET_NAME,
    GENERIC_BILL_THRESHOLD,
    MIN_SHEET_NAME_LENGTH,
    NUMBERED_SHEET_NAME,
    PRELIMINARIES_SECTION,
    PRELIMINARIES_SHEET_RULE,
    SHEET_SKIP_RULES,
    SYSTEM_SHEET_RULE,
    first_match,
)


def _find_tenant(text: str, tenant_bill_map: Mapping[str, int]) -> Optional[tuple[str, int]]:
    lowered = text.lower()
    # Longest names first so "superspar" wins over "spar"
    for tenant in sorted(tenant_bill_map, key=len, reverse=True):
        if re.search(rf"\b{re.escape(tenant.lower())}\b", lowered):
            return tenant, int(tenant_bill_map[tenant])
    return None


def _tenant_bill_name(tenant: str) -> str:
    return " ".join(part.capitalize() for part in tenant.split())


def classify_sheet(
    name: str,
    tenant_bill_map: Optional[Mapping[str, int]] = None,
    *,
    bill_header_numbers: Iterable[int] = (),
    bill_names: Optional[Mapping[int, str]] = None,
) -> SheetClassification:
    """
    Classify one worksheet by name. First matching rule wins.

    Args:
        name: Worksheet name
        tenant_bill_map: Retailer name -> bill number; defaults to DEFAULT_TENANT_BILL_MAP
        bill_header_numbers: Ints that also prefix dotted sheets in the same workbook;
            a "<int> <text>" sheet with one of these is a bill header, not a section
        bill_names: Bill number -> name registered from bill-header sheets
    """
    tenants = DEFAULT_TENANT_BILL_MAP if tenant_bill_map is None else tenant_bill_map
    bill_names = bill_names or {}
    header_numbers = set(bill_header_numbers)
    sheet_name = name
    stripped = (name or "").strip()

    skip_rule = first_match(SHEET_SKIP_RULES, stripped)
    if skip_rule:
        return SheetClassification(sheet_name=sheet_name, skip=True, skip_reason=skip_rule.name)
    if len(stripped) < MIN_SHEET_NAME_LENGTH:
        return SheetClassification(sheet_name=sheet_name, skip=True, skip_reason="too_short")
    if SYSTEM_SHEET_RULE.matches(stripped):
        return SheetClassification(sheet_name=sheet_name, skip=True, skip_reason=SYSTEM_SHEET_RULE.name)

    if PRELIMINARIES_SHEET_RULE.matches(stripped):
        section_code, section_name = PRELIMINARIES_SECTION
        return SheetClassification(
            sheet_name=sheet_name,
            bill_number=1,
            bill_name=bill_names.get(1, "Bill 1"),
            section_code=section_code,
            section_name=section_name,
        )

    m = DOTTED_SHEET_NAME.match(stripped)
    if m:
        bill_number = int(m.group(1))
        return SheetClassification(
            sheet_name=sheet_name,
            bill_number=bill_number,
            bill_name=bill_names.get(bill_number, f"Bill {bill_number}"),
            section_code=f"{m.group(1)}.{m.group(2)}",
            section_name=m.group(3).strip(),
        )

    m = NUMBERED_SHEET_NAME.match(stripped)
    if m:
        number = int(m.group(1))
        text = m.group(2).strip()
        if number in header_numbers:
            return SheetClassification(
                sheet_name=sheet_name,
                skip=True,
                skip_reason="bill_header",
                is_bill_header=True,
                bill_number=number,
                bill_name=text,
                section_code=str(number),
                section_name=text,
            )
        tenant = _find_tenant(text, tenants)
        if tenant:
            tenant_name, bill_number = tenant
            bill_name = _tenant_bill_name(tenant_name)
        else:
            bill_number = 2 if number >= GENERIC_BILL_THRESHOLD else 1
            bill_name = text
        return SheetClassification(
            sheet_name=sheet_name,
            bill_number=bill_number,
            bill_name=bill_names.get(bill_number, bill_name),
            section_code=str(number),
            section_name=text,
        )

    tenant = _find_tenant(stripped, tenants)
    if tenant:
        tenant_name, bill_number = tenant
        bill_name = _tenant_bill_name(tenant_name)
    else:
        bill_number = 1
        bill_name = f"Bill {bill_number}"
    return SheetClassification(
        sheet_name=sheet_name,
        bill_number=bill_number,
        bill_name=bill_names.get(bill_number, bill_name),
        section_code=stripped,
        section_name=stripped,
    )


def classify_workbook_sheets(
    sheet_names: Iterable[str],
    tenant_bill_map: Optional[Mapping[str, int]] = None,
) -> list[SheetClassification]:
    """
    Classify every sheet of a workbook.

    A "<int> <text>" sheet is a bill header when dotted "<int>.<n> ..." sheets
    exist for the same int; its text then names that bill.
    """
    names = list(sheet_names)
    dotted_numbers = {
        int(m.group(1))
        for m in (DOTTED_SHEET_NAME.match((n or "").strip()) for n in names)
        if m
    }
    bill_names: dict[int, str] = {}
    for n in names:
        m = NUMBERED_SHEET_NAME.match((n or "").strip())
        if m and int(m.group(1)) in dotted_numbers and not first_match(SHEET_SKIP_RULES, n):
            bill_names.setdefault(int(m.group(1)), m.group(2).strip())

    return [
        classify_sheet(
            n,
            tenant_bill_map,
            bill_header_numbers=dotted_numbers,
            bill_names=bill_names,
        )
        for n in names
    ]


_NUMBER_RUN = re.compile(r"(\d+)")


def natural_sort_key(code: str) -> tuple:
    """Sort key that orders "1.2" before "1.10"."""
    parts = _NUMBER_RUN.split(code or "")
    return tuple((0, int(p), "") if p.isdigit() else (1, 0, p.lower()) for p in parts if p != "")
