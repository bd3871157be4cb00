"""
Match / variance between parsed sections and the imported ledger.
"""

from __future__ import annotations

from typing import Any, Collection, Iterable, Mapping, Optional, Sequence

from boq_tools.boq_import.boq_import_models import ParsedSection
from boq_tools.boq_import.boq_import_rules import normalize_section_name, section_names_alias
from boq_tools.boq_reconcile.boq_reconcile_models import (
    LedgerEntry,
    MatchBand,
    ReconciliationStatus,
    ReconciliationSummary,
)

FULLY_RECONCILED_GAP = 0.01
NEAR_MATCH_GAP = 5.0


def match_percentage(rebuilt_total: float, boq_total: float, matched_any: bool) -> float:
    """min(100, rebuilt / boq * 100); without a BOQ total, 100 if anything matched else 0."""
    if boq_total > 0:
        return max(0.0, min(100.0, rebuilt_total / boq_total * 100))
    return 100.0 if matched_any else 0.0


def match_band(percentage: float, imported: bool = True) -> MatchBand:
    if not imported:
        return MatchBand.NOT_IMPORTED
    gap = abs(percentage - 100)
    if gap < FULLY_RECONCILED_GAP:
        return MatchBand.FULLY_RECONCILED
    if gap < NEAR_MATCH_GAP:
        return MatchBand.NEAR_MATCH
    return MatchBand.MISMATCHED


def find_ledger_section(
    section: ParsedSection,
    candidates: Iterable[Mapping[str, Any]],
    reserved_codes: Collection[str] = (),
) -> Optional[Mapping[str, Any]]:
    """
    Ledger section a parsed section lands in: same code, else same
    normalized name, else an aliased name ("P&G" and "Preliminaries & General").

    Candidates are dicts with "section_code" and "section_name". Codes in
    reserved_codes belong to other parsed sections and are only matched exactly.
    """
    candidates = list(candidates)
    for candidate in candidates:
        if candidate["section_code"] == section.section_code:
            return candidate
    candidates = [c for c in candidates if c["section_code"] not in reserved_codes]
    wanted = normalize_section_name(section.section_name)
    for candidate in candidates:
        if wanted and normalize_section_name(candidate["section_name"]) == wanted:
            return candidate
    for candidate in candidates:
        if section_names_alias(candidate["section_name"], section.section_name):
            return candidate
    return None


def parsed_codes(sections: Iterable[ParsedSection], bill_number: int) -> frozenset[str]:
    return frozenset(s.section_code for s in sections if s.bill_number == bill_number)


def _section_entries(
    entries: Sequence[LedgerEntry],
    section: ParsedSection,
    reserved_codes: Collection[str],
) -> list[LedgerEntry]:
    in_bill = [e for e in entries if e.bill_number is None or e.bill_number == section.bill_number]
    candidates = {
        e.section_code: {"section_code": e.section_code, "section_name": e.section_name}
        for e in in_bill
    }
    target = find_ledger_section(section, candidates.values(), reserved_codes)
    if target is None:
        return []
    return [e for e in in_bill if e.section_code == target["section_code"]]


def compute_status(
    section: ParsedSection,
    ledger_entries: Iterable[LedgerEntry],
    reserved_codes: Collection[str] = (),
) -> ReconciliationStatus:
    """
    Compare a parsed section with the ledger items imported for it.

    The ledger section is found the way a merge finds its target, so a
    section merged into an aliased ledger section reports against it.

    The rebuilt total is the sum of contract amounts of every ledger item in
    the section; header rows were stored with zero amounts, so they do not count.
    """
    entries = _section_entries(list(ledger_entries), section, reserved_codes)
    rebuilt = round(sum(e.contract_amount for e in entries), 2)
    imported = bool(entries)
    percentage = match_percentage(rebuilt, section.boq_total, imported)
    return ReconciliationStatus(
        section_code=section.section_code,
        bill_number=section.bill_number,
        imported=imported,
        rebuilt_total=rebuilt,
        match_percentage=round(percentage, 2),
        item_count=len(entries),
        boq_total=section.boq_total,
        variance=round(rebuilt - section.boq_total, 2),
        band=match_band(percentage, imported),
    )


def summarize(
    sections: Sequence[ParsedSection],
    ledger_entries: Iterable[LedgerEntry],
) -> ReconciliationSummary:
    """Per-section statuses plus overall totals and variance."""
    entries = list(ledger_entries)
    statuses = tuple(
        compute_status(s, entries, parsed_codes(sections, s.bill_number)) for s in sections
    )
    boq_total = round(sum(s.boq_total for s in statuses), 2)
    rebuilt_total = round(sum(s.rebuilt_total for s in statuses), 2)
    imported = sum(1 for s in statuses if s.imported)
    return ReconciliationSummary(
        sections=statuses,
        sections_total=len(statuses),
        sections_imported=imported,
        fully_reconciled=sum(1 for s in statuses if s.band == MatchBand.FULLY_RECONCILED),
        near_match=sum(1 for s in statuses if s.band == MatchBand.NEAR_MATCH),
        mismatched=sum(1 for s in statuses if s.band == MatchBand.MISMATCHED),
        boq_total=boq_total,
        rebuilt_total=rebuilt_total,
        variance=round(rebuilt_total - boq_total, 2),
        match_percentage=round(match_percentage(rebuilt_total, boq_total, imported > 0), 2),
    )
