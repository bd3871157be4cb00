import pytest

from boq_tools.boq_reconcile.boq_reconcile import _do_reconcile_workflow
from boq_tools.boq_reconcile.boq_reconcile_engine import ReconciliationEngine
from boq_tools.boq_reconcile.boq_reconcile_models import LedgerEntry, MatchBand
from boq_tools.boq_reconcile.boq_reconcile_status import (
    compute_status,
    match_band,
    match_percentage,
    summarize,
)


def _entries(code, *amounts, bill_number=1):
    return [
        LedgerEntry(section_code=code, item_code=f"A{i}", contract_amount=a, bill_number=bill_number)
        for i, a in enumerate(amounts)
    ]


def _section(make_section, boq_total, code="1.1", bill_number=1):
    return make_section(code, [("A1", "Lump sum", boq_total)], bill_number=bill_number)


def test_fully_reconciled(make_section):
    status = compute_status(_section(make_section, 100000.0), _entries("1.1", 60000.0, 40000.0))
    assert status.imported
    assert status.match_percentage == 100
    assert status.band == MatchBand.FULLY_RECONCILED
    assert status.item_count == 2
    assert status.variance == 0


def test_six_percent_short_is_mismatched(make_section):
    status = compute_status(_section(make_section, 100000.0), _entries("1.1", 94000.0))
    assert status.match_percentage == 94
    assert status.band == MatchBand.MISMATCHED
    assert status.variance == -6000


def test_near_match(make_section):
    status = compute_status(_section(make_section, 100000.0), _entries("1.1", 97500.0))
    assert status.band == MatchBand.NEAR_MATCH


def test_percentage_is_capped(make_section):
    status = compute_status(_section(make_section, 100.0), _entries("1.1", 150.0))
    assert status.match_percentage == 100
    assert status.variance == 50


def test_not_imported(make_section):
    status = compute_status(_section(make_section, 100.0), _entries("1.2", 100.0))
    assert not status.imported
    assert status.match_percentage == 0
    assert status.band == MatchBand.NOT_IMPORTED


def test_entries_from_other_bill_ignored(make_section):
    status = compute_status(_section(make_section, 100.0), _entries("1.1", 100.0, bill_number=2))
    assert not status.imported


@pytest.mark.parametrize(
    "rebuilt, band",
    [
        (99991.0, MatchBand.FULLY_RECONCILED),
        (99980.0, MatchBand.NEAR_MATCH),
        (100009.0, MatchBand.FULLY_RECONCILED),
    ],
)
def test_band_uses_unrounded_percentage(make_section, rebuilt, band):
    status = compute_status(_section(make_section, 100000.0), _entries("1.1", rebuilt))
    assert status.band == band


def test_reported_percentage_is_rounded(make_section):
    status = compute_status(_section(make_section, 100000.0), _entries("1.1", 99991.0))
    assert status.match_percentage == 99.99
    assert status.band == MatchBand.FULLY_RECONCILED


def test_zero_boq_total():
    assert match_percentage(0, 0, matched_any=True) == 100
    assert match_percentage(0, 0, matched_any=False) == 0


@pytest.mark.parametrize(
    "pct, band",
    [
        (100.0, MatchBand.FULLY_RECONCILED),
        (99.995, MatchBand.FULLY_RECONCILED),
        (99.98, MatchBand.NEAR_MATCH),
        (95.01, MatchBand.NEAR_MATCH),
        (95.0, MatchBand.MISMATCHED),
    ],
)
def test_match_band_thresholds(pct, band):
    assert match_band(pct) == band


def test_summarize(make_section):
    sections = [
        _section(make_section, 1000.0, "1.1"),
        _section(make_section, 2000.0, "1.2"),
        _section(make_section, 500.0, "1.3"),
    ]
    entries = _entries("1.1", 1000.0) + _entries("1.2", 1950.0)

    summary = summarize(sections, entries)

    assert summary.sections_total == 3
    assert summary.sections_imported == 2
    assert summary.fully_reconciled == 1
    assert summary.near_match == 1
    assert summary.mismatched == 0
    assert summary.boq_total == 3500.0
    assert summary.rebuilt_total == 2950.0
    assert summary.variance == -550.0
    assert summary.match_percentage == round(2950 / 3500 * 100, 2)


async def test_reconcile_against_imported_ledger(make_section):
    sections = [
        make_section("1.1", [("A1", "Item", 1000.0), ("A2", "Item", 500.0)]),
        make_section("1.2", [("B1", "Item", 200.0)]),
    ]
    await ReconciliationEngine().replace_section("ACC-1", sections[0])

    response = await _do_reconcile_workflow(
        account_id="ACC-1",
        sections=[s.model_dump(mode="json") for s in sections],
    )
    result = response["result"]

    assert result["analysisType"] == "reconcile"
    assert [s["band"] for s in result["sections"]] == ["fully_reconciled", "not_imported"]
    assert result["sections_imported"] == 1
    assert result["rebuilt_total"] == 1500.0


async def test_reconcile_follows_alias_merge(make_section):
    await ReconciliationEngine().replace_section(
        "ACC-1",
        make_section("1.1", [("A1", "Site establishment", 600.0)], name="Preliminaries & General"),
    )
    parsed = make_section(
        "PG", [("A1", "Site establishment", 600.0), ("A2", "Site clearance", 400.0)], name="P&G"
    )
    merged = await ReconciliationEngine().merge_section("ACC-1", parsed)

    response = await _do_reconcile_workflow(
        account_id="ACC-1",
        sections=[parsed.model_dump(mode="json")],
    )
    status = response["result"]["sections"][0]

    assert merged.target_section_code == "1.1"
    assert status["imported"]
    assert status["rebuilt_total"] == 1000.0
    assert status["band"] == "fully_reconciled"


def test_name_match_ignores_sections_owned_by_other_codes(make_section):
    sections = [
        make_section("1.1", [("A1", "Item", 100.0)]),
        make_section("1.2", [("B1", "Item", 100.0)]),
    ]
    entries = [
        LedgerEntry(section_code="1.1", section_name="Electrical", contract_amount=100.0, bill_number=1)
    ]

    summary = summarize(sections, entries)

    assert [s.band for s in summary.sections] == [MatchBand.FULLY_RECONCILED, MatchBand.NOT_IMPORTED]


def test_compute_status_matches_by_name_alone(make_section):
    section = make_section("7", [("A1", "Item", 100.0)], name="Preliminaries")
    entries = [LedgerEntry(section_code="1.1", section_name="P&G", contract_amount=100.0, bill_number=1)]

    status = compute_status(section, entries)

    assert status.imported
    assert status.band == MatchBand.FULLY_RECONCILED
