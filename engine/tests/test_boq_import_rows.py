import math

import pytest

from boq_tools.boq_import.boq_import_columns import detect_columns
from boq_tools.boq_import.boq_import_models import (
    ExtractionConfidence,
    ItemType,
    RowType,
)
from boq_tools.boq_import.boq_import_rows import (
    ExtractionContext,
    build_section,
    classify_row_type,
    clean_item_code,
    detect_prime_cost,
    extract_items,
    nearest_preceding_prime_cost,
    parse_number,
    profit_attendance_percent,
)
from boq_tools.boq_import.boq_import_rules import explain_row


def _context(sheet="1.2 Medium Voltage", code="1.2", name="Medium Voltage"):
    return ExtractionContext(
        sheet_name=sheet,
        section_code=code,
        section_name=name,
        bill_number=1,
        bill_name="Bill 1",
    )


def _extract(rows):
    column_map = detect_columns(rows)
    assert column_map is not None
    return extract_items(rows, column_map, _context())


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("R 1 234,56", 1234.56),
        ("24 500,00", 24500.0),
        ("", 0.0),
        ("n/a", 0.0),
        ("Rate only", 0.0),
        ("1,234.50", 1234.5),
        ("R1.234,56", 1234.56),
        ("$ 99", 99.0),
        ("£12.5", 12.5),
        (None, 0.0),
        (42, 42.0),
        (3.25, 3.25),
        (float("nan"), 0.0),
    ],
)
def test_parse_number(raw, expected):
    assert math.isclose(parse_number(raw), expected)


def test_clean_item_code_requires_leading_letter():
    assert clean_item_code(" B1.1 ") == "B1.1"
    assert clean_item_code("1.1") == ""
    assert clean_item_code("") == ""


def test_classify_row_type():
    assert classify_row_type("B1", "CABLE SCHEDULE WORKS", "", 0, 45000) == RowType.HEADER
    assert classify_row_type("B1", "Cable schedule works", "", 0, 0) == RowType.ITEM
    assert classify_row_type("", "Notes: all cables copper", "", 0, 0) == RowType.DESCRIPTION
    assert classify_row_type("B1.2", "Cable trays", "", 0, 0) == RowType.SUBHEADER
    assert classify_row_type("B1.2", "Cable trays", "m", 10, 1500) == RowType.ITEM


def test_single_item_section(header):
    rows = [header, ["B1.1", "Cable tray", "m", "10", "150", "1500"]]
    result = _extract(rows)
    section = build_section(_context(), result)

    assert section.section_code == "1.2"
    assert section.bill_number == 1
    assert section.item_count == 1
    assert section.items[0].amount == 1500
    assert section.items[0].provenance_id == "1.2 Medium Voltage!R2"
    assert section.extraction_confidence == ExtractionConfidence.HIGH


def test_all_caps_header_row_excluded_from_total(header):
    rows = [
        header,
        ["B1", "CABLE SCHEDULE WORKS", "", "0", "", "45000"],
        ["B1.1", "Cable tray", "m", "10", "150", "1500"],
    ]
    result = _extract(rows)

    assert result.items[0].row_type == RowType.HEADER
    assert result.items[0].amount == 45000
    assert result.boq_total == 1500


def test_prime_cost_gets_profit_and_attendance(header):
    rows = [
        header,
        ["PC1", "Prime Cost: Generator Supply", "sum", "1", "", "250000"],
        ["", "Allow profit and attendance 10% to PC1", "", "10", "", ""],
    ]
    result = _extract(rows)

    assert len(result.items) == 1
    pc = result.items[0]
    assert pc.is_prime_cost
    assert pc.item_type == ItemType.PC
    assert pc.profit_attendance_percent == 10
    assert result.profit_attendance_rows == 1


def test_profit_and_attendance_goes_to_nearest_preceding_prime_cost(header):
    rows = [
        header,
        ["PC1", "Prime Cost: Generator Supply", "sum", "1", "", "250000"],
        ["PC2", "Provisional Sum: Landscaping", "sum", "1", "", "40000"],
        ["C1", "Cable tray", "m", "10", "150", "1500"],
        ["", "Profit and attendance", "%", "5", "", ""],
    ]
    items = {i.item_code: i for i in _extract(rows).items}

    assert items["PC2"].item_type == ItemType.PS
    assert items["PC2"].profit_attendance_percent == 5
    assert items["PC1"].profit_attendance_percent == 0


def test_profit_and_attendance_with_unit_is_not_an_item(header):
    rows = [
        header,
        ["PC1", "Prime Cost: Generator Supply", "sum", "1", "", "250000"],
        ["", "Allow profit and attendance on PC1", "sum", "10", "", ""],
    ]
    result = _extract(rows)

    assert [i.item_code for i in result.items] == ["PC1"]
    assert result.items[0].profit_attendance_percent == 10
    assert result.profit_attendance_rows == 1


def test_explicit_code_reference_beats_nearest(header):
    rows = [
        header,
        ["PC1", "Prime Cost: Generator Supply", "sum", "1", "", "250000"],
        ["PC2", "Provisional Sum: Landscaping", "sum", "1", "", "40000"],
        ["", "Add P&A 12.5% on PC1", "", "", "", ""],
    ]
    items = {i.item_code: i for i in _extract(rows).items}

    assert items["PC1"].profit_attendance_percent == 12.5
    assert items["PC2"].profit_attendance_percent == 0


def test_unresolved_profit_and_attendance_is_dropped(header):
    rows = [
        header,
        ["", "Profit and attendance 10%", "", "", "", ""],
        ["PC1", "Prime Cost: Generator Supply", "sum", "1", "", "250000"],
    ]
    result = _extract(rows)

    assert [i.item_code for i in result.items] == ["PC1"]
    assert result.unresolved_profit_attendance == 1
    assert result.items[0].profit_attendance_percent == 0


def test_nearest_preceding_tie_break_is_most_recent():
    items = [
        {"is_prime_cost": True},
        {"is_prime_cost": False},
        {"is_prime_cost": True},
        {"is_prime_cost": False},
    ]
    assert nearest_preceding_prime_cost(items, 4) == 2
    assert nearest_preceding_prime_cost(items, 2) == 0
    assert nearest_preceding_prime_cost(items, 0) is None


def test_profit_attendance_percent_sources():
    assert profit_attendance_percent("Profit and attendance 7.5%", 0) == 7.5
    assert profit_attendance_percent("Profit and attendance", 10) == 10
    assert profit_attendance_percent("Profit and attendance", 150) == 0
    assert profit_attendance_percent("Cable tray", 10) == 0


def test_total_rows_skipped_and_remembered(header):
    rows = [
        header,
        ["B1.1", "Cable tray", "m", "10", "150", "1500"],
        ["", "Sub-total", "", "", "", "1500"],
        ["B1.2", "Cable ladder", "m", "5", "200", "1000"],
        ["", "Total carried to summary", "", "", "", "2500"],
    ]
    result = _extract(rows)

    assert [i.item_code for i in result.items] == ["B1.1", "B1.2"]
    assert result.skipped_total_rows == 2
    assert result.stated_total == 2500
    assert result.boq_total == 2500


def test_rate_only_rows_dropped(header):
    rows = [
        header,
        ["C1", "Extra over for rock excavation", "m3", "Rate only", "", ""],
        ["C2", "Excavate trenches", "m3", "20", "85", ""],
    ]
    result = _extract(rows)

    assert [i.item_code for i in result.items] == ["C2"]
    assert result.items[0].amount == 1700


def test_amount_from_supply_and_install_rates():
    rows = [
        ["Item", "Description", "Unit", "Qty", "Supply Rate", "Install Rate", "Amount"],
        ["D1", "Light fitting", "No", "4", "100", "25", ""],
    ]
    item = _extract(rows).items[0]

    assert item.supply_rate == 100
    assert item.install_rate == 25
    assert item.total_rate == 125
    assert item.amount == 500


def test_description_rows_are_kept(header):
    rows = [header, ["", "Notes: all cables copper", "", "", "", ""]]
    item = _extract(rows).items[0]
    assert item.row_type == RowType.DESCRIPTION
    assert item.amount == 0


def test_prime_cost_detection_rules():
    assert detect_prime_cost("PC1", "Prime Cost: Generator Supply") == (True, ItemType.PC)
    assert detect_prime_cost("F1", "Provisional sum for municipal connection fees") == (True, ItemType.PS)
    assert detect_prime_cost("A2", "Preliminaries: allowance for site establishment") == (False, ItemType.MEASURED)
    assert detect_prime_cost("B1", "Cable tray") == (False, ItemType.MEASURED)


def test_explain_row():
    total = explain_row("", "Total carried to summary")
    assert "total_or_subtotal" in total["total_row"]
    assert "carried_to_summary" in total["total_row"]

    pc = explain_row("PC1", "Prime Cost: Generator Supply")
    assert "prime_cost" in pc["prime_cost"]
    assert pc["prime_cost_exclusion"] == []

    header = explain_row("B1", "CABLE SCHEDULE WORKS")
    assert header["header_code"] == ["header_code"]
