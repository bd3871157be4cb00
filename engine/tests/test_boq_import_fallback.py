from boq_tools.boq_import.boq_import_fallback import find_data_start, retry_section
from boq_tools.boq_import.boq_import_models import ExtractionConfidence, ParseStrategy
from boq_tools.boq_import.boq_import_parse_excel import SheetGrid, WorkbookGrid, parse_workbook

HEADERLESS_ROWS = [
    ["Bill of Quantities", "", "", "", "", ""],
    ["", "", "", "", "", ""],
    ["E1", "Supply and lay cable", "m", "100", "45", "4500"],
    ["E2", "Terminations to cable", "No", "8", "120", "960"],
    ["", "Total", "", "", "", "5460"],
]


def _parse(rows, sheet_name="1.3 Cabling"):
    grid = WorkbookGrid(source_file="boq.xlsx", sheets=[SheetGrid(name=sheet_name, rows=rows)])
    return parse_workbook(grid).get_section("1.3")


def test_headerless_sheet_yields_failed_section():
    section = _parse(HEADERLESS_ROWS)
    assert section.item_count == 0
    assert section.extraction_confidence == ExtractionConfidence.FAILED
    assert section.parse_attempts == 1


def test_find_data_start():
    assert find_data_start(HEADERLESS_ROWS) == 2
    assert find_data_start([["E1", "Short"]]) is None


def test_retry_accepted_when_more_items():
    previous = _parse(HEADERLESS_ROWS)
    retried = retry_section(previous, HEADERLESS_ROWS)

    assert retried.item_count == 2
    assert retried.last_parse_strategy == ParseStrategy.ALTERNATIVE
    assert retried.parse_attempts == 2
    assert retried.boq_total == 5460
    assert retried.stated_total == 5460
    assert retried.items[0].provenance_id == "1.3 Cabling!R3"
    assert retried.extraction_confidence == ExtractionConfidence.HIGH


def test_amount_is_rightmost_positive_cell():
    rows = [["E1", "Supply and lay cable", "m", "100", "45", "4500", ""]]
    previous = _parse([["Nothing to see"]])
    retried = retry_section(previous, rows)
    assert retried.items[0].amount == 4500
    assert retried.items[0].quantity == 100


def test_retry_rejected_without_improvement():
    rows = [
        ["", "Description", "Unit", "Qty", "Rate", "Amount"],
        ["E1", "Supply and lay cable", "m", "100", "45", "4500"],
    ]
    previous = _parse(rows)
    retried = retry_section(previous, rows)

    assert retried.item_count == previous.item_count == 1
    assert retried.last_parse_strategy == ParseStrategy.STANDARD
    assert retried.parse_attempts == 2
    assert retried.items == previous.items


def test_retry_of_failed_section_that_stays_empty():
    rows = [["Nothing to see"]]
    retried = retry_section(_parse(rows), rows)
    assert retried.item_count == 0
    assert retried.extraction_confidence == ExtractionConfidence.FAILED
    assert retried.parse_attempts == 2
