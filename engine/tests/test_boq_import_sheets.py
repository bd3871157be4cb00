import pytest

from boq_tools.boq_import.boq_import_sheets import (
    classify_sheet,
    classify_workbook_sheets,
    natural_sort_key,
)


@pytest.mark.parametrize(
    "name, reason",
    [
        ("Summary", "summary"),
        ("Cover Page", "cover"),
        ("General Notes", "notes"),
        ("Qualifications", "qualifications"),
        ("Index", "index"),
        ("Contents", "contents"),
        ("AB", "too_short"),
        ("Sheet1", "system_sheet"),
        ("data_export", "system_sheet"),
    ],
)
def test_skipped_sheets(name, reason):
    verdict = classify_sheet(name)
    assert verdict.skip
    assert verdict.skip_reason == reason
    assert verdict.section_code == ""


def test_dotted_sheet_name():
    verdict = classify_sheet("1.2 Medium Voltage")
    assert not verdict.skip
    assert verdict.bill_number == 1
    assert verdict.section_code == "1.2"
    assert verdict.section_name == "Medium Voltage"
    assert verdict.bill_name == "Bill 1"


def test_dotted_sheet_bill_from_first_number():
    verdict = classify_sheet("3.4 Plumbing")
    assert verdict.bill_number == 3
    assert verdict.section_code == "3.4"


def test_numbered_sheet_generic_threshold():
    low = classify_sheet("2 Electrical")
    high = classify_sheet("3 Mechanical")
    assert (low.section_code, low.bill_number, low.bill_name) == ("2", 1, "Electrical")
    assert (high.section_code, high.bill_number) == ("3", 2)


def test_numbered_sheet_tenant_lookup():
    verdict = classify_sheet("4 Clicks shopfitting")
    assert verdict.bill_number == 4
    assert verdict.bill_name == "Clicks"
    assert verdict.section_name == "Clicks shopfitting"


def test_longer_tenant_name_wins():
    assert classify_sheet("1 Superspar fitout").bill_number == 2
    assert classify_sheet("1 Superspar fitout").bill_name == "Superspar"


def test_configured_tenant_map_replaces_default():
    verdict = classify_sheet("1 Clicks shopfitting", {"clicks": 12})
    assert verdict.bill_number == 12
    assert classify_sheet("1 Tops liquor", {"clicks": 12}).bill_number == 1


def test_fallback_uses_full_name():
    verdict = classify_sheet("Electrical Installation")
    assert verdict.section_code == "Electrical Installation"
    assert verdict.section_name == "Electrical Installation"
    assert verdict.bill_number == 1


@pytest.mark.parametrize("name", ["P&G", "p & g", "Preliminaries"])
def test_standalone_preliminaries_sheet_is_section_1_1(name):
    verdict = classify_sheet(name)
    assert not verdict.skip
    assert verdict.bill_number == 1
    assert verdict.section_code == "1.1"
    assert verdict.section_name == "Preliminaries & General"


def test_preliminaries_inside_longer_name_is_not_remapped():
    verdict = classify_sheet("Preliminaries Mall")
    assert verdict.section_code == "Preliminaries Mall"


def test_fallback_tenant_name():
    verdict = classify_sheet("Woolworths Fitout")
    assert verdict.bill_number == 7
    assert verdict.bill_name == "Woolworths"


def test_bill_header_sheet_names_the_bill():
    verdicts = classify_workbook_sheets(
        ["2 Parking Deck", "2.1 Earthworks", "2.2 Concrete", "Summary"]
    )
    header, earthworks, concrete, summary = verdicts

    assert header.skip and header.is_bill_header
    assert header.skip_reason == "bill_header"
    assert earthworks.bill_number == 2
    assert earthworks.bill_name == "Parking Deck"
    assert concrete.bill_name == "Parking Deck"
    assert summary.skip


def test_numbered_sheet_without_dotted_siblings_is_a_section():
    verdicts = classify_workbook_sheets(["2 Parking Deck", "1.1 Earthworks"])
    assert not verdicts[0].skip
    assert verdicts[0].section_code == "2"


def test_natural_sort():
    assert sorted(["1.10", "1.2", "1.1"], key=natural_sort_key) == ["1.1", "1.2", "1.10"]
    assert sorted(["A", "2", "10"], key=natural_sort_key) == ["2", "10", "A"]
