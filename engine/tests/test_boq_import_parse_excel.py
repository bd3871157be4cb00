import pytest

from boq_utils.core.errors import WorkbookDecodeError
from boq_tools.boq_import.boq_import import boq_parse_main, parse_boq_workbook, retry_boq_section
from boq_tools.boq_import.boq_import_models import ExtractionConfidence, ParseStrategy
from boq_tools.boq_import.boq_import_parse_excel import load_workbook_grid, parse_excel
from boq_tools.boq_import.boq_import_rules import RULESET_VERSION


@pytest.fixture
def boq_bytes(make_workbook, header):
    return make_workbook(
        {
            "Cover": [["Mall Extension BOQ"]],
            "1.2 Medium Voltage": [
                ["Medium Voltage"],
                header,
                ["B1", "CABLE SCHEDULE WORKS", None, 0, None, 45000],
                ["B1.1", "Cable tray", "m", 10, 150, 1500],
                ["B1.2", "Cable ladder", "m", 5, 200.5, None],
                [None, "Total carried to summary", None, None, None, 2502.5],
            ],
            "1.10 Lighting": [
                header,
                ["L1", "Downlighter", "No", 20, 350, 7000],
            ],
            "1.3 Small Power": [
                ["Bill of Quantities"],
                [None],
                ["S1", "Double socket outlet", "No", 12, 95, 1140],
            ],
            "4 Clicks shopfitting": [
                header,
                ["C1", "Shopfront glazing", "m2", 40, 1200, 48000],
            ],
        }
    )


def test_parse_workbook(boq_bytes):
    result = parse_excel(boq_bytes, "mall.xlsx")

    assert result.source_file == "mall.xlsx"
    assert result.ruleset_version == RULESET_VERSION
    assert [s.sheet_name for s in result.skipped_sheets] == ["Cover"]
    assert [b.bill_number for b in result.bills] == [1, 4]
    assert [s.section_code for s in result.sections] == ["1.2", "1.3", "1.10", "4"]

    mv = result.get_section("1.2")
    assert mv.item_count == 3
    assert mv.boq_total == 2502.5
    assert mv.stated_total == 2502.5
    assert mv.header_row_index == 1
    assert mv.items[2].amount == 1002.5

    small_power = result.get_section("1.3")
    assert small_power.item_count == 0
    assert small_power.extraction_confidence == ExtractionConfidence.FAILED

    clicks = result.bills[1]
    assert clicks.bill_name == "Clicks"
    assert clicks.sections[0].boq_total == 48000


def test_to_dict_is_json_ready(boq_bytes):
    data = parse_excel(boq_bytes, "mall.xlsx").to_dict()
    section = data["sections"][0]
    assert section["extraction_confidence"] == "high"
    assert section["items"][0]["row_type"] == "header"


def test_duplicate_section_codes_get_suffix(make_workbook, header):
    data = make_workbook(
        {
            "1.1 Earthworks": [header, ["A1", "Excavate trenches", "m3", 10, 85, 850]],
            "1.1 Excavation": [header, ["A1", "Excavate bulk", "m3", 20, 60, 1200]],
        }
    )
    result = parse_excel(data)

    assert [s.section_code for s in result.sections] == ["1.1", "1.1-2"]
    assert result.sections[1].items[0].section_code == "1.1-2"


def test_inline_sections(make_workbook, header):
    data = make_workbook(
        {
            "BOQ": [
                ["BILL NO. 3 - RETAIL BLOCK"],
                [None],
                ["SECTION A - EARTHWORKS"],
                header,
                ["A1", "Excavate trenches", "m3", 10, 85, 850],
                ["SECTION B: CONCRETE"],
                header,
                ["B1", "Concrete in footings", "m3", 5, 1800, 9000],
                ["SUMMARY PAGE"],
                [None, "Earthworks", None, None, None, 850],
            ]
        }
    )
    result = parse_excel(data, "retail.xlsx")

    assert [s.section_code for s in result.sections] == ["A", "B"]
    a, b = result.sections
    assert a.section_name == "EARTHWORKS"
    assert b.section_name == "CONCRETE"
    assert a.bill_number == b.bill_number == 3
    assert a.items[0].provenance_id == "BOQ!R5"
    assert b.item_count == 1
    assert b.boq_total == 9000
    assert (b.row_start, b.row_end) == (5, 8)


def test_decode_error():
    with pytest.raises(WorkbookDecodeError):
        load_workbook_grid(b"this is not a workbook", "broken.xlsx")


def test_tenant_map_from_settings(boq_bytes, monkeypatch):
    monkeypatch.setenv("BOQ_TENANT_BILL_MAP", '{"clicks": 12}')
    result = parse_boq_workbook(boq_bytes, "mall.xlsx")
    assert [b.bill_number for b in result.bills] == [1, 12]


def test_retry_boq_section(boq_bytes):
    result = retry_boq_section(boq_bytes, "1.3", "mall.xlsx")
    section = result.get_section("1.3")

    assert section.item_count == 1
    assert section.last_parse_strategy == ParseStrategy.ALTERNATIVE
    assert section.parse_attempts == 2
    assert result.get_section("1.2").parse_attempts == 1


def test_retry_unknown_section(boq_bytes):
    with pytest.raises(KeyError):
        retry_boq_section(boq_bytes, "9.9")


async def test_boq_parse_main(boq_bytes):
    response = await boq_parse_main(
        file_bytes=boq_bytes,
        file_name="mall.xlsx",
        account_id="ACC-1",
        analysis_type="parse",
        request_method="POST",
    )
    assert response["status"] == "completed"
    assert response["result"]["analysisType"] == "parse"
    assert len(response["result"]["sections"]) == 4


async def test_boq_parse_main_retry_carries_attempts(boq_bytes):
    response = await boq_parse_main(
        file_bytes=boq_bytes,
        file_name="mall.xlsx",
        account_id="ACC-1",
        analysis_type="retry",
        section_code="1.3",
        previous_attempts=2,
        request_method="POST",
    )
    section = next(s for s in response["result"]["sections"] if s["section_code"] == "1.3")
    assert section["parse_attempts"] == 3


async def test_boq_parse_main_errors():
    broken = await boq_parse_main(
        file_bytes=b"garbage", file_name="broken.xlsx", account_id="ACC-1", request_method="POST"
    )
    assert broken["status"] == "error"
    assert broken["stage"] == "decode"
    assert broken["errorType"] == "WorkbookDecodeError"

    missing = await boq_parse_main(file_bytes=None, account_id="ACC-1", request_method="POST")
    assert missing == {"status": "error", "error": "file is required"}
