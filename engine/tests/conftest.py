import io
import os

os.environ["DB_TYPE"] = "mock"
os.environ.pop("VAULT_ADDR", None)

import openpyxl
import pytest

from boq_utils.core.log import account_tool_logger, set_logger
from boq_utils.db.connection import init_db
from boq_tools.boq_import.boq_import_models import ParsedItem, ParsedSection, RowType
from boq_tools.boq_import.boq_import_rows import is_header_or_subtotal

HEADER = ["Item", "Description", "Unit", "Qty", "Rate", "Amount"]


@pytest.fixture(autouse=True)
def ledger_env(tmp_path, monkeypatch):
    """Fresh mock database and a context logger writing under a temp home."""
    monkeypatch.setenv("HOME", str(tmp_path))
    init_db()
    set_logger(account_tool_logger("TEST", "tests"))
    yield


@pytest.fixture
def header():
    return list(HEADER)


@pytest.fixture
def make_workbook():
    """Build an .xlsx in memory: {sheet name: [rows]} -> bytes."""

    def _make(sheets):
        workbook = openpyxl.Workbook()
        workbook.remove(workbook.active)
        for name, rows in sheets.items():
            worksheet = workbook.create_sheet(title=name)
            for row in rows:
                worksheet.append(list(row))
        buffer = io.BytesIO()
        workbook.save(buffer)
        return buffer.getvalue()

    return _make


@pytest.fixture
def make_section():
    """
    Build a ParsedSection from (item_code, description, amount[, overrides]) tuples.
    """

    def _make(code="1.1", items=(), bill_number=1, name="Electrical", sheet=None):
        sheet = sheet or f"{code} {name}"
        parsed = []
        for i, entry in enumerate(items):
            item_code, description, amount = entry[:3]
            overrides = dict(entry[3]) if len(entry) > 3 else {}
            fields = {
                "row_index": i + 1,
                "item_code": item_code,
                "description": description,
                "unit": "m",
                "quantity": 1.0,
                "total_rate": amount,
                "amount": amount,
                "section_code": code,
                "section_name": name,
                "bill_number": bill_number,
                "bill_name": f"Bill {bill_number}",
                "row_type": RowType.ITEM,
                "provenance_id": f"{sheet}!R{i + 2}",
            }
            fields.update(overrides)
            parsed.append(ParsedItem(**fields))
        boq_total = round(sum(p.amount for p in parsed if not is_header_or_subtotal(p)), 2)
        return ParsedSection(
            section_code=code,
            section_name=name,
            bill_number=bill_number,
            bill_name=f"Bill {bill_number}",
            sheet_name=sheet,
            items=tuple(parsed),
            item_count=len(parsed),
            boq_total=boq_total,
            prime_cost_count=sum(1 for p in parsed if p.is_prime_cost),
        )

    return _make
