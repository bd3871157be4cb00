"""
Pydantic models for parsed BOQ (Bill of Quantities) workbooks.

Parse results are immutable value objects: every model is frozen and uses
extra="forbid" to prevent schema drift. A parse or retry always produces new
instances rather than mutating old ones.

The hierarchy is:
    ParseResult (workbook-level)
    └── Bill (grouping key: bill_number)
        └── ParsedSection (one worksheet, or one inline SECTION block)
            └── ParsedItem (one spreadsheet row)
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class RowType(str, Enum):
    HEADER = "header"
    SUBHEADER = "subheader"
    DESCRIPTION = "description"
    ITEM = "item"


class ItemType(str, Enum):
    MEASURED = "MEASURED"
    PC = "PC"
    PS = "PS"


class ExtractionConfidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    FAILED = "failed"


class ParseStrategy(str, Enum):
    """Which extractor produced a section: role-detected columns or positional fallback."""

    STANDARD = "standard"
    ALTERNATIVE = "alternative"


class _Frozen(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class ParsedItem(_Frozen):
    """
    A single row kept from a BOQ worksheet.

    Header, subheader and description rows are kept for display fidelity; only
    rows of type "item" carry measurable quantities.
    """

    row_index: int = Field(description="0-based row index in the source worksheet")
    item_code: str = Field(default="", description="Letter-leading item code, empty if absent")
    description: str = ""
    unit: str = ""
    quantity: float = 0.0
    supply_rate: float = 0.0
    install_rate: float = 0.0
    total_rate: float = 0.0
    amount: float = 0.0
    section_code: str
    section_name: str
    bill_number: int
    bill_name: str
    row_type: RowType = RowType.ITEM
    is_prime_cost: bool = False
    item_type: ItemType = ItemType.MEASURED
    profit_attendance_percent: float = Field(default=0.0, ge=0, le=100)
    provenance_id: str = Field(
        default="",
        description='Stable source reference, "<sheet name>!R<1-based row>"',
    )


class ParsedSection(_Frozen):
    """One section of a bill, with its items and extraction quality."""

    section_code: str
    section_name: str
    bill_number: int
    bill_name: str
    sheet_name: str
    items: tuple[ParsedItem, ...] = ()
    item_count: int = 0
    boq_total: float = Field(
        default=0.0,
        description="Sum of item amounts excluding header/subtotal rows",
    )
    stated_total: Optional[float] = Field(
        default=None,
        description="Largest amount seen on a skipped total row",
    )
    prime_cost_count: int = 0
    extraction_confidence: ExtractionConfidence = ExtractionConfidence.FAILED
    parse_attempts: int = Field(default=1, ge=1)
    last_parse_strategy: ParseStrategy = ParseStrategy.STANDARD
    row_start: int = Field(default=0, description="First worksheet row of this section")
    row_end: Optional[int] = Field(default=None, description="End row (exclusive), None for sheet end")
    header_row_index: Optional[int] = None

    @model_validator(mode="after")
    def _check_item_count(self) -> "ParsedSection":
        if self.item_count != len(self.items):
            raise ValueError(
                f"item_count={self.item_count} does not match {len(self.items)} items"
            )
        return self


class Bill(_Frozen):
    bill_number: int
    bill_name: str
    sections: tuple[ParsedSection, ...] = ()


class SkippedSheet(_Frozen):
    sheet_name: str
    reason: str


class ParseResult(_Frozen):
    """Everything extracted from one workbook."""

    source_file: str
    ruleset_version: str
    bills: tuple[Bill, ...] = ()
    sections: tuple[ParsedSection, ...] = ()
    skipped_sheets: tuple[SkippedSheet, ...] = ()

    def get_section(self, section_code: str) -> ParsedSection | None:
        return next((s for s in self.sections if s.section_code == section_code), None)

    def to_dict(self) -> dict:
        return self.model_dump(mode="json")


class SheetClassification(_Frozen):
    """Sheet Classifier verdict for one worksheet name."""

    sheet_name: str
    skip: bool = False
    skip_reason: Optional[str] = None
    is_bill_header: bool = False
    bill_number: int = 1
    bill_name: str = "Bill 1"
    section_code: str = ""
    section_name: str = ""
