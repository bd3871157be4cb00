"""
Pydantic models for reconciliation and ledger imports.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ImportMode(str, Enum):
    REPLACE = "replace"
    MERGE = "merge"


class MergeKey(str, Enum):
    """Identity used to decide whether a parsed item already exists in the ledger."""

    ITEM_CODE = "item_code"
    PROVENANCE = "provenance"


class MatchBand(str, Enum):
    FULLY_RECONCILED = "fully_reconciled"
    NEAR_MATCH = "near_match"
    MISMATCHED = "mismatched"
    NOT_IMPORTED = "not_imported"


class LedgerEntry(BaseModel):
    """One already-imported item, as read back from the ledger."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    section_code: str
    section_name: str = ""
    item_code: str = ""
    provenance_id: Optional[str] = None
    contract_amount: float = 0.0
    bill_number: Optional[int] = None


class ReconciliationStatus(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    section_code: str
    bill_number: int
    imported: bool
    rebuilt_total: float = Field(description="Sum of ledger contract amounts for the section")
    match_percentage: float = Field(ge=0, le=100)
    item_count: int = Field(description="Ledger items found for the section")
    boq_total: float
    variance: float = Field(description="rebuilt_total - boq_total")
    band: MatchBand


class ReconciliationSummary(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    sections: tuple[ReconciliationStatus, ...] = ()
    sections_total: int = 0
    sections_imported: int = 0
    fully_reconciled: int = 0
    near_match: int = 0
    mismatched: int = 0
    boq_total: float = 0.0
    rebuilt_total: float = 0.0
    variance: float = 0.0
    match_percentage: float = 0.0


class SectionImportResult(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    section_code: str
    target_section_code: Optional[str] = Field(
        default=None, description="Ledger section written to; differs on a name/alias merge"
    )
    bill_number: int
    mode: ImportMode
    success: bool
    inserted: int = 0
    skipped: int = 0
    deleted: int = 0
    contract_total: float = 0.0
    error: Optional[str] = None
    error_type: Optional[str] = None


class BatchImportSummary(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    account_id: str
    mode: ImportMode
    total_sections: int
    succeeded: int = 0
    failed: int = 0
    cancelled: bool = False
    not_processed: tuple[str, ...] = ()
    inserted_items: int = 0
    skipped_items: int = 0
    results: tuple[SectionImportResult, ...] = ()

    def to_dict(self) -> dict:
        return self.model_dump(mode="json")
