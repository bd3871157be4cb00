"""
Import wizard state for one upload: select_source -> review -> confirm -> importing -> complete.

The session holds the parse result, the user's section selection and the
import progress. Commands that are not allowed in the current state raise
InvalidTransitionError and leave the session unchanged.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from boq_utils.core.errors import ImportValidationError, InvalidTransitionError
from boq_utils.core.log import get_logger
from boq_tools.boq_import.boq_import_models import ParsedSection, ParseResult
from boq_tools.boq_import.boq_import_parse_excel import group_bills
from boq_tools.boq_reconcile.boq_reconcile_models import (
    BatchImportSummary,
    ImportMode,
    MergeKey,
)


class SessionState(str, Enum):
    SELECT_SOURCE = "select_source"
    REVIEW = "review"
    CONFIRM = "confirm"
    IMPORTING = "importing"
    COMPLETE = "complete"


_ALLOWED = {
    "load": {SessionState.SELECT_SOURCE, SessionState.REVIEW},
    "retry": {SessionState.REVIEW},
    "select": {SessionState.REVIEW},
    "confirm": {SessionState.REVIEW},
    "back": {SessionState.REVIEW, SessionState.CONFIRM},
    "start_import": {SessionState.CONFIRM},
    "record_progress": {SessionState.IMPORTING},
    "finish": {SessionState.IMPORTING},
    "cancel": {SessionState.REVIEW, SessionState.CONFIRM, SessionState.IMPORTING},
    "reset": {SessionState.SELECT_SOURCE, SessionState.REVIEW, SessionState.CONFIRM, SessionState.COMPLETE},
}


class ImportSession:
    def __init__(
        self,
        account_id: str,
        mode: ImportMode = ImportMode.REPLACE,
        key: MergeKey = MergeKey.ITEM_CODE,
    ):
        self.account_id = account_id
        self.mode = ImportMode(mode)
        self.key = MergeKey(key)
        self._clear()

    def _clear(self) -> None:
        self.state = SessionState.SELECT_SOURCE
        self.parse_result: Optional[ParseResult] = None
        self.selected: List[str] = []
        self.progress: Dict[str, Any] = {}
        self.summary: Optional[BatchImportSummary] = None
        self.cancel_requested = False

    def _require(self, command: str) -> None:
        if self.state not in _ALLOWED[command]:
            raise InvalidTransitionError(f"Cannot {command} while {self.state.value}")

    def _section(self, code: str) -> ParsedSection:
        section = self.parse_result.get_section(code) if self.parse_result else None
        if section is None:
            raise ImportValidationError("Section not found")
        return section

    @property
    def selected_sections(self) -> List[ParsedSection]:
        return [self._section(code) for code in self.selected]

    def load(self, parse_result: ParseResult) -> None:
        """Show a freshly parsed workbook; every section with items starts selected."""
        self._require("load")
        self._clear()
        self.parse_result = parse_result
        self.selected = [s.section_code for s in parse_result.sections if s.item_count > 0]
        self.state = SessionState.REVIEW

    def retry(self, section: ParsedSection) -> None:
        """Swap in a re-parsed section; it is selected once it has items."""
        self._require("retry")
        self._section(section.section_code)
        sections = [
            section if s.section_code == section.section_code else s
            for s in self.parse_result.sections
        ]
        bills, ordered = group_bills(sections)
        self.parse_result = self.parse_result.model_copy(
            update={"bills": tuple(bills), "sections": tuple(ordered)}
        )
        if section.item_count > 0 and section.section_code not in self.selected:
            self.selected.append(section.section_code)

    def select(self, section_codes: Iterable[str]) -> None:
        self._require("select")
        codes = list(dict.fromkeys(section_codes))
        for code in codes:
            if self._section(code).item_count == 0:
                raise ImportValidationError("No items to import")
        self.selected = codes

    def confirm(self) -> None:
        self._require("confirm")
        if not self.selected or sum(s.item_count for s in self.selected_sections) == 0:
            raise ImportValidationError("No items to import")
        self.state = SessionState.CONFIRM

    def back(self) -> None:
        self._require("back")
        if self.state == SessionState.CONFIRM:
            self.state = SessionState.REVIEW
        else:
            self._clear()

    def start_import(self) -> None:
        self._require("start_import")
        self.cancel_requested = False
        self.progress = {"completed": 0, "total": len(self.selected)}
        self.state = SessionState.IMPORTING

    def record_progress(self, progress: Dict[str, Any]) -> None:
        self._require("record_progress")
        self.progress = dict(progress)

    def finish(self, summary: BatchImportSummary) -> None:
        self._require("finish")
        self.summary = summary
        self.state = SessionState.COMPLETE

    def cancel(self) -> None:
        """While importing, stop before the next section; otherwise abandon the session."""
        self._require("cancel")
        if self.state == SessionState.IMPORTING:
            self.cancel_requested = True
        else:
            self._clear()

    def reset(self) -> None:
        self._require("reset")
        self._clear()

    def should_cancel(self) -> bool:
        return self.cancel_requested

    async def run_import(self, engine) -> BatchImportSummary:
        """Run the confirmed selection through a ReconciliationEngine."""
        self.start_import()
        get_logger().info(
            f"Session import for {self.account_id}: {len(self.selected)} sections ({self.mode.value})"
        )
        summary = await engine.import_sections(
            self.account_id,
            self.selected_sections,
            self.mode,
            key=self.key,
            progress_callback=self.record_progress,
            should_cancel=self.should_cancel,
        )
        self.finish(summary)
        return summary
