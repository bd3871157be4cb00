"""
Reconciliation Engine: write parsed sections into the final-account ledger.

Two modes:
- replace: a section's items are deleted and the fresh set inserted
- merge: only items whose key is absent from the ledger section are appended

Ledger calls are blocking (psycopg2), so each runs via ``asyncio.to_thread``.
Sections may be imported with bounded parallelism. Every engine on the same
event loop shares one lock per (account, bill_number, section_code) and one
per bill, so imports from concurrent jobs are serialised too. Across
processes the ledger's section version claim does the same: a writer holding
a stale version fails before touching items and is retried on fresh state.
"""

from __future__ import annotations

import asyncio
import weakref
from types import ModuleType
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Sequence

import tenacity

from boq_utils.core.errors import (
    BoqImportError,
    ConcurrentUpdateError,
    ImportValidationError,
    PersistenceError,
)
from boq_utils.core.log import get_logger
from boq_utils.db import ledger as ledger_store
from boq_utils.vault import secrets
from boq_tools.boq_import.boq_import_models import ParsedItem, ParsedSection
from boq_tools.boq_import.boq_import_rows import is_header_or_subtotal
from boq_tools.boq_reconcile.boq_reconcile_models import (
    BatchImportSummary,
    ImportMode,
    MergeKey,
    SectionImportResult,
)
from boq_tools.boq_reconcile.boq_reconcile_status import find_ledger_section, parsed_codes

ProgressCallback = Optional[Callable[[Dict[str, Any]], None]]
CancelCheck = Optional[Callable[[], bool]]

CONFLICT_ATTEMPTS = 5

# event loop -> lock key -> lock
_LOCKS: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, Dict[tuple, asyncio.Lock]]" = (
    weakref.WeakKeyDictionary()
)


def _lock(*key: Any) -> asyncio.Lock:
    locks = _LOCKS.setdefault(asyncio.get_running_loop(), {})
    return locks.setdefault(key, asyncio.Lock())


def _conflict_retrying() -> tenacity.AsyncRetrying:
    return tenacity.AsyncRetrying(
        retry=tenacity.retry_if_exception_type(ConcurrentUpdateError),
        stop=tenacity.stop_after_attempt(CONFLICT_ATTEMPTS),
        wait=tenacity.wait_random(min=0, max=0.05),
        reraise=True,
    )


def item_row(item: ParsedItem, display_order: int) -> Dict[str, Any]:
    """
    Ledger row for a parsed item.

    Header/subtotal rows keep their text but get zeroed quantity, rates and
    amount so they never count towards a total.
    """
    zeroed = is_header_or_subtotal(item)
    amount = 0.0 if zeroed else item.amount
    is_prime_cost = item.is_prime_cost and not zeroed
    return {
        "item_code": item.item_code,
        "description": item.description,
        "unit": item.unit,
        "contract_quantity": 0.0 if zeroed else item.quantity,
        "supply_rate": 0.0 if zeroed else item.supply_rate,
        "install_rate": 0.0 if zeroed else item.install_rate,
        "contract_amount": amount,
        "display_order": display_order,
        "is_prime_cost": is_prime_cost,
        "item_type": item.item_type.value,
        "pc_allowance": amount if is_prime_cost else None,
        "pc_profit_attendance_percent": item.profit_attendance_percent,
        "source_provenance_id": item.provenance_id or None,
    }


def _normalize_key(value: Optional[str]) -> str:
    return " ".join((value or "").split()).upper()


def _identity(primary: Optional[str], provenance_id: Optional[str], description: Optional[str]) -> str:
    """
    Merge identity: the chosen key, else the source row, else the description.

    Description-only and blank-code rows ("Supply and install the following")
    are thus matched on re-merge instead of being appended again.
    """
    key = _normalize_key(primary)
    if key:
        return key
    provenance = _normalize_key(provenance_id)
    if provenance:
        return f"@{provenance}"
    return f"#{_normalize_key(description)}"


def parsed_item_key(item: ParsedItem, key: MergeKey) -> str:
    primary = item.provenance_id if key == MergeKey.PROVENANCE else item.item_code
    return _identity(primary, item.provenance_id, item.description)


def ledger_item_key(row: Dict[str, Any], key: MergeKey) -> str:
    provenance_id = row.get("source_provenance_id")
    primary = provenance_id if key == MergeKey.PROVENANCE else row.get("item_code")
    return _identity(primary, provenance_id, row.get("description"))


def _validate(section: Optional[ParsedSection]) -> ParsedSection:
    if section is None:
        raise ImportValidationError("Section not found")
    if section.item_count == 0:
        raise ImportValidationError("No items to import")
    return section


class ReconciliationEngine:
    """
    Drives replace and merge imports of parsed sections into the ledger.

    Args:
        ledger: Persistence backend exposing the ``boq_utils.db.ledger`` functions
        max_concurrency: Sections imported at once (default from settings, 1 = serial)
    """

    def __init__(self, ledger: ModuleType | Any = None, max_concurrency: Optional[int] = None):
        self.ledger = ledger or ledger_store
        if max_concurrency is None:
            max_concurrency = secrets.get_int("boq_import_max_concurrency", 1)
        self.max_concurrency = max(1, int(max_concurrency))

    async def _call(self, fn: Callable, *args, **kwargs):
        return await asyncio.to_thread(fn, *args, **kwargs)

    async def _get_or_create_bill(self, account_id: str, section: ParsedSection) -> Dict[str, Any]:
        async with _lock("bill", account_id, section.bill_number):
            return await self._call(
                self.ledger.get_or_create_bill, account_id, section.bill_number, section.bill_name
            )

    async def _resolve_section(
        self,
        account_id: str,
        bill: Dict[str, Any],
        section: ParsedSection,
        follow_names: bool,
        reserved_codes: Iterable[str] = (),
    ) -> Dict[str, Any]:
        """
        Ledger section to write to, created under the parsed code when none fits.

        Replace only takes the exact code; merge also follows names and aliases,
        skipping ledger sections whose code another parsed section owns.
        """
        async with _lock("bill", account_id, section.bill_number):
            existing = await self._call(self.ledger.list_sections, bill["id"])
            if follow_names:
                target = find_ledger_section(section, existing, frozenset(reserved_codes))
            else:
                target = next((s for s in existing if s["section_code"] == section.section_code), None)
            if target is not None:
                return target
            return await self._call(
                self.ledger.get_or_create_section,
                bill["id"],
                section.section_code,
                section.section_name,
                len(existing) + 1,
            )

    async def _retry_on_conflict(self, write: Callable[[], Awaitable[Any]]) -> Any:
        async for attempt in _conflict_retrying():
            with attempt:
                result = await write()
        return result

    async def _refresh_bill_total(self, account_id: str, bill_number: int) -> float:
        """Bill contract total = sum of its section totals, retried on version conflicts."""

        async def write() -> float:
            bill = await self._call(self.ledger.get_bill, account_id, bill_number)
            sections = await self._call(self.ledger.list_sections, bill["id"])
            total = round(sum(float(s.get("contract_total") or 0) for s in sections), 2)
            await self._call(self.ledger.update_bill_totals, bill["id"], bill["version"], total)
            return total

        async with _lock("bill", account_id, bill_number):
            return await self._retry_on_conflict(write)

    async def _write_section(
        self,
        account_id: str,
        section: ParsedSection,
        follow_names: bool,
        write: Callable[[Dict[str, Any]], Awaitable[Any]],
        reserved_codes: Iterable[str] = (),
    ) -> tuple[Dict[str, Any], Any]:
        """
        Resolve the target, then run ``write(target)`` under the
        target's lock, re-reading the target before every attempt.
        """
        try:
            bill = await self._get_or_create_bill(account_id, section)
            target = await self._resolve_section(
                account_id, bill, section, follow_names, reserved_codes
            )
            code = target["section_code"]

            async def attempt() -> Any:
                current = await self._call(self.ledger.get_section, bill["id"], code)
                return await write(current)

            async with _lock("section", account_id, section.bill_number, code):
                outcome = await self._retry_on_conflict(attempt)
                await self._refresh_bill_total(account_id, section.bill_number)
        except BoqImportError as e:
            if isinstance(e, PersistenceError) and e.section_code is None:
                e.section_code = section.section_code
            raise
        except Exception as e:
            raise PersistenceError(str(e), section.section_code) from e
        return target, outcome

    async def replace_section(self, account_id: str, section: ParsedSection) -> SectionImportResult:
        """
        Replace-import: delete a section's items and insert the fresh set.

        Idempotent: importing the same parsed section twice leaves the same
        items and contract total. Delete, insert and the section update run
        in one ledger transaction.

        Raises:
            ImportValidationError: Before any write, if the section has no items
            PersistenceError: If a ledger write fails
        """
        log = get_logger()
        section = _validate(section)
        rows = [item_row(item, idx) for idx, item in enumerate(section.items, start=1)]
        contract_total = round(sum(r["contract_amount"] for r in rows), 2)

        async def write(current: Dict[str, Any]) -> int:
            deleted, _ = await self._call(
                self.ledger.replace_section_items,
                current["id"],
                current["version"],
                rows,
                section_name=section.section_name,
                contract_total=contract_total,
                boq_stated_total=section.boq_total,
            )
            return deleted

        target, deleted = await self._write_section(account_id, section, False, write)
        log.info(
            f"Replaced section {section.section_code} (bill {section.bill_number}): "
            f"{deleted} removed, {len(rows)} inserted, total {contract_total:.2f}"
        )
        return SectionImportResult(
            section_code=section.section_code,
            target_section_code=target["section_code"],
            bill_number=section.bill_number,
            mode=ImportMode.REPLACE,
            success=True,
            inserted=len(rows),
            deleted=deleted,
            contract_total=contract_total,
        )

    async def merge_section(
        self,
        account_id: str,
        section: ParsedSection,
        key: MergeKey = MergeKey.ITEM_CODE,
        reserved_codes: Iterable[str] = (),
    ) -> SectionImportResult:
        """
        Merge-import: append only items whose key is not in the ledger section.

        The target is the ledger section with the same code, else one with the
        same or an aliased name whose code is not in reserved_codes (codes of
        the other parsed sections of the import). Existing items are never touched. Rows without
        the chosen key are identified by source row, else description. New items
        go after the current highest display order, and the section and bill
        totals are recomputed over all items afterwards.
        """
        log = get_logger()
        section = _validate(section)

        async def write(current: Dict[str, Any]) -> tuple[int, float]:
            existing_items = await self._call(self.ledger.list_section_items, current["id"])
            known = {ledger_item_key(row, key) for row in existing_items}
            fresh: list[ParsedItem] = []
            for item in section.items:
                item_key = parsed_item_key(item, key)
                if item_key in known:
                    continue
                known.add(item_key)
                fresh.append(item)

            rows = [item_row(item, idx) for idx, item in enumerate(fresh, start=1)]
            updated = await self._call(
                self.ledger.append_section_items,
                current["id"],
                current["version"],
                rows,
                boq_stated_total=section.boq_total,
            )
            return len(fresh), float(updated["contract_total"] or 0)

        target, (inserted, contract_total) = await self._write_section(
            account_id, section, True, write, reserved_codes
        )
        skipped = len(section.items) - inserted
        log.info(
            f"Merged section {section.section_code} into {target['section_code']} "
            f"(bill {section.bill_number}): {inserted} inserted, {skipped} already present"
        )
        return SectionImportResult(
            section_code=section.section_code,
            target_section_code=target["section_code"],
            bill_number=section.bill_number,
            mode=ImportMode.MERGE,
            success=True,
            inserted=inserted,
            skipped=skipped,
            contract_total=round(contract_total, 2),
        )

    async def import_section(
        self,
        account_id: str,
        sections: Iterable[ParsedSection],
        section_code: str,
        mode: ImportMode = ImportMode.REPLACE,
        key: MergeKey = MergeKey.ITEM_CODE,
    ) -> SectionImportResult:
        """
        Single-section action. Validation problems raise before any write.

        Raises:
            ImportValidationError: "Section not found" or "No items to import"
        """
        sections = list(sections)
        section = _validate(next((s for s in sections if s.section_code == section_code), None))
        if ImportMode(mode) == ImportMode.MERGE:
            return await self.merge_section(
                account_id, section, key, parsed_codes(sections, section.bill_number)
            )
        return await self.replace_section(account_id, section)

    async def import_sections(
        self,
        account_id: str,
        sections: Sequence[ParsedSection],
        mode: ImportMode = ImportMode.REPLACE,
        *,
        key: MergeKey = MergeKey.ITEM_CODE,
        progress_callback: ProgressCallback = None,
        should_cancel: CancelCheck = None,
    ) -> BatchImportSummary:
        """
        Batch import. A failing section is recorded and the batch carries on.

        ``should_cancel`` is checked before each section starts; once it
        returns True no further section is started. ``progress_callback``
        receives a dict after each section completes.
        """
        log = get_logger()
        mode = ImportMode(mode)
        total = len(sections)
        results: list[Optional[SectionImportResult]] = [None] * total
        semaphore = asyncio.Semaphore(self.max_concurrency)
        state = {"completed": 0, "cancelled": False}

        async def run_one(idx: int, section: ParsedSection) -> None:
            async with semaphore:
                if state["cancelled"]:
                    return
                if should_cancel is not None and await self._call(should_cancel):
                    state["cancelled"] = True
                    log.info(f"Import cancelled before section {section.section_code}")
                    return
                try:
                    if mode == ImportMode.MERGE:
                        result = await self.merge_section(
                            account_id, section, key, parsed_codes(sections, section.bill_number)
                        )
                    else:
                        result = await self.replace_section(account_id, section)
                except Exception as e:
                    log.error(f"Import of section {section.section_code} failed: {e}")
                    result = SectionImportResult(
                        section_code=section.section_code,
                        bill_number=section.bill_number,
                        mode=mode,
                        success=False,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                results[idx] = result
                state["completed"] += 1
                if progress_callback:
                    progress_callback(
                        {
                            "stage": "importing",
                            "completed": state["completed"],
                            "total": total,
                            "section_code": section.section_code,
                            "success": result.success,
                        }
                    )

        await asyncio.gather(*(run_one(i, s) for i, s in enumerate(sections)))

        done = [r for r in results if r is not None]
        summary = BatchImportSummary(
            account_id=account_id,
            mode=mode,
            total_sections=total,
            succeeded=sum(1 for r in done if r.success),
            failed=sum(1 for r in done if not r.success),
            cancelled=state["cancelled"],
            not_processed=tuple(s.section_code for s, r in zip(sections, results) if r is None),
            inserted_items=sum(r.inserted for r in done),
            skipped_items=sum(r.skipped for r in done),
            results=tuple(done),
        )
        log.info(
            f"{mode.value} import for {account_id}: {summary.succeeded} succeeded, "
            f"{summary.failed} failed, {len(summary.not_processed)} not processed"
        )
        return summary
