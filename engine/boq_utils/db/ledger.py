"""
Final-account ledger persistence.

Bills, sections and items of an imported BOQ. Works with both PostgreSQL and
the mock in-memory backend, like the job queue.

schema
- final_account_bills: (id, final_account_id, bill_number, bill_name, contract_total,
  final_total, variation_total, version)
- final_account_sections: (id, bill_id, section_code, section_name, display_order,
  contract_total, boq_stated_total, final_total, version)
- final_account_items: (id, section_id, item_code, description, unit, contract_quantity,
  supply_rate, install_rate, contract_amount, display_order, is_prime_cost, item_type,
  pc_allowance, pc_profit_attendance_percent, source_provenance_id)

Bill and section rows carry a version stamp. Every update is conditional on the
version the caller read, so two imports racing on the same row cannot silently
overwrite each other's totals. Item writes claim the section version before
touching any item, in the same transaction as the delete/insert and the
section total.
"""

import copy
import threading
import uuid
from decimal import Decimal
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from boq_utils.db.connection import pg_cursor, DB_TYPE, _mock_db
from boq_utils.core.errors import ConcurrentUpdateError
from boq_utils.core.log import get_logger

ITEM_COLUMNS = (
    "item_code",
    "description",
    "unit",
    "contract_quantity",
    "supply_rate",
    "install_rate",
    "contract_amount",
    "display_order",
    "is_prime_cost",
    "item_type",
    "pc_allowance",
    "pc_profit_attendance_percent",
    "source_provenance_id",
)

INSERT_CHUNK_SIZE = 100

# Mock writes run on asyncio.to_thread workers
_mock_lock = threading.RLock()


def _generate_id() -> str:
    return str(uuid.uuid4())


def _utcnow_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _row(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Plain dict copy with NUMERIC columns as floats and ids as strings."""
    if row is None:
        return None
    out = {}
    for key, value in dict(row).items():
        if isinstance(value, Decimal):
            value = float(value)
        elif isinstance(value, uuid.UUID):
            value = str(value)
        out[key] = value
    return out


def _fetch_one(query: str, params) -> Optional[Dict[str, Any]]:
    with pg_cursor() as cur:
        cur.execute(query, params)
        return _row(cur.fetchone())


def _fetch_all(query: str, params) -> List[Dict[str, Any]]:
    with pg_cursor() as cur:
        cur.execute(query, params)
        return [_row(r) for r in cur.fetchall()]


def _mock_rows(table: str, **match: Any) -> List[Dict[str, Any]]:
    """Deep copies of mock rows whose columns equal every keyword given."""
    return [
        copy.deepcopy(r)
        for r in list(_mock_db[table].values())
        if all(r.get(k) == v for k, v in match.items())
    ]


def _stale(kind: str, row_id: str, expected_version: int) -> ConcurrentUpdateError:
    return ConcurrentUpdateError(
        f"{kind} {row_id} was modified concurrently (expected version {expected_version})"
    )


# Bills
def get_bill(account_id: str, bill_number: int) -> Optional[Dict[str, Any]]:
    if DB_TYPE == "postgres":
        return _fetch_one(
            "SELECT * FROM final_account_bills WHERE final_account_id = %s AND bill_number = %s",
            (account_id, bill_number),
        )
    found = _mock_rows("bills", final_account_id=account_id, bill_number=bill_number)
    return found[0] if found else None


def list_bills(account_id: str) -> List[Dict[str, Any]]:
    if DB_TYPE == "postgres":
        return _fetch_all(
            """
            SELECT * FROM final_account_bills
            WHERE final_account_id = %s
            ORDER BY bill_number ASC
            """,
            (account_id,),
        )
    return sorted(_mock_rows("bills", final_account_id=account_id), key=lambda b: b["bill_number"])


def get_or_create_bill(account_id: str, bill_number: int, bill_name: str) -> Dict[str, Any]:
    """
    Look up a bill by (account_id, bill_number), creating it when absent.

    Returns:
        Bill dict with an extra "created" flag
    """
    log = get_logger()
    if DB_TYPE == "postgres":
        try:
            with pg_cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO final_account_bills (id, final_account_id, bill_number, bill_name, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (final_account_id, bill_number) DO NOTHING
                    RETURNING *
                    """,
                    (_generate_id(), account_id, bill_number, bill_name, _utcnow_naive()),
                )
                bill = cur.fetchone()
                created = bill is not None
                if not created:
                    cur.execute(
                        "SELECT * FROM final_account_bills WHERE final_account_id = %s AND bill_number = %s",
                        (account_id, bill_number),
                    )
                    bill = cur.fetchone()
        except Exception as e:
            log.error(f"Failed to get/create bill {bill_number}: {e}")
            raise
        bill = _row(bill)
    else:
        with _mock_lock:
            bill = get_bill(account_id, bill_number)
            created = bill is None
            if created:
                bill = {
                    "id": _generate_id(),
                    "final_account_id": account_id,
                    "bill_number": bill_number,
                    "bill_name": bill_name,
                    "contract_total": 0.0,
                    "final_total": 0.0,
                    "variation_total": 0.0,
                    "version": 1,
                    "created_at": _utcnow_naive().isoformat(),
                }
                _mock_db["bills"][bill["id"]] = bill
                bill = copy.deepcopy(bill)

    if created:
        log.debug(f"Created bill {bill_number}: {bill_name}")
    return {**bill, "created": created}


def update_bill_totals(
    bill_id: str,
    expected_version: int,
    contract_total: float,
) -> Dict[str, Any]:
    """
    Set a bill's contract total if its version still matches.

    Raises:
        ConcurrentUpdateError: If the bill changed since it was read
    """
    if DB_TYPE == "postgres":
        with pg_cursor() as cur:
            cur.execute(
                """
                UPDATE final_account_bills
                SET contract_total = %s, version = version + 1
                WHERE id = %s AND version = %s
                RETURNING *
                """,
                (contract_total, bill_id, expected_version),
            )
            row = cur.fetchone()
            if row is None:
                raise _stale("Bill", bill_id, expected_version)
            return _row(row)

    with _mock_lock:
        bill = _mock_db["bills"].get(bill_id)
        if bill is None or bill["version"] != expected_version:
            raise _stale("Bill", bill_id, expected_version)
        bill["contract_total"] = contract_total
        bill["version"] += 1
        return copy.deepcopy(bill)


# Sections
def get_section(bill_id: str, section_code: str) -> Optional[Dict[str, Any]]:
    if DB_TYPE == "postgres":
        return _fetch_one(
            "SELECT * FROM final_account_sections WHERE bill_id = %s AND section_code = %s",
            (bill_id, section_code),
        )
    found = _mock_rows("sections", bill_id=bill_id, section_code=section_code)
    return found[0] if found else None


def list_sections(bill_id: str) -> List[Dict[str, Any]]:
    if DB_TYPE == "postgres":
        return _fetch_all(
            """
            SELECT * FROM final_account_sections
            WHERE bill_id = %s
            ORDER BY display_order ASC, section_code ASC
            """,
            (bill_id,),
        )
    return sorted(
        _mock_rows("sections", bill_id=bill_id),
        key=lambda s: (s["display_order"], s["section_code"]),
    )


def get_or_create_section(
    bill_id: str,
    section_code: str,
    section_name: str,
    display_order: int = 0,
) -> Dict[str, Any]:
    """
    Look up a section by (bill_id, section_code), creating it when absent.

    Returns:
        Section dict with an extra "created" flag
    """
    log = get_logger()
    now = _utcnow_naive()

    if DB_TYPE == "postgres":
        try:
            with pg_cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO final_account_sections
                        (id, bill_id, section_code, section_name, display_order, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    ON CONFLICT (bill_id, section_code) DO NOTHING
                    RETURNING *
                    """,
                    (_generate_id(), bill_id, section_code, section_name, display_order, now),
                )
                section = cur.fetchone()
                created = section is not None
                if not created:
                    cur.execute(
                        "SELECT * FROM final_account_sections WHERE bill_id = %s AND section_code = %s",
                        (bill_id, section_code),
                    )
                    section = cur.fetchone()
        except Exception as e:
            log.error(f"Failed to get/create section {section_code}: {e}")
            raise
        section = _row(section)
    else:
        with _mock_lock:
            section = get_section(bill_id, section_code)
            created = section is None
            if created:
                section = {
                    "id": _generate_id(),
                    "bill_id": bill_id,
                    "section_code": section_code,
                    "section_name": section_name,
                    "display_order": display_order,
                    "contract_total": 0.0,
                    "boq_stated_total": None,
                    "final_total": 0.0,
                    "version": 1,
                    "created_at": now.isoformat(),
                }
                _mock_db["sections"][section["id"]] = section
                section = copy.deepcopy(section)

    if created:
        log.debug(f"Created section {section_code}: {section_name}")
    return {**section, "created": created}


_SECTION_UPDATABLE = {"section_name", "contract_total", "boq_stated_total", "final_total"}


def _check_section_fields(fields: Dict[str, Any]) -> None:
    unknown = set(fields) - _SECTION_UPDATABLE
    if unknown:
        raise ValueError(f"Cannot update section columns: {sorted(unknown)}")


def _pg_claim_section(cur, section_id: str, expected_version: int) -> None:
    """Bump the version if it still matches; the row stays locked until commit."""
    cur.execute(
        """
        UPDATE final_account_sections SET version = version + 1
        WHERE id = %s AND version = %s
        RETURNING id
        """,
        (section_id, expected_version),
    )
    if cur.fetchone() is None:
        raise _stale("Section", section_id, expected_version)


def _pg_insert_items(cur, section_id: str, rows: List[Dict[str, Any]], now: datetime) -> None:
    columns = ("id", "section_id") + ITEM_COLUMNS + ("created_at",)
    query = (
        f"INSERT INTO final_account_items ({', '.join(columns)}) "
        f"VALUES ({', '.join(['%s'] * len(columns))})"
    )
    for start in range(0, len(rows), INSERT_CHUNK_SIZE):
        cur.executemany(
            query,
            [
                (_generate_id(), section_id, *(r.get(c) for c in ITEM_COLUMNS), now)
                for r in rows[start : start + INSERT_CHUNK_SIZE]
            ],
        )


def _pg_set_section(cur, section_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
    if not fields:
        cur.execute("SELECT * FROM final_account_sections WHERE id = %s", (section_id,))
        return _row(cur.fetchone())
    assignments = ", ".join(f"{name} = %s" for name in fields)
    cur.execute(
        f"UPDATE final_account_sections SET {assignments} WHERE id = %s RETURNING *",
        [*fields.values(), section_id],
    )
    return _row(cur.fetchone())


def _mock_claim_section(section_id: str, expected_version: int) -> Dict[str, Any]:
    section = _mock_db["sections"].get(section_id)
    if section is None or section["version"] != expected_version:
        raise _stale("Section", section_id, expected_version)
    section["version"] += 1
    return section


def _mock_insert_items(section_id: str, rows: List[Dict[str, Any]], now: datetime) -> None:
    for r in rows:
        item_id = _generate_id()
        _mock_db["items"][item_id] = {
            **{c: r.get(c) for c in ITEM_COLUMNS},
            "id": item_id,
            "section_id": section_id,
            "final_quantity": 0.0,
            "final_amount": 0.0,
            "created_at": now.isoformat(),
        }


def replace_section_items(
    section_id: str,
    expected_version: int,
    rows: List[Dict[str, Any]],
    **fields: Any,
) -> tuple[int, Dict[str, Any]]:
    """
    Swap every item of a section for ``rows`` and set section columns, in one transaction.

    The section version is claimed first, so a writer holding a stale version
    fails before it deletes anything.

    Args:
        section_id: Target section UUID
        expected_version: Version the caller read
        rows: Dicts keyed by ITEM_COLUMNS, inserted INSERT_CHUNK_SIZE per round trip
        **fields: Section columns to set (section_name, contract_total, ...)

    Returns:
        (deleted item count, updated section)

    Raises:
        ConcurrentUpdateError: If the section changed since it was read
    """
    _check_section_fields(fields)
    now = _utcnow_naive()

    if DB_TYPE == "postgres":
        try:
            with pg_cursor() as cur:
                _pg_claim_section(cur, section_id, expected_version)
                cur.execute("DELETE FROM final_account_items WHERE section_id = %s", (section_id,))
                deleted = cur.rowcount
                _pg_insert_items(cur, section_id, rows, now)
                section = _pg_set_section(cur, section_id, fields)
        except ConcurrentUpdateError:
            raise
        except Exception as e:
            get_logger().error(f"Failed to replace items of section {section_id}: {e}")
            raise
    else:
        with _mock_lock:
            section = _mock_claim_section(section_id, expected_version)
            doomed = [k for k, i in _mock_db["items"].items() if i["section_id"] == section_id]
            for key in doomed:
                del _mock_db["items"][key]
            deleted = len(doomed)
            _mock_insert_items(section_id, rows, now)
            section.update(fields)
            section = copy.deepcopy(section)

    get_logger().debug(f"Section {section_id}: {deleted} items deleted, {len(rows)} inserted")
    return deleted, section


def append_section_items(
    section_id: str,
    expected_version: int,
    rows: List[Dict[str, Any]],
    **fields: Any,
) -> Dict[str, Any]:
    """
    Append ``rows`` after the section's highest display order and recompute
    its contract total over all items, in one transaction.

    Row display orders are relative (1, 2, ...) and get offset by the current
    maximum. contract_total is always derived and cannot be passed in fields.

    Raises:
        ConcurrentUpdateError: If the section changed since it was read
    """
    _check_section_fields(fields)
    if "contract_total" in fields:
        raise ValueError("contract_total is derived from the section items")
    now = _utcnow_naive()

    if DB_TYPE == "postgres":
        try:
            with pg_cursor() as cur:
                _pg_claim_section(cur, section_id, expected_version)
                cur.execute(
                    """
                    SELECT COALESCE(MAX(display_order), 0) AS max_order
                    FROM final_account_items WHERE section_id = %s
                    """,
                    (section_id,),
                )
                start = int(cur.fetchone()["max_order"])
                shifted = [{**r, "display_order": start + r["display_order"]} for r in rows]
                _pg_insert_items(cur, section_id, shifted, now)
                cur.execute(
                    """
                    SELECT COALESCE(SUM(contract_amount), 0) AS total
                    FROM final_account_items WHERE section_id = %s
                    """,
                    (section_id,),
                )
                total = round(float(cur.fetchone()["total"]), 2)
                section = _pg_set_section(cur, section_id, {**fields, "contract_total": total})
        except ConcurrentUpdateError:
            raise
        except Exception as e:
            get_logger().error(f"Failed to append items to section {section_id}: {e}")
            raise
    else:
        with _mock_lock:
            section = _mock_claim_section(section_id, expected_version)
            current = [i for i in _mock_db["items"].values() if i["section_id"] == section_id]
            start = max((i["display_order"] or 0 for i in current), default=0)
            shifted = [{**r, "display_order": start + r["display_order"]} for r in rows]
            _mock_insert_items(section_id, shifted, now)
            total = sum(i["contract_amount"] or 0 for i in current) + sum(
                r["contract_amount"] or 0 for r in shifted
            )
            section.update(fields, contract_total=round(float(total), 2))
            section = copy.deepcopy(section)

    get_logger().debug(f"Section {section_id}: {len(rows)} items appended")
    return section


# Items
def list_section_items(section_id: str) -> List[Dict[str, Any]]:
    if DB_TYPE == "postgres":
        return _fetch_all(
            "SELECT * FROM final_account_items WHERE section_id = %s ORDER BY display_order ASC",
            (section_id,),
        )
    return sorted(_mock_rows("items", section_id=section_id), key=lambda i: i["display_order"])


def get_ledger_snapshot(account_id: str) -> List[Dict[str, Any]]:
    """
    Flat view of every imported item of a final account.

    Returns:
        List of {bill_number, section_code, section_name, item_code, provenance_id,
        contract_amount}
    """
    if DB_TYPE == "postgres":
        return _fetch_all(
            """
            SELECT b.bill_number, s.section_code, s.section_name, i.item_code,
                   i.source_provenance_id AS provenance_id, i.contract_amount
            FROM final_account_items i
            JOIN final_account_sections s ON s.id = i.section_id
            JOIN final_account_bills b ON b.id = s.bill_id
            WHERE b.final_account_id = %s
            ORDER BY b.bill_number, s.section_code, i.display_order
            """,
            (account_id,),
        )

    bills = {b["id"]: b for b in _mock_rows("bills", final_account_id=account_id)}
    snapshot = []
    for bill in sorted(bills.values(), key=lambda b: b["bill_number"]):
        for section in sorted(_mock_rows("sections", bill_id=bill["id"]), key=lambda s: s["section_code"]):
            for item in list_section_items(section["id"]):
                snapshot.append(
                    {
                        "bill_number": bill["bill_number"],
                        "section_code": section["section_code"],
                        "section_name": section["section_name"],
                        "item_code": item["item_code"],
                        "provenance_id": item["source_provenance_id"],
                        "contract_amount": float(item["contract_amount"] or 0),
                    }
                )
    return snapshot
