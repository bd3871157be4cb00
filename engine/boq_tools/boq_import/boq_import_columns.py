"""
Column Detector: find the header row of a BOQ worksheet and map column roles.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Sequence

from boq_tools.boq_import.boq_import_rules import (
    COLUMN_ROLE_RULES,
    HEADER_SCAN_LIMIT,
    PLACEHOLDER_HEADER_PREFIX,
    ColumnRole,
)


@dataclass
class ColumnMap:
    """
    Detected column layout of a worksheet.

    Attributes:
        header_row: 0-based index of the header row within the scanned rows
        roles: ColumnRole -> 0-based column index
        headers: Header text per mapped role, for logging and review
    """

    header_row: int
    roles: dict[ColumnRole, int] = field(default_factory=dict)
    headers: dict[ColumnRole, str] = field(default_factory=dict)

    def index(self, role: ColumnRole) -> Optional[int]:
        return self.roles.get(role)

    def to_dict(self) -> dict:
        return {
            "header_row": self.header_row,
            "roles": {role.value: idx for role, idx in self.roles.items()},
        }


def find_roles_in_row(row: Sequence[str]) -> dict[ColumnRole, int]:
    """
    Match every non-empty cell of a row against the ordered role table.

    A cell may satisfy several roles; each role keeps the first cell that
    matched it.
    """
    roles: dict[ColumnRole, int] = {}
    for idx, raw in enumerate(row):
        cell = str(raw or "").strip().lower()
        if not cell or cell.startswith(PLACEHOLDER_HEADER_PREFIX):
            continue
        for role, rule in COLUMN_ROLE_RULES:
            if role not in roles and rule.matches(cell):
                roles[role] = idx
    return roles


def detect_columns(
    rows: Sequence[Sequence[str]],
    scan_limit: int = HEADER_SCAN_LIMIT,
) -> Optional[ColumnMap]:
    """
    Scan the leading rows for a header row.

    The first row in which the description role resolves is the header.

    Returns:
        ColumnMap, or None when no header is found in the scan window
    """
    for i, row in enumerate(rows[:scan_limit]):
        roles = find_roles_in_row(row)
        if ColumnRole.DESCRIPTION in roles:
            headers = {role: str(row[idx]).strip() for role, idx in roles.items()}
            return ColumnMap(header_row=i, roles=roles, headers=headers)
    return None
