"""
Versioned regex rule tables for BOQ workbook extraction.

Every heuristic the importer applies (sheet skipping, column roles, total-row
skipping, Prime-Cost detection, Profit & Attendance references) lives here as
a named ``Rule`` so that a change in behaviour is a change in this file and
bumps ``RULESET_VERSION``. ``explain_row`` reports which rules fire for a row,
which makes classification decisions auditable one row at a time.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

RULESET_VERSION = "2026.10.1"


@dataclass(frozen=True)
class Rule:
    """A named, compiled classification pattern."""

    name: str
    pattern: re.Pattern

    def search(self, text: str) -> re.Match | None:
        return self.pattern.search(text or "")

    def matches(self, text: str) -> bool:
        return self.search(text) is not None


def _rule(name: str, pattern: str, flags: int = re.IGNORECASE) -> Rule:
    return Rule(name=name, pattern=re.compile(pattern, flags))


def first_match(rules: Iterable[Rule], text: str) -> Rule | None:
    for rule in rules:
        if rule.matches(text):
            return rule
    return None


def matching_names(rules: Iterable[Rule], text: str) -> list[str]:
    return [rule.name for rule in rules if rule.matches(text)]


# Sheets
SHEET_SKIP_RULES: tuple[Rule, ...] = (
    _rule("summary", r"summary"),
    _rule("cover", r"cover"),
    _rule("notes", r"note"),
    _rule("qualifications", r"qualification"),
    _rule("index", r"index"),
    _rule("contents", r"contents"),
)
SYSTEM_SHEET_RULE = _rule("system_sheet", r"^(sheet|data|config|temp)")
MIN_SHEET_NAME_LENGTH = 3

# A lone "P&G" or "Preliminaries" sheet is the preliminaries section of bill 1
PRELIMINARIES_SHEET_RULE = _rule("preliminaries_sheet", r"^(?:p\s*&\s*g|preliminaries)$")
PRELIMINARIES_SECTION = ("1.1", "Preliminaries & General")

DOTTED_SHEET_NAME = re.compile(r"^(\d+)\.(\d+)\s+(.+)$")
NUMBERED_SHEET_NAME = re.compile(r"^(\d+)\s+(.+)$")

# "<int> <text>" sheets numbered at or above this go to bill 2, else bill 1
GENERIC_BILL_THRESHOLD = 3

# Retailer names keep their bill number stable across re-imports.
DEFAULT_TENANT_BILL_MAP: dict[str, int] = {
    "superspar": 2,
    "spar": 2,
    "tops": 3,
    "clicks": 4,
    "shoprite": 5,
    "boxer": 6,
    "woolworths": 7,
    "checkers": 8,
    "pick n pay": 9,
    "game": 10,
}


# Columns
class ColumnRole(str, Enum):
    DESCRIPTION = "description"
    QUANTITY = "quantity"
    UNIT = "unit"
    SUPPLY_RATE = "supply_rate"
    INSTALL_RATE = "install_rate"
    RATE = "rate"
    AMOUNT = "amount"
    ITEM_CODE = "item_code"


# Order matters: roles are tried in this order for every header cell.
COLUMN_ROLE_RULES: tuple[tuple[ColumnRole, Rule], ...] = (
    (ColumnRole.DESCRIPTION, _rule("description", r"desc|particular|item\s*description|work\s*description")),
    (ColumnRole.QUANTITY, _rule("quantity", r"qty|quantity|qnty")),
    (ColumnRole.UNIT, _rule("unit", r"^unit$|^uom$")),
    (ColumnRole.SUPPLY_RATE, _rule("supply_rate", r"supply|material")),
    (ColumnRole.INSTALL_RATE, _rule("install_rate", r"install|labour|labor")),
    (ColumnRole.RATE, _rule("rate", r"^rate$|unit\s*rate|total\s*rate")),
    (ColumnRole.AMOUNT, _rule("amount", r"tender\s*price|amount|^total$|value|sum")),
    (ColumnRole.ITEM_CODE, _rule("item_code", r"^no$|^item$|^code$|^ref$|item\s*no|item\s*code")),
)
PLACEHOLDER_HEADER_PREFIX = "column_"
HEADER_SCAN_LIMIT = 30


# Rows
TOTAL_ROW_RULES: tuple[Rule, ...] = (
    _rule("total_or_subtotal", r"^(sub)?[\s-]?total"),
    _rule("carried", r"^carried"),
    _rule("brought", r"^brought"),
    _rule("summary", r"^summary"),
    _rule("to_collection", r"^to\s+(collection|summary)"),
    _rule("page_total", r"^page\s+(total|sub)"),
    _rule("total_to", r"^total\s+to"),
    _rule("total_carried", r"^total\s+carried"),
    _rule("section_total", r"^section\s+total"),
    _rule("bill_total", r"^bill\s+total"),
    _rule("grand_total", r"^grand\s+total"),
    _rule("total_for_section", r"total\s+for\s+section"),
    _rule("carried_to_summary", r"carried\s+to\s+summary"),
)

RATE_ONLY_RULE = _rule("rate_only", r"rate\s*only")

HEADER_CODE = re.compile(r"^[A-Z]\d?$")
SUBHEADER_CODE = re.compile(r"^[A-Z]+\d+(?:\.\d+)+$")
SUBTOTAL_DESCRIPTION_RULES: tuple[Rule, ...] = (
    _rule("subtotal_word", r"\b(sub)?total\b"),
    _rule("carried_brought_forward", r"(carried|brought)\s*(forward|f/w|fwd)"),
)

PRIME_COST_RULES: tuple[Rule, ...] = (
    _rule("prime_cost", r"prime\s*cost"),
    _rule("pc_abbrev", r"\bP\.?C\.?\b", 0),
    _rule("provisional_sum", r"provisional\s*sum"),
    _rule("ps_abbrev", r"\bP\.?S\.?\b", 0),
    _rule("pc_prefix", r"^PC\s+"),
    _rule("ps_prefix", r"^PS\s+"),
    _rule("allowance_for", r"allowance\s+for"),
    _rule("contingency", r"contingency"),
    _rule("provisional_amount", r"provisional\s+amount"),
)

# Preliminaries and general-conditions wording that suppresses Prime-Cost detection
PRIME_COST_EXCLUSION_RULE = _rule(
    "preliminaries",
    r"preliminar|p\s*&\s*g|p\.?&\.?g|firm\s*and\s*fixed|attendance|general\s*requirement"
    r"|general\s*conditions|setting\s*out|site\s*establishment|water\s*for\s*works"
    r"|temporary|removal\s*of\s*rubbish|protection|cleaning",
)

PROVISIONAL_SUM_RULE = _rule("provisional_sum_type", r"provisional\s*sum|^ps\s|prov\.?\s*sum")

PROFIT_ATTENDANCE_RULES: tuple[Rule, ...] = (
    _rule("allow_profit", r"allow\s*(?:for\s*)?profit"),
    _rule("add_pa", r"(?:add|allow)\s*(?:for\s*)?(?:P\.?&\.?A\.?|profit)"),
    _rule("profit_and_attendance", r"profit\s*(?:and\s*attendance)?"),
    _rule("pa_abbrev", r"P\.?&\.?A\.?", 0),
)
PERCENT_TOKEN = re.compile(r"(\d+(?:[.,]\d+)?)\s*%")

CURRENCY_CHARS = re.compile(r"[R$€£\s ]")
DECIMAL_COMMA = re.compile(r",\d{2}$")


# Single-sheet workbooks with inline sections
INLINE_SECTION = re.compile(r"^SECTION\s+([A-Z])\s*[-–:]?\s*(.*)$", re.IGNORECASE)
INLINE_BILL_NUMBER = re.compile(r"BILL\s*(?:NO\.?|NUMBER)\s*(\d+)", re.IGNORECASE)
INLINE_SUMMARY_PAGE = re.compile(r"^SUMMARY\s*PAGE", re.IGNORECASE)
INLINE_MAX_SHEETS = 3
INLINE_MIN_SECTIONS = 2
INLINE_BILL_SCAN_ROWS = 10
INLINE_HEADER_SCAN_ROWS = 10


# Section name aliases used when matching existing ledger sections
SECTION_NAME_ALIASES: tuple[frozenset[str], ...] = (
    frozenset({"preliminariesgeneral", "preliminariesandgeneral", "pg", "pandg", "preliminaries"}),
)


def normalize_section_name(name: str) -> str:
    """Lowercase alphanumerics only, with '&' spelled out."""
    text = (name or "").lower().replace("&", "and")
    return re.sub(r"[^a-z0-9]", "", text)


def section_names_alias(a: str, b: str) -> bool:
    na, nb = normalize_section_name(a), normalize_section_name(b)
    if not na or not nb:
        return False
    if na == nb:
        return True
    return any(na in group and nb in group for group in SECTION_NAME_ALIASES)


def explain_row(item_code: str, description: str) -> dict[str, list[str]]:
    """
    Report which rules fire for a row's code and description.

    Returns:
        Mapping of rule table name to the names of matching rules
    """
    code = (item_code or "").strip()
    desc = (description or "").strip()
    combined = f"{code} {desc}".strip()
    explanation = {
        "total_row": sorted(
            set(matching_names(TOTAL_ROW_RULES, code.lower()))
            | set(matching_names(TOTAL_ROW_RULES, desc.lower()))
        ),
        "subtotal_description": matching_names(SUBTOTAL_DESCRIPTION_RULES, desc),
        "prime_cost": matching_names(PRIME_COST_RULES, combined),
        "prime_cost_exclusion": matching_names((PRIME_COST_EXCLUSION_RULE,), desc),
        "provisional_sum": matching_names((PROVISIONAL_SUM_RULE,), desc),
        "profit_attendance": matching_names(PROFIT_ATTENDANCE_RULES, desc),
        "header_code": ["header_code"] if HEADER_CODE.match(code) else [],
        "subheader_code": ["subheader_code"] if SUBHEADER_CODE.match(code) else [],
    }
    return explanation
