"""
Confidence Scorer: heuristic quality tier for an automatically parsed section.
"""

from __future__ import annotations

from typing import Sequence

from boq_tools.boq_import.boq_import_models import ExtractionConfidence, ParsedItem

HIGH_PRICED_FRACTION = 0.5
MEDIUM_PRICED_FRACTION = 0.2
MEDIUM_MIN_ITEMS = 3


def score_confidence(items: Sequence[ParsedItem], boq_total: float) -> ExtractionConfidence:
    """
    Tier a section by how many of its items carry an amount.

    failed: no items; high: more than half priced and a positive total;
    medium: more than a fifth priced, or more than three items; else low.
    """
    if not items:
        return ExtractionConfidence.FAILED

    priced = sum(1 for item in items if item.amount > 0)
    fraction = priced / len(items)

    if fraction > HIGH_PRICED_FRACTION and boq_total > 0:
        return ExtractionConfidence.HIGH
    if fraction > MEDIUM_PRICED_FRACTION or len(items) > MEDIUM_MIN_ITEMS:
        return ExtractionConfidence.MEDIUM
    return ExtractionConfidence.LOW
