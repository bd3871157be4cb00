import pytest

from boq_tools.boq_import.boq_import_confidence import score_confidence
from boq_tools.boq_import.boq_import_models import ExtractionConfidence, ParsedItem

RANK = {
    ExtractionConfidence.FAILED: 0,
    ExtractionConfidence.LOW: 1,
    ExtractionConfidence.MEDIUM: 2,
    ExtractionConfidence.HIGH: 3,
}


def _items(count, priced):
    return [
        ParsedItem(
            row_index=i,
            item_code=f"A{i}",
            description="Item",
            amount=100.0 if i < priced else 0.0,
            section_code="1.1",
            section_name="Electrical",
            bill_number=1,
            bill_name="Bill 1",
        )
        for i in range(count)
    ]


def test_no_items_is_failed():
    assert score_confidence([], 0) == ExtractionConfidence.FAILED


def test_tiers():
    assert score_confidence(_items(3, 2), 200) == ExtractionConfidence.HIGH
    assert score_confidence(_items(3, 1), 100) == ExtractionConfidence.MEDIUM
    assert score_confidence(_items(3, 0), 0) == ExtractionConfidence.LOW
    assert score_confidence(_items(5, 0), 0) == ExtractionConfidence.MEDIUM


def test_priced_majority_without_total_is_not_high():
    assert score_confidence(_items(3, 2), 0) == ExtractionConfidence.MEDIUM


@pytest.mark.parametrize("count", [1, 3, 4, 10])
def test_monotonic_in_priced_items(count):
    ranks = []
    for priced in range(count + 1):
        items = _items(count, priced)
        ranks.append(RANK[score_confidence(items, sum(i.amount for i in items))])
    assert ranks == sorted(ranks)
