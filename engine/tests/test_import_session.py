import pytest

from boq_utils.core.errors import ImportValidationError, InvalidTransitionError
from boq_utils.db import ledger
from boq_tools.boq_import.boq_import_models import ParseResult, ParseStrategy
from boq_tools.boq_import.boq_import_rules import RULESET_VERSION
from boq_tools.boq_reconcile.boq_reconcile_engine import ReconciliationEngine
from boq_tools.boq_reconcile.import_session import ImportSession, SessionState


@pytest.fixture
def parse_result(make_section):
    sections = (
        make_section("1.1", [("A1", "Item", 100.0)]),
        make_section("1.2", []),
        make_section("1.3", [("C1", "Item", 300.0), ("C2", "Item", 50.0)]),
    )
    return ParseResult(source_file="boq.xlsx", ruleset_version=RULESET_VERSION, sections=sections)


@pytest.fixture
def session():
    return ImportSession("ACC-1")


def test_load_selects_sections_with_items(session, parse_result):
    assert session.state == SessionState.SELECT_SOURCE
    session.load(parse_result)
    assert session.state == SessionState.REVIEW
    assert session.selected == ["1.1", "1.3"]


def test_commands_rejected_in_wrong_state(session, parse_result):
    with pytest.raises(InvalidTransitionError):
        session.confirm()
    with pytest.raises(InvalidTransitionError):
        session.start_import()
    session.load(parse_result)
    with pytest.raises(InvalidTransitionError):
        session.finish(None)
    assert session.state == SessionState.REVIEW


def test_select_and_confirm(session, parse_result):
    session.load(parse_result)
    session.select(["1.3"])
    session.confirm()
    assert session.state == SessionState.CONFIRM
    assert [s.section_code for s in session.selected_sections] == ["1.3"]


def test_empty_selections_rejected(session, parse_result):
    session.load(parse_result)
    with pytest.raises(ImportValidationError, match="No items to import"):
        session.select(["1.2"])
    with pytest.raises(ImportValidationError, match="Section not found"):
        session.select(["9.9"])
    session.select([])
    with pytest.raises(ImportValidationError, match="No items to import"):
        session.confirm()
    assert session.state == SessionState.REVIEW


def test_retry_swaps_section_and_selects_it(session, parse_result, make_section):
    session.load(parse_result)
    retried = make_section("1.2", [("B1", "Item", 20.0)]).model_copy(
        update={"parse_attempts": 2, "last_parse_strategy": ParseStrategy.ALTERNATIVE}
    )
    session.retry(retried)

    assert session.parse_result.get_section("1.2").parse_attempts == 2
    assert "1.2" in session.selected


def test_back_and_reset(session, parse_result):
    session.load(parse_result)
    session.confirm()
    session.back()
    assert session.state == SessionState.REVIEW
    session.back()
    assert session.state == SessionState.SELECT_SOURCE
    assert session.parse_result is None

    session.load(parse_result)
    session.reset()
    assert session.state == SessionState.SELECT_SOURCE


def test_cancel_while_importing_sets_flag(session, parse_result):
    session.load(parse_result)
    session.confirm()
    session.start_import()
    session.cancel()
    assert session.state == SessionState.IMPORTING
    assert session.should_cancel()
    with pytest.raises(InvalidTransitionError):
        session.reset()


async def test_run_import(session, parse_result):
    session.load(parse_result)
    session.confirm()

    summary = await session.run_import(ReconciliationEngine())

    assert session.state == SessionState.COMPLETE
    assert session.summary is summary
    assert summary.succeeded == 2
    assert session.progress["completed"] == 2
    assert ledger.get_bill("ACC-1", 1)["contract_total"] == 450.0
