from datetime import datetime, UTC


class BoqImportError(Exception):
    """Base class for errors raised by the BOQ import and reconciliation tools."""


class WorkbookDecodeError(BoqImportError):
    """The uploaded workbook could not be read at all."""


class ImportValidationError(BoqImportError):
    """A single-section action was rejected before touching the ledger."""


class PersistenceError(BoqImportError):
    """A ledger write failed for one section."""

    def __init__(self, message: str, section_code: str | None = None):
        super().__init__(message)
        self.section_code = section_code


class ConcurrentUpdateError(PersistenceError):
    """A Bill or Section row changed since it was read (version stamp mismatch)."""


class InvalidTransitionError(BoqImportError):
    """An import session command is not allowed in the current state."""


def _make_error_payload(
    stage: str, err: Exception | str, extra: dict | None = None
) -> dict:
    msg = str(err)
    base = {
        "status": "error",
        "error": msg,
        "stage": stage,
        "timestamp": datetime.now(UTC)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z"),
    }
    if isinstance(err, BoqImportError):
        base["errorType"] = type(err).__name__
    if extra:
        base.update(extra)
    return base
