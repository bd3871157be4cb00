import re
import json
import logging
import pathlib
import datetime
import logging.config
from typing import Union
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler


_logger_var: ContextVar[Union[logging.Logger, logging.LoggerAdapter]] = ContextVar(
    "account_tool_logger", default=None
)

LOGGING_CONFIG = pathlib.Path(__file__).resolve().parent.parent / "logging_config.json"
PROCESS_LOG_DIR = "process_logs"

# Context fields copied from the active adapter onto every record, with their fallbacks
CONTEXT_DEFAULTS = {
    "tool_name": "N/A",
    "account_id": "N/A",
    "ip_address": "no_ip",
    "request_type": "N/A",
    "user_name": "Anonymous",
    "job_id": "",
}

QUIET_LIBRARIES = ("openpyxl", "urllib3", "hvac", "werkzeug", "psycopg2")

ANSI = {
    "red": "\033[31m",
    "green": "\033[32m",
    "blue": "\033[34m",
    "orange": "\033[33m",
    "grey": "\033[90m",
    "white": "\033[97m",
    "purple": "\033[35m",
    "reset": "\033[0m",
}

# Tool label shown in the console prefix, first match wins
_TOOL_LABELS = (
    (("reconcile", "merge", "replace", "import_job", "final_account"), "LEDGER"),
    (("parse", "retry", "boq_import"), "PARSE"),
    (("job_queue", "worker"), "QUEUE"),
    (("db_init",), "DB"),
)


def set_logger(logger: logging.Logger, **extra):
    _logger_var.set(logging.LoggerAdapter(logger, extra))


def get_logger() -> logging.Logger:
    logger = _logger_var.get()
    if logger is None:
        raise RuntimeError("Tool-specific logger not set in this context")
    return logger


class NoDebugFilter(logging.Filter):
    """Keeps DEBUG chatter out of the shared console/activity handlers."""

    def filter(self, record):
        return record.levelno > logging.DEBUG


class ContextFilter(logging.Filter):
    def filter(self, record):
        current = _logger_var.get()
        extra = getattr(current, "extra", None) or {}
        for key, fallback in CONTEXT_DEFAULTS.items():
            if not hasattr(record, key):
                setattr(record, key, extra.get(key, fallback))
        return True


class AccountToolHandlerFilter(logging.Filter):
    """Per-account files keep DEBUG traces and failures only."""

    def filter(self, record):
        return record.levelno == logging.DEBUG or record.levelno >= logging.ERROR


def setup_logging(config_file: pathlib.Path | None = None):
    with open(pathlib.Path(config_file or LOGGING_CONFIG)) as f_in:
        config = json.load(f_in)

    for handler in config.get("handlers", {}).values():
        if "filename" in handler:
            path = pathlib.Path(handler["filename"]).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            handler["filename"] = str(path)

    logging.config.dictConfig(config)

    for name in QUIET_LIBRARIES:
        lib_logger = logging.getLogger(name)
        lib_logger.setLevel(logging.ERROR)
        lib_logger.propagate = False

    context_filter = ContextFilter()
    root_logger = logging.getLogger()
    root_logger.addFilter(context_filter)
    for handler in root_logger.handlers:
        handler.addFilter(context_filter)
        handler.addFilter(NoDebugFilter())


def account_tool_logger(account_id: str | None, tool_name: str):
    """
    Logger writing ~/process_logs/<account>/<tool>.log for one account and tool.

    Records still propagate to the root handlers configured by setup_logging().
    """
    account_id = account_id or "SYSTEM"
    log_dir = pathlib.Path.home() / PROCESS_LOG_DIR / account_id
    log_dir.mkdir(parents=True, exist_ok=True)

    handler = RotatingFileHandler(
        filename=log_dir / f"{tool_name}.log", maxBytes=5_000_000, backupCount=1
    )
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter("%(asctime)s - %(levelname)s - %(message)s"))
    handler.addFilter(AccountToolHandlerFilter())

    logger = logging.getLogger(f"{account_id}.{tool_name}")
    logger.setLevel(logging.DEBUG)
    # Re-creating the logger for the same account/tool must not stack handlers
    for old in list(logger.handlers):
        old.close()
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.propagate = True
    return logger


class DynamicPrefixFormatter(logging.Formatter):
    """
    One-line, column aligned formatter used by both console and activity.log.

    Layout: [+] time account ip user method - LEVEL - TOOL: function [job] message
    Pass color=False for file handlers.
    """

    # (record attribute, width, colour)
    COLUMNS = (
        ("account_id", 26, "blue"),
        ("ip_address", 15, "orange"),
        ("user_name", 15, "blue"),
    )
    PROC_W = 6
    TOOL_W = 9
    FUNC_W = 20
    LEVEL_W = 7

    def __init__(self, color: bool = True):
        super().__init__()
        self.color = bool(color)

    def _paint(self, colour: str, text: str) -> str:
        return f"{ANSI[colour]}{text}" if self.color else text

    @staticmethod
    def tool_label(record: logging.LogRecord) -> str:
        name = record.name or ""
        if "." in name:
            tool = name.split(".", 1)[1].lower()
        else:
            tool = (getattr(record, "tool_name", "") or "").lower()
        tool = re.sub(r"(_main|_worker)$", "", tool)

        for keys, label in _TOOL_LABELS:
            if any(k in tool for k in keys):
                return label
        return "-"

    def _field(self, record, attr: str, width: int) -> str:
        value = getattr(record, attr, None) or CONTEXT_DEFAULTS.get(attr, "N/A")
        return f"{str(value)[:width]:<{width}}"

    def format(self, record: logging.LogRecord) -> str:
        method = (getattr(record, "request_type", "") or "N/A").upper()[: self.PROC_W]
        ts = datetime.datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S")

        if record.levelno >= logging.WARNING:
            marker = self._paint("red", "[-]")
        else:
            marker = self._paint("grey" if method == "GET" else "green", "[+]")

        parts = [marker, self._paint("white", ts)]
        parts += [self._paint(colour, self._field(record, attr, width)) for attr, width, colour in self.COLUMNS]
        parts.append(self._paint("green" if method == "POST" else "white", f"{method:<{self.PROC_W}}"))

        dash = self._paint("red", " - ")
        level = self._paint(
            "red" if record.levelno >= logging.ERROR else "purple",
            f"{record.levelname:<{self.LEVEL_W}}",
        )
        tool = self._paint("grey", f"{self.tool_label(record):<{self.TOOL_W}}")
        func = self._paint("grey", self._field(record, "tool_name", self.FUNC_W))
        job_id = getattr(record, "job_id", "")
        message = record.getMessage()
        if job_id:
            message = f"[job {str(job_id)[:8]}] {message}"

        line = " ".join(parts) + f"{dash}{level}{dash}{tool}: {func} " + self._paint("grey", message)

        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        if record.stack_info:
            line += "\n" + self.formatStack(record.stack_info)
        if self.color:
            line += ANSI["reset"]
        return line
