import inspect
import asyncio
import logging
import os
import time
from boq_utils.core.log import setup_logging
from boq_utils.core.warnings_config import configure_warning_filters
from flask import Flask, request, jsonify

configure_warning_filters()

from boq_tools.boq_import.boq_import import boq_parse_main
from boq_tools.boq_reconcile.boq_reconcile import final_account_main

app = Flask(__name__)
setup_logging()
logger = logging.getLogger("BoqLedgerBE")

"""
API for the BOQ Ledger Backend

pip install flask
"""


_LAST = {"status": None, "t": 0.0}
GET_INFO_EVERY_SEC = 300


def _should_log_get(current_status: str) -> bool:
    now = time.monotonic()
    if _LAST["status"] != current_status or now - _LAST["t"] >= GET_INFO_EVERY_SEC:
        _LAST["status"] = current_status
        _LAST["t"] = now
        return True
    return False


def _envelope(user_id: str = "", status: str = "", error: str = "", tokens: int = 0, tool_data=None) -> dict:
    """Standard response body shared by every route."""
    return {
        "userId": user_id,
        "status": status,
        "error": error,
        "tokens": tokens,
        "toolData": {} if tool_data is None else tool_data,
    }


def _with_request_context(tool_func, kwargs: dict) -> dict:
    """Add remote_ip / request_method to kwargs when the tool accepts them."""
    call_kwargs = dict(kwargs)
    params = inspect.signature(tool_func).parameters
    if "remote_ip" in params:
        call_kwargs["remote_ip"] = request.remote_addr
    if "request_method" in params:
        call_kwargs["request_method"] = request.method
    return call_kwargs


def handle(tool_func, *args, **kwargs):
    """
    Run a tool for the current request and wrap its result in the envelope.

    Routes pass every tool argument through *args / **kwargs, plus the raw
    payload as request_body. Tool results are dicts of
    {"status", "tokens"?, "error"?, **payload}; payload becomes toolData.
    A tool that raises yields HTTP 500 with status "error".
    """
    req_json = kwargs.pop("request_body", {})
    user_id = req_json.get("userId", "")
    tool_name = tool_func.__name__
    method = request.method
    log = logging.LoggerAdapter(
        logging.getLogger("BoqLedgerBE"),
        {
            "tool_name": tool_name,
            "ip_address": request.remote_addr,
            "account_id": req_json.get("accountId", "unknown"),
            "request_type": method,
            "user_name": req_json.get("userName", ""),
        },
    )
    if method == "POST":
        log.info("Process started")

    call_kwargs = _with_request_context(tool_func, kwargs)
    try:
        if asyncio.iscoroutinefunction(tool_func):
            result = asyncio.run(tool_func(*args, **call_kwargs))
        else:
            result = tool_func(*args, **call_kwargs)
    except Exception as exc:
        log.exception(f"{tool_name} crashed")
        return jsonify(_envelope(user_id, "error", str(exc))), 500

    if isinstance(result, dict):
        response = _envelope(
            user_id,
            status=result.pop("status", "done"),
            error=result.pop("error", ""),
            tokens=result.pop("tokens", 0),
            tool_data=result,
        )
    else:
        response = _envelope(user_id, "done" if result else "error", tool_data=result)

    if method == "GET":
        current_status = response["status"] or ("error" if response["error"] else "done")
        if _should_log_get(current_status):
            log.info("Status check: %s", current_status)

    return jsonify(response), 200


def bad_request(msg: str, user_id: str = ""):
    return jsonify(_envelope(user_id, "error", msg)), 400


def get_payload() -> dict:
    """
    Return the request payload as a dict.
    - GET       - parse flat query params and group known toolData fields.
    - multipart - form fields, grouped the same way as GET.
    - POST      - accept plaintext JSON.
    """
    if request.method == "GET" or request.files:
        source = request.args if request.method == "GET" else request.form
        args = source.to_dict(flat=True) if source else {}

        tool_keys = {
            "analysisType",
            "sectionCode",
            "previousAttempts",
            "mergeKey",
            "jobId",
        }

        tool_data = {k: args.pop(k) for k in list(args) if k in tool_keys}
        if tool_data:
            args["toolData"] = tool_data

        return args

    return request.get_json(force=True, silent=True) or {}


def ping_status_tool(
    account_id: str | None = None,
    request_method: str | None = None,
    remote_ip: str | None = None,
    user_name: str | None = None,
) -> dict:
    """
    Healthcheck tool.
    - Returns {"status": "pong"} (wrapped by handle()).
    - Logs an INFO line into activity.log.
    """
    from boq_utils.core.log import account_tool_logger, get_logger, set_logger

    base_logger = account_tool_logger(account_id=account_id, tool_name="ping")
    set_logger(
        base_logger,
        tool_name="ping",
        account_id=account_id or "unknown",
        ip_address=remote_ip or "no_ip",
        request_type=request_method or "N/A",
        user_name=user_name or "Anonymous",
    )
    get_logger().info("Ping received; replying with pong")
    return {"status": "pong"}


@app.route("/ping", methods=["GET", "POST"])
def PING():
    data = get_payload()
    return handle(
        tool_func=ping_status_tool,
        request_body=data,
        account_id=data.get("accountId"),
        user_name=data.get("userName") or data.get("user"),
    )


@app.route("/boq-parse", methods=["POST"])
def BOQ_PARSE():
    """
    BOQ workbook parsing endpoint (multipart upload). No GET supported.
    - analysisType=parse - classify sheets and extract every section
    - analysisType=retry - re-parse sectionCode with the positional strategy
    """
    data = get_payload()
    td = data.get("toolData", {}) or {}
    upload = request.files.get("file")
    if upload is None:
        return bad_request("file is required (multipart field 'file')", data.get("userId", ""))

    analysis_type = (td.get("analysisType") or "parse").lower()
    if analysis_type not in ("parse", "retry"):
        return bad_request(
            f"Unsupported analysisType for POST: {analysis_type}. Allowed: parse, retry",
            data.get("userId", ""),
        )
    section_code = td.get("sectionCode")
    if analysis_type == "retry" and not section_code:
        return bad_request("sectionCode is required for retry", data.get("userId", ""))

    try:
        previous_attempts = int(td.get("previousAttempts") or 1)
    except ValueError:
        return bad_request("previousAttempts must be an integer", data.get("userId", ""))

    return handle(
        tool_func=boq_parse_main,
        request_body=data,
        file_bytes=upload.read(),
        file_name=upload.filename,
        account_id=data.get("accountId"),
        analysis_type=analysis_type,
        section_code=section_code,
        previous_attempts=previous_attempts,
        user_name=data.get("userName", ""),
    )


@app.route("/final-account", methods=["GET", "POST"])
def FINAL_ACCOUNT():
    """
    Final-account ledger endpoint
    - GET  import|merge  - poll the latest (or jobId) import job
    - POST import|merge  - enqueue a batch import of toolData.sections
    - POST reconcile     - match/variance of toolData.sections against the ledger
    - POST cancel        - cancel the running import job
    """
    data = get_payload()
    tool_data = data.get("toolData", {}) or {}
    account_id = data.get("accountId")
    compute_flag = bool(data.get("computeReimport", True))

    if not account_id:
        return bad_request("accountId is required", data.get("userId", ""))

    raw_type = tool_data.get("analysisType") or data.get("analysisType")
    if not raw_type:
        return bad_request(
            "analysisType is required for all requests", data.get("userId", "")
        )

    analysis_type = raw_type.lower()
    allowed_types = {
        "GET": ("import", "merge"),
        "POST": ("import", "merge", "reconcile", "cancel"),
    }[request.method]
    if analysis_type not in allowed_types:
        allowed = ", ".join(allowed_types)
        return bad_request(
            f"Unsupported analysisType for {request.method}: {analysis_type}. Allowed: {allowed}",
            data.get("userId", ""),
        )

    if (
        request.method == "POST"
        and analysis_type in ("import", "merge", "reconcile")
        and not tool_data.get("sections")
    ):
        return bad_request(
            f"toolData.sections is required for {analysis_type}", data.get("userId", "")
        )

    return handle(
        tool_func=final_account_main,
        request_body=data,
        account_id=account_id,
        analysis_type=analysis_type,
        sections=tool_data.get("sections"),
        section_code=tool_data.get("sectionCode"),
        merge_key=tool_data.get("mergeKey"),
        job_id=tool_data.get("jobId") or data.get("jobId"),
        user_name=data.get("userName", ""),
        user_id=data.get("userId"),
        compute_reimport=compute_flag,
    )


if __name__ == "__main__":
    if os.path.exists("crt.pem") and os.path.exists("key.pem"):
        app.run(host="0.0.0.0", port=5000, ssl_context=("crt.pem", "key.pem"))
    else:
        app.run(host="0.0.0.0", port=5000)
