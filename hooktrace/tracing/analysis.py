from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


JsonDict = Dict[str, Any]

MAX_MESSAGE_LEN = 500

_SEVERITY = {
    "interrupted": "low",
    "rate_limited": "low",
    "incomplete": "low",
    "http_client_error": "medium",
    "exit_code": "medium",
    "timeout": "medium",
    "tool_error": "medium",
    "error": "medium",
    "http_server_error": "high",
    "command_not_found": "high",
}

_TIMEOUT_EXIT_CODES = {124}
_NOT_FOUND_EXIT_CODES = {126, 127}


@dataclass(frozen=True)
class UnitOutcome:
    succeeded: bool
    category: Optional[str] = None
    message: Optional[str] = None

    @property
    def severity(self) -> Optional[str]:
        if self.succeeded:
            return None
        return _SEVERITY.get(self.category or "", "medium")

    @property
    def level(self) -> str:
        if self.succeeded:
            return "DEFAULT"
        return "WARNING" if self.severity == "low" else "ERROR"


SUCCESS = UnitOutcome(succeeded=True)


def incomplete(reason: str) -> UnitOutcome:
    return UnitOutcome(succeeded=False, category="incomplete", message=reason)


def _coerce_str(val: Any) -> Optional[str]:
    if isinstance(val, str):
        s = val.strip()
        return s if s else None
    return None


def _clip(text: str) -> str:
    return text if len(text) <= MAX_MESSAGE_LEN else text[: MAX_MESSAGE_LEN - 3] + "..."


def _int_field(d: JsonDict, *keys: str) -> Optional[int]:
    for k in keys:
        v = d.get(k)
        if isinstance(v, int) and not isinstance(v, bool):
            return v
    return None


def _error_text(val: Any) -> Optional[str]:
    if isinstance(val, dict):
        return _coerce_str(val.get("message")) or _coerce_str(val.get("error")) or _coerce_str(str(val))
    if isinstance(val, list):
        parts = [p.get("text") for p in val if isinstance(p, dict) and isinstance(p.get("text"), str)]
        return _coerce_str("\n".join(parts))
    return _coerce_str(val) if isinstance(val, str) else None


def _mentions_timeout(text: Optional[str]) -> bool:
    t = (text or "").lower()
    return "timed out" in t or "timeout" in t


def analyze_result(response: Any) -> UnitOutcome:
    """
    Classify a unit's result payload as success or a categorized failure.

    Recognized failure signals, first match wins: interruption, non-zero
    exit code, HTTP status >= 400, explicit error flags, an `error` field,
    a timeout flag. Anything else is a success.
    """
    if isinstance(response, str):
        text = response.strip()
        if text.lower().startswith("error"):
            return UnitOutcome(False, "timeout" if _mentions_timeout(text) else "error", _clip(text))
        return SUCCESS
    if not isinstance(response, dict):
        return SUCCESS

    if response.get("interrupted") is True:
        return UnitOutcome(False, "interrupted", "unit of work was interrupted")

    exit_code = _int_field(response, "exit_code", "exitCode", "returncode", "returnCode")
    if exit_code is not None and exit_code != 0:
        stderr = _coerce_str(response.get("stderr")) or _error_text(response.get("error"))
        message = f"exit code {exit_code}"
        if stderr:
            message = f"{message}: {stderr}"
        if exit_code in _TIMEOUT_EXIT_CODES:
            category = "timeout"
        elif exit_code in _NOT_FOUND_EXIT_CODES:
            category = "command_not_found"
        else:
            category = "exit_code"
        return UnitOutcome(False, category, _clip(message))

    status = _int_field(response, "statusCode", "status_code", "status")
    if status is not None and 400 <= status <= 599:
        detail = _error_text(response.get("error")) or _coerce_str(response.get("statusText"))
        message = f"HTTP {status}" + (f": {detail}" if detail else "")
        if status >= 500:
            category = "http_server_error"
        elif status == 429:
            category = "rate_limited"
        else:
            category = "http_client_error"
        return UnitOutcome(False, category, _clip(message))

    if response.get("is_error") is True or response.get("isError") is True or response.get("success") is False:
        text = _error_text(response.get("error")) or _error_text(response.get("content")) or "unit reported failure"
        return UnitOutcome(False, "timeout" if _mentions_timeout(text) else "tool_error", _clip(text))

    err = _error_text(response.get("error"))
    if err:
        return UnitOutcome(False, "timeout" if _mentions_timeout(err) else "error", _clip(err))

    if response.get("timedOut") is True or response.get("timed_out") is True:
        return UnitOutcome(False, "timeout", "unit of work timed out")

    return SUCCESS
