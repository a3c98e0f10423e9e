from __future__ import annotations

import datetime
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union


JsonDict = Dict[str, Any]


class EventKind(str, Enum):
    PRE_UNIT = "pre_unit"
    POST_UNIT = "post_unit"
    SESSION_START = "session_start"
    SESSION_END = "session_end"
    CHILD_ANNOUNCE = "child_announce"
    CHILD_COMPLETE = "child_complete"
    CHECKPOINT = "checkpoint"


# Hook names emitted by the agent runtime, plus the canonical values.
_KIND_ALIASES: Dict[str, EventKind] = {
    "PreToolUse": EventKind.PRE_UNIT,
    "PostToolUse": EventKind.POST_UNIT,
    "SessionStart": EventKind.SESSION_START,
    "SessionEnd": EventKind.SESSION_END,
    "SubagentStart": EventKind.CHILD_ANNOUNCE,
    "SubagentStop": EventKind.CHILD_COMPLETE,
    "UserPromptSubmit": EventKind.CHECKPOINT,
    "PreCompact": EventKind.CHECKPOINT,
    "Notification": EventKind.CHECKPOINT,
    "Stop": EventKind.CHECKPOINT,
}
_KIND_ALIASES.update({k.value: k for k in EventKind})


@dataclass(frozen=True)
class TokenUsage:
    input: Optional[int] = None
    output: Optional[int] = None
    total: Optional[int] = None

    def as_dict(self) -> Dict[str, int]:
        out: Dict[str, int] = {}
        if self.input is not None:
            out["input"] = self.input
        if self.output is not None:
            out["output"] = self.output
        if self.total is not None:
            out["total"] = self.total
        elif self.input is not None or self.output is not None:
            out["total"] = (self.input or 0) + (self.output or 0)
        return out


@dataclass(frozen=True)
class UnitStart:
    input: Any = None


@dataclass(frozen=True)
class UnitEnd:
    input: Any = None
    response: Any = None


@dataclass(frozen=True)
class Checkpoint:
    name: str
    detail: Any = None


@dataclass(frozen=True)
class ChildLink:
    child_id: Optional[str] = None
    propagation_token: Optional[str] = None
    detail: Any = None


@dataclass(frozen=True)
class SessionBoundary:
    reason: Optional[str] = None
    detail: Any = None


EventBody = Union[UnitStart, UnitEnd, Checkpoint, ChildLink, SessionBoundary]


@dataclass(frozen=True)
class HookEvent:
    kind: EventKind
    hook_name: str
    session_id: str
    working_directory: str
    body: EventBody
    unit_name: Optional[str] = None
    unit_id: Optional[str] = None
    parent_unit_id: Optional[str] = None
    timestamp_ms: Optional[int] = None
    model: Optional[str] = None
    token_usage: Optional[TokenUsage] = None
    user_id: Optional[str] = None


def _coerce_str(val: Any) -> Optional[str]:
    if isinstance(val, str):
        s = val.strip()
        return s if s else None
    return None


def _first_str(d: JsonDict, *keys: str) -> Optional[str]:
    for k in keys:
        v = _coerce_str(d.get(k))
        if v:
            return v
    return None


def _coerce_int(val: Any) -> Optional[int]:
    if isinstance(val, bool):
        return None
    if isinstance(val, int):
        return val
    if isinstance(val, float):
        return int(val)
    return None


def _timestamp_ms(val: Any) -> Optional[int]:
    if isinstance(val, bool):
        return None
    if isinstance(val, (int, float)):
        return int(val)
    s = _coerce_str(val)
    if not s:
        return None
    try:
        dt = datetime.datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    return int(dt.timestamp() * 1000)


def _token_usage(raw: Any) -> Optional[TokenUsage]:
    if not isinstance(raw, dict):
        return None
    usage = TokenUsage(
        input=_coerce_int(raw.get("input") if "input" in raw else raw.get("input_tokens")),
        output=_coerce_int(raw.get("output") if "output" in raw else raw.get("output_tokens")),
        total=_coerce_int(raw.get("total") if "total" in raw else raw.get("total_tokens")),
    )
    if usage.input is None and usage.output is None and usage.total is None:
        return None
    return usage


def _body_for(kind: EventKind, hook_name: str, raw: JsonDict, payload: JsonDict) -> EventBody:
    if kind == EventKind.PRE_UNIT:
        unit_input = raw.get("tool_input")
        if unit_input is None:
            unit_input = payload.get("input", payload or None)
        return UnitStart(input=unit_input)
    if kind == EventKind.POST_UNIT:
        unit_input = raw.get("tool_input", payload.get("input"))
        if "tool_response" in raw:
            response = raw.get("tool_response")
        else:
            response = payload.get("response", payload)
        return UnitEnd(input=unit_input, response=response)
    if kind in (EventKind.CHILD_ANNOUNCE, EventKind.CHILD_COMPLETE):
        return ChildLink(
            child_id=_first_str(payload, "childId", "agentId")
            or _first_str(raw, "agent_id", "childId"),
            propagation_token=_first_str(payload, "propagationToken", "traceparent"),
            detail=payload or None,
        )
    if kind in (EventKind.SESSION_START, EventKind.SESSION_END):
        return SessionBoundary(
            reason=_first_str(payload, "reason", "source") or _first_str(raw, "reason", "source"),
            detail=payload or None,
        )
    detail: Any = payload or None
    prompt = _coerce_str(raw.get("prompt"))
    if prompt and detail is None:
        detail = {"prompt": prompt}
    name = _first_str(payload, "name") or hook_name
    return Checkpoint(name=name, detail=detail)


def parse_event(raw: Any) -> Optional[HookEvent]:
    """
    Shape check for one event line. Returns None when the event should be
    dropped (missing session id / working directory, or an unknown kind).

    Both the canonical camelCase schema and the agent runtime's native
    snake_case hook payloads are accepted.
    """
    if not isinstance(raw, dict):
        return None
    session_id = _first_str(raw, "sessionId", "session_id")
    working_directory = _first_str(raw, "workingDirectory", "cwd")
    hook_name = _first_str(raw, "eventKind", "hook_event_name")
    if not session_id or not working_directory or not hook_name:
        return None
    kind = _KIND_ALIASES.get(hook_name)
    if kind is None:
        return None

    payload = raw.get("payload") if isinstance(raw.get("payload"), dict) else {}
    return HookEvent(
        kind=kind,
        hook_name=hook_name,
        session_id=session_id,
        working_directory=working_directory,
        body=_body_for(kind, hook_name, raw, payload),
        unit_name=_first_str(raw, "unitName", "tool_name", "agent_type"),
        unit_id=_first_str(raw, "unitId", "tool_use_id"),
        parent_unit_id=_first_str(raw, "parentUnitId", "parent_tool_use_id"),
        timestamp_ms=_timestamp_ms(raw.get("timestamp")),
        model=_first_str(raw, "model"),
        token_usage=_token_usage(raw.get("tokenUsage") or raw.get("usage")),
        user_id=_first_str(raw, "userId", "user_id"),
    )
