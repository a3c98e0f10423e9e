"""Persisted state documents. JSON keys are camelCase on disk."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


JsonDict = Dict[str, Any]


def _str(val: Any) -> Optional[str]:
    return val if isinstance(val, str) and val else None


def _int(val: Any, default: int = 0) -> int:
    if isinstance(val, bool):
        return default
    if isinstance(val, (int, float)):
        return int(val)
    return default


def _opt_int(val: Any) -> Optional[int]:
    if isinstance(val, bool) or not isinstance(val, (int, float)):
        return None
    return int(val)


def _counts(val: Any) -> Dict[str, int]:
    if not isinstance(val, dict):
        return {}
    return {k: int(v) for k, v in val.items() if isinstance(k, str) and isinstance(v, int) and not isinstance(v, bool)}


def _drop_none(d: JsonDict) -> JsonDict:
    return {k: v for k, v in d.items() if v is not None}


@dataclass
class ActiveSpanInfo:
    span_id: str
    started_at_ms: int
    observation_id: Optional[str] = None
    trace_id: Optional[str] = None
    parent_span_id: Optional[str] = None
    parent_observation_id: Optional[str] = None
    propagation_token: Optional[str] = None
    original_context: Optional[JsonDict] = None
    parent_unit_id: Optional[str] = None
    unit_name: Optional[str] = None
    pid: Optional[int] = None

    def to_dict(self) -> JsonDict:
        return _drop_none(
            {
                "spanId": self.span_id,
                "observationId": self.observation_id,
                "startedAtMs": self.started_at_ms,
                "traceId": self.trace_id,
                "parentSpanId": self.parent_span_id,
                "parentObservationId": self.parent_observation_id,
                "propagationToken": self.propagation_token,
                "originalContext": self.original_context,
                "parentUnitId": self.parent_unit_id,
                "unitName": self.unit_name,
                "pid": self.pid,
            }
        )

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["ActiveSpanInfo"]:
        if not isinstance(raw, dict):
            return None
        span_id = _str(raw.get("spanId"))
        started = _opt_int(raw.get("startedAtMs"))
        if not span_id or started is None:
            return None
        ctx = raw.get("originalContext")
        return cls(
            span_id=span_id,
            started_at_ms=started,
            observation_id=_str(raw.get("observationId")),
            trace_id=_str(raw.get("traceId")),
            parent_span_id=_str(raw.get("parentSpanId")),
            parent_observation_id=_str(raw.get("parentObservationId")),
            propagation_token=_str(raw.get("propagationToken")),
            original_context=ctx if isinstance(ctx, dict) else None,
            parent_unit_id=_str(raw.get("parentUnitId")),
            unit_name=_str(raw.get("unitName")),
            pid=_opt_int(raw.get("pid")),
        )


@dataclass
class ChainState:
    position: int = 0
    last_unit_name: Optional[str] = None
    last_unit_succeeded: Optional[bool] = None

    def to_dict(self) -> JsonDict:
        return _drop_none(
            {
                "position": self.position,
                "lastUnitName": self.last_unit_name,
                "lastUnitSucceeded": self.last_unit_succeeded,
            }
        )

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["ChainState"]:
        if not isinstance(raw, dict):
            return None
        succeeded = raw.get("lastUnitSucceeded")
        return cls(
            position=max(0, _int(raw.get("position"))),
            last_unit_name=_str(raw.get("lastUnitName")),
            last_unit_succeeded=succeeded if isinstance(succeeded, bool) else None,
        )


# Individual durations kept for inspection; sum/count/min/max cover all units.
MAX_RECORDED_DURATIONS = 1000


@dataclass
class SessionMetrics:
    unit_count: int = 0
    failure_count: int = 0
    child_unit_count: int = 0
    duration_count: int = 0
    duration_sum_ms: int = 0
    duration_min_ms: Optional[int] = None
    duration_max_ms: Optional[int] = None
    durations_ms: List[int] = field(default_factory=list)
    units_by_name: Dict[str, int] = field(default_factory=dict)
    errors_by_type: Dict[str, int] = field(default_factory=dict)
    tokens: Dict[str, int] = field(default_factory=dict)
    models: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> JsonDict:
        return _drop_none(
            {
                "unitCount": self.unit_count,
                "failureCount": self.failure_count,
                "childUnitCount": self.child_unit_count,
                "durationCount": self.duration_count,
                "durationSumMs": self.duration_sum_ms,
                "durationMinMs": self.duration_min_ms,
                "durationMaxMs": self.duration_max_ms,
                "durationsMs": list(self.durations_ms),
                "unitsByName": dict(self.units_by_name),
                "errorsByType": dict(self.errors_by_type),
                "tokens": dict(self.tokens),
                "models": dict(self.models),
            }
        )

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["SessionMetrics"]:
        if not isinstance(raw, dict):
            return None
        durations = raw.get("durationsMs")
        return cls(
            unit_count=_int(raw.get("unitCount")),
            failure_count=_int(raw.get("failureCount")),
            child_unit_count=_int(raw.get("childUnitCount")),
            duration_count=_int(raw.get("durationCount")),
            duration_sum_ms=_int(raw.get("durationSumMs")),
            duration_min_ms=_opt_int(raw.get("durationMinMs")),
            duration_max_ms=_opt_int(raw.get("durationMaxMs")),
            durations_ms=[int(d) for d in durations if isinstance(d, (int, float)) and not isinstance(d, bool)]
            if isinstance(durations, list)
            else [],
            units_by_name=_counts(raw.get("unitsByName")),
            errors_by_type=_counts(raw.get("errorsByType")),
            tokens=_counts(raw.get("tokens")),
            models=_counts(raw.get("models")),
        )


@dataclass
class SessionState:
    session_id: str
    trace_id: str
    root_span_id: str
    created_at: int
    propagation_token: Optional[str] = None
    active_spans: Dict[str, ActiveSpanInfo] = field(default_factory=dict)
    metrics: Optional[SessionMetrics] = None
    processed_event_fingerprints: Optional[List[str]] = None
    chain: Optional[ChainState] = None
    parent_link: Optional[JsonDict] = None

    def to_dict(self) -> JsonDict:
        return _drop_none(
            {
                "sessionId": self.session_id,
                "traceId": self.trace_id,
                "rootSpanId": self.root_span_id,
                "propagationToken": self.propagation_token,
                "activeSpans": {k: v.to_dict() for k, v in self.active_spans.items()},
                "metrics": self.metrics.to_dict() if self.metrics else None,
                "processedEventFingerprints": list(self.processed_event_fingerprints)
                if self.processed_event_fingerprints is not None
                else None,
                "chain": self.chain.to_dict() if self.chain else None,
                "parentLink": self.parent_link,
                "createdAt": self.created_at,
            }
        )

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["SessionState"]:
        if not isinstance(raw, dict):
            return None
        session_id = _str(raw.get("sessionId"))
        trace_id = _str(raw.get("traceId"))
        root_span_id = _str(raw.get("rootSpanId"))
        if not session_id or not trace_id or not root_span_id:
            return None
        spans: Dict[str, ActiveSpanInfo] = {}
        raw_spans = raw.get("activeSpans")
        if isinstance(raw_spans, dict):
            for unit_id, raw_info in raw_spans.items():
                info = ActiveSpanInfo.from_dict(raw_info)
                if isinstance(unit_id, str) and info:
                    spans[unit_id] = info
        fps = raw.get("processedEventFingerprints")
        parent_link = raw.get("parentLink")
        return cls(
            session_id=session_id,
            trace_id=trace_id,
            root_span_id=root_span_id,
            created_at=_int(raw.get("createdAt")),
            propagation_token=_str(raw.get("propagationToken")),
            active_spans=spans,
            metrics=SessionMetrics.from_dict(raw.get("metrics")),
            processed_event_fingerprints=[f for f in fps if isinstance(f, str)] if isinstance(fps, list) else None,
            chain=ChainState.from_dict(raw.get("chain")),
            parent_link=parent_link if isinstance(parent_link, dict) else None,
        )


@dataclass
class PendingLinkContext:
    propagation_token: str
    trace_id: str
    observation_id: str
    parent_session_id: str
    unit_id: str
    created_at: int
    child_kind: Optional[str] = None

    def to_dict(self) -> JsonDict:
        return _drop_none(
            {
                "propagationToken": self.propagation_token,
                "traceId": self.trace_id,
                "observationId": self.observation_id,
                "parentSessionId": self.parent_session_id,
                "unitId": self.unit_id,
                "childKind": self.child_kind,
                "createdAt": self.created_at,
            }
        )

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["PendingLinkContext"]:
        if not isinstance(raw, dict):
            return None
        required = {
            "propagationToken": _str(raw.get("propagationToken")),
            "traceId": _str(raw.get("traceId")),
            "observationId": _str(raw.get("observationId")),
            "parentSessionId": _str(raw.get("parentSessionId")),
            "unitId": _str(raw.get("unitId")),
        }
        created_at = _opt_int(raw.get("createdAt"))
        if any(v is None for v in required.values()) or created_at is None:
            return None
        return cls(
            propagation_token=required["propagationToken"],  # type: ignore[arg-type]
            trace_id=required["traceId"],  # type: ignore[arg-type]
            observation_id=required["observationId"],  # type: ignore[arg-type]
            parent_session_id=required["parentSessionId"],  # type: ignore[arg-type]
            unit_id=required["unitId"],  # type: ignore[arg-type]
            created_at=created_at,
            child_kind=_str(raw.get("childKind")),
        )
