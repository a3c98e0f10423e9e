from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

from .models import MAX_RECORDED_DURATIONS, SessionMetrics, SessionState
from .sessions import SessionRegistry


@dataclass(frozen=True)
class AggregateMetrics:
    unit_count: int
    failure_count: int
    child_unit_count: int
    success_rate: float
    mean_duration_ms: float
    min_duration_ms: int
    max_duration_ms: int
    units_by_name: Dict[str, int] = field(default_factory=dict)
    errors_by_type: Dict[str, int] = field(default_factory=dict)
    tokens: Dict[str, int] = field(default_factory=dict)
    models: Dict[str, int] = field(default_factory=dict)
    dominant_failure_mode: Optional[str] = None

    def as_metadata(self) -> Dict[str, object]:
        return {
            "unitCount": self.unit_count,
            "failureCount": self.failure_count,
            "childUnitCount": self.child_unit_count,
            "successRate": self.success_rate,
            "meanDurationMs": self.mean_duration_ms,
            "minDurationMs": self.min_duration_ms,
            "maxDurationMs": self.max_duration_ms,
            "unitsByName": self.units_by_name,
            "errorsByType": self.errors_by_type,
            "tokens": self.tokens,
            "models": self.models,
            "dominantFailureMode": self.dominant_failure_mode,
        }


def dominant_failure_mode(errors_by_type: Mapping[str, int]) -> Optional[str]:
    """Most frequent error type; equal counts resolve alphabetically."""
    candidates = [(name, count) for name, count in errors_by_type.items() if count > 0]
    if not candidates:
        return None
    return min(candidates, key=lambda nc: (-nc[1], nc[0]))[0]


def compute_aggregate(metrics: Optional[SessionMetrics]) -> AggregateMetrics:
    m = metrics or SessionMetrics()
    if m.duration_count > 0:
        mean = m.duration_sum_ms / m.duration_count
        lo = m.duration_min_ms if m.duration_min_ms is not None else 0
        hi = m.duration_max_ms if m.duration_max_ms is not None else 0
    else:
        mean, lo, hi = 0.0, 0, 0
    success_rate = (m.unit_count - m.failure_count) / m.unit_count if m.unit_count else 1.0
    return AggregateMetrics(
        unit_count=m.unit_count,
        failure_count=m.failure_count,
        child_unit_count=m.child_unit_count,
        success_rate=round(max(0.0, success_rate), 4),
        mean_duration_ms=round(mean, 2),
        min_duration_ms=lo,
        max_duration_ms=hi,
        units_by_name=dict(m.units_by_name),
        errors_by_type=dict(m.errors_by_type),
        tokens=dict(m.tokens),
        models=dict(m.models),
        dominant_failure_mode=dominant_failure_mode(m.errors_by_type),
    )


class MetricsAggregator:
    def __init__(self, sessions: SessionRegistry) -> None:
        self._sessions = sessions

    def record(
        self,
        session_id: str,
        unit_name: str,
        is_child_kind: bool,
        succeeded: bool,
        error_type: Optional[str] = None,
        duration_ms: Optional[int] = None,
        tokens: Optional[Mapping[str, int]] = None,
        model: Optional[str] = None,
    ) -> bool:
        """Additive update of the session's counters; False (no-op) without a session."""

        def _record(state: SessionState) -> bool:
            m = state.metrics or SessionMetrics()
            m.unit_count += 1
            m.units_by_name[unit_name] = m.units_by_name.get(unit_name, 0) + 1
            if is_child_kind:
                m.child_unit_count += 1
            if not succeeded:
                m.failure_count += 1
                kind = error_type or "unknown"
                m.errors_by_type[kind] = m.errors_by_type.get(kind, 0) + 1
            if duration_ms is not None and duration_ms >= 0:
                d = int(duration_ms)
                m.duration_count += 1
                m.duration_sum_ms += d
                m.duration_min_ms = d if m.duration_min_ms is None else min(m.duration_min_ms, d)
                m.duration_max_ms = d if m.duration_max_ms is None else max(m.duration_max_ms, d)
                m.durations_ms.append(d)
                _trim(m.durations_ms, MAX_RECORDED_DURATIONS)
            for key, val in (tokens or {}).items():
                if isinstance(val, int) and val >= 0:
                    m.tokens[key] = m.tokens.get(key, 0) + val
            if model:
                m.models[model] = m.models.get(model, 0) + 1
            state.metrics = m
            return True

        return bool(self._sessions.mutate(session_id, _record))

    def snapshot(self, session_id: str) -> Optional[SessionMetrics]:
        state = self._sessions.load(session_id)
        return state.metrics if state else None


def _trim(values: List[int], cap: int) -> None:
    if len(values) > cap:
        del values[: len(values) - cap]
