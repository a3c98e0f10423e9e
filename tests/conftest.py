"""Shared fixtures: a state directory per test and a recording tracing backend."""

from __future__ import annotations

import hashlib
import itertools
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from hooktrace.state.sessions import SessionRegistry
from hooktrace.state.store import StateStore
from hooktrace.tracing.backend import ObservationHandle, TracingBackend, score_idempotency_key
from hooktrace.tracing.processor import HookEventProcessor


class FakeBackend(TracingBackend):
    """Records every backend call instead of talking to Langfuse."""

    _ids = itertools.count(1)

    def __init__(self, *, fail_scores: bool = False) -> None:
        super().__init__(client=None)
        self.fail_scores = fail_scores
        self.started: List[Dict[str, Any]] = []
        self.finished: List[Dict[str, Any]] = []
        self.upserts: List[Dict[str, Any]] = []
        self.events: List[Dict[str, Any]] = []
        self.generations: List[Dict[str, Any]] = []
        self.scores: List[Dict[str, Any]] = []
        self.traces: List[Dict[str, Any]] = []
        self.flushes = 0
        self._lock = threading.Lock()

    @staticmethod
    def trace_id_for(seed: str) -> str:
        return hashlib.sha256(seed.encode("utf-8")).hexdigest()[:32]

    def start_observation(self, *, name, trace_id, parent_span_id=None, as_type="span", input_data=None,
                          metadata=None, started_at_ms=None) -> Optional[ObservationHandle]:
        span_id = format(next(self._ids), "016x")
        self.started.append(
            {
                "id": span_id,
                "name": name,
                "trace_id": trace_id,
                "parent_span_id": parent_span_id,
                "as_type": as_type,
                "input": input_data,
                "metadata": metadata,
            }
        )
        return ObservationHandle(
            observation_id=span_id,
            trace_id=trace_id,
            name=name,
            span=object(),
            parent_span_id=parent_span_id,
            started_at_ms=started_at_ms if started_at_ms is not None else int(time.time() * 1000),
        )

    def update_trace(self, handle, **kwargs) -> None:
        self.traces.append(dict(kwargs, id=handle.observation_id))

    def finish(self, handle, *, output=None, level=None, status_message=None, metadata=None) -> None:
        if handle.ended:
            return
        handle.ended = True
        self.finished.append(
            {
                "id": handle.observation_id,
                "name": handle.name,
                "output": output,
                "level": level,
                "status_message": status_message,
                "metadata": metadata,
            }
        )

    def upsert_observation(self, **kwargs) -> bool:
        self.upserts.append(kwargs)
        return True

    def record_generation(self, **kwargs) -> None:
        self.generations.append(kwargs)

    def record_event(self, **kwargs) -> Optional[str]:
        self.events.append(kwargs)
        return format(next(self._ids), "016x")

    def create_score(self, *, name, value, trace_id, observation_id, data_type, comment=None) -> None:
        if self.fail_scores:
            raise RuntimeError("score endpoint unavailable")
        with self._lock:
            self.scores.append(
                {
                    "name": name,
                    "value": value,
                    "trace_id": trace_id,
                    "observation_id": observation_id,
                    "data_type": data_type,
                    "score_id": score_idempotency_key(observation_id or trace_id, name),
                }
            )

    def flush(self) -> None:
        self.flushes += 1

    # Helpers for assertions

    def finished_named(self, name: str) -> List[Dict[str, Any]]:
        return [f for f in self.finished if f["name"] == name]

    def events_named(self, name: str) -> List[Dict[str, Any]]:
        return [e for e in self.events if e["name"] == name]

    def scores_for(self, observation_id: str) -> Dict[str, Any]:
        return {s["name"]: s["value"] for s in self.scores if s["observation_id"] == observation_id}


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    return tmp_path / "state"


@pytest.fixture
def store(state_dir: Path) -> StateStore:
    return StateStore(state_dir)


@pytest.fixture
def sessions(store: StateStore) -> SessionRegistry:
    return SessionRegistry(store)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def failing_backend() -> FakeBackend:
    return FakeBackend(fail_scores=True)


@pytest.fixture
def make_processor(state_dir: Path):
    """Build a processor as a fresh process would: own store handle, own registry."""

    def _make(backend: FakeBackend, **kwargs) -> HookEventProcessor:
        return HookEventProcessor(backend, StateStore(state_dir), **kwargs)

    return _make
