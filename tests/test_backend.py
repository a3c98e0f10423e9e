"""Tests for the Langfuse adapter, driven by a stand-in client object."""

from __future__ import annotations

import itertools
from types import SimpleNamespace
from typing import Any, Dict, List

from hooktrace.shared.config import LangfuseSettings
from hooktrace.tracing.backend import TracingBackend, score_idempotency_key


class _Span:
    def __init__(self, span_id: str, trace_id: str) -> None:
        self.id = span_id
        self.trace_id = trace_id
        self.updates: List[Dict[str, Any]] = []
        self.trace_updates: List[Dict[str, Any]] = []
        self.end_calls = 0

    def update(self, **kwargs: Any) -> None:
        self.updates.append(kwargs)

    def update_trace(self, **kwargs: Any) -> None:
        self.trace_updates.append(kwargs)

    def end(self) -> None:
        self.end_calls += 1


class _Client:
    def __init__(self, *, broken: bool = False) -> None:
        self.broken = broken
        self.calls: List[Dict[str, Any]] = []
        self.scores: List[Dict[str, Any]] = []
        self.batches: List[Any] = []
        self.flushed = 0
        self._ids = itertools.count(1)
        self.api = SimpleNamespace(ingestion=SimpleNamespace(batch=self._batch))

    def _batch(self, *, batch: List[Any]) -> None:
        if self.broken:
            raise ConnectionError("ingestion down")
        self.batches.append(batch)

    def start_observation(self, **kwargs: Any) -> _Span:
        if self.broken:
            raise ConnectionError("otel exporter down")
        self.calls.append(kwargs)
        return _Span(format(next(self._ids), "016x"), kwargs["trace_context"]["trace_id"])

    def create_event(self, **kwargs: Any) -> _Span:
        return self.start_observation(**kwargs)

    def create_score(self, **kwargs: Any) -> None:
        self.scores.append(kwargs)

    def flush(self) -> None:
        if self.broken:
            raise ConnectionError("flush failed")
        self.flushed += 1


TRACE = "a" * 32


def test_create_requires_keys() -> None:
    assert TracingBackend.create(LangfuseSettings(public_key=None, secret_key="sk", base_url="http://x")) is None


def test_start_observation_uses_trace_context() -> None:
    client = _Client()
    backend = TracingBackend(client)
    handle = backend.start_observation(name="Bash", trace_id=TRACE, parent_span_id="b" * 16, as_type="tool",
                                       input_data={"cmd": "ls"}, started_at_ms=123)
    assert handle.observation_id == "0000000000000001"
    assert handle.started_at_ms == 123
    assert handle.propagation_token == f"00-{TRACE}-0000000000000001-01"
    call = client.calls[0]
    assert call["trace_context"] == {"trace_id": TRACE, "parent_span_id": "b" * 16}
    assert call["as_type"] == "tool"
    assert call["input"] == {"cmd": "ls"}


def test_root_observation_has_no_parent_in_context() -> None:
    client = _Client()
    TracingBackend(client).start_observation(name="root", trace_id=TRACE)
    assert client.calls[0]["trace_context"] == {"trace_id": TRACE}


def test_client_errors_are_swallowed() -> None:
    backend = TracingBackend(_Client(broken=True))
    assert backend.start_observation(name="Bash", trace_id=TRACE) is None
    assert backend.upsert_observation(observation_id="c" * 16, trace_id=TRACE) is False
    backend.flush()


def test_finish_ends_once() -> None:
    backend = TracingBackend(_Client())
    handle = backend.start_observation(name="Bash", trace_id=TRACE)
    backend.finish(handle, output={"ok": True}, level="DEFAULT")
    backend.finish(handle, output={"ok": False})
    assert handle.span.end_calls == 1
    assert handle.span.updates == [{"output": {"ok": True}, "level": "DEFAULT", "status_message": None,
                                    "metadata": None}]


def test_scores_carry_idempotency_key() -> None:
    client = _Client()
    backend = TracingBackend(client)
    for _ in range(2):
        backend.create_score(name="unit_success", value=1, trace_id=TRACE, observation_id="d" * 16,
                             data_type="BOOLEAN")
    ids = {s["score_id"] for s in client.scores}
    assert ids == {score_idempotency_key("d" * 16, "unit_success")}
    assert score_idempotency_key("d" * 16, "unit_success") != score_idempotency_key("d" * 16, "cascade_failure")


def test_upsert_sends_span_update_for_existing_id() -> None:
    client = _Client()
    backend = TracingBackend(client)
    assert backend.upsert_observation(
        observation_id="e" * 16,
        trace_id=TRACE,
        name="Bash",
        output={"exit_code": 0},
        level="DEFAULT",
        start_time_ms=1_000,
        end_time_ms=2_000,
    )
    [batch] = client.batches
    [event] = batch
    assert event.body.id == "e" * 16
    assert event.body.trace_id == TRACE
    assert event.body.name == "Bash"


def test_record_event_returns_id() -> None:
    backend = TracingBackend(_Client())
    assert backend.record_event(trace_id=TRACE, parent_span_id=None, name="checkpoint:Stop") == "0000000000000001"


def test_trace_id_is_deterministic() -> None:
    assert TracingBackend.trace_id_for("session-1") == TracingBackend.trace_id_for("session-1")
    assert len(TracingBackend.trace_id_for("session-1")) == 32
