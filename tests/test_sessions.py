"""Tests for the session registry and the active span table.

Covers:
- Write-once session identity, token backfill
- register/pop round trip and pop-once semantics
- Session fallbacks on popped entries
- Cross-process hand-off through a second store instance
- Independent units popped in arbitrary order
"""

from __future__ import annotations

import threading
import time
from pathlib import Path

from hooktrace.state.models import ActiveSpanInfo
from hooktrace.state.sessions import SessionRegistry, elapsed_ms
from hooktrace.state.store import StateStore


TRACE_A = "a" * 32
TRACE_B = "b" * 32
ROOT = "1" * 16


def _span(span_id: str, started_at_ms: int = 1_000, **kwargs) -> ActiveSpanInfo:
    return ActiveSpanInfo(span_id=span_id, started_at_ms=started_at_ms, **kwargs)


# ============================================================
# Session identity
# ============================================================


class TestSessionIdentity:
    def test_init_creates_state(self, sessions: SessionRegistry) -> None:
        info = sessions.init_session("s1", TRACE_A, ROOT, "00-" + TRACE_A + "-" + ROOT + "-01")
        assert info.trace_id == TRACE_A
        assert sessions.get_session_info("s1") == info

    def test_second_init_keeps_first_identity(self, sessions: SessionRegistry) -> None:
        sessions.init_session("s1", TRACE_A, ROOT)
        info = sessions.init_session("s1", TRACE_B, "2" * 16)
        assert info.trace_id == TRACE_A
        assert info.root_span_id == ROOT
        assert sessions.get_session_info("s1").trace_id == TRACE_A

    def test_missing_token_is_backfilled_once(self, sessions: SessionRegistry) -> None:
        sessions.init_session("s1", TRACE_A, ROOT)
        assert sessions.get_session_info("s1").propagation_token is None

        first = f"00-{TRACE_A}-{ROOT}-01"
        sessions.init_session("s1", TRACE_A, ROOT, first)
        assert sessions.get_session_info("s1").propagation_token == first

        sessions.init_session("s1", TRACE_A, ROOT, f"00-{TRACE_B}-{ROOT}-01")
        assert sessions.get_session_info("s1").propagation_token == first

    def test_unknown_session(self, sessions: SessionRegistry) -> None:
        assert sessions.get_session_info("missing") is None

    def test_delete_session(self, sessions: SessionRegistry) -> None:
        sessions.init_session("s1", TRACE_A, ROOT)
        assert sessions.delete_session("s1")
        assert sessions.get_session_info("s1") is None


# ============================================================
# Active span table
# ============================================================


class TestActiveSpans:
    def test_register_then_pop_returns_same_ids(self, sessions: SessionRegistry) -> None:
        sessions.init_session("s1", TRACE_A, ROOT)
        sessions.register_active_span("s1", "u1", _span("abcdef0123456789", trace_id=TRACE_A))

        popped = sessions.pop_active_span("s1", "u1")
        assert popped is not None
        assert popped.span_id == "abcdef0123456789"
        assert popped.trace_id == TRACE_A

    def test_second_pop_is_not_found(self, sessions: SessionRegistry) -> None:
        sessions.init_session("s1", TRACE_A, ROOT)
        sessions.register_active_span("s1", "u1", _span("abcdef0123456789"))
        assert sessions.pop_active_span("s1", "u1") is not None
        assert sessions.pop_active_span("s1", "u1") is None

    def test_pop_missing_session_or_unit(self, sessions: SessionRegistry) -> None:
        assert sessions.pop_active_span("nope", "u1") is None
        sessions.init_session("s1", TRACE_A, ROOT)
        assert sessions.pop_active_span("s1", "never-registered") is None

    def test_pop_fills_session_fallbacks(self, sessions: SessionRegistry) -> None:
        sessions.init_session("s1", TRACE_A, ROOT)
        sessions.register_active_span("s1", "u1", _span("abcdef0123456789"))
        popped = sessions.pop_active_span("s1", "u1")
        assert popped.trace_id == TRACE_A
        assert popped.parent_span_id == ROOT

    def test_pop_keeps_own_parent(self, sessions: SessionRegistry) -> None:
        sessions.init_session("s1", TRACE_A, ROOT)
        sessions.register_active_span("s1", "u1", _span("abcdef0123456789", parent_span_id="f" * 16))
        assert sessions.pop_active_span("s1", "u1").parent_span_id == "f" * 16

    def test_register_without_session_is_not_persisted(self, sessions: SessionRegistry) -> None:
        assert sessions.register_active_span("ghost", "u1", _span("abcdef0123456789")) is False
        assert sessions.pop_active_span("ghost", "u1") is None

    def test_register_upserts(self, sessions: SessionRegistry) -> None:
        sessions.init_session("s1", TRACE_A, ROOT)
        sessions.register_active_span("s1", "u1", _span("1111111111111111"))
        sessions.register_active_span("s1", "u1", _span("2222222222222222"))
        assert sessions.pop_active_span("s1", "u1").span_id == "2222222222222222"
        assert sessions.pop_active_span("s1", "u1") is None

    def test_distinct_units_popped_out_of_order(self, sessions: SessionRegistry) -> None:
        sessions.init_session("s1", TRACE_A, ROOT)
        registered = {"u1": "1" * 16, "u2": "2" * 16, "u3": "3" * 16}
        for unit_id, span_id in registered.items():
            sessions.register_active_span("s1", unit_id, _span(span_id))

        for unit_id in ("u3", "u1", "u2"):
            assert sessions.pop_active_span("s1", unit_id).span_id == registered[unit_id]
        assert sessions.load("s1").active_spans == {}


# ============================================================
# Cross-process hand-off
# ============================================================


class TestCrossProcess:
    def test_pop_in_another_process_measures_elapsed(self, state_dir: Path) -> None:
        process_a = SessionRegistry(StateStore(state_dir))
        process_a.init_session("s1", TRACE_A, ROOT)
        started = int(time.time() * 1000)
        process_a.register_active_span("s1", "u1", _span("abcdef0123456789", started_at_ms=started))

        time.sleep(0.1)

        process_b = SessionRegistry(StateStore(state_dir))
        popped = process_b.pop_active_span("s1", "u1")
        wall = int(time.time() * 1000) - started
        duration = elapsed_ms(popped)
        assert 0 <= duration <= wall
        assert process_b.pop_active_span("s1", "u1") is None

    def test_elapsed_never_negative(self) -> None:
        info = _span("abcdef0123456789", started_at_ms=10_000)
        assert elapsed_ms(info, now_ms=9_000) == 0
        assert elapsed_ms(info, now_ms=10_250) == 250

    def test_corrupt_session_file_is_cold_start(self, sessions: SessionRegistry, state_dir: Path) -> None:
        (state_dir / "session-s1.json").write_text("garbage", encoding="utf-8")
        assert sessions.get_session_info("s1") is None
        info = sessions.init_session("s1", TRACE_A, ROOT)
        assert info.trace_id == TRACE_A

    def test_concurrent_registrations_all_survive(self, sessions: SessionRegistry, state_dir: Path) -> None:
        sessions.init_session("s1", TRACE_A, ROOT)
        workers = 20
        barrier = threading.Barrier(workers)

        def register(n: int) -> None:
            own = SessionRegistry(StateStore(state_dir))
            barrier.wait()
            own.register_active_span("s1", f"u{n}", _span(f"{n:016x}"))

        threads = [threading.Thread(target=register, args=(n,)) for n in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        active = sessions.load("s1").active_spans
        assert sorted(active) == sorted(f"u{n}" for n in range(workers))
        assert active["u7"].span_id == f"{7:016x}"


# ============================================================
# Failed writes
# ============================================================


class TestFailedWrites:
    def test_pop_without_write_keeps_span(self, sessions: SessionRegistry, store: StateStore, monkeypatch) -> None:
        sessions.init_session("s1", TRACE_A, ROOT)
        sessions.register_active_span("s1", "u1", _span("abcdef0123456789"))
        monkeypatch.setattr(store, "save", lambda key, doc: False)

        assert sessions.pop_active_span("s1", "u1") is None
        assert "u1" in sessions.load("s1").active_spans

    def test_register_without_write_reports_false(
        self, sessions: SessionRegistry, store: StateStore, monkeypatch
    ) -> None:
        sessions.init_session("s1", TRACE_A, ROOT)
        monkeypatch.setattr(store, "save", lambda key, doc: False)
        assert sessions.register_active_span("s1", "u1", _span("abcdef0123456789")) is False

    def test_init_without_write_returns_proposed_identity(
        self, sessions: SessionRegistry, store: StateStore, monkeypatch
    ) -> None:
        monkeypatch.setattr(store, "save", lambda key, doc: False)
        info = sessions.init_session("s1", TRACE_A, ROOT, f"00-{TRACE_A}-{ROOT}-01")
        assert info.session_id == "s1"
        assert info.trace_id == TRACE_A
        assert info.root_span_id == ROOT
        assert sessions.get_session_info("s1") is None
