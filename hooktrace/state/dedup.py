from __future__ import annotations

import time
from typing import Optional

from ..shared.config import DEFAULT_DEDUP_CAP
from .models import SessionState
from .sessions import SessionRegistry


BUCKET_MAX_AGE_S = 60 * 60


def _now_ms() -> int:
    return int(time.time() * 1000)


def fingerprint(event_kind: str, unit_id: Optional[str] = None, *, now_ms: Optional[int] = None) -> str:
    """
    `kind:unit_id` when the event carries an id. Otherwise `kind:<second>`:
    two distinct id-less events of one kind within the same second collapse
    into one.
    """
    if unit_id:
        return f"{event_kind}:{unit_id}"
    now = _now_ms() if now_ms is None else now_ms
    return f"{event_kind}:{now // 1000}"


def _bucket_of(fp: str) -> Optional[int]:
    _kind, sep, tail = fp.rpartition(":")
    if not sep or not tail.isdigit():
        return None
    return int(tail)


class DedupLedger:
    """Recency window of processed event fingerprints, stored in the session document."""

    def __init__(self, sessions: SessionRegistry, *, cap: int = DEFAULT_DEDUP_CAP) -> None:
        self._sessions = sessions
        self._cap = max(1, cap)

    def has_processed(self, session_id: str, fp: str) -> bool:
        state = self._sessions.load(session_id)
        if state is None or not state.processed_event_fingerprints:
            return False
        return fp in state.processed_event_fingerprints

    def _append(self, state: SessionState, fp: str) -> bool:
        """Append fp if absent, trimming the oldest entries past the cap. True if it was already present."""
        fps = state.processed_event_fingerprints or []
        seen = fp in fps
        if not seen:
            fps.append(fp)
        if len(fps) > self._cap:
            del fps[: len(fps) - self._cap]
        state.processed_event_fingerprints = fps
        return seen

    def mark_processed(self, session_id: str, fp: str) -> bool:
        """False without a session."""
        return self._sessions.mutate(session_id, lambda state: self._append(state, fp)) is not None

    def check_and_mark(self, session_id: str, fp: str) -> bool:
        """
        True when fp was already processed; marks it otherwise. The test and
        the append happen under one session lock, so of several processes
        handling the same event exactly one sees it as new.
        """
        return bool(self._sessions.mutate(session_id, lambda state: self._append(state, fp)))

    def prune_aged(self, session_id: str, *, now_ms: Optional[int] = None) -> int:
        now_s = (_now_ms() if now_ms is None else now_ms) // 1000

        def _prune(state: SessionState) -> int:
            fps = state.processed_event_fingerprints or []
            kept = []
            for fp in fps:
                bucket = _bucket_of(fp)
                if bucket is not None and now_s - bucket > BUCKET_MAX_AGE_S:
                    continue
                kept.append(fp)
            state.processed_event_fingerprints = kept
            return len(fps) - len(kept)

        return self._sessions.mutate(session_id, _prune) or 0
