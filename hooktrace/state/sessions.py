from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Optional, Tuple, TypeVar

from .models import ActiveSpanInfo, SessionState
from .store import StateStore


JsonDict = Dict[str, Any]
T = TypeVar("T")

logger = logging.getLogger(__name__)

SESSION_PREFIX = "session-"


def _now_ms() -> int:
    return int(time.time() * 1000)


def session_key(session_id: str) -> str:
    return f"{SESSION_PREFIX}{session_id}"


@dataclass(frozen=True)
class SessionInfo:
    session_id: str
    trace_id: str
    root_span_id: str
    propagation_token: Optional[str] = None
    parent_link: Optional[JsonDict] = None


class SessionRegistry:
    """
    Per-session trace identity plus the active span table, both stored in
    the session's single state document.
    """

    def __init__(self, store: StateStore) -> None:
        self._store = store

    @property
    def store(self) -> StateStore:
        return self._store

    def load(self, session_id: str) -> Optional[SessionState]:
        return SessionState.from_dict(self._store.load(session_key(session_id)))

    def mutate(self, session_id: str, fn: Callable[[SessionState], T]) -> Optional[T]:
        """Apply fn to the session document under the key lock; None if the session is absent."""

        def _apply(raw: Optional[JsonDict]) -> Tuple[Optional[JsonDict], Optional[T]]:
            state = SessionState.from_dict(raw)
            if state is None:
                return None, None
            result = fn(state)
            return state.to_dict(), result

        return self._store.update(session_key(session_id), _apply)

    def init_session(
        self,
        session_id: str,
        trace_id: str,
        root_span_id: str,
        propagation_token: Optional[str] = None,
        *,
        parent_link: Optional[JsonDict] = None,
    ) -> SessionInfo:
        """
        Create the session identity if none exists. Existing identities are
        write-once; the only upgrade is backfilling a missing propagation
        token. Returns the identity now on disk.
        """

        def _apply(raw: Optional[JsonDict]) -> Tuple[Optional[JsonDict], SessionState]:
            existing = SessionState.from_dict(raw)
            if existing is None:
                created = SessionState(
                    session_id=session_id,
                    trace_id=trace_id,
                    root_span_id=root_span_id,
                    propagation_token=propagation_token,
                    created_at=_now_ms(),
                    parent_link=parent_link,
                )
                return created.to_dict(), created
            if existing.propagation_token is None and propagation_token:
                existing.propagation_token = propagation_token
                return existing.to_dict(), existing
            return None, existing

        state = self._store.update(session_key(session_id), _apply)
        if state is None:
            # Not persisted; this process carries on with the identity it proposed.
            return SessionInfo(session_id, trace_id, root_span_id, propagation_token, parent_link)
        return _info(state)

    def get_session_info(self, session_id: str) -> Optional[SessionInfo]:
        state = self.load(session_id)
        return _info(state) if state else None

    def delete_session(self, session_id: str) -> bool:
        with self._store.locked(session_key(session_id)):
            return self._store.delete(session_key(session_id))

    def register_active_span(self, session_id: str, unit_id: str, info: ActiveSpanInfo) -> bool:
        def _register(state: SessionState) -> bool:
            state.active_spans[unit_id] = info
            return True

        registered = self.mutate(session_id, _register)
        if not registered:
            logger.debug("no session %s; span for unit %s not persisted", session_id, unit_id)
        return bool(registered)

    def pop_active_span(self, session_id: str, unit_id: str) -> Optional[ActiveSpanInfo]:
        """
        Remove and return the active span for unit_id, filled in with the
        session's trace id and root span as fallbacks. None if absent.
        """

        def _pop(state: SessionState) -> Optional[ActiveSpanInfo]:
            info = state.active_spans.pop(unit_id, None)
            if info is None:
                return None
            return replace(
                info,
                trace_id=info.trace_id or state.trace_id,
                parent_span_id=info.parent_span_id or state.root_span_id,
            )

        def _apply(raw: Optional[JsonDict]) -> Tuple[Optional[JsonDict], Optional[ActiveSpanInfo]]:
            state = SessionState.from_dict(raw)
            if state is None:
                return None, None
            popped = _pop(state)
            # Unchanged documents are not rewritten.
            return (state.to_dict() if popped else None), popped

        return self._store.update(session_key(session_id), _apply)


def elapsed_ms(info: ActiveSpanInfo, now_ms: Optional[int] = None) -> int:
    now = _now_ms() if now_ms is None else now_ms
    return max(0, now - info.started_at_ms)


def _info(state: SessionState) -> SessionInfo:
    return SessionInfo(
        session_id=state.session_id,
        trace_id=state.trace_id,
        root_span_id=state.root_span_id,
        propagation_token=state.propagation_token,
        parent_link=state.parent_link,
    )
