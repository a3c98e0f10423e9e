from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .models import ChainState, SessionState
from .sessions import SessionRegistry


@dataclass(frozen=True)
class ChainContext:
    position: int
    preceding_unit: Optional[str] = None
    preceding_succeeded: Optional[bool] = None

    @property
    def follows_failure(self) -> bool:
        return self.preceding_succeeded is False


class ChainTracker:
    """Sequential position of units within a session and the last unit's outcome."""

    def __init__(self, sessions: SessionRegistry) -> None:
        self._sessions = sessions

    def get_context(self, session_id: str) -> ChainContext:
        state = self._sessions.load(session_id)
        chain = state.chain if state else None
        if chain is None:
            return ChainContext(position=1)
        return ChainContext(
            position=chain.position + 1,
            preceding_unit=chain.last_unit_name,
            preceding_succeeded=chain.last_unit_succeeded,
        )

    def update(self, session_id: str, unit_name: str, succeeded: bool) -> Optional[ChainState]:
        def _update(state: SessionState) -> ChainState:
            chain = state.chain or ChainState()
            chain.position += 1
            chain.last_unit_name = unit_name
            chain.last_unit_succeeded = succeeded
            state.chain = chain
            return chain

        return self._sessions.mutate(session_id, _update)

    def reset(self, session_id: str) -> None:
        def _reset(state: SessionState) -> None:
            state.chain = ChainState()

        self._sessions.mutate(session_id, _reset)
