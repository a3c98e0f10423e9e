from __future__ import annotations

import logging
import time
from typing import List, Optional, Tuple

from ..shared.config import DEFAULT_DISCOVERY_TTL_S, DEFAULT_RETENTION_TTL_S
from .models import PendingLinkContext
from .store import StateStore, sanitize_key


logger = logging.getLogger(__name__)

# Discovery records are garbage collected after the short TTL; retention
# records carry the same context until the child completes or the long TTL.
PENDING_PREFIX = "pending-"
RETAINED_PREFIX = "link-"


def _now_ms() -> int:
    return int(time.time() * 1000)


def _suffix(parent_session_id: str, unit_id: str) -> str:
    return f"{sanitize_key(parent_session_id)}__{sanitize_key(unit_id)}"


def pending_key(parent_session_id: str, unit_id: str) -> str:
    return PENDING_PREFIX + _suffix(parent_session_id, unit_id)


def retained_key(parent_session_id: str, unit_id: str) -> str:
    return RETAINED_PREFIX + _suffix(parent_session_id, unit_id)


Candidate = Tuple[str, PendingLinkContext]


class PendingLinkRegistry:
    """
    Announcements that a unit of work in a parent session is about to spawn
    a child session.

    A child looks for its parent twice: at its first event, within the short
    discovery TTL, and at its completion, within the long retention TTL
    (children may outlive the unit of work that spawned them).
    """

    def __init__(
        self,
        store: StateStore,
        *,
        discovery_ttl_s: float = DEFAULT_DISCOVERY_TTL_S,
        retention_ttl_s: float = DEFAULT_RETENTION_TTL_S,
    ) -> None:
        self._store = store
        self._discovery_ttl_ms = int(discovery_ttl_s * 1000)
        self._retention_ttl_ms = int(max(retention_ttl_s, discovery_ttl_s) * 1000)

    def announce_child(self, context: PendingLinkContext) -> bool:
        body = context.to_dict()
        saved = self._store.save(pending_key(context.parent_session_id, context.unit_id), body)
        retained = self._store.save(retained_key(context.parent_session_id, context.unit_id), body)
        return saved and retained

    def withdraw(self, parent_session_id: str, unit_id: str) -> bool:
        """The spawning unit finished: stop offering it for discovery."""
        return self._store.delete(pending_key(parent_session_id, unit_id))

    def _scan(self, prefix: str, ttl_ms: int, now_ms: int) -> List[Candidate]:
        """Live contexts under prefix; expired and unparsable records are deleted."""
        live: List[Candidate] = []
        for key in self._store.list_keys(prefix):
            ctx = PendingLinkContext.from_dict(self._store.load(key))
            if ctx is None or now_ms - ctx.created_at > ttl_ms:
                self._store.delete(key)
                continue
            live.append((key, ctx))
        return live

    @staticmethod
    def _pick(candidates: List[Candidate], token: Optional[str]) -> Optional[Candidate]:
        if not candidates:
            return None
        if token:
            for key, ctx in candidates:
                if ctx.propagation_token == token:
                    return key, ctx
        return max(candidates, key=lambda kc: kc[1].created_at)

    def find_best_match(
        self, child_propagation_token: Optional[str] = None, *, now_ms: Optional[int] = None
    ) -> Optional[PendingLinkContext]:
        """
        Exact token match wins; otherwise the most recently announced live
        context. Contexts past the discovery TTL are deleted as a side effect.
        """
        now = _now_ms() if now_ms is None else now_ms
        picked = self._pick(self._scan(PENDING_PREFIX, self._discovery_ttl_ms, now), child_propagation_token)
        return picked[1] if picked else None

    def find_and_remove_by_extended_match(
        self,
        child_session_id: str,
        child_propagation_token: Optional[str] = None,
        *,
        now_ms: Optional[int] = None,
    ) -> Optional[PendingLinkContext]:
        now = _now_ms() if now_ms is None else now_ms
        picked = self._pick(self._scan(RETAINED_PREFIX, self._retention_ttl_ms, now), child_propagation_token)
        if picked is None:
            return None
        key, ctx = picked
        self._store.delete(key)
        self._store.delete(pending_key(ctx.parent_session_id, ctx.unit_id))
        logger.debug("child session %s linked to %s/%s", child_session_id, ctx.parent_session_id, ctx.unit_id)
        return ctx

    def periodic_cleanup(self, *, now_ms: Optional[int] = None) -> int:
        """Drop discovery records past the discovery TTL and retained ones past the retention TTL."""
        now = _now_ms() if now_ms is None else now_ms
        before = len(self._store.list_keys(PENDING_PREFIX)) + len(self._store.list_keys(RETAINED_PREFIX))
        self._scan(PENDING_PREFIX, self._discovery_ttl_ms, now)
        self._scan(RETAINED_PREFIX, self._retention_ttl_ms, now)
        after = len(self._store.list_keys(PENDING_PREFIX)) + len(self._store.list_keys(RETAINED_PREFIX))
        return before - after
