from __future__ import annotations

import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..shared.config import DEFAULT_CHILD_UNITS, Settings
from ..shared.event_types import ChildLink, EventKind, HookEvent
from ..shared.propagation import parse_token, token_for
from ..state.chain import ChainContext, ChainTracker
from ..state.dedup import DedupLedger, fingerprint
from ..state.metrics import AggregateMetrics, MetricsAggregator, compute_aggregate
from ..state.models import ActiveSpanInfo, PendingLinkContext
from ..state.pending_links import PendingLinkRegistry
from ..state.sessions import SESSION_PREFIX, SessionInfo, SessionRegistry, elapsed_ms
from ..state.store import StateStore
from .analysis import UnitOutcome, analyze_result, incomplete
from .backend import ObservationHandle, TracingBackend
from .tasks import BestEffortTasks


JsonDict = Dict[str, Any]

logger = logging.getLogger(__name__)

STALE_SESSION_AGE_S = 24 * 60 * 60
MAX_CONTEXT_STR = 2000

# Unit end resolution paths, recorded on every finished observation.
RESOLVED_IN_MEMORY = "in_memory"
RESOLVED_CROSS_PROCESS = "cross_process"
RESOLVED_CROSS_PROCESS_LEGACY = "cross_process_legacy"
RESOLVED_NO_PERSIST = "no_persist"
RESOLVED_ORPHAN = "orphan"


def _now_ms() -> int:
    return int(time.time() * 1000)


def _random_span_id() -> str:
    return uuid.uuid4().hex[:16]


def _compact(val: Any, depth: int = 0) -> Any:
    """Shrink a payload for storage in the active span table."""
    if isinstance(val, str):
        return val if len(val) <= MAX_CONTEXT_STR else val[:MAX_CONTEXT_STR] + "..."
    if depth >= 4:
        return None
    if isinstance(val, dict):
        return {str(k): _compact(v, depth + 1) for k, v in list(val.items())[:50]}
    if isinstance(val, list):
        return [_compact(v, depth + 1) for v in val[:50]]
    return val


def health_category(failure_count: int) -> str:
    if failure_count <= 0:
        return "healthy"
    if failure_count <= 3:
        return "degraded"
    return "unhealthy"


@dataclass
class ProcessRegistry:
    """Observations created by this process and still open; lives as long as the process."""

    roots: Dict[str, ObservationHandle] = field(default_factory=dict)
    units: Dict[Tuple[str, str], ObservationHandle] = field(default_factory=dict)

    def root(self, session_id: str) -> Optional[ObservationHandle]:
        return self.roots.get(session_id)

    def unit(self, session_id: str, unit_id: Optional[str]) -> Optional[ObservationHandle]:
        if not unit_id:
            return None
        return self.units.get((session_id, unit_id))

    def add_unit(self, session_id: str, unit_id: str, handle: ObservationHandle) -> None:
        self.units[(session_id, unit_id)] = handle

    def pop_unit(self, session_id: str, unit_id: Optional[str]) -> Optional[ObservationHandle]:
        if not unit_id:
            return None
        return self.units.pop((session_id, unit_id), None)

    def pop_session_units(self, session_id: str) -> List[Tuple[str, ObservationHandle]]:
        keys = [k for k in self.units if k[0] == session_id]
        return [(k[1], self.units.pop(k)) for k in keys]


@dataclass(frozen=True)
class ResolvedUnit:
    path: str
    trace_id: str
    observation_id: Optional[str]
    duration_ms: Optional[int] = None


class HookEventProcessor:
    """
    Turns one process's stream of hook events into Langfuse observations,
    using the shared state directory to pick up work that other processes
    started.
    """

    def __init__(
        self,
        backend: TracingBackend,
        store: StateStore,
        *,
        settings: Optional[Settings] = None,
        registry: Optional[ProcessRegistry] = None,
        tasks: Optional[BestEffortTasks] = None,
        journal: Any = None,
        metadata_collector: Optional[Callable[[str], JsonDict]] = None,
        inherited_token: Optional[str] = None,
    ) -> None:
        self.backend = backend
        self.store = store
        self.registry = registry or ProcessRegistry()
        self.tasks = tasks or BestEffortTasks()
        self.sessions = SessionRegistry(store)
        self.pending = PendingLinkRegistry(
            store,
            **(
                {"discovery_ttl_s": settings.discovery_ttl_s, "retention_ttl_s": settings.retention_ttl_s}
                if settings
                else {}
            ),
        )
        self.dedup = DedupLedger(self.sessions, **({"cap": settings.dedup_cap} if settings else {}))
        self.chain = ChainTracker(self.sessions)
        self.metrics = MetricsAggregator(self.sessions)
        self.child_units = settings.child_units if settings else DEFAULT_CHILD_UNITS
        self._journal = journal
        self._metadata_collector = metadata_collector
        self._inherited_token = inherited_token if parse_token(inherited_token) else None

    def handle(self, event: HookEvent) -> Optional[str]:
        """Process one event; returns a short label of what was done (for journaling and tests)."""
        if event.kind == EventKind.PRE_UNIT:
            outcome = self._on_unit_start(event)
        elif event.kind == EventKind.POST_UNIT:
            outcome = self._on_unit_end(event)
        elif event.kind == EventKind.CHECKPOINT:
            outcome = self._on_checkpoint(event)
        elif event.kind == EventKind.SESSION_START:
            outcome = self._on_session_start(event)
        elif event.kind == EventKind.CHILD_ANNOUNCE:
            outcome = self._on_child_announce(event)
        elif event.kind == EventKind.CHILD_COMPLETE:
            outcome = self._on_child_complete(event)
        elif event.kind == EventKind.SESSION_END:
            outcome = self._on_session_end(event)
        else:  # pragma: no cover - EventKind is closed
            outcome = None
        if self._journal is not None:
            self._journal.write(event, outcome)
        return outcome

    def close(self) -> None:
        """
        End observations still open in this process so they are exported.
        Their active span entries stay on disk for whichever process sees
        the matching end event.
        """
        for (_sid, unit_id), handle in list(self.registry.units.items()):
            self.backend.finish(handle, metadata={"unitId": unit_id, "awaitingCompletion": True})
        self.registry.units.clear()
        for handle in list(self.registry.roots.values()):
            self.backend.finish(handle)
        self.registry.roots.clear()
        self.tasks.drain()
        self.backend.flush()

    def _event_ts(self, event: HookEvent) -> int:
        return event.timestamp_ms if event.timestamp_ms is not None else _now_ms()

    def _child_token(self, event: HookEvent) -> Optional[str]:
        if isinstance(event.body, ChildLink) and parse_token(event.body.propagation_token):
            return event.body.propagation_token
        return self._inherited_token

    def _ensure_session(self, event: HookEvent) -> SessionInfo:
        sid = event.session_id
        info = self.sessions.get_session_info(sid)
        if info is not None:
            if not info.propagation_token:
                info = self.sessions.init_session(
                    sid, info.trace_id, info.root_span_id, token_for(info.trace_id, info.root_span_id)
                )
            return info

        link = self.pending.find_best_match(self._child_token(event))
        if link is not None and link.parent_session_id == sid:
            link = None
        trace_id = link.trace_id if link else self.backend.trace_id_for(sid)
        parent_span_id = link.observation_id if link else None

        metadata: JsonDict = {"workingDirectory": event.working_directory}
        if self._metadata_collector is not None:
            metadata.update(self._metadata_collector(event.working_directory))
        if link:
            metadata.update({"parentSessionId": link.parent_session_id, "parentUnitId": link.unit_id})

        root = self.backend.start_observation(
            name=f"session_{sid[:8]}",
            trace_id=trace_id,
            parent_span_id=parent_span_id,
            as_type="agent" if link else "span",
            metadata=metadata,
            started_at_ms=self._event_ts(event),
        )
        root_span_id = root.observation_id if root else _random_span_id()
        info = self.sessions.init_session(
            sid,
            trace_id,
            root_span_id,
            token_for(trace_id, root_span_id),
            parent_link=link.to_dict() if link else None,
        )
        if root is None:
            return info
        if info.root_span_id != root.observation_id:
            # Another process initialized the session first.
            self.backend.finish(root, level="DEBUG", status_message="superseded")
            return info

        self.registry.roots[sid] = root
        if not link:
            self.backend.update_trace(
                root,
                name=f"session_{sid[:8]}",
                session_id=sid,
                user_id=event.user_id,
                metadata=metadata,
                tags=["hooktrace"],
            )
        logger.debug("session %s initialized (trace=%s linked=%s)", sid, trace_id, bool(link))
        return info

    def _session_parent(self, info: SessionInfo) -> str:
        """Span id that session-level observations attach to."""
        root = self.registry.root(info.session_id)
        if root is not None:
            return root.observation_id
        ctx = parse_token(info.propagation_token)
        return ctx.span_id if ctx else info.root_span_id

    def _is_child_kind(self, unit_name: Optional[str]) -> bool:
        return bool(unit_name) and unit_name in self.child_units

    def _on_unit_start(self, event: HookEvent) -> str:
        sid = event.session_id
        info = self._ensure_session(event)
        unit_name = event.unit_name or "unknown_unit"
        unit_id = event.unit_id
        if unit_id and self.registry.unit(sid, unit_id) is not None:
            return "duplicate_start"

        parent_handle = self.registry.unit(sid, event.parent_unit_id)
        parent_span_id = parent_handle.observation_id if parent_handle else self._session_parent(info)
        is_child = self._is_child_kind(unit_name)
        started_at = self._event_ts(event)

        handle = self.backend.start_observation(
            name=unit_name,
            trace_id=info.trace_id,
            parent_span_id=parent_span_id,
            as_type="agent" if is_child else "tool",
            input_data=event.body.input,
            metadata={"unitId": unit_id, "parentUnitId": event.parent_unit_id},
            started_at_ms=started_at,
        )
        if not unit_id:
            # Nothing can find this unit again; keep it open until close().
            if handle is not None:
                self.registry.add_unit(sid, f"anon:{handle.observation_id}", handle)
            return "start_untracked"

        if handle is not None:
            self.registry.add_unit(sid, unit_id, handle)
        span_id = handle.observation_id if handle else _random_span_id()
        self.sessions.register_active_span(
            sid,
            unit_id,
            ActiveSpanInfo(
                span_id=span_id,
                observation_id=handle.observation_id if handle else None,
                started_at_ms=started_at,
                trace_id=info.trace_id,
                parent_span_id=parent_span_id,
                parent_observation_id=parent_handle.observation_id if parent_handle else None,
                propagation_token=token_for(info.trace_id, span_id),
                original_context={"unitName": unit_name, "input": _compact(event.body.input)},
                parent_unit_id=event.parent_unit_id,
                unit_name=unit_name,
                pid=os.getpid(),
            ),
        )
        if is_child and handle is not None:
            self.pending.announce_child(
                PendingLinkContext(
                    propagation_token=handle.propagation_token or token_for(info.trace_id, span_id) or "",
                    trace_id=info.trace_id,
                    observation_id=handle.observation_id,
                    parent_session_id=sid,
                    unit_id=unit_id,
                    child_kind=unit_name,
                    created_at=_now_ms(),
                )
            )
        return "start"

    def _end_metadata(
        self, outcome: UnitOutcome, chain: ChainContext, cascade: bool, path: str, duration_ms: Optional[int]
    ) -> JsonDict:
        meta: JsonDict = {
            "resolution": path,
            "chainPosition": chain.position,
            "precedingUnit": chain.preceding_unit,
            "precedingSucceeded": chain.preceding_succeeded,
        }
        if duration_ms is not None:
            meta["durationMs"] = duration_ms
        if not outcome.succeeded:
            meta.update({"errorCategory": outcome.category, "severity": outcome.severity, "cascade": cascade})
        return meta

    def _create_finished(
        self,
        *,
        name: str,
        trace_id: str,
        parent_span_id: Optional[str],
        input_data: Any,
        output: Any,
        outcome: UnitOutcome,
        metadata: JsonDict,
    ) -> Optional[str]:
        handle = self.backend.start_observation(
            name=name, trace_id=trace_id, parent_span_id=parent_span_id, as_type="tool", input_data=input_data
        )
        if handle is None:
            return None
        self.backend.finish(
            handle, output=output, level=outcome.level, status_message=outcome.message, metadata=metadata
        )
        return handle.observation_id

    def _on_unit_end(self, event: HookEvent) -> str:
        sid = event.session_id
        info = self._ensure_session(event)
        unit_name = event.unit_name or "unknown_unit"
        unit_id = event.unit_id
        ended_at = self._event_ts(event)
        output = event.body.response

        outcome = analyze_result(output)
        chain = self.chain.get_context(sid)
        cascade = not outcome.succeeded and chain.follows_failure

        def meta(path: str, duration: Optional[int]) -> JsonDict:
            return self._end_metadata(outcome, chain, cascade, path, duration)

        resolved: ResolvedUnit
        handle = self.registry.pop_unit(sid, unit_id)
        persisted = self.sessions.pop_active_span(sid, unit_id) if unit_id else None

        if handle is not None:
            duration = max(0, ended_at - handle.started_at_ms)
            self.backend.finish(
                handle,
                output=output,
                level=outcome.level,
                status_message=outcome.message,
                metadata=meta(RESOLVED_IN_MEMORY, duration),
            )
            resolved = ResolvedUnit(RESOLVED_IN_MEMORY, handle.trace_id, handle.observation_id, duration)
        elif persisted is not None:
            duration = elapsed_ms(persisted, ended_at)
            trace_id = persisted.trace_id or info.trace_id
            if persisted.observation_id:
                self.backend.upsert_observation(
                    observation_id=persisted.observation_id,
                    trace_id=trace_id,
                    name=unit_name,
                    parent_observation_id=persisted.parent_span_id,
                    output=output,
                    level=outcome.level,
                    status_message=outcome.message,
                    metadata=meta(RESOLVED_CROSS_PROCESS, duration),
                    start_time_ms=persisted.started_at_ms,
                    end_time_ms=ended_at,
                )
                resolved = ResolvedUnit(RESOLVED_CROSS_PROCESS, trace_id, persisted.observation_id, duration)
            else:
                # Legacy entry without an observation id: may show up twice in the trace.
                ctx = parse_token(persisted.propagation_token)
                original = persisted.original_context or {}
                obs_id = self._create_finished(
                    name=unit_name,
                    trace_id=ctx.trace_id if ctx else trace_id,
                    parent_span_id=ctx.span_id if ctx else persisted.parent_span_id,
                    input_data=original.get("input", event.body.input),
                    output=output,
                    outcome=outcome,
                    metadata=meta(RESOLVED_CROSS_PROCESS_LEGACY, duration),
                )
                resolved = ResolvedUnit(RESOLVED_CROSS_PROCESS_LEGACY, trace_id, obs_id, duration)
        elif unit_id:
            logger.info("no persisted span for unit %s in session %s; attaching to session root", unit_id, sid)
            obs_id = self._create_finished(
                name=unit_name,
                trace_id=info.trace_id,
                parent_span_id=self._session_parent(info),
                input_data=event.body.input,
                output=output,
                outcome=outcome,
                metadata=meta(RESOLVED_NO_PERSIST, None),
            )
            resolved = ResolvedUnit(RESOLVED_NO_PERSIST, info.trace_id, obs_id)
        else:
            obs_id = self._create_finished(
                name=unit_name,
                trace_id=info.trace_id,
                parent_span_id=info.root_span_id,
                input_data=event.body.input,
                output=output,
                outcome=outcome,
                metadata=meta(RESOLVED_ORPHAN, None),
            )
            resolved = ResolvedUnit(RESOLVED_ORPHAN, info.trace_id, obs_id)

        is_child = self._is_child_kind(unit_name)
        if is_child and unit_id:
            self.pending.withdraw(sid, unit_id)

        self.chain.update(sid, unit_name, outcome.succeeded)
        usage = event.token_usage.as_dict() if event.token_usage else None
        self.metrics.record(
            sid,
            unit_name,
            is_child,
            outcome.succeeded,
            error_type=outcome.category,
            duration_ms=resolved.duration_ms,
            tokens=usage,
            model=event.model,
        )
        if usage and resolved.observation_id:
            self.backend.record_generation(
                trace_id=resolved.trace_id,
                parent_span_id=resolved.observation_id,
                name=f"model:{event.model or 'unknown'}",
                model=event.model,
                usage=usage,
            )
        self._score_unit(resolved, outcome, cascade)
        return resolved.path

    def _score(
        self,
        name: str,
        value: Any,
        data_type: str,
        *,
        trace_id: str,
        observation_id: Optional[str],
        comment: Optional[str] = None,
    ) -> None:
        self.tasks.submit(
            f"score:{name}",
            self.backend.create_score,
            name=name,
            value=value,
            trace_id=trace_id,
            observation_id=observation_id,
            data_type=data_type,
            comment=comment,
        )

    def _score_unit(self, resolved: ResolvedUnit, outcome: UnitOutcome, cascade: bool) -> None:
        if resolved.observation_id is None:
            return
        target = {"trace_id": resolved.trace_id, "observation_id": resolved.observation_id}
        self._score("unit_success", 1 if outcome.succeeded else 0, "BOOLEAN", comment=outcome.message, **target)
        if outcome.succeeded:
            return
        self._score("failure_severity", outcome.severity, "CATEGORICAL", comment=outcome.category, **target)
        self._score("cascade_failure", 1 if cascade else 0, "BOOLEAN", **target)

    def _on_checkpoint(self, event: HookEvent) -> str:
        sid = event.session_id
        info = self._ensure_session(event)
        ts = self._event_ts(event)
        fp = fingerprint(f"checkpoint:{event.body.name}", event.unit_id, now_ms=ts)
        if self.dedup.check_and_mark(sid, fp):
            return "duplicate"
        self.dedup.prune_aged(sid, now_ms=ts)

        self.backend.record_event(
            trace_id=info.trace_id,
            parent_span_id=self._session_parent(info),
            name=f"checkpoint:{event.body.name}",
            input_data=event.body.detail,
            metadata={"hook": event.hook_name, "unitId": event.unit_id},
        )
        if event.body.name == "PreCompact":
            # Compaction starts a fresh chain of units.
            self.chain.reset(sid)
        return "checkpoint"

    def _on_session_start(self, event: HookEvent) -> str:
        info = self._ensure_session(event)
        fp = fingerprint("session_start", event.body.reason, now_ms=self._event_ts(event))
        if self.dedup.check_and_mark(event.session_id, fp):
            return "duplicate"
        self.backend.record_event(
            trace_id=info.trace_id,
            parent_span_id=self._session_parent(info),
            name="session:start",
            metadata={"reason": event.body.reason, "workingDirectory": event.working_directory},
        )
        return "session_start"

    def _on_child_announce(self, event: HookEvent) -> str:
        sid = event.session_id
        info = self._ensure_session(event)
        fp = fingerprint("child_announce", event.body.child_id, now_ms=self._event_ts(event))
        if self.dedup.check_and_mark(sid, fp):
            return "duplicate"
        link = PendingLinkContext.from_dict(info.parent_link) or self.pending.find_best_match(self._child_token(event))
        if link is None or link.parent_session_id == sid:
            self.backend.record_event(
                trace_id=info.trace_id,
                parent_span_id=self._session_parent(info),
                name="child:announce",
                metadata={"childId": event.body.child_id, "linked": False},
            )
            return "child_unlinked"
        self.backend.record_event(
            trace_id=link.trace_id,
            parent_span_id=link.observation_id,
            name="child:announce",
            metadata={
                "childId": event.body.child_id,
                "childSessionId": sid,
                "childTraceId": info.trace_id,
                "linked": True,
            },
        )
        return "child_linked"

    def _on_child_complete(self, event: HookEvent) -> str:
        sid = event.session_id
        info = self.sessions.get_session_info(sid)
        stable_id = event.body.child_id or event.unit_id
        if info is not None:
            fp = fingerprint("child_complete", stable_id, now_ms=self._event_ts(event))
            if self.dedup.check_and_mark(sid, fp):
                return "duplicate"

        token = self._child_token(event)
        link = self.pending.find_and_remove_by_extended_match(sid, token)
        aggregate = compute_aggregate(self.metrics.snapshot(sid))
        metadata: JsonDict = {
            "childId": event.body.child_id,
            "childSessionId": sid,
            "childKind": event.unit_name,
            "metrics": aggregate.as_metadata(),
        }
        if link is not None:
            metadata.update({"parentSessionId": link.parent_session_id, "parentUnitId": link.unit_id})
            self.backend.record_event(
                trace_id=link.trace_id,
                parent_span_id=link.observation_id,
                name=f"child:complete:{link.child_kind or 'child'}",
                input_data=event.body.detail,
                metadata=metadata,
            )
            return "child_complete_linked"
        if info is not None:
            self.backend.record_event(
                trace_id=info.trace_id,
                parent_span_id=self._session_parent(info),
                name="child:complete",
                input_data=event.body.detail,
                metadata=metadata,
            )
            return "child_complete_session"
        logger.info("child completion in %s has no linkage or session; recording orphan event", sid)
        self.backend.record_event(
            trace_id=self.backend.trace_id_for(sid),
            parent_span_id=None,
            name="child:complete:orphan",
            input_data=event.body.detail,
            metadata=metadata,
        )
        return "child_complete_orphan"

    def _on_session_end(self, event: HookEvent) -> str:
        sid = event.session_id
        info = self.sessions.get_session_info(sid)
        ended_at = self._event_ts(event)

        leftovers = self.registry.pop_session_units(sid)
        for unit_id, handle in leftovers:
            outcome = incomplete("session ended before the unit finished")
            self.backend.finish(
                handle,
                level=outcome.level,
                status_message=outcome.message,
                metadata={"unitId": unit_id, "errorCategory": outcome.category},
            )
            if info is not None and not unit_id.startswith("anon:"):
                self.sessions.pop_active_span(sid, unit_id)

        if info is None:
            logger.info("session end for unknown session %s", sid)
            self._run_cleanup()
            return "session_end_unknown"

        aggregate = compute_aggregate(self.metrics.snapshot(sid))
        health = health_category(aggregate.failure_count)
        summary: JsonDict = dict(aggregate.as_metadata(), health=health, incompleteUnits=len(leftovers))
        summary["reason"] = event.body.reason

        self.backend.record_event(
            trace_id=info.trace_id,
            parent_span_id=self._session_parent(info),
            name="session:end",
            metadata=summary,
        )
        root = self.registry.roots.pop(sid, None)
        if root is not None:
            self.backend.finish(root, output=summary, metadata={"health": health})
        else:
            self.backend.upsert_observation(
                observation_id=info.root_span_id,
                trace_id=info.trace_id,
                output=summary,
                metadata={"health": health},
                end_time_ms=ended_at,
            )
        self._score_session(info, aggregate, health)

        self.sessions.delete_session(sid)
        self._run_cleanup()
        return "session_end"

    def _score_session(self, info: SessionInfo, aggregate: AggregateMetrics, health: str) -> None:
        target = {"trace_id": info.trace_id, "observation_id": info.root_span_id}
        self._score("session_success_rate", aggregate.success_rate, "NUMERIC", **target)
        self._score("session_health", health, "CATEGORICAL", **target)
        if aggregate.dominant_failure_mode:
            self._score("dominant_failure_mode", aggregate.dominant_failure_mode, "CATEGORICAL", **target)

    def _run_cleanup(self) -> None:
        self.store.cleanup_stale(STALE_SESSION_AGE_S, prefix=SESSION_PREFIX)
        self.pending.periodic_cleanup()
