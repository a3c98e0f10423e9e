from __future__ import annotations

import datetime
import hashlib
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

from langfuse import Langfuse
from langfuse.api import IngestionEvent_SpanUpdate, UpdateSpanBody

from ..shared.config import LangfuseSettings
from ..shared.propagation import token_for


logger = logging.getLogger(__name__)


def _format_span_id(span_id_int: int) -> str:
    return format(span_id_int, "016x")


def _span_id_hex(span_obj: Any) -> Optional[str]:
    span_id = getattr(span_obj, "id", None)
    if isinstance(span_id, str) and span_id:
        return span_id
    # Best-effort: LangfuseSpan/LangfuseGeneration holds an OTEL span.
    otel_span = getattr(span_obj, "_otel_span", None)
    if otel_span is None:
        return None
    try:
        ctx = otel_span.get_span_context()
        return _format_span_id(ctx.span_id)
    except Exception:
        return None


def _iso_from_ms(ts_ms: int) -> str:
    return datetime.datetime.fromtimestamp(ts_ms / 1000.0, tz=datetime.timezone.utc).isoformat()


def _dt_from_ms(ts_ms: Optional[int]) -> Optional[datetime.datetime]:
    if ts_ms is None:
        return None
    return datetime.datetime.fromtimestamp(ts_ms / 1000.0, tz=datetime.timezone.utc)


def score_idempotency_key(observation_id: str, score_name: str) -> str:
    return hashlib.sha256(f"{observation_id}:{score_name}".encode("utf-8")).hexdigest()[:32]


def _trace_context(trace_id: str, parent_span_id: Optional[str]) -> Dict[str, str]:
    ctx = {"trace_id": trace_id}
    if parent_span_id:
        ctx["parent_span_id"] = parent_span_id
    return ctx


@dataclass
class ObservationHandle:
    """An observation created by this process; `span` is the live SDK object."""

    observation_id: str
    trace_id: str
    name: str
    span: Any = None
    parent_span_id: Optional[str] = None
    started_at_ms: int = 0
    ended: bool = False

    @property
    def propagation_token(self) -> Optional[str]:
        return token_for(self.trace_id, self.observation_id)


class TracingBackend:
    """
    Thin adapter over the Langfuse client. Every call is best-effort: SDK
    failures are reported (rate limited) and swallowed.
    """

    def __init__(self, client: Any) -> None:
        self._client = client
        self._last_error_ts = 0.0

    @classmethod
    def create(cls, settings: LangfuseSettings) -> Optional["TracingBackend"]:
        if not settings.configured:
            return None
        client = Langfuse(
            public_key=settings.public_key,
            secret_key=settings.secret_key,
            base_url=settings.base_url,
            flush_at=15,
            flush_interval=10,
        )
        return cls(client)

    def _report_error(self, err: BaseException) -> None:
        # Avoid noisy logs; report at most once per 10s.
        now = time.time()
        if now - self._last_error_ts >= 10.0:
            logger.warning("Langfuse client error: %r", err)
            self._last_error_ts = now
        else:
            logger.debug("Langfuse client error: %r", err)

    @staticmethod
    def trace_id_for(seed: str) -> str:
        return Langfuse.create_trace_id(seed=seed)

    def start_observation(
        self,
        *,
        name: str,
        trace_id: str,
        parent_span_id: Optional[str] = None,
        as_type: str = "span",
        input_data: Any = None,
        metadata: Optional[Dict[str, Any]] = None,
        started_at_ms: Optional[int] = None,
    ) -> Optional[ObservationHandle]:
        try:
            span = self._client.start_observation(
                trace_context=_trace_context(trace_id, parent_span_id),
                name=name,
                as_type=as_type,
                input=input_data,
                metadata=metadata,
            )
        except Exception as err:
            self._report_error(err)
            return None
        span_id = _span_id_hex(span)
        if not span_id:
            return None
        return ObservationHandle(
            observation_id=span_id,
            trace_id=getattr(span, "trace_id", None) or trace_id,
            name=name,
            span=span,
            parent_span_id=parent_span_id,
            started_at_ms=started_at_ms if started_at_ms is not None else int(time.time() * 1000),
        )

    def update_trace(
        self,
        handle: ObservationHandle,
        *,
        name: str,
        session_id: str,
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        tags: Optional[list[str]] = None,
    ) -> None:
        if handle.span is None:
            return
        try:
            handle.span.update_trace(name=name, session_id=session_id, user_id=user_id, metadata=metadata, tags=tags)
        except Exception as err:
            self._report_error(err)

    def finish(
        self,
        handle: ObservationHandle,
        *,
        output: Any = None,
        level: Optional[str] = None,
        status_message: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        if handle.ended or handle.span is None:
            return
        handle.ended = True
        try:
            if output is not None or level or status_message or metadata:
                handle.span.update(output=output, level=level, status_message=status_message, metadata=metadata)
        except Exception as err:
            self._report_error(err)
        try:
            handle.span.end()
        except Exception as err:
            self._report_error(err)

    def upsert_observation(
        self,
        *,
        observation_id: str,
        trace_id: str,
        name: Optional[str] = None,
        parent_observation_id: Optional[str] = None,
        output: Any = None,
        level: Optional[str] = None,
        status_message: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        start_time_ms: Optional[int] = None,
        end_time_ms: Optional[int] = None,
    ) -> bool:
        """
        Update an observation created by another process. The ingestion API
        merges updates by id, so replays of the same completion converge on
        one observation.
        """
        try:
            body = UpdateSpanBody(
                id=observation_id,
                trace_id=trace_id,
                name=name,
                parent_observation_id=parent_observation_id,
                start_time=_dt_from_ms(start_time_ms),
                end_time=_dt_from_ms(end_time_ms or int(time.time() * 1000)),
                output=output,
                level=level,
                status_message=status_message,
                metadata=metadata,
            )
            event = IngestionEvent_SpanUpdate(
                id=str(uuid.uuid4()),
                timestamp=_iso_from_ms(int(time.time() * 1000)),
                body=body,
            )
            self._client.api.ingestion.batch(batch=[event])
            return True
        except Exception as err:
            self._report_error(err)
            return False

    def record_generation(
        self,
        *,
        trace_id: str,
        parent_span_id: Optional[str],
        name: str,
        model: Optional[str],
        usage: Dict[str, int],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            gen = self._client.start_observation(
                trace_context=_trace_context(trace_id, parent_span_id),
                name=name,
                as_type="generation",
                model=model,
                metadata=metadata,
            )
        except Exception as err:
            self._report_error(err)
            return
        try:
            gen.update(usage_details=usage or None)
        except Exception as err:
            self._report_error(err)
        try:
            gen.end()
        except Exception as err:
            self._report_error(err)

    def record_event(
        self,
        *,
        trace_id: str,
        parent_span_id: Optional[str],
        name: str,
        level: str = "DEFAULT",
        status_message: Optional[str] = None,
        input_data: Any = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[str]:
        try:
            event = self._client.create_event(
                trace_context=_trace_context(trace_id, parent_span_id),
                name=name,
                input=input_data,
                level=level,
                status_message=status_message,
                metadata=metadata,
            )
        except Exception as err:
            self._report_error(err)
            return None
        return _span_id_hex(event)

    def create_score(
        self,
        *,
        name: str,
        value: Any,
        trace_id: str,
        observation_id: Optional[str],
        data_type: str,
        comment: Optional[str] = None,
    ) -> None:
        """Raises on failure; callers run this as a best-effort task."""
        self._client.create_score(
            name=name,
            value=value,
            trace_id=trace_id,
            observation_id=observation_id,
            score_id=score_idempotency_key(observation_id or trace_id, name),
            data_type=data_type,
            comment=comment,
        )

    def flush(self) -> None:
        try:
            self._client.flush()
        except Exception as err:
            # Surface flush issues (auth/network).
            self._report_error(err)
