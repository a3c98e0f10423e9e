from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Optional


_TOKEN_RE = re.compile(r"^([0-9a-f]{2})-([0-9a-f]{32})-([0-9a-f]{16})-([0-9a-f]{2})$")
_ZERO_TRACE = "0" * 32
_ZERO_SPAN = "0" * 16

TOKEN_VERSION = "00"
SAMPLED = "01"


@dataclass(frozen=True)
class SpanContext:
    trace_id: str
    span_id: str
    flags: str = SAMPLED

    def to_token(self) -> str:
        return format_token(self.trace_id, self.span_id, self.flags)


def format_token(trace_id: str, span_id: str, flags: str = SAMPLED) -> str:
    """Encode trace/span identity as a W3C traceparent string."""
    return f"{TOKEN_VERSION}-{trace_id.lower()}-{span_id.lower()}-{flags.lower()}"


def parse_token(token: Any) -> Optional[SpanContext]:
    """
    Parse a traceparent string. Anything malformed (wrong width, non-hex,
    the reserved ff version, all-zero ids) parses to None.
    """
    if not isinstance(token, str):
        return None
    m = _TOKEN_RE.match(token.strip().lower())
    if not m:
        return None
    version, trace_id, span_id, flags = m.groups()
    if version == "ff" or trace_id == _ZERO_TRACE or span_id == _ZERO_SPAN:
        return None
    return SpanContext(trace_id=trace_id, span_id=span_id, flags=flags)


def token_for(trace_id: Optional[str], span_id: Optional[str]) -> Optional[str]:
    if not trace_id or not span_id:
        return None
    token = format_token(trace_id, span_id)
    return token if parse_token(token) else None
