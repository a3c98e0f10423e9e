from .chain import ChainContext, ChainTracker
from .dedup import DedupLedger, fingerprint
from .metrics import AggregateMetrics, MetricsAggregator, compute_aggregate
from .models import ActiveSpanInfo, ChainState, PendingLinkContext, SessionMetrics, SessionState
from .pending_links import PendingLinkRegistry
from .sessions import SessionInfo, SessionRegistry
from .store import StateDirectoryError, StateStore, sanitize_key

__all__ = [
    "ActiveSpanInfo",
    "AggregateMetrics",
    "ChainContext",
    "ChainState",
    "ChainTracker",
    "DedupLedger",
    "MetricsAggregator",
    "PendingLinkContext",
    "PendingLinkRegistry",
    "SessionInfo",
    "SessionMetrics",
    "SessionRegistry",
    "SessionState",
    "StateDirectoryError",
    "StateStore",
    "compute_aggregate",
    "fingerprint",
    "sanitize_key",
]
