from __future__ import annotations

import datetime
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from ..shared.event_types import HookEvent
from ..state.store import sanitize_key


JsonDict = Dict[str, Any]

LOGGER_NAME = "hooktrace"
_FORMAT = "[hooktrace] %(asctime)s %(levelname)s %(name)s: %(message)s"


def _compact_json(obj: Any) -> str:
    try:
        return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), default=str)
    except (TypeError, ValueError):
        return json.dumps({"unserializable": True, "repr": repr(obj)}, separators=(",", ":"))


def _iso_from_ts_ms(ts_ms: Any) -> Optional[str]:
    if not isinstance(ts_ms, (int, float)):
        return None
    try:
        return datetime.datetime.fromtimestamp(float(ts_ms) / 1000.0, tz=datetime.timezone.utc).isoformat()
    except (OverflowError, OSError, ValueError):
        return None


def _now_ms() -> int:
    return int(datetime.datetime.now(tz=datetime.timezone.utc).timestamp() * 1000)


def configure_logging(*, debug: bool = False, logs_dir: Optional[Path] = None) -> logging.Logger:
    """
    Route the package's loggers to stderr (the agent runtime shows hook
    stderr only on failure), plus a file under logs_dir in debug mode.
    """
    root = logging.getLogger(LOGGER_NAME)
    root.setLevel(logging.DEBUG if debug else logging.WARNING)
    root.propagate = False
    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()

    formatter = logging.Formatter(_FORMAT)
    stderr = logging.StreamHandler(sys.stderr)
    stderr.setFormatter(formatter)
    stderr.setLevel(logging.DEBUG if debug else logging.WARNING)
    root.addHandler(stderr)

    if debug and logs_dir is not None:
        try:
            logs_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
            fh = logging.FileHandler(logs_dir / "hooktrace.log", encoding="utf-8")
        except OSError as err:
            root.warning("file logging disabled: %r", err)
        else:
            fh.setFormatter(formatter)
            fh.setLevel(logging.DEBUG)
            root.addHandler(fh)
    return root


class EventJournal:
    """Append-only per-session record of handled events, one compact JSON line each."""

    def __init__(self, base_dir: Path) -> None:
        self._base_dir = base_dir

    def _path(self, session_id: str) -> Path:
        return self._base_dir / f"{sanitize_key(session_id)}.jsonl"

    def write(self, event: HookEvent, outcome: Optional[str]) -> None:
        ts = event.timestamp_ms if event.timestamp_ms is not None else _now_ms()
        line = _compact_json(
            {
                "at": _iso_from_ts_ms(ts),
                "pid": os.getpid(),
                "kind": event.kind.value,
                "hook": event.hook_name,
                "unitName": event.unit_name,
                "unitId": event.unit_id,
                "parentUnitId": event.parent_unit_id,
                "outcome": outcome,
            }
        )
        try:
            self._base_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
            with self._path(event.session_id).open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as err:
            logging.getLogger(__name__).debug("journal write failed: %r", err)
