from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from pathlib import Path
from typing import IO, Any, Optional

from .logs.log_manager import EventJournal, configure_logging
from .metadata import collect_git_metadata
from .shared.config import Settings, load_settings
from .shared.event_types import parse_event
from .shared.ipc import read_jsonl
from .state.store import StateDirectoryError, StateStore
from .tracing.backend import TracingBackend
from .tracing.processor import HookEventProcessor


logger = logging.getLogger("hooktrace.main")


def build_processor(settings: Settings, backend: TracingBackend) -> HookEventProcessor:
    """Raises StateDirectoryError when the state directory is unusable."""
    store = StateStore(settings.state_dir)
    return HookEventProcessor(
        backend,
        store,
        settings=settings,
        journal=EventJournal(settings.logs_dir) if settings.debug else None,
        metadata_collector=collect_git_metadata,
        inherited_token=os.environ.get("TRACEPARENT"),
    )


def run(processor: HookEventProcessor, stream: IO[Any]) -> int:
    """Process every event on the stream, then close the processor. Returns the handled count."""
    handled = 0
    last_error = 0.0
    try:
        for raw in read_jsonl(stream):
            event = parse_event(raw)
            if event is None:
                logger.debug("dropping event failing shape check: %s", sorted(raw.keys()))
                continue
            try:
                processor.handle(event)
                handled += 1
            except Exception as err:
                # Don't spam logs; surface errors at most once per 10s.
                now = time.time()
                if now - last_error >= 10.0:
                    logger.warning("event %s failed: %r", event.hook_name, err)
                    last_error = now
                logger.debug("event failure detail", exc_info=True)
    finally:
        processor.close()
    return handled


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="hooktrace", add_help=True)
    parser.add_argument("--input", help="Path to a JSONL event file (default: stdin)")
    parser.add_argument("--state-dir", help="Directory for cross-process state")
    parser.add_argument("--debug", action="store_true", help="Verbose logging and per-session event journal")
    args = parser.parse_args(argv)

    settings = load_settings(
        state_dir=Path(args.state_dir) if args.state_dir else None,
        debug=True if args.debug else None,
    )
    configure_logging(debug=settings.debug, logs_dir=settings.logs_dir)

    if not settings.enabled:
        logger.debug("tracing disabled by HOOKTRACE_ENABLED")
        return 0
    backend = TracingBackend.create(settings.langfuse)
    if backend is None:
        logger.debug(
            "Langfuse disabled (public_key_set=%s secret_key_set=%s base_url=%s)",
            bool(settings.langfuse.public_key),
            bool(settings.langfuse.secret_key),
            settings.langfuse.base_url,
        )
        return 0

    try:
        processor = build_processor(settings, backend)
    except StateDirectoryError as err:
        logger.error("%s", err)
        return 1
    if args.input:
        with open(Path(args.input).expanduser(), "r", encoding="utf-8") as f:
            run(processor, f)
    else:
        run(processor, sys.stdin)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
