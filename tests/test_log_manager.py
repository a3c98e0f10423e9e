"""Tests for logging setup and the per-session event journal."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from hooktrace.logs.log_manager import LOGGER_NAME, EventJournal, configure_logging
from hooktrace.shared.event_types import parse_event


def test_journal_appends_one_line_per_event(tmp_path: Path) -> None:
    journal = EventJournal(tmp_path / "logs")
    event = parse_event(
        {"eventKind": "pre_unit", "sessionId": "../s1", "workingDirectory": "/repo", "unitName": "Bash",
         "unitId": "u1", "timestamp": 0}
    )
    journal.write(event, "start")
    journal.write(event, "duplicate_start")

    files = list((tmp_path / "logs").iterdir())
    assert len(files) == 1
    assert files[0].parent == tmp_path / "logs"
    rows = [json.loads(line) for line in files[0].read_text(encoding="utf-8").splitlines()]
    assert [r["outcome"] for r in rows] == ["start", "duplicate_start"]
    assert rows[0]["kind"] == "pre_unit"
    assert rows[0]["at"].startswith("1970-01-01")


def test_processor_writes_journal(tmp_path: Path, backend, make_processor) -> None:
    p = make_processor(backend, journal=EventJournal(tmp_path / "journal"))
    p.handle(parse_event({"eventKind": "Stop", "sessionId": "s1", "workingDirectory": "/repo"}))
    assert (tmp_path / "journal" / "s1.jsonl").exists()


def test_configure_logging_debug_adds_file(tmp_path: Path) -> None:
    logger = configure_logging(debug=True, logs_dir=tmp_path / "logs")
    try:
        assert logger.name == LOGGER_NAME
        assert logger.level == logging.DEBUG
        logging.getLogger("hooktrace.tracing.processor").debug("hello from processor")
        for h in logger.handlers:
            h.flush()
        assert "hello from processor" in (tmp_path / "logs" / "hooktrace.log").read_text(encoding="utf-8")
    finally:
        configure_logging(debug=False)


def test_configure_logging_is_idempotent() -> None:
    configure_logging(debug=False)
    logger = configure_logging(debug=False)
    assert len(logger.handlers) == 1
    assert logger.level == logging.WARNING
