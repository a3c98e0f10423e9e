from __future__ import annotations

import json
from typing import IO, Any, Dict, Iterator, Union


JsonDict = Dict[str, Any]


def read_jsonl(stream: IO[Union[str, bytes]]) -> Iterator[JsonDict]:
    """
    Yields parsed JSON objects from a JSONL stream until EOF.

    Best-effort: blank lines, invalid JSON and non-object values are skipped.
    A single pretty-printed JSON object (the agent runtime writes one hook
    payload per invocation) is accepted as well.
    """
    buffered: list[str] = []
    for line in stream:
        raw = line.decode("utf-8", errors="replace") if isinstance(line, bytes) else line
        stripped = raw.strip()
        if not stripped:
            continue
        if buffered:
            buffered.append(raw)
            obj = _try_parse("".join(buffered))
            if obj is not None:
                buffered.clear()
                if isinstance(obj, dict):
                    yield obj
                continue
            alone = _try_parse(stripped)
            if isinstance(alone, dict):
                # The buffered document never closed.
                buffered.clear()
                yield alone
            continue
        obj = _try_parse(stripped)
        if obj is None:
            # Start of a multi-line document.
            if stripped.startswith("{"):
                buffered.append(raw)
            continue
        if isinstance(obj, dict):
            yield obj


def _try_parse(raw: str) -> Any:
    try:
        return json.loads(raw)
    except ValueError:
        return None
