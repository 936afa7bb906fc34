"""Read the trailing window of append-only JSONL transcripts."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from agentwatch import config
from agentwatch.models import LogEntry, parse_log_entry

logger = logging.getLogger("agentwatch.tailer")


def _read_tail(path: Path, max_bytes: int) -> tuple[bytes, int]:
    with path.open("rb") as handle:
        handle.seek(0, 2)
        size = handle.tell()
        start = max(0, size - max(0, int(max_bytes)))
        handle.seek(start)
        return handle.read(size - start), start


def tail_jsonl(path: str | Path, max_bytes: int = config.TAIL_BYTES) -> list[dict[str, Any]]:
    """Return decoded records from the last ``max_bytes`` of a JSONL file.

    When the window does not start at byte 0 the first line is assumed to be
    partial and dropped. Lines that are not valid JSON objects are skipped;
    the writer may have been interrupted mid-line. Read failures yield an
    empty list.
    """
    target = Path(path)
    try:
        data, start = _read_tail(target, max_bytes)
    except OSError as exc:
        logger.warning(f"Failed to read transcript {target}: {exc}")
        return []

    if not data:
        return []

    lines = data.decode("utf-8", errors="replace").split("\n")
    if start > 0:
        lines = lines[1:]

    records: list[dict[str, Any]] = []
    for line in lines:
        trimmed = line.strip()
        if not trimmed:
            continue
        try:
            parsed = json.loads(trimmed)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            records.append(parsed)
    return records


def tail_log_entries(path: str | Path, max_bytes: int = config.TAIL_BYTES) -> list[LogEntry]:
    """Tail a Claude-style transcript into validated log entries."""
    entries: list[LogEntry] = []
    for record in tail_jsonl(path, max_bytes):
        entry = parse_log_entry(record)
        if entry is not None:
            entries.append(entry)
    return entries
