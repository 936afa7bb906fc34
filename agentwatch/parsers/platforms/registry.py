"""Transcript reader registry for provider-specific implementations."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from agentwatch import config
from agentwatch.models import SessionInfo
from agentwatch.parsers.platforms.claude_code.parser import extract_session_info
from agentwatch.parsers.platforms.codex.parser import parse_rollout
from agentwatch.parsers.tailer import tail_log_entries


@dataclass(frozen=True)
class ParsedTranscript:
    info: SessionInfo
    originator: Optional[str] = None
    source: Optional[str] = None


TranscriptReader = Callable[[Path, float, Optional[int]], Optional[ParsedTranscript]]


def _read_claude(path: Path, mtime: float, max_bytes: Optional[int]) -> Optional[ParsedTranscript]:
    entries = tail_log_entries(path, max_bytes or config.TAIL_BYTES)
    if not entries:
        return None
    return ParsedTranscript(info=extract_session_info(entries))


def _read_codex(path: Path, mtime: float, max_bytes: Optional[int]) -> Optional[ParsedTranscript]:
    parsed = parse_rollout(path, mtime, max_bytes or config.CODEX_TAIL_BYTES)
    if parsed is None:
        return None
    meta, info = parsed
    return ParsedTranscript(info=info, originator=meta.originator, source=meta.source)


_READERS: dict[str, TranscriptReader] = {
    "claude": _read_claude,
    "codex": _read_codex,
}


def parse_transcript(
    provider: str,
    path: str | Path,
    mtime: float,
    max_bytes: Optional[int] = None,
) -> Optional[ParsedTranscript]:
    """Parse a transcript by delegating to the provider's reader.

    Returns None for unknown providers and for transcripts with no usable
    content this cycle.
    """
    reader = _READERS.get(provider)
    if reader is None:
        return None
    return reader(Path(path), mtime, max_bytes)
