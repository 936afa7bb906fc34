"""Parse Codex CLI rollout JSONL files into SessionInfo."""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from agentwatch import config
from agentwatch.date_utils import epoch_to_datetime, parse_timestamp
from agentwatch.models import SessionInfo, TokenCounts
from agentwatch.parsers.tailer import tail_jsonl

logger = logging.getLogger("agentwatch.parsers.codex")

_FIRST_LINE_READ_LIMIT = 2_000_000
_PREVIEW_LIMIT = 120
_MAX_TRACKED_TOOLS = 8
_WHITESPACE_PATTERN = re.compile(r"\s+")


@dataclass(frozen=True)
class CodexSessionMeta:
    session_id: str
    cwd: str
    git_branch: Optional[str]
    version: Optional[str]
    originator: Optional[str]
    source: Optional[str]
    started_at: Optional[datetime]


def _as_str(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value.strip():
        try:
            return int(float(value))
        except ValueError:
            return None
    return None


def _count(value: Any, fallback: int) -> int:
    parsed = _as_int(value)
    return fallback if parsed is None else parsed


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _preview(raw: str, limit: int = _PREVIEW_LIMIT) -> str:
    normalized = _WHITESPACE_PATTERN.sub(" ", raw).strip()
    if len(normalized) <= limit:
        return normalized
    return normalized[: max(0, limit - 3)] + "..."


def read_first_record(path: str | Path) -> Optional[dict[str, Any]]:
    """Decode the first line of a rollout file (the ``session_meta`` record)."""
    try:
        with Path(path).open("rb") as handle:
            head = handle.readline(_FIRST_LINE_READ_LIMIT)
            if head and not head.endswith(b"\n") and len(head) >= _FIRST_LINE_READ_LIMIT:
                # Oversized first line (large base instructions): read the rest of it.
                head += handle.readline()
    except OSError as exc:
        logger.warning(f"Failed to read rollout header {path}: {exc}")
        return None

    line = head.decode("utf-8", errors="replace").strip()
    if not line:
        return None
    try:
        parsed = json.loads(line)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def read_session_meta(path: str | Path) -> Optional[CodexSessionMeta]:
    first = read_first_record(path)
    if not first or first.get("type") != "session_meta":
        return None
    payload = _as_dict(first.get("payload"))
    session_id = _as_str(payload.get("id"))
    cwd = _as_str(payload.get("cwd"))
    if not session_id or not cwd:
        return None
    return CodexSessionMeta(
        session_id=session_id,
        cwd=cwd,
        git_branch=_as_str(_as_dict(payload.get("git")).get("branch")),
        version=_as_str(payload.get("cli_version")),
        originator=_as_str(payload.get("originator")),
        source=_as_str(payload.get("source")),
        started_at=parse_timestamp(payload.get("timestamp") or first.get("timestamp")),
    )


def reduce_rollout(
    records: list[dict[str, Any]],
    meta: CodexSessionMeta,
    mtime: float,
) -> SessionInfo:
    """Fold rollout tail records into SessionInfo.

    Token counters in rollouts are running totals, so the newest
    ``token_count`` event wins instead of being summed. Codex does not expose
    pending approvals in its rollouts, so no wait reason is derived.
    """
    model: Optional[str] = None
    turn_count = 0
    turn_context_count = 0
    last_user_message: Optional[str] = None
    tool_names: list[str] = []
    tokens = TokenCounts()
    fallback_activity = meta.started_at or epoch_to_datetime(mtime)
    last_activity = fallback_activity

    for record in records:
        ts = parse_timestamp(record.get("timestamp"))
        if ts is not None and ts > last_activity:
            last_activity = ts

        record_type = record.get("type")
        payload = _as_dict(record.get("payload"))

        if record_type == "turn_context":
            turn_context_count += 1
            model = _as_str(payload.get("model")) or model
            continue

        if record_type == "event_msg":
            event_type = _as_str(payload.get("type"))
            if event_type == "task_started":
                turn_count += 1
            elif event_type == "user_message":
                text = _as_str(payload.get("message"))
                if text:
                    last_user_message = _preview(text)
            elif event_type == "token_count":
                total = _as_dict(_as_dict(payload.get("info")).get("total_token_usage"))
                if total:
                    tokens = TokenCounts(
                        input=_count(total.get("input_tokens"), tokens.input),
                        output=_count(total.get("output_tokens"), tokens.output),
                        cached=_count(total.get("cached_input_tokens"), tokens.cached),
                    )
            continue

        if record_type == "response_item" and _as_str(payload.get("type")) == "function_call":
            name = _as_str(payload.get("name"))
            if name:
                if name in tool_names:
                    tool_names.remove(name)
                tool_names.append(name)
                del tool_names[:-_MAX_TRACKED_TOOLS]

    mtime_activity = epoch_to_datetime(mtime)
    return SessionInfo(
        sessionId=meta.session_id,
        slug=meta.session_id[:8],
        cwd=meta.cwd,
        gitBranch=meta.git_branch,
        version=meta.version,
        model=model,
        turnCount=turn_count if turn_count > 0 else turn_context_count,
        lastUserMessage=last_user_message,
        currentTools=tool_names,
        tokens=tokens,
        startedAt=meta.started_at or fallback_activity,
        lastActivity=max(last_activity, mtime_activity),
    )


def parse_rollout(path: str | Path, mtime: float, max_bytes: int = config.CODEX_TAIL_BYTES) -> Optional[tuple[CodexSessionMeta, SessionInfo]]:
    """Read a rollout's header and tail; None when the file is not a Codex session."""
    meta = read_session_meta(path)
    if meta is None:
        return None
    return meta, reduce_rollout(tail_jsonl(path, max_bytes), meta, mtime)
