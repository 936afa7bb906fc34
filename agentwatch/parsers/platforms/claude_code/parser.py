"""Reduce Claude Code transcript entries into SessionInfo."""
from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Optional, Sequence

from agentwatch import config
from agentwatch.date_utils import utc_now
from agentwatch.models import (
    AssistantEntry,
    LogEntry,
    SessionInfo,
    TextBlock,
    TokenCounts,
    ToolResultBlock,
    UserEntry,
)
from agentwatch.parsers.tailer import tail_log_entries

ASK_USER_TOOL = "AskUserQuestion"
_USER_MESSAGE_LIMIT = 100


def _truncate(text: str, limit: int = _USER_MESSAGE_LIMIT) -> str:
    return text[:limit] + "…" if len(text) > limit else text


def _user_text(entry: UserEntry) -> Optional[str]:
    message = entry.message
    if message is None:
        return None
    if isinstance(message.content, str):
        return message.content or None
    first_text = next((b for b in message.blocks if isinstance(b, TextBlock) and b.text), None)
    return first_text.text if first_text else None


def _pending_tools(entries: Sequence[LogEntry]) -> tuple[Optional[str], list[str]]:
    """Find tool invocations of the newest assistant entry still lacking results.

    Only the newest assistant entry is inspected; the scan never looks at
    earlier history. This is O(window) per call, bounded by the tail window.
    """
    for index in range(len(entries) - 1, -1, -1):
        entry = entries[index]
        if not isinstance(entry, AssistantEntry):
            continue

        tool_uses = [b for b in entry.message.tool_uses() if b.id] if entry.message else []
        if not tool_uses:
            return None, []

        resolved: set[str] = set()
        for later in entries[index + 1:]:
            if not isinstance(later, UserEntry) or later.message is None:
                continue
            for block in later.message.blocks:
                if isinstance(block, ToolResultBlock) and block.tool_use_id:
                    resolved.add(block.tool_use_id)

        pending = [t for t in tool_uses if t.id not in resolved]
        if not pending:
            return None, []
        reason = "user_question" if any(t.name == ASK_USER_TOOL for t in pending) else "permission"
        return reason, [t.name for t in pending if t.name]
    return None, []


def last_assistant_stop_reason(entries: Sequence[LogEntry]) -> Optional[str]:
    """Stop code of the newest assistant entry, or None once a user entry follows it."""
    for entry in reversed(entries):
        if isinstance(entry, UserEntry):
            return None
        if isinstance(entry, AssistantEntry):
            return entry.message.stop_reason if entry.message else None
    return None


def extract_session_info(entries: Sequence[LogEntry], now: datetime | None = None) -> SessionInfo:
    """Fold transcript entries, oldest first, into a single SessionInfo."""
    session_id = ""
    slug = ""
    cwd = ""
    git_branch: Optional[str] = None
    version: Optional[str] = None
    model: Optional[str] = None
    turn_count = 0
    last_user_message: Optional[str] = None
    current_tools: list[str] = []
    input_tokens = 0
    output_tokens = 0
    cached_tokens = 0
    started_at: Optional[datetime] = None
    last_activity: Optional[datetime] = None

    for entry in entries:
        if entry.sessionId:
            session_id = entry.sessionId
        if entry.slug:
            slug = entry.slug
        if entry.cwd:
            cwd = entry.cwd
        if entry.gitBranch:
            git_branch = entry.gitBranch
        if entry.version:
            version = entry.version

        ts = entry.timestamp
        if ts is not None:
            if started_at is None or ts < started_at:
                started_at = ts
            if last_activity is None or ts > last_activity:
                last_activity = ts

        if isinstance(entry, UserEntry):
            turn_count += 1
            text = _user_text(entry)
            if text:
                last_user_message = _truncate(text)
            continue

        if isinstance(entry, AssistantEntry) and entry.message is not None:
            message = entry.message
            if message.model:
                model = message.model
            if message.usage is not None:
                input_tokens += message.usage.input_tokens or 0
                output_tokens += message.usage.output_tokens or 0
                cached_tokens += message.usage.cache_read_input_tokens or 0
            tools = [b.name for b in message.tool_uses() if b.name]
            if tools:
                current_tools = tools

    wait_reason, wait_tool_names = _pending_tools(entries)
    fallback = now or utc_now()

    return SessionInfo(
        sessionId=session_id,
        slug=slug,
        cwd=cwd,
        gitBranch=git_branch,
        version=version,
        model=model,
        turnCount=turn_count,
        lastUserMessage=last_user_message,
        currentTools=current_tools,
        tokens=TokenCounts(input=input_tokens, output=output_tokens, cached=cached_tokens),
        startedAt=started_at or fallback,
        lastActivity=last_activity or fallback,
        waitReason=wait_reason,
        waitToolNames=wait_tool_names,
        lastAssistantStopReason=last_assistant_stop_reason(entries),
    )


def extract_last_assistant_response(path: str | Path, max_length: int = 1900) -> Optional[str]:
    """Return the text of the newest assistant reply in a transcript.

    Only ``text`` blocks are considered; tool invocations and thinking blocks
    are skipped. Long replies are cut to ``max_length`` with a ``...`` suffix.
    """
    entries = tail_log_entries(path, config.TAIL_BYTES)
    for entry in reversed(entries):
        if not isinstance(entry, AssistantEntry) or entry.message is None:
            continue
        parts = [b.text for b in entry.message.blocks if isinstance(b, TextBlock) and b.text]
        full_text = "\n".join(parts).strip()
        if not full_text:
            continue
        if len(full_text) > max_length:
            return full_text[:max_length] + "..."
        return full_text
    return None
