"""Pydantic models for transcripts, session snapshots and the resume registry."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from agentwatch.date_utils import parse_timestamp


# ── Transcript entries ──────────────────────────────────────────────

class _Block(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class TextBlock(_Block):
    type: Literal["text"] = "text"
    text: str = ""


class ToolUseBlock(_Block):
    type: Literal["tool_use"] = "tool_use"
    id: str = ""
    name: str = ""
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(_Block):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str = ""
    is_error: bool = False


class OtherBlock(_Block):
    type: str = ""


ContentBlock = Union[TextBlock, ToolUseBlock, ToolResultBlock, OtherBlock]

_BLOCK_TYPES: dict[str, type[_Block]] = {
    "text": TextBlock,
    "tool_use": ToolUseBlock,
    "tool_result": ToolResultBlock,
}


def _parse_block(raw: Any) -> ContentBlock | None:
    if not isinstance(raw, dict):
        return None
    block_type = raw.get("type")
    cls = _BLOCK_TYPES.get(block_type, OtherBlock) if isinstance(block_type, str) else OtherBlock
    try:
        return cls.model_validate(raw)
    except ValidationError:
        return OtherBlock(type=str(block_type or ""))


class Usage(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    cache_read_input_tokens: Optional[int] = None
    cache_creation_input_tokens: Optional[int] = None


class Message(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    role: Optional[str] = None
    model: Optional[str] = None
    stop_reason: Optional[str] = None
    content: Union[str, list[ContentBlock], None] = None
    usage: Optional[Usage] = None

    @field_validator("content", mode="before")
    @classmethod
    def _coerce_content(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        if isinstance(value, list):
            return [block for block in (_parse_block(item) for item in value) if block is not None]
        return None

    @property
    def blocks(self) -> list[ContentBlock]:
        return self.content if isinstance(self.content, list) else []

    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.blocks if isinstance(b, ToolUseBlock)]


class _EntryBase(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    sessionId: Optional[str] = None
    slug: Optional[str] = None
    cwd: Optional[str] = None
    gitBranch: Optional[str] = None
    version: Optional[str] = None
    timestamp: Optional[datetime] = None
    uuid: Optional[str] = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def _coerce_timestamp(cls, value: Any) -> datetime | None:
        return parse_timestamp(value)


class SystemEntry(_EntryBase):
    type: Literal["system"] = "system"
    subtype: Optional[str] = None


class UserEntry(_EntryBase):
    type: Literal["user"] = "user"
    message: Optional[Message] = None


class AssistantEntry(_EntryBase):
    type: Literal["assistant"] = "assistant"
    message: Optional[Message] = None


class OtherEntry(_EntryBase):
    type: str = ""


LogEntry = Union[SystemEntry, UserEntry, AssistantEntry, OtherEntry]

_ENTRY_TYPES: dict[str, type[_EntryBase]] = {
    "system": SystemEntry,
    "user": UserEntry,
    "assistant": AssistantEntry,
}


def parse_log_entry(raw: Any) -> LogEntry | None:
    """Validate one decoded transcript record into its tagged variant.

    Returns None when the record is not an object or fails validation.
    """
    if not isinstance(raw, dict):
        return None
    entry_type = raw.get("type")
    cls = _ENTRY_TYPES.get(entry_type, OtherEntry) if isinstance(entry_type, str) else OtherEntry
    try:
        return cls.model_validate(raw)
    except ValidationError:
        return None


# ── Session state ───────────────────────────────────────────────────

class ActivityPhase(str, Enum):
    WAITING_QUESTION = "waiting_question"
    WAITING_PERMISSION = "waiting_permission"
    INTERACTABLE = "interactable"
    BUSY = "busy"


class SessionState(str, Enum):
    ACTIVE = "active"
    IDLE = "idle"
    COMPLETED = "completed"
    STALE = "stale"


STATE_ORDER: dict[SessionState, int] = {
    SessionState.ACTIVE: 0,
    SessionState.IDLE: 1,
    SessionState.COMPLETED: 2,
    SessionState.STALE: 3,
}

def state_activity_key(state: SessionState, last_activity: datetime) -> tuple[int, float]:
    """Sort key: state priority first, then most recent activity."""
    return STATE_ORDER[state], -last_activity.timestamp()


WaitReason = Literal["user_question", "permission"]


class TokenCounts(BaseModel):
    model_config = ConfigDict(frozen=True)

    input: int = 0
    output: int = 0
    cached: int = 0


class SessionInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    sessionId: str = ""
    slug: str = ""
    cwd: str = ""
    gitBranch: Optional[str] = None
    version: Optional[str] = None
    model: Optional[str] = None
    turnCount: int = 0
    lastUserMessage: Optional[str] = None
    currentTools: list[str] = Field(default_factory=list)
    tokens: TokenCounts = Field(default_factory=TokenCounts)
    startedAt: datetime
    lastActivity: datetime
    waitReason: Optional[WaitReason] = None
    waitToolNames: list[str] = Field(default_factory=list)
    lastAssistantStopReason: Optional[str] = None


class ProcessInfo(BaseModel):
    pid: int
    sessionId: Optional[str] = None
    resumeId: Optional[str] = None
    cwd: str = ""
    cpuPercent: float = 0.0
    memMb: float = 0.0


class CandidateFile(BaseModel):
    path: str
    mtime: float  # epoch seconds
    sessionId: Optional[str] = None
    projectKey: Optional[str] = None


class SessionSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: str = "claude"
    sessionId: str
    projectPath: str = ""
    projectName: str = ""
    slug: str = ""
    state: SessionState = SessionState.ACTIVE

    pid: Optional[int] = None
    cpuPercent: Optional[float] = None
    memMb: Optional[float] = None

    model: Optional[str] = None
    gitBranch: Optional[str] = None
    version: Optional[str] = None
    turnCount: int = 0
    lastUserMessage: Optional[str] = None
    currentTools: list[str] = Field(default_factory=list)

    tokens: TokenCounts = Field(default_factory=TokenCounts)

    waitReason: Optional[WaitReason] = None
    waitToolNames: list[str] = Field(default_factory=list)

    startedAt: Optional[datetime] = None
    lastActivity: datetime

    activityPhase: Optional[ActivityPhase] = None
    transcriptPath: str = ""

    # Codex-only metadata
    originator: Optional[str] = None
    source: Optional[str] = None

    @property
    def dedup_key(self) -> str:
        return f"{self.provider}:{self.sessionId}"


class MonitorStatus(BaseModel):
    sessions: list[SessionSnapshot] = Field(default_factory=list)
    activeCount: int = 0
    totalCount: int = 0
    lastRefresh: datetime


class TokenUsageSession(BaseModel):
    provider: str = "claude"
    sessionId: str
    projectName: str = ""
    slug: str = ""
    state: SessionState
    model: Optional[str] = None
    tokens: TokenCounts = Field(default_factory=TokenCounts)
    estimatedCostUsd: float = 0.0
    lastActivity: datetime
    lastUserMessage: Optional[str] = None
    currentTools: list[str] = Field(default_factory=list)
    summary: str = ""


class TokenUsageTotals(BaseModel):
    input: int = 0
    output: int = 0
    cached: int = 0
    estimatedCostUsd: float = 0.0


class TokenUsageReport(BaseModel):
    timestamp: datetime
    sessions: list[TokenUsageSession] = Field(default_factory=list)
    totals: TokenUsageTotals = Field(default_factory=TokenUsageTotals)
    activeCount: int = 0
    totalCount: int = 0


# ── Resumable session registry ──────────────────────────────────────

class SessionRegistryRecord(BaseModel):
    sessionId: str
    provider: str = "codex"
    ownerUserId: str
    mappingKey: str = ""
    cwd: str = ""
    threadChannelId: str = ""
    parentChannelId: str = ""
    createdAt: int  # epoch milliseconds
    lastUsedAt: int
    archivedAt: Optional[int] = None


ResumeSource = Literal["explicit", "thread", "recent"]


class ResumeTargetFound(BaseModel):
    ok: Literal[True] = True
    source: ResumeSource
    record: SessionRegistryRecord


class ResumeTargetNotFound(BaseModel):
    ok: Literal[False] = False
    reason: Literal["not_found"] = "not_found"
    message: str


ResumeTargetResult = Union[ResumeTargetFound, ResumeTargetNotFound]
