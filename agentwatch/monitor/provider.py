"""Per-provider session monitors.

Each refresh asks the discovery collaborator for live processes and candidate
transcripts, re-reads only transcripts whose mtime changed, classifies every
session and hands the full snapshot list to subscribers.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Optional

from agentwatch import config
from agentwatch.date_utils import utc_now
from agentwatch.models import (
    ActivityPhase,
    CandidateFile,
    MonitorStatus,
    ProcessInfo,
    SessionInfo,
    SessionSnapshot,
    SessionState,
    TokenUsageReport,
    state_activity_key,
)
from agentwatch.monitor.activity_phase import phase_for_info
from agentwatch.monitor.discovery import SessionDiscovery, encode_project_key
from agentwatch.monitor.token_usage import (
    CLAUDE_COST_MODEL,
    CODEX_COST_MODEL,
    CostModel,
    build_token_usage_report,
)
from agentwatch.observability import (
    record_callback_failure,
    record_refresh,
    record_transcripts,
    start_span,
)
from agentwatch.parsers.platforms.registry import ParsedTranscript, parse_transcript

logger = logging.getLogger("agentwatch.monitor")

RefreshCallback = Callable[[list[SessionSnapshot]], Awaitable[None]]


@dataclass(frozen=True)
class _CacheEntry:
    mtime: float
    parsed: ParsedTranscript


def sort_snapshots(sessions: list[SessionSnapshot]) -> list[SessionSnapshot]:
    """Drop stale sessions and order by state priority, newest activity first."""
    live = [s for s in sessions if s.state != SessionState.STALE]
    live.sort(key=lambda s: state_activity_key(s.state, s.lastActivity))
    return live


def find_session(sessions: list[SessionSnapshot], query: str) -> Optional[SessionSnapshot]:
    """Match by exact id, then slug substring, id prefix or project name substring."""
    for session in sessions:
        if session.sessionId == query:
            return session
    q = query.lower()
    for session in sessions:
        if q in session.slug.lower():
            return session
        if session.sessionId.lower().startswith(q):
            return session
        if q in session.projectName.lower():
            return session
    return None


class ProviderSessionMonitor:
    """Tracks the sessions of one agent provider."""

    cost_model: CostModel = CLAUDE_COST_MODEL

    def __init__(
        self,
        provider: str,
        discovery: SessionDiscovery,
        *,
        poll_interval: float = config.CLAUDE_POLL_SECONDS,
        tail_bytes: Optional[int] = None,
        stale_horizon: float = config.STALE_HORIZON_SECONDS,
        active_window: float = config.ACTIVE_WINDOW_SECONDS,
        idle_window: float = config.IDLE_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.provider = provider
        self.discovery = discovery
        self.poll_interval = poll_interval
        self.tail_bytes = tail_bytes
        self.stale_horizon = stale_horizon
        self.active_window = active_window
        self.idle_window = idle_window
        self._clock = clock

        self._sessions: dict[str, SessionSnapshot] = {}
        self._mtime_cache: dict[str, _CacheEntry] = {}
        self._hook_phases: dict[str, ActivityPhase] = {}
        self._subscribers: list[RefreshCallback] = []
        self._refresh_running = False
        self._refresh_queued = False
        self._task: Optional[asyncio.Task] = None
        self.last_refresh: datetime = utc_now()

    # ── lifecycle ───────────────────────────────────────────────────

    def subscribe(self, callback: RefreshCallback) -> None:
        self._subscribers.append(callback)

    async def start(self) -> None:
        """Run an initial refresh and keep polling in a background task."""
        await self.refresh()
        if self.poll_interval > 0 and self._task is None:
            self._task = asyncio.create_task(self._poll_loop())
        logger.info(f"{self.provider} monitor started, {len(self._sessions)} sessions found")

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info(f"{self.provider} monitor stopped")

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            await self.refresh()

    # ── refresh ─────────────────────────────────────────────────────

    async def refresh(self) -> None:
        """Refresh now, or queue a single extra pass if one is already running."""
        if self._refresh_running:
            self._refresh_queued = True
            return

        self._refresh_running = True
        try:
            while True:
                self._refresh_queued = False
                await self._refresh_once()
                if not self._refresh_queued:
                    break
        finally:
            self._refresh_running = False

    async def _refresh_once(self) -> None:
        started = time.perf_counter()
        with start_span("agentwatch.refresh", {"provider": self.provider}):
            try:
                processes = await asyncio.to_thread(self.discovery.list_processes)
                candidates = await asyncio.to_thread(self.discovery.list_candidate_files)
                self._sessions = self._build_snapshots(processes, candidates, self._clock())
            except Exception:
                logger.exception(f"{self.provider} refresh failed")
                record_refresh(self.provider, "error", (time.perf_counter() - started) * 1000)
                return

        self.last_refresh = utc_now()
        record_refresh(self.provider, "ok", (time.perf_counter() - started) * 1000)
        await self.publish()

    async def publish(self) -> None:
        """Push the current snapshot list to subscribers without rescanning."""
        await self._notify(self.get_all())

    async def _notify(self, sessions: list[SessionSnapshot]) -> None:
        for callback in list(self._subscribers):
            try:
                await callback(sessions)
            except Exception:
                logger.exception(f"{self.provider} refresh subscriber failed")
                record_callback_failure(f"monitor:{self.provider}")

    def _build_snapshots(
        self,
        processes: list[ProcessInfo],
        candidates: list[CandidateFile],
        now: float,
    ) -> dict[str, SessionSnapshot]:
        by_session: dict[str, ProcessInfo] = {}
        by_project: dict[str, list[ProcessInfo]] = {}
        for proc in processes:
            if proc.sessionId:
                by_session[proc.sessionId] = proc
            if proc.resumeId:
                by_session[proc.resumeId] = proc
            if proc.cwd and not proc.sessionId and not proc.resumeId:
                by_project.setdefault(encode_project_key(proc.cwd), []).append(proc)

        # Newest first, so each process without ids takes the newest
        # transcript of its project that no other process claimed.
        ordered = sorted(candidates, key=lambda c: c.mtime, reverse=True)

        snapshots: dict[str, SessionSnapshot] = {}
        matched_pids: set[int] = set()
        seen_paths: set[str] = set()
        parsed_count = 0
        cached_count = 0

        for candidate in ordered:
            proc = by_session.get(candidate.sessionId) if candidate.sessionId else None
            if proc is None and candidate.projectKey:
                waiting = by_project.get(candidate.projectKey, [])
                while waiting and waiting[0].pid in matched_pids:
                    waiting.pop(0)
                if waiting:
                    proc = waiting.pop(0)

            if proc is None and now - candidate.mtime > self.stale_horizon:
                continue
            if proc is not None:
                matched_pids.add(proc.pid)

            cached = self._mtime_cache.get(candidate.path)
            if cached is not None and cached.mtime == candidate.mtime:
                parsed = cached.parsed
                cache_hit = True
                cached_count += 1
            else:
                parsed = parse_transcript(self.provider, candidate.path, candidate.mtime, self.tail_bytes)
                cache_hit = False
                parsed_count += 1
                if parsed is None:
                    self._mtime_cache.pop(candidate.path, None)
                    continue
                self._mtime_cache[candidate.path] = _CacheEntry(candidate.mtime, parsed)

            seen_paths.add(candidate.path)
            snapshot = self._make_snapshot(candidate, parsed, proc, now, cache_hit)
            if snapshot is None:
                continue
            existing = snapshots.get(snapshot.sessionId)
            if existing is None or snapshot.lastActivity > existing.lastActivity:
                snapshots[snapshot.sessionId] = snapshot

        for path in list(self._mtime_cache):
            if path not in seen_paths:
                del self._mtime_cache[path]
        for session_id in list(self._hook_phases):
            if session_id not in snapshots:
                del self._hook_phases[session_id]

        record_transcripts(self.provider, parsed=parsed_count, cached=cached_count)
        return snapshots

    def _make_snapshot(
        self,
        candidate: CandidateFile,
        parsed: ParsedTranscript,
        proc: Optional[ProcessInfo],
        now: float,
        cache_hit: bool,
    ) -> Optional[SessionSnapshot]:
        info = parsed.info
        session_id = info.sessionId or candidate.sessionId or ""
        if not session_id:
            return None

        if not cache_hit:
            self._hook_phases.pop(session_id, None)

        state = self.determine_state(proc, candidate.mtime, now)
        phase: Optional[ActivityPhase] = None
        if state == SessionState.ACTIVE:
            phase = self._hook_phases.get(session_id) or self.classify(info)

        project_path = info.cwd or (proc.cwd if proc else "")
        project_name = Path(project_path).name if project_path else (candidate.projectKey or "")

        return SessionSnapshot(
            provider=self.provider,
            sessionId=session_id,
            projectPath=project_path,
            projectName=project_name or project_path,
            slug=info.slug or session_id[:8],
            state=state,
            pid=proc.pid if proc else None,
            cpuPercent=proc.cpuPercent if proc else None,
            memMb=proc.memMb if proc else None,
            model=info.model,
            gitBranch=info.gitBranch,
            version=info.version,
            turnCount=info.turnCount,
            lastUserMessage=info.lastUserMessage,
            currentTools=list(info.currentTools),
            tokens=info.tokens,
            waitReason=info.waitReason,
            waitToolNames=list(info.waitToolNames),
            startedAt=info.startedAt,
            lastActivity=info.lastActivity,
            activityPhase=phase,
            transcriptPath=candidate.path,
            originator=parsed.originator,
            source=parsed.source,
        )

    def classify(self, info: SessionInfo) -> Optional[ActivityPhase]:
        return phase_for_info(info)

    def determine_state(self, proc: Optional[ProcessInfo], mtime: float, now: float) -> SessionState:
        age = now - mtime
        if proc is not None:
            return SessionState.ACTIVE if age < self.active_window else SessionState.IDLE
        return SessionState.COMPLETED if age < self.stale_horizon else SessionState.STALE

    # ── queries ─────────────────────────────────────────────────────

    def get_all(self) -> list[SessionSnapshot]:
        return sort_snapshots(list(self._sessions.values()))

    def get_active(self) -> list[SessionSnapshot]:
        return [s for s in self.get_all() if s.state in (SessionState.ACTIVE, SessionState.IDLE)]

    def get_session(self, query: str) -> Optional[SessionSnapshot]:
        exact = self._sessions.get(query)
        if exact is not None:
            return exact
        return find_session(list(self._sessions.values()), query)

    def get_status(self) -> MonitorStatus:
        sessions = self.get_all()
        return MonitorStatus(
            sessions=sessions,
            activeCount=sum(1 for s in sessions if s.state == SessionState.ACTIVE),
            totalCount=len(sessions),
            lastRefresh=self.last_refresh,
        )

    def get_token_usage_report(self) -> TokenUsageReport:
        return build_token_usage_report(self.get_active(), self.cost_model)

    # ── hook-driven transitions ─────────────────────────────────────

    def update_activity_phase(self, session_id: str, phase: ActivityPhase) -> bool:
        """Apply a hook-reported phase; kept until the transcript changes."""
        session = self._sessions.get(session_id)
        if session is None:
            return False
        self._hook_phases[session_id] = phase
        active = session.state == SessionState.ACTIVE
        self._sessions[session_id] = session.model_copy(update={"activityPhase": phase if active else None})
        return True

    def update_session_state(self, session_id: str, state: SessionState) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        update: dict = {"state": state}
        if state != SessionState.ACTIVE:
            update["activityPhase"] = None
            self._hook_phases.pop(session_id, None)
        self._sessions[session_id] = session.model_copy(update=update)
        return True

    def register_session(
        self,
        session_id: str,
        *,
        cwd: str = "",
        transcript_path: str = "",
        model: Optional[str] = None,
    ) -> SessionSnapshot:
        """Create or revive a session from a start hook; the next refresh fills it in."""
        existing = self._sessions.get(session_id)
        self._hook_phases[session_id] = ActivityPhase.BUSY
        if existing is not None:
            update: dict = {"state": SessionState.ACTIVE, "activityPhase": ActivityPhase.BUSY}
            if model:
                update["model"] = model
            snapshot = existing.model_copy(update=update)
        else:
            now = utc_now()
            snapshot = SessionSnapshot(
                provider=self.provider,
                sessionId=session_id,
                projectPath=cwd,
                projectName=Path(cwd).name if cwd else "unknown",
                slug=session_id[:8],
                state=SessionState.ACTIVE,
                model=model,
                startedAt=now,
                lastActivity=now,
                activityPhase=ActivityPhase.BUSY,
                transcriptPath=transcript_path,
            )
        self._sessions[session_id] = snapshot
        return snapshot


class ClaudeSessionMonitor(ProviderSessionMonitor):
    cost_model = CLAUDE_COST_MODEL

    def __init__(self, discovery: SessionDiscovery, **kwargs):
        kwargs.setdefault("poll_interval", config.CLAUDE_POLL_SECONDS)
        kwargs.setdefault("tail_bytes", config.TAIL_BYTES)
        super().__init__("claude", discovery, **kwargs)


class CodexSessionMonitor(ProviderSessionMonitor):
    """Codex rollouts carry no process data; state comes from file age alone."""

    cost_model = CODEX_COST_MODEL

    def __init__(self, discovery: SessionDiscovery, **kwargs):
        kwargs.setdefault("poll_interval", config.CODEX_POLL_SECONDS)
        kwargs.setdefault("tail_bytes", config.CODEX_TAIL_BYTES)
        super().__init__("codex", discovery, **kwargs)

    def classify(self, info: SessionInfo) -> Optional[ActivityPhase]:
        # Rollouts do not record approvals or stop codes; only hooks set a phase.
        return None

    def determine_state(self, proc: Optional[ProcessInfo], mtime: float, now: float) -> SessionState:
        age = max(0.0, now - mtime)
        if age < self.active_window:
            return SessionState.ACTIVE
        if age < self.idle_window:
            return SessionState.IDLE
        if age < self.stale_horizon:
            return SessionState.COMPLETED
        return SessionState.STALE
