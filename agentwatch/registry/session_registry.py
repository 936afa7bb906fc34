"""Resumable session registry with TTL eviction and optional JSON persistence."""
from __future__ import annotations

import asyncio
import json
import logging
import threading
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from agentwatch import config
from agentwatch.date_utils import now_ms
from agentwatch.models import (
    ResumeTargetFound,
    ResumeTargetNotFound,
    ResumeTargetResult,
    SessionRegistryRecord,
)

logger = logging.getLogger("agentwatch.registry")

STORE_VERSION = 1


class SessionRegistry:
    """Tracks resumable sessions by id and by conversation thread.

    Records whose ``lastUsedAt`` is older than the TTL are pruned lazily on
    every read or query. All timestamps are epoch milliseconds.
    """

    def __init__(self, ttl_ms: int = config.REGISTRY_TTL_MS, store_path: str | Path | None = None):
        self.ttl_ms = int(ttl_ms) if ttl_ms and ttl_ms > 0 else config.REGISTRY_TTL_MS
        self.store_path: Optional[Path] = Path(store_path).expanduser() if store_path else None
        self._sessions: dict[str, SessionRegistryRecord] = {}
        self._thread_to_session: dict[str, str] = {}

        self._write_lock = threading.Lock()
        self._write_seq = 0
        self._written_seq = 0
        self._pending_writes: set[asyncio.Future] = set()

    # ── persistence ─────────────────────────────────────────────────

    def load(self) -> bool:
        """Replace in-memory state from the store file.

        Returns False, leaving current state untouched, when the file is
        missing, empty, unreadable or not a version 1 payload.
        """
        if self.store_path is None or not self.store_path.exists():
            return False
        try:
            raw = self.store_path.read_text(encoding="utf-8")
        except OSError as exc:
            logger.warning(f"Failed to read session registry {self.store_path}: {exc}")
            return False
        if not raw.strip():
            return False

        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.warning(f"Invalid session registry payload, skipping load: {exc}")
            return False
        if (
            not isinstance(payload, dict)
            or payload.get("version") != STORE_VERSION
            or not isinstance(payload.get("sessions"), list)
        ):
            logger.warning("Invalid session registry payload, skipping load")
            return False

        sessions: dict[str, SessionRegistryRecord] = {}
        threads: dict[str, str] = {}
        for item in payload["sessions"]:
            try:
                record = SessionRegistryRecord.model_validate(item)
            except ValidationError:
                continue
            if not record.sessionId or not record.ownerUserId:
                continue
            sessions[record.sessionId] = record
            if record.threadChannelId:
                threads[record.threadChannelId] = record.sessionId

        self._sessions = sessions
        self._thread_to_session = threads
        self._prune_expired()
        logger.info(f"Loaded {len(self._sessions)} registry sessions from {self.store_path}")
        return True

    def _persist(self) -> None:
        if self.store_path is None:
            return

        payload = {
            "version": STORE_VERSION,
            "sessions": [
                r.model_dump(exclude_none=True)
                for r in sorted(self._sessions.values(), key=lambda r: r.lastUsedAt, reverse=True)
            ],
        }
        text = json.dumps(payload, indent=2) + "\n"
        self._write_seq += 1
        seq = self._write_seq

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is None:
            self._write_payload(text, seq)
            return
        future = asyncio.ensure_future(asyncio.to_thread(self._write_payload, text, seq))
        self._pending_writes.add(future)
        future.add_done_callback(self._pending_writes.discard)

    def _write_payload(self, text: str, seq: int) -> None:
        path = self.store_path
        if path is None:
            return
        with self._write_lock:
            if seq < self._written_seq:
                return
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                tmp_path = path.with_suffix(path.suffix + ".tmp")
                tmp_path.write_text(text, encoding="utf-8")
                tmp_path.replace(path)
                self._written_seq = seq
            except Exception as exc:  # noqa: BLE001
                logger.warning(f"Failed to persist session registry {path}: {exc}")

    async def flush(self) -> None:
        """Wait for scheduled store writes to finish."""
        if self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)

    # ── reads ───────────────────────────────────────────────────────

    def _prune_expired(self, now: Optional[int] = None) -> None:
        current = now_ms() if now is None else now
        for session_id, record in list(self._sessions.items()):
            if current - record.lastUsedAt <= self.ttl_ms:
                continue
            del self._sessions[session_id]
            if self._thread_to_session.get(record.threadChannelId) == session_id:
                del self._thread_to_session[record.threadChannelId]

    def get(self, session_id: str, now: Optional[int] = None) -> Optional[SessionRegistryRecord]:
        self._prune_expired(now)
        return self._sessions.get(session_id)

    def get_by_thread(self, thread_channel_id: str, now: Optional[int] = None) -> Optional[SessionRegistryRecord]:
        self._prune_expired(now)
        session_id = self._thread_to_session.get(thread_channel_id)
        if not session_id:
            return None
        return self._sessions.get(session_id)

    def list_sessions(
        self,
        *,
        owner_user_id: Optional[str] = None,
        mapping_key: Optional[str] = None,
        include_archived: bool = False,
        now: Optional[int] = None,
    ) -> list[SessionRegistryRecord]:
        """Non-expired records matching the filter, most recently used first."""
        self._prune_expired(now)
        items = [
            record
            for record in self._sessions.values()
            if (include_archived or record.archivedAt is None)
            and (not owner_user_id or record.ownerUserId == owner_user_id)
            and (not mapping_key or record.mappingKey == mapping_key)
        ]
        items.sort(key=lambda r: r.lastUsedAt, reverse=True)
        return items

    # ── writes ──────────────────────────────────────────────────────

    def upsert(
        self,
        session_id: str,
        *,
        owner_user_id: str,
        mapping_key: str,
        cwd: str,
        thread_channel_id: str,
        parent_channel_id: str,
        provider: str = "codex",
        timestamp: Optional[int] = None,
    ) -> SessionRegistryRecord:
        now = now_ms() if timestamp is None else timestamp
        self._prune_expired(now)

        existing = self._sessions.get(session_id)
        record = SessionRegistryRecord(
            sessionId=session_id,
            provider=provider,
            ownerUserId=owner_user_id,
            mappingKey=mapping_key,
            cwd=cwd,
            threadChannelId=thread_channel_id,
            parentChannelId=parent_channel_id,
            createdAt=existing.createdAt if existing else now,
            lastUsedAt=now,
            archivedAt=existing.archivedAt if existing else None,
        )

        if existing and existing.threadChannelId != thread_channel_id:
            if self._thread_to_session.get(existing.threadChannelId) == session_id:
                del self._thread_to_session[existing.threadChannelId]
        self._sessions[session_id] = record
        self._thread_to_session[thread_channel_id] = session_id
        self._persist()
        return record

    def touch(self, session_id: str, timestamp: Optional[int] = None) -> bool:
        """Bump ``lastUsedAt`` of a live record, keeping every other field.

        The thread index is left alone, so a thread re-pointed to a newer
        session stays with it.
        """
        now = now_ms() if timestamp is None else timestamp
        record = self.get(session_id, now=now)
        if record is None:
            return False
        self._sessions[session_id] = record.model_copy(update={"lastUsedAt": now})
        self._persist()
        return True

    def archive(self, session_id: str, timestamp: Optional[int] = None) -> bool:
        """Mark a session archived; idempotent. False when the id is unknown."""
        now = now_ms() if timestamp is None else timestamp
        self._prune_expired(now)
        existing = self._sessions.get(session_id)
        if existing is None:
            return False
        if existing.archivedAt is None:
            self._sessions[session_id] = existing.model_copy(update={"archivedAt": now})
            self._persist()
        return True

    # ── resume resolution ───────────────────────────────────────────

    def resolve_resume_target(
        self,
        *,
        owner_user_id: str,
        mapping_key: str,
        explicit_session_id: Optional[str] = None,
        thread_channel_id: Optional[str] = None,
        now: Optional[int] = None,
    ) -> ResumeTargetResult:
        """Pick the session to resume: explicit id, then thread, then most recent.

        Explicit and thread lookups are not owner-scoped; only the "recent"
        fallback filters by owner and mapping key.
        """
        current = now_ms() if now is None else now
        self._prune_expired(current)

        if explicit_session_id:
            explicit = self._sessions.get(explicit_session_id)
            if explicit is None:
                return ResumeTargetNotFound(message=f"Session not found: {explicit_session_id}")
            if explicit.archivedAt is not None:
                return ResumeTargetNotFound(message="Session is archived.")
            return ResumeTargetFound(source="explicit", record=explicit)

        if thread_channel_id:
            mapped_id = self._thread_to_session.get(thread_channel_id)
            mapped = self._sessions.get(mapped_id) if mapped_id else None
            if mapped is not None and mapped.archivedAt is None:
                return ResumeTargetFound(source="thread", record=mapped)

        recent = self.list_sessions(
            owner_user_id=owner_user_id,
            mapping_key=mapping_key,
            include_archived=False,
            now=current,
        )
        if recent:
            return ResumeTargetFound(source="recent", record=recent[0])

        return ResumeTargetNotFound(message="No recent session to resume.")
