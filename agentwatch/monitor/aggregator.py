"""Cross-provider session aggregation with coalesced delivery."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Protocol

from agentwatch.date_utils import utc_now
from agentwatch.models import (
    MonitorStatus,
    SessionSnapshot,
    SessionState,
    TokenUsageReport,
)
from agentwatch.monitor.provider import RefreshCallback, find_session, sort_snapshots
from agentwatch.monitor.token_usage import merge_token_usage_reports
from agentwatch.observability import record_callback_failure, record_delivery, start_span

logger = logging.getLogger("agentwatch.aggregator")


class SessionSource(Protocol):
    """What the aggregator needs from a provider monitor."""

    def subscribe(self, callback: RefreshCallback) -> None:
        ...

    async def start(self) -> None:
        ...

    async def stop(self) -> None:
        ...

    def get_token_usage_report(self) -> TokenUsageReport:
        ...


def merge_snapshots(snapshot_lists: list[list[SessionSnapshot]]) -> list[SessionSnapshot]:
    """Dedup on ``provider:sessionId`` keeping the fresher entry, drop stale, order."""
    merged: dict[str, SessionSnapshot] = {}
    for sessions in snapshot_lists:
        for snapshot in sessions:
            key = snapshot.dedup_key
            existing = merged.get(key)
            if existing is None or snapshot.lastActivity > existing.lastActivity:
                merged[key] = snapshot
    return sort_snapshots(list(merged.values()))


class SessionAggregator:
    """Fan-in of every provider monitor into one ordered session view.

    Each provider delivery replaces that provider's slot and requests a merge.
    Deliveries to consumers never overlap: a merge requested while one is
    running sets a single pending flag, and exactly one more pass runs once
    the current pass finishes.
    """

    def __init__(self) -> None:
        self._providers: dict[str, SessionSource] = {}
        self._sessions_by_provider: dict[str, list[SessionSnapshot]] = {}
        self._subscribers: list[RefreshCallback] = []
        self._emit_running = False
        self._emit_queued = False
        self.last_refresh: datetime = utc_now()

    def add_provider(self, name: str, provider: SessionSource) -> None:
        """Register a provider; call before ``start``."""
        self._providers[name] = provider

    @property
    def providers(self) -> dict[str, SessionSource]:
        return dict(self._providers)

    def subscribe(self, callback: RefreshCallback) -> None:
        self._subscribers.append(callback)

    async def start(self) -> None:
        for name, provider in self._providers.items():
            provider.subscribe(self._slot_updater(name))
            await provider.start()
        logger.info(f"Aggregator started with providers: {list(self._providers)}")

    async def stop(self) -> None:
        for provider in self._providers.values():
            await provider.stop()

    def _slot_updater(self, name: str) -> RefreshCallback:
        async def _update(sessions: list[SessionSnapshot]) -> None:
            self._sessions_by_provider[name] = list(sessions)
            await self.request_merge()

        return _update

    async def request_merge(self) -> None:
        if self._emit_running:
            if not self._emit_queued:
                logger.debug("Merge requested while running; queueing one extra pass")
            self._emit_queued = True
            return

        self._emit_running = True
        try:
            while True:
                self._emit_queued = False
                await self._emit_merged_once()
                if not self._emit_queued:
                    break
        finally:
            self._emit_running = False

    async def _emit_merged_once(self) -> None:
        self.last_refresh = utc_now()
        sessions = self.merge()
        with start_span("agentwatch.merge", {"sessions": len(sessions)}):
            for callback in list(self._subscribers):
                try:
                    await callback(sessions)
                except Exception:
                    logger.exception("Aggregated refresh subscriber failed")
                    record_callback_failure("aggregator")
        record_delivery("aggregator")

    def merge(self) -> list[SessionSnapshot]:
        return merge_snapshots(list(self._sessions_by_provider.values()))

    # ── queries ─────────────────────────────────────────────────────

    def get_all(self) -> list[SessionSnapshot]:
        return self.merge()

    def get_active(self) -> list[SessionSnapshot]:
        return [s for s in self.get_all() if s.state in (SessionState.ACTIVE, SessionState.IDLE)]

    def get_session(self, query: str) -> Optional[SessionSnapshot]:
        return find_session(self.get_all(), query)

    def get_status(self) -> MonitorStatus:
        sessions = self.get_all()
        return MonitorStatus(
            sessions=sessions,
            activeCount=sum(1 for s in sessions if s.state == SessionState.ACTIVE),
            totalCount=len(sessions),
            lastRefresh=self.last_refresh,
        )

    def get_token_usage_report(self) -> TokenUsageReport:
        """Merge provider reports; each provider has already applied its own pricing."""
        return merge_token_usage_reports(p.get_token_usage_report() for p in self._providers.values())
