import asyncio
import unittest
from datetime import datetime, timedelta, timezone

from agentwatch.models import (
    SessionSnapshot,
    SessionState,
    TokenCounts,
    TokenUsageReport,
    TokenUsageSession,
    TokenUsageTotals,
)
from agentwatch.monitor.aggregator import SessionAggregator, merge_snapshots

BASE = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def _snapshot(provider: str, session_id: str, *, state=SessionState.ACTIVE, minutes_ago: int = 0) -> SessionSnapshot:
    return SessionSnapshot(
        provider=provider,
        sessionId=session_id,
        projectName="proj",
        state=state,
        lastActivity=BASE - timedelta(minutes=minutes_ago),
    )


class _MockProvider:
    def __init__(self, report: TokenUsageReport | None = None) -> None:
        self.callbacks = []
        self.started = False
        self.stopped = False
        self.report = report or TokenUsageReport(timestamp=BASE)

    def subscribe(self, callback) -> None:
        self.callbacks.append(callback)

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.stopped = True

    def get_token_usage_report(self) -> TokenUsageReport:
        return self.report

    async def emit_refresh(self, sessions) -> None:
        for callback in self.callbacks:
            await callback(sessions)


class SessionAggregatorTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.claude = _MockProvider()
        self.codex = _MockProvider()
        self.aggregator = SessionAggregator()
        self.aggregator.add_provider("claude", self.claude)
        self.aggregator.add_provider("codex", self.codex)
        await self.aggregator.start()

    async def test_start_and_stop_reach_every_provider(self) -> None:
        self.assertTrue(self.claude.started and self.codex.started)
        await self.aggregator.stop()
        self.assertTrue(self.claude.stopped and self.codex.stopped)

    async def test_merges_sessions_from_all_providers(self) -> None:
        await self.claude.emit_refresh([_snapshot("claude", "c1", minutes_ago=5)])
        await self.codex.emit_refresh([_snapshot("codex", "x1", minutes_ago=1)])

        merged = self.aggregator.get_all()

        self.assertEqual([s.dedup_key for s in merged], ["codex:x1", "claude:c1"])

    async def test_same_session_id_across_providers_is_not_merged(self) -> None:
        await self.claude.emit_refresh([_snapshot("claude", "same")])
        await self.codex.emit_refresh([_snapshot("codex", "same")])

        self.assertEqual(len(self.aggregator.get_all()), 2)

    async def test_provider_slot_is_replaced_on_each_delivery(self) -> None:
        await self.claude.emit_refresh([_snapshot("claude", "c1"), _snapshot("claude", "c2")])
        await self.claude.emit_refresh([_snapshot("claude", "c2")])

        self.assertEqual([s.sessionId for s in self.aggregator.get_all()], ["c2"])

    async def test_subscribers_receive_merged_list(self) -> None:
        received: list[list[str]] = []

        async def consumer(sessions):
            received.append([s.dedup_key for s in sessions])

        self.aggregator.subscribe(consumer)
        await self.claude.emit_refresh([_snapshot("claude", "c1")])
        await self.codex.emit_refresh([_snapshot("codex", "x1", minutes_ago=3)])

        self.assertEqual(received, [["claude:c1"], ["claude:c1", "codex:x1"]])

    async def test_overlapping_refreshes_are_coalesced(self) -> None:
        calls = 0
        in_flight = 0
        max_in_flight = 0

        async def slow_consumer(sessions):
            nonlocal calls, in_flight, max_in_flight
            calls += 1
            in_flight += 1
            max_in_flight = max(max_in_flight, in_flight)
            await asyncio.sleep(0.04)
            in_flight -= 1

        self.aggregator.subscribe(slow_consumer)
        await asyncio.gather(
            self.claude.emit_refresh([_snapshot("claude", "c1")]),
            self.codex.emit_refresh([_snapshot("codex", "x1")]),
            self.claude.emit_refresh([_snapshot("claude", "c2")]),
        )

        self.assertEqual(calls, 2)
        self.assertEqual(max_in_flight, 1)
        self.assertEqual({s.sessionId for s in self.aggregator.get_all()}, {"c2", "x1"})

    async def test_failing_subscriber_does_not_stop_delivery(self) -> None:
        received = []

        async def broken(sessions):
            raise RuntimeError("chat down")

        async def healthy(sessions):
            received.append(len(sessions))

        self.aggregator.subscribe(broken)
        self.aggregator.subscribe(healthy)
        with self.assertLogs("agentwatch.aggregator", level="ERROR"):
            await self.claude.emit_refresh([_snapshot("claude", "c1")])

        self.assertEqual(received, [1])

    async def test_stale_sessions_are_dropped(self) -> None:
        await self.claude.emit_refresh([
            _snapshot("claude", "live"),
            _snapshot("claude", "old", state=SessionState.STALE),
        ])

        self.assertEqual([s.sessionId for s in self.aggregator.get_all()], ["live"])

    async def test_queries(self) -> None:
        await self.claude.emit_refresh([
            _snapshot("claude", "abc-123", minutes_ago=1),
            _snapshot("claude", "done-1", state=SessionState.COMPLETED),
        ])

        self.assertEqual(self.aggregator.get_session("abc").sessionId, "abc-123")
        self.assertEqual([s.sessionId for s in self.aggregator.get_active()], ["abc-123"])
        status = self.aggregator.get_status()
        self.assertEqual((status.activeCount, status.totalCount), (1, 2))

    async def test_token_reports_are_summed_without_repricing(self) -> None:
        self.claude.report = TokenUsageReport(
            timestamp=BASE,
            sessions=[TokenUsageSession(
                provider="claude", sessionId="c1", state=SessionState.ACTIVE, lastActivity=BASE,
                tokens=TokenCounts(input=100, output=10), estimatedCostUsd=1.25,
            )],
            totals=TokenUsageTotals(input=100, output=10, estimatedCostUsd=1.25),
        )
        self.codex.report = TokenUsageReport(
            timestamp=BASE,
            sessions=[TokenUsageSession(
                provider="codex", sessionId="x1", state=SessionState.IDLE, lastActivity=BASE,
                tokens=TokenCounts(input=50, output=5, cached=20), estimatedCostUsd=0.5,
            )],
            totals=TokenUsageTotals(input=50, output=5, cached=20, estimatedCostUsd=0.5),
        )

        report = self.aggregator.get_token_usage_report()

        self.assertEqual((report.totals.input, report.totals.output, report.totals.cached), (150, 15, 20))
        self.assertAlmostEqual(report.totals.estimatedCostUsd, 1.75)
        self.assertEqual([s.sessionId for s in report.sessions], ["c1", "x1"])
        self.assertEqual((report.activeCount, report.totalCount), (1, 2))


class MergeSnapshotsTests(unittest.TestCase):
    def test_duplicate_key_keeps_fresher_snapshot(self) -> None:
        older = _snapshot("claude", "s", minutes_ago=10)
        newer = _snapshot("claude", "s", minutes_ago=1)

        merged = merge_snapshots([[older], [newer]])

        self.assertEqual(merged, [newer])

    def test_orders_by_state_then_recency(self) -> None:
        idle = _snapshot("claude", "idle", state=SessionState.IDLE)
        active_old = _snapshot("codex", "a-old", minutes_ago=30)
        active_new = _snapshot("claude", "a-new", minutes_ago=1)
        done = _snapshot("codex", "done", state=SessionState.COMPLETED)

        merged = merge_snapshots([[idle, done], [active_old, active_new]])

        self.assertEqual([s.sessionId for s in merged], ["a-new", "a-old", "idle", "done"])


if __name__ == "__main__":
    unittest.main()
