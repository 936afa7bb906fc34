"""Token usage reports and per-provider cost models."""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from agentwatch.date_utils import utc_now
from agentwatch.models import (
    SessionSnapshot,
    SessionState,
    TokenCounts,
    TokenUsageReport,
    TokenUsageSession,
    TokenUsageTotals,
    state_activity_key,
)

_TAG_PATTERN = re.compile(r"<[^>]+>")
_SUMMARY_LIMIT = 60


@dataclass(frozen=True)
class CostModel:
    """USD rates per million tokens."""

    input_per_mtok: float
    output_per_mtok: float
    cached_per_mtok: float

    def estimate(self, tokens: TokenCounts) -> float:
        uncached = max(0, tokens.input - tokens.cached)
        return (
            uncached / 1_000_000 * self.input_per_mtok
            + tokens.output / 1_000_000 * self.output_per_mtok
            + tokens.cached / 1_000_000 * self.cached_per_mtok
        )


# Rough reference pricing; each provider applies its own model.
CLAUDE_COST_MODEL = CostModel(input_per_mtok=15.0, output_per_mtok=75.0, cached_per_mtok=1.5)
CODEX_COST_MODEL = CostModel(input_per_mtok=2.0, output_per_mtok=8.0, cached_per_mtok=0.5)


def session_summary(last_user_message: Optional[str], current_tools: Sequence[str]) -> str:
    """One-line summary for a session: last prompt, else current tools, else empty."""
    if last_user_message:
        clean = _TAG_PATTERN.sub("", last_user_message).replace("\n", " ").strip()
        if clean:
            return clean[:_SUMMARY_LIMIT] + "…" if len(clean) > _SUMMARY_LIMIT else clean
    if current_tools:
        return ", ".join(current_tools)
    return ""


def build_token_usage_report(sessions: Iterable[SessionSnapshot], cost_model: CostModel) -> TokenUsageReport:
    rows = [
        TokenUsageSession(
            provider=s.provider,
            sessionId=s.sessionId,
            projectName=s.projectName,
            slug=s.slug,
            state=s.state,
            model=s.model,
            tokens=s.tokens,
            estimatedCostUsd=cost_model.estimate(s.tokens),
            lastActivity=s.lastActivity,
            lastUserMessage=s.lastUserMessage,
            currentTools=list(s.currentTools),
            summary=session_summary(s.lastUserMessage, s.currentTools),
        )
        for s in sessions
    ]
    totals = TokenUsageTotals(
        input=sum(r.tokens.input for r in rows),
        output=sum(r.tokens.output for r in rows),
        cached=sum(r.tokens.cached for r in rows),
        estimatedCostUsd=sum(r.estimatedCostUsd for r in rows),
    )
    return TokenUsageReport(
        timestamp=utc_now(),
        sessions=rows,
        totals=totals,
        activeCount=sum(1 for r in rows if r.state == SessionState.ACTIVE),
        totalCount=len(rows),
    )


def merge_token_usage_reports(reports: Iterable[TokenUsageReport]) -> TokenUsageReport:
    """Combine provider reports without re-pricing; totals are summed as reported."""
    sessions: list[TokenUsageSession] = []
    totals = TokenUsageTotals()
    for report in reports:
        sessions.extend(report.sessions)
        totals = TokenUsageTotals(
            input=totals.input + report.totals.input,
            output=totals.output + report.totals.output,
            cached=totals.cached + report.totals.cached,
            estimatedCostUsd=totals.estimatedCostUsd + report.totals.estimatedCostUsd,
        )
    sessions.sort(key=lambda s: state_activity_key(s.state, s.lastActivity))
    return TokenUsageReport(
        timestamp=utc_now(),
        sessions=sessions,
        totals=totals,
        activeCount=sum(1 for s in sessions if s.state == SessionState.ACTIVE),
        totalCount=len(sessions),
    )
