"""Classify a session's fine-grained activity phase."""
from __future__ import annotations

from typing import Optional, Sequence

from agentwatch.models import ActivityPhase, SessionInfo


def determine_activity_phase(
    wait_reason: Optional[str],
    wait_tool_names: Sequence[str],
    last_assistant_stop_reason: Optional[str],
) -> ActivityPhase:
    """Map wait/stop signals to an activity phase.

    Rules are checked in priority order, first match wins: a pending
    AskUserQuestion, then a pending tool approval, then a finished turn with
    nothing pending. Everything else counts as busy.
    """
    if wait_reason == "user_question":
        return ActivityPhase.WAITING_QUESTION
    if wait_reason == "permission":
        return ActivityPhase.WAITING_PERMISSION
    if last_assistant_stop_reason == "end_turn" and not wait_tool_names:
        return ActivityPhase.INTERACTABLE
    return ActivityPhase.BUSY


def phase_for_info(info: SessionInfo) -> ActivityPhase:
    return determine_activity_phase(info.waitReason, info.waitToolNames, info.lastAssistantStopReason)
