"""Agent hook events and their dispatch onto provider monitors and the registry."""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Protocol

from pydantic import BaseModel, ConfigDict

from agentwatch.models import ActivityPhase, SessionSnapshot, SessionState
from agentwatch.parsers.platforms.claude_code.parser import extract_last_assistant_response
from agentwatch.registry.session_registry import SessionRegistry

logger = logging.getLogger("agentwatch.hooks")

ResponseCallback = Callable[[str, str, str], Awaitable[None]]
SessionStartCallback = Callable[[SessionSnapshot], Awaitable[None]]

NOTIFICATION_PHASES: dict[str, ActivityPhase] = {
    "permission_prompt": ActivityPhase.WAITING_PERMISSION,
    "idle_prompt": ActivityPhase.WAITING_QUESTION,
    "elicitation_dialog": ActivityPhase.WAITING_QUESTION,
}


class HookEvent(BaseModel):
    """Payload an agent hook posts; unknown fields are ignored."""

    model_config = ConfigDict(extra="ignore")

    hook_event_name: str = ""
    session_id: str = ""
    cwd: str = ""
    transcript_path: str = ""
    provider: Optional[str] = None
    permission_mode: Optional[str] = None

    # SessionStart
    source: Optional[str] = None
    model: Optional[str] = None
    # UserPromptSubmit
    prompt: Optional[str] = None
    # SessionEnd
    reason: Optional[str] = None
    # Notification
    notification_type: Optional[str] = None
    message: Optional[str] = None

    # Resume registration, set by chat-side launchers
    owner_user_id: Optional[str] = None
    mapping_key: Optional[str] = None
    thread_channel_id: Optional[str] = None
    parent_channel_id: Optional[str] = None

    @property
    def provider_name(self) -> str:
        return self.provider or "claude"


class HookAcceptingMonitor(Protocol):
    def update_activity_phase(self, session_id: str, phase: ActivityPhase) -> bool:
        ...

    def update_session_state(self, session_id: str, state: SessionState) -> bool:
        ...

    def register_session(
        self,
        session_id: str,
        *,
        cwd: str = "",
        transcript_path: str = "",
        model: Optional[str] = None,
    ) -> SessionSnapshot:
        ...

    async def publish(self) -> None:
        ...


class HookDispatcher:
    """Routes hook events to the monitor of their provider."""

    def __init__(
        self,
        monitors: dict[str, HookAcceptingMonitor],
        registry: Optional[SessionRegistry] = None,
        on_assistant_response: Optional[ResponseCallback] = None,
        on_session_start: Optional[SessionStartCallback] = None,
    ):
        self.monitors = monitors
        self.registry = registry
        self.on_assistant_response = on_assistant_response
        self.on_session_start = on_session_start

    def monitor_for(self, provider: str) -> Optional[HookAcceptingMonitor]:
        return self.monitors.get(provider)

    async def handle(self, event: HookEvent) -> None:
        provider = event.provider_name
        monitor = self.monitor_for(provider)
        if monitor is None:
            logger.warning(f"Hook event for unknown provider {provider!r} dropped")
            return

        sid = event.session_id
        name = event.hook_event_name
        changed = False

        if name == "Stop":
            changed = monitor.update_activity_phase(sid, ActivityPhase.INTERACTABLE)
            await self._forward_last_response(provider, sid, event.transcript_path)
        elif name == "UserPromptSubmit":
            changed = monitor.update_activity_phase(sid, ActivityPhase.BUSY)
            if self.registry is not None:
                self.registry.touch(sid)
        elif name == "SessionStart":
            snapshot = monitor.register_session(
                sid,
                cwd=event.cwd,
                transcript_path=event.transcript_path,
                model=event.model,
            )
            changed = True
            self._register_resumable(provider, event)
            if self.on_session_start is not None:
                try:
                    await self.on_session_start(snapshot)
                except Exception:
                    logger.exception(f"Session start consumer failed for {sid}")
        elif name == "SessionEnd":
            changed = monitor.update_session_state(sid, SessionState.COMPLETED)
        elif name == "Notification":
            phase = NOTIFICATION_PHASES.get(event.notification_type or "")
            if phase is not None:
                changed = monitor.update_activity_phase(sid, phase)
        else:
            logger.debug(f"Unhandled hook event: {name}")

        if changed:
            await monitor.publish()

    def _register_resumable(self, provider: str, event: HookEvent) -> None:
        if self.registry is None or not event.owner_user_id or not event.thread_channel_id:
            return
        self.registry.upsert(
            event.session_id,
            owner_user_id=event.owner_user_id,
            mapping_key=event.mapping_key or event.cwd,
            cwd=event.cwd,
            thread_channel_id=event.thread_channel_id,
            parent_channel_id=event.parent_channel_id or "",
            provider=provider,
        )

    async def _forward_last_response(self, provider: str, session_id: str, transcript_path: str) -> None:
        if self.on_assistant_response is None or not transcript_path:
            return
        text = await asyncio.to_thread(extract_last_assistant_response, transcript_path)
        if not text:
            return
        try:
            await self.on_assistant_response(provider, session_id, text)
        except Exception:
            logger.exception(f"Assistant response consumer failed for {session_id}")
