import json
import tempfile
import types
import unittest
from pathlib import Path

from fastapi import BackgroundTasks, HTTPException

from agentwatch.hooks.receiver import HookDispatcher, HookEvent
from agentwatch.models import ActivityPhase, SessionSnapshot, SessionState
from agentwatch.date_utils import utc_now
from agentwatch.registry.session_registry import SessionRegistry
from agentwatch.routers import hooks as hooks_router


class _FakeMonitor:
    def __init__(self, known: set[str] | None = None) -> None:
        self.known = known if known is not None else {"s-1"}
        self.phases: list[tuple[str, ActivityPhase]] = []
        self.states: list[tuple[str, SessionState]] = []
        self.registered: list[dict] = []
        self.publish_count = 0

    def update_activity_phase(self, session_id, phase):
        self.phases.append((session_id, phase))
        return session_id in self.known

    def update_session_state(self, session_id, state):
        self.states.append((session_id, state))
        return session_id in self.known

    def register_session(self, session_id, *, cwd="", transcript_path="", model=None):
        self.registered.append({"session_id": session_id, "cwd": cwd, "model": model})
        self.known.add(session_id)
        now = utc_now()
        return SessionSnapshot(sessionId=session_id, projectPath=cwd, startedAt=now, lastActivity=now)

    async def publish(self):
        self.publish_count += 1


def _event(name: str, **fields) -> HookEvent:
    return HookEvent(hook_event_name=name, session_id=fields.pop("session_id", "s-1"), **fields)


class HookDispatcherTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.claude = _FakeMonitor()
        self.codex = _FakeMonitor()
        self.dispatcher = HookDispatcher({"claude": self.claude, "codex": self.codex})

    async def test_user_prompt_marks_busy(self) -> None:
        await self.dispatcher.handle(_event("UserPromptSubmit", prompt="go"))
        self.assertEqual(self.claude.phases, [("s-1", ActivityPhase.BUSY)])
        self.assertEqual(self.claude.publish_count, 1)

    async def test_provider_field_routes_to_matching_monitor(self) -> None:
        await self.dispatcher.handle(_event("UserPromptSubmit", provider="codex"))
        self.assertEqual(self.claude.phases, [])
        self.assertEqual(self.codex.phases, [("s-1", ActivityPhase.BUSY)])

    async def test_notifications_map_to_waiting_phases(self) -> None:
        for notification_type in ("permission_prompt", "idle_prompt", "elicitation_dialog", "auth_success"):
            await self.dispatcher.handle(_event("Notification", notification_type=notification_type))

        self.assertEqual(
            [phase for _, phase in self.claude.phases],
            [ActivityPhase.WAITING_PERMISSION, ActivityPhase.WAITING_QUESTION, ActivityPhase.WAITING_QUESTION],
        )

    async def test_session_end_marks_completed(self) -> None:
        await self.dispatcher.handle(_event("SessionEnd", reason="exit"))
        self.assertEqual(self.claude.states, [("s-1", SessionState.COMPLETED)])

    async def test_unknown_session_does_not_publish(self) -> None:
        await self.dispatcher.handle(_event("UserPromptSubmit", session_id="ghost"))
        self.assertEqual(self.claude.publish_count, 0)

    async def test_unknown_event_is_ignored(self) -> None:
        await self.dispatcher.handle(_event("PreCompact"))
        self.assertEqual((self.claude.phases, self.claude.states), ([], []))

    async def test_session_start_registers_and_records_resume_target(self) -> None:
        registry = SessionRegistry()
        started: list[str] = []

        async def on_start(snapshot):
            started.append(snapshot.sessionId)

        dispatcher = HookDispatcher({"claude": self.claude}, registry=registry, on_session_start=on_start)

        await dispatcher.handle(_event(
            "SessionStart",
            session_id="s-new",
            cwd="/work/app",
            model="claude-opus",
            owner_user_id="user-a",
            thread_channel_id="thread-1",
        ))

        self.assertEqual(self.claude.registered, [{"session_id": "s-new", "cwd": "/work/app", "model": "claude-opus"}])
        self.assertEqual(started, ["s-new"])
        record = registry.get_by_thread("thread-1")
        self.assertIsNotNone(record)
        assert record is not None
        self.assertEqual((record.sessionId, record.provider, record.mappingKey), ("s-new", "claude", "/work/app"))

    async def test_session_start_without_owner_skips_registry(self) -> None:
        registry = SessionRegistry()
        dispatcher = HookDispatcher({"claude": self.claude}, registry=registry)

        await dispatcher.handle(_event("SessionStart", session_id="s-new", cwd="/work/app"))

        self.assertEqual(registry.list_sessions(include_archived=True), [])

    async def test_stop_marks_interactable_and_forwards_reply(self) -> None:
        forwarded: list[tuple[str, str, str]] = []

        async def on_response(provider, session_id, text):
            forwarded.append((provider, session_id, text))

        dispatcher = HookDispatcher({"claude": self.claude}, on_assistant_response=on_response)
        with tempfile.TemporaryDirectory() as tmp:
            transcript = Path(tmp) / "s-1.jsonl"
            transcript.write_text(json.dumps({
                "type": "assistant",
                "message": {"content": [{"type": "text", "text": "All tests pass."}]},
            }) + "\n")

            await dispatcher.handle(_event("Stop", transcript_path=str(transcript)))

        self.assertEqual(self.claude.phases, [("s-1", ActivityPhase.INTERACTABLE)])
        self.assertEqual(forwarded, [("claude", "s-1", "All tests pass.")])

    async def test_failing_response_consumer_is_logged(self) -> None:
        async def on_response(provider, session_id, text):
            raise RuntimeError("chat down")

        dispatcher = HookDispatcher({"claude": self.claude}, on_assistant_response=on_response)
        with tempfile.TemporaryDirectory() as tmp:
            transcript = Path(tmp) / "s-1.jsonl"
            transcript.write_text(json.dumps({
                "type": "assistant",
                "message": {"content": [{"type": "text", "text": "done"}]},
            }) + "\n")

            with self.assertLogs("agentwatch.hooks", level="ERROR"):
                await dispatcher.handle(_event("Stop", transcript_path=str(transcript)))

        self.assertEqual(self.claude.publish_count, 1)


class HooksRouterTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.monitor = _FakeMonitor()
        self.dispatcher = HookDispatcher({"claude": self.monitor})

    def _request(self, body=None, *, raw_error: Exception | None = None, dispatcher=...):
        async def _json():
            if raw_error is not None:
                raise raw_error
            return body

        state = types.SimpleNamespace(hook_dispatcher=self.dispatcher if dispatcher is ... else dispatcher)
        return types.SimpleNamespace(app=types.SimpleNamespace(state=state), json=_json)

    async def _post(self, request):
        tasks = BackgroundTasks()
        response = await hooks_router.receive_hook(request, tasks)
        return response, tasks

    def _error_body(self, response) -> dict:
        self.assertEqual(response.status_code, 400)
        return json.loads(response.body)

    async def test_accepts_event_and_handles_it_in_background(self) -> None:
        response, tasks = await self._post(self._request({
            "hook_event_name": "UserPromptSubmit",
            "session_id": "s-1",
            "cwd": "/work/app",
            "transcript_path": "/tmp/s-1.jsonl",
            "prompt": "go",
            "unexpected": "ignored",
        }))

        self.assertEqual(response, {"ok": True})
        self.assertEqual(len(tasks.tasks), 1)
        self.assertEqual(self.monitor.phases, [])

        await tasks()
        self.assertEqual(self.monitor.phases, [("s-1", ActivityPhase.BUSY)])

    async def test_invalid_json(self) -> None:
        response, tasks = await self._post(self._request(raw_error=json.JSONDecodeError("bad", "{", 0)))
        self.assertEqual(self._error_body(response), {"error": "invalid JSON"})
        self.assertEqual(tasks.tasks, [])

    async def test_missing_required_fields(self) -> None:
        for body in ({"hook_event_name": "Stop"}, {"session_id": "s-1"}, ["not", "an", "object"], {"session_id": 5, "hook_event_name": "Stop"}):
            response, _ = await self._post(self._request(body))
            self.assertEqual(self._error_body(response), {"error": "missing required fields"})

    async def test_unknown_provider(self) -> None:
        response, _ = await self._post(self._request({
            "hook_event_name": "Stop", "session_id": "s-1", "provider": "gemini",
        }))
        self.assertEqual(self._error_body(response), {"error": "unknown provider"})

    async def test_dispatcher_not_initialized(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            await self._post(self._request({}, dispatcher=None))
        self.assertEqual(ctx.exception.status_code, 503)


if __name__ == "__main__":
    unittest.main()
