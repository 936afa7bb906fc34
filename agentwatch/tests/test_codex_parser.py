import json
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from agentwatch.parsers.platforms.codex.parser import parse_rollout, read_session_meta
from agentwatch.parsers.platforms.registry import parse_transcript


SESSION_ID = "0199a1b2-c3d4-7e5f-8a9b-0c1d2e3f4a5b"


def _meta_line(**overrides) -> dict:
    payload = {
        "id": SESSION_ID,
        "timestamp": "2026-02-01T09:00:00Z",
        "cwd": "/work/api",
        "originator": "codex_cli_rs",
        "cli_version": "0.46.0",
        "source": "cli",
        "git": {"branch": "feature/x"},
    }
    payload.update(overrides)
    return {"timestamp": "2026-02-01T09:00:00Z", "type": "session_meta", "payload": payload}


class CodexRolloutParserTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.path = Path(self._tmp.name) / f"rollout-2026-02-01T09-00-00-{SESSION_ID}.jsonl"

    def _write(self, *records: dict) -> None:
        self.path.write_text("".join(json.dumps(r) + "\n" for r in records))

    def test_reads_session_meta(self) -> None:
        self._write(_meta_line())

        meta = read_session_meta(self.path)

        self.assertIsNotNone(meta)
        assert meta is not None
        self.assertEqual(meta.session_id, SESSION_ID)
        self.assertEqual(meta.cwd, "/work/api")
        self.assertEqual(meta.git_branch, "feature/x")
        self.assertEqual(meta.originator, "codex_cli_rs")
        self.assertEqual(meta.source, "cli")

    def test_rejects_files_without_session_meta(self) -> None:
        self._write({"type": "event_msg", "payload": {"type": "task_started"}})
        self.assertIsNone(read_session_meta(self.path))
        self.assertIsNone(parse_rollout(self.path, 0.0))

    def test_rejects_meta_without_cwd(self) -> None:
        self._write(_meta_line(cwd=""))
        self.assertIsNone(read_session_meta(self.path))

    def test_reduces_turns_tokens_tools_and_model(self) -> None:
        self._write(
            _meta_line(),
            {"timestamp": "2026-02-01T09:00:01Z", "type": "turn_context", "payload": {"model": "gpt-5-codex"}},
            {"timestamp": "2026-02-01T09:00:02Z", "type": "event_msg", "payload": {"type": "task_started"}},
            {"timestamp": "2026-02-01T09:00:03Z", "type": "event_msg",
             "payload": {"type": "user_message", "message": "fix   the\nflaky test"}},
            {"timestamp": "2026-02-01T09:00:04Z", "type": "response_item",
             "payload": {"type": "function_call", "name": "shell"}},
            {"timestamp": "2026-02-01T09:00:05Z", "type": "response_item",
             "payload": {"type": "function_call", "name": "apply_patch"}},
            {"timestamp": "2026-02-01T09:00:06Z", "type": "response_item",
             "payload": {"type": "function_call", "name": "shell"}},
            {"timestamp": "2026-02-01T09:00:07Z", "type": "event_msg", "payload": {
                "type": "token_count",
                "info": {"total_token_usage": {"input_tokens": 1000, "cached_input_tokens": 400, "output_tokens": 50}},
            }},
            {"timestamp": "2026-02-01T09:00:08Z", "type": "event_msg", "payload": {
                "type": "token_count",
                "info": {"total_token_usage": {"input_tokens": 1500, "cached_input_tokens": 0, "output_tokens": 80}},
            }},
            {"timestamp": "2026-02-01T09:00:09Z", "type": "event_msg", "payload": {"type": "task_started"}},
        )

        parsed = parse_rollout(self.path, 0.0)

        self.assertIsNotNone(parsed)
        assert parsed is not None
        _, info = parsed
        self.assertEqual(info.sessionId, SESSION_ID)
        self.assertEqual(info.model, "gpt-5-codex")
        self.assertEqual(info.turnCount, 2)
        self.assertEqual(info.lastUserMessage, "fix the flaky test")
        self.assertEqual(info.currentTools, ["apply_patch", "shell"])
        self.assertEqual((info.tokens.input, info.tokens.output, info.tokens.cached), (1500, 80, 0))
        self.assertEqual(info.lastActivity, datetime(2026, 2, 1, 9, 0, 9, tzinfo=timezone.utc))
        self.assertIsNone(info.waitReason)

    def test_last_activity_never_older_than_mtime(self) -> None:
        self._write(_meta_line())
        mtime = datetime(2026, 2, 2, tzinfo=timezone.utc).timestamp()

        parsed = parse_rollout(self.path, mtime)

        assert parsed is not None
        self.assertEqual(parsed[1].lastActivity, datetime(2026, 2, 2, tzinfo=timezone.utc))

    def test_registry_routes_codex_transcripts(self) -> None:
        self._write(_meta_line())

        parsed = parse_transcript("codex", self.path, 0.0)

        self.assertIsNotNone(parsed)
        assert parsed is not None
        self.assertEqual(parsed.originator, "codex_cli_rs")
        self.assertEqual(parsed.source, "cli")
        self.assertIsNone(parse_transcript("unknown", self.path, 0.0))


if __name__ == "__main__":
    unittest.main()
