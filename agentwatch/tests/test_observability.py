import unittest
from unittest.mock import patch

from agentwatch.observability import otel


class ObservabilityDisabledTests(unittest.TestCase):
    def setUp(self) -> None:
        state = patch.object(otel, "_state", otel._TelemetryState())
        state.start()
        self.addCleanup(state.stop)

    def test_initialize_is_a_noop_when_disabled(self) -> None:
        with patch.object(otel.config, "OTEL_ENABLED", False):
            otel.initialize()

        self.assertTrue(otel._state.initialized)
        self.assertFalse(otel._state.enabled)
        with otel.start_span("agentwatch.refresh", {"provider": "claude"}) as span:
            self.assertIsNone(span)

    def test_recorders_do_not_require_initialization(self) -> None:
        otel.record_refresh("claude", "ok", 12.5)
        otel.record_transcripts("codex", parsed=2, cached=0)
        otel.record_delivery("aggregator")
        otel.record_callback_failure("monitor:claude")


class SignalEndpointTests(unittest.TestCase):
    def test_appends_signal_path(self) -> None:
        self.assertEqual(otel._signal_endpoint("http://collector:4318", "/v1/traces"), "http://collector:4318/v1/traces")
        self.assertEqual(otel._signal_endpoint("http://collector:4318/", "/v1/metrics"), "http://collector:4318/v1/metrics")

    def test_handles_versioned_and_complete_urls(self) -> None:
        self.assertEqual(otel._signal_endpoint("http://c/v1", "/v1/traces"), "http://c/v1/traces")
        self.assertEqual(otel._signal_endpoint("http://c/v1/traces", "/v1/traces"), "http://c/v1/traces")
        self.assertEqual(otel._signal_endpoint("  ", "/v1/traces"), "")


if __name__ == "__main__":
    unittest.main()
