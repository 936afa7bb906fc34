"""agentwatch configuration."""
import os
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_paths(name: str, default: list[Path]) -> list[Path]:
    value = os.getenv(name)
    if value is None:
        return default
    return [Path(part).expanduser() for part in value.split(os.pathsep) if part.strip()]


HOME = Path.home()

# Transcript tailing
TAIL_BYTES = _env_int("AGENTWATCH_TAIL_BYTES", 256_000)
CODEX_TAIL_BYTES = _env_int("AGENTWATCH_CODEX_TAIL_BYTES", 512_000)

# Session lifecycle windows
ACTIVE_WINDOW_SECONDS = _env_int("AGENTWATCH_ACTIVE_WINDOW_SECONDS", 5 * 60)
IDLE_WINDOW_SECONDS = _env_int("AGENTWATCH_IDLE_WINDOW_SECONDS", 60 * 60)
STALE_HORIZON_SECONDS = _env_int("AGENTWATCH_STALE_HORIZON_SECONDS", 24 * 60 * 60)

# Provider discovery
CLAUDE_HOMES = _env_paths("AGENTWATCH_CLAUDE_HOMES", [HOME / ".claude"])
CODEX_SESSIONS_ROOT = Path(
    os.getenv("AGENTWATCH_CODEX_SESSIONS_ROOT", str(HOME / ".codex" / "sessions"))
).expanduser()
CODEX_SCAN_DAYS = max(1, _env_int("AGENTWATCH_CODEX_SCAN_DAYS", 2))

# Refresh scheduling
CLAUDE_POLL_SECONDS = _env_int("AGENTWATCH_CLAUDE_POLL_SECONDS", 30)
CODEX_POLL_SECONDS = _env_int("AGENTWATCH_CODEX_POLL_SECONDS", 15)
WATCHER_ENABLED = _env_bool("AGENTWATCH_WATCHER_ENABLED", True)
WATCH_DEBOUNCE_SECONDS = _env_int("AGENTWATCH_WATCH_DEBOUNCE_SECONDS", 10)

# Resumable session registry (empty path disables persistence)
REGISTRY_TTL_MS = _env_int("AGENTWATCH_REGISTRY_TTL_MS", 24 * 60 * 60 * 1000)
REGISTRY_PATH = os.getenv("AGENTWATCH_REGISTRY_PATH", str(HOME / ".agentwatch" / "sessions.json"))

# Observability
OTEL_ENABLED = _env_bool("AGENTWATCH_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("AGENTWATCH_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("AGENTWATCH_OTEL_SERVICE_NAME", "agentwatch")
PROM_PORT = _env_int("AGENTWATCH_PROM_PORT", 9464)

# Server settings
HOST = os.getenv("AGENTWATCH_HOST", "127.0.0.1")
PORT = int(os.getenv("AGENTWATCH_PORT", "8000"))
