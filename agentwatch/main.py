"""agentwatch FastAPI application entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from agentwatch import config
from agentwatch.hooks.receiver import HookDispatcher
from agentwatch.monitor.aggregator import SessionAggregator
from agentwatch.monitor.discovery import ClaudeDiscovery, CodexDiscovery
from agentwatch.monitor.file_watcher import TranscriptWatcher
from agentwatch.monitor.provider import ClaudeSessionMonitor, CodexSessionMonitor
from agentwatch.observability import initialize as initialize_observability, shutdown as shutdown_observability
from agentwatch.registry.session_registry import SessionRegistry
from agentwatch.routers.hooks import hooks_router

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("agentwatch")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("agentwatch starting up")
    initialize_observability(app)

    # 1. Resumable session registry
    registry = SessionRegistry(ttl_ms=config.REGISTRY_TTL_MS, store_path=config.REGISTRY_PATH or None)
    registry.load()
    app.state.session_registry = registry

    # 2. Provider monitors behind one aggregator
    claude_discovery = ClaudeDiscovery(config.CLAUDE_HOMES)
    codex_discovery = CodexDiscovery(config.CODEX_SESSIONS_ROOT, config.CODEX_SCAN_DAYS)
    claude = ClaudeSessionMonitor(claude_discovery)
    codex = CodexSessionMonitor(codex_discovery)

    aggregator = SessionAggregator()
    aggregator.add_provider("claude", claude)
    aggregator.add_provider("codex", codex)
    app.state.aggregator = aggregator
    await aggregator.start()

    # 3. Hook ingestion
    app.state.hook_dispatcher = HookDispatcher({"claude": claude, "codex": codex}, registry=registry)

    # 4. Transcript watchers
    watchers: list[TranscriptWatcher] = []
    if config.WATCHER_ENABLED:
        watchers = [
            TranscriptWatcher(claude, claude_discovery.watch_roots),
            TranscriptWatcher(codex, codex_discovery.watch_roots),
        ]
        for watcher in watchers:
            await watcher.start()
    app.state.watchers = watchers

    yield

    logger.info("agentwatch shutting down")
    for watcher in watchers:
        await watcher.stop()
    await aggregator.stop()
    await registry.flush()
    shutdown_observability(app)


app = FastAPI(
    title="agentwatch API",
    description="Live state of AI coding-agent sessions",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(hooks_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    aggregator = getattr(app.state, "aggregator", None)
    watchers = getattr(app.state, "watchers", [])
    status = aggregator.get_status() if aggregator else None
    return {
        "status": "ok",
        "providers": sorted(aggregator.providers) if aggregator else [],
        "activeSessions": status.activeCount if status else 0,
        "totalSessions": status.totalCount if status else 0,
        "watcher": "running" if any(w.is_running for w in watchers) else "stopped",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("agentwatch.main:app", host=config.HOST, port=config.PORT)
