"""Transcript watcher using watchfiles.

Watches provider transcript roots and triggers a monitor refresh when
``.jsonl`` files are added, modified or removed. Bursts of writes are grouped
by the watchfiles debounce window so a busy session causes one refresh, not
one per appended line.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Iterable, Optional, Protocol

from watchfiles import Change, awatch

from agentwatch import config

logger = logging.getLogger("agentwatch.watcher")


class Refreshable(Protocol):
    provider: str

    async def refresh(self) -> None:
        ...


def is_transcript_change(change: Change, path: str) -> bool:
    return path.endswith(".jsonl")


class TranscriptWatcher:
    """Background watcher that refreshes one monitor on transcript changes."""

    def __init__(
        self,
        monitor: Refreshable,
        roots: Iterable[Path],
        debounce_seconds: float = config.WATCH_DEBOUNCE_SECONDS,
    ):
        self.monitor = monitor
        self.roots = [Path(root) for root in roots]
        self.debounce_seconds = debounce_seconds
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._running = False

    async def start(self) -> None:
        if self._running:
            logger.warning(f"Transcript watcher for {self.monitor.provider} already running")
            return

        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._watch_loop())
        logger.info(f"Transcript watcher started for {self.monitor.provider}")

    async def stop(self) -> None:
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info(f"Transcript watcher for {self.monitor.provider} stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def _watch_loop(self) -> None:
        watch_paths = [p for p in self.roots if p.exists()]
        if not watch_paths:
            logger.warning(f"No transcript roots exist for {self.monitor.provider}, watcher has nothing to monitor")
            self._running = False
            return

        logger.info(f"Watching {len(watch_paths)} directories: {[str(p) for p in watch_paths]}")
        try:
            async for changes in awatch(
                *watch_paths,
                watch_filter=is_transcript_change,
                debounce=max(1, int(self.debounce_seconds * 1000)),
                stop_event=self._stop_event,
            ):
                if not self._running:
                    break
                await self._handle_changes(changes)
        except asyncio.CancelledError:
            logger.info("Transcript watcher task cancelled")
        except Exception as e:
            logger.error(f"Transcript watcher error: {e}")
        finally:
            self._running = False

    async def _handle_changes(self, changes: set[tuple[Change, str]]) -> int:
        relevant = [path for change, path in changes if is_transcript_change(change, path)]
        if not relevant:
            return 0
        logger.info(f"Detected {len(relevant)} transcript changes, refreshing {self.monitor.provider}")
        try:
            await self.monitor.refresh()
        except Exception as e:
            logger.error(f"Error refreshing {self.monitor.provider} after file changes: {e}")
        return len(relevant)
