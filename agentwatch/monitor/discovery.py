"""Process and transcript discovery collaborators.

Monitors only consume the lists produced here; any object implementing
``SessionDiscovery`` can be plugged in.
"""
from __future__ import annotations

import logging
import re
import subprocess
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, Protocol

from agentwatch.models import CandidateFile, ProcessInfo

logger = logging.getLogger("agentwatch.discovery")

_RESUME_PATTERN = re.compile(r"--resume\s+([0-9a-f-]{36})")
_CLAUDE_COMMAND_PATTERN = re.compile(r"\bclaude\b.*(--dangerously-skip-permissions|--resume)|\bclaude\s*$")
_TASK_DIR_PATTERN = re.compile(r"\.claude[^/]*/tasks/([0-9a-f-]{36})")
_LSOF_PATH_PATTERN = re.compile(r"\s(/\S+)$")


class SessionDiscovery(Protocol):
    def list_processes(self) -> list[ProcessInfo]:
        ...

    def list_candidate_files(self) -> list[CandidateFile]:
        ...


def encode_project_key(path: str) -> str:
    """Encode an absolute path the way Claude names its project directories."""
    return path.replace("/", "-")


def _run(cmd: list[str]) -> str:
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=False)
    except OSError as exc:
        logger.debug(f"Command {cmd[0]} unavailable: {exc}")
        return ""
    return result.stdout if result.returncode == 0 else ""


def _jsonl_files(directory: Path) -> list[tuple[Path, float]]:
    files: list[tuple[Path, float]] = []
    try:
        children = list(directory.iterdir())
    except OSError:
        return files
    for child in children:
        if child.suffix != ".jsonl":
            continue
        try:
            stats = child.stat()
        except OSError:
            # file may disappear during scan
            continue
        files.append((child, stats.st_mtime))
    files.sort(key=lambda item: item[1], reverse=True)
    return files


class ClaudeDiscovery:
    """Find running ``claude`` CLI processes and ``projects/*/*.jsonl`` transcripts."""

    def __init__(self, homes: Iterable[Path]):
        self.homes = [Path(home) for home in homes]

    @property
    def watch_roots(self) -> list[Path]:
        return [home / "projects" for home in self.homes]

    def list_processes(self) -> list[ProcessInfo]:
        output = _run(["ps", "-axo", "pid=,pcpu=,rss=,command="])
        processes: list[ProcessInfo] = []
        for line in output.splitlines():
            cols = line.strip().split(None, 3)
            if len(cols) < 4:
                continue
            command = cols[3]
            if "node " in command or "bun " in command or "grep" in command:
                continue
            if not _CLAUDE_COMMAND_PATTERN.search(command):
                continue
            try:
                pid = int(cols[0])
            except ValueError:
                continue
            try:
                cpu = float(cols[1])
                rss_kb = int(cols[2])
            except ValueError:
                cpu, rss_kb = 0.0, 0
            resume = _RESUME_PATTERN.search(command)
            process = ProcessInfo(
                pid=pid,
                resumeId=resume.group(1) if resume else None,
                cpuPercent=cpu,
                memMb=round(rss_kb / 1024),
            )
            processes.append(self._enrich(process))
        return processes

    def _enrich(self, process: ProcessInfo) -> ProcessInfo:
        session_id = None
        cwd = ""
        for line in _run(["lsof", "-p", str(process.pid)]).splitlines():
            if session_id is None:
                task = _TASK_DIR_PATTERN.search(line)
                if task:
                    session_id = task.group(1)
            if not cwd and " cwd " in line and "DIR" in line:
                match = _LSOF_PATH_PATTERN.search(line)
                if match:
                    cwd = match.group(1)
        return process.model_copy(update={"sessionId": session_id, "cwd": cwd})

    def list_candidate_files(self) -> list[CandidateFile]:
        candidates: list[CandidateFile] = []
        for projects_dir in self.watch_roots:
            try:
                project_dirs = [p for p in projects_dir.iterdir() if p.is_dir()]
            except OSError:
                continue
            for project_dir in project_dirs:
                for path, mtime in _jsonl_files(project_dir):
                    candidates.append(
                        CandidateFile(
                            path=str(path),
                            mtime=mtime,
                            sessionId=path.stem,
                            projectKey=project_dir.name,
                        )
                    )
        return candidates


class CodexDiscovery:
    """Find Codex rollouts under ``<root>/YYYY/MM/DD`` for the last few days."""

    def __init__(self, sessions_root: Path, scan_days: int = 2):
        self.sessions_root = Path(sessions_root)
        self.scan_days = max(1, int(scan_days))

    @property
    def watch_roots(self) -> list[Path]:
        return [self.sessions_root]

    def list_processes(self) -> list[ProcessInfo]:
        return []

    def recent_date_dirs(self, now: datetime | None = None) -> list[Path]:
        current = now or datetime.now()
        dirs: list[Path] = []
        for offset in range(self.scan_days):
            day = current - timedelta(days=offset)
            dirs.append(self.sessions_root / f"{day.year:04d}" / f"{day.month:02d}" / f"{day.day:02d}")
        return dirs

    def list_candidate_files(self) -> list[CandidateFile]:
        candidates: list[CandidateFile] = []
        for directory in self.recent_date_dirs():
            for path, mtime in _jsonl_files(directory):
                candidates.append(CandidateFile(path=str(path), mtime=mtime))
        candidates.sort(key=lambda c: c.mtime, reverse=True)
        return candidates
