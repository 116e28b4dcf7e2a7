"""Memory-bounded transcript store with a complete on-disk JSONL log.

Layout::

    {logs_dir}/{name}.jsonl

Every event is written (and flushed) to disk as it arrives.  The in-memory
copy is capped: once it grows past ``max_bytes`` the oldest events are
evicted until usage drops to 75% of the cap.  The disk log always stays
complete, so readers of an evicted session go to disk.

Reads of disk files use ``anyio.to_thread.run_sync`` so large transcripts
never block the event loop.
"""

from __future__ import annotations

import json
from functools import partial
from pathlib import Path
from typing import IO, Any

from anyio import to_thread

from clubhouse.agent_runtime.log import app_log
from clubhouse.agent_runtime.models.transcript import TranscriptInfo, TranscriptPage

EVICTION_TARGET_RATIO = 0.75


def serialize_event(event: dict[str, Any]) -> str:
    return json.dumps(event, separators=(",", ":"), ensure_ascii=False)


class TranscriptLog:
    """Transcript of a single session: bounded memory buffer + disk mirror."""

    def __init__(self, name: str, path: Path, max_bytes: int, namespace: str = "core:transcript") -> None:
        self.name = name
        self.path = path
        self.max_bytes = max_bytes
        self.namespace = namespace

        self.events: list[dict[str, Any]] = []
        self._sizes: list[int] = []
        self.bytes = 0
        self.evicted = False

        path.parent.mkdir(parents=True, exist_ok=True)
        self._file: IO[str] | None = path.open("w", encoding="utf-8")

    @property
    def closed(self) -> bool:
        return self._file is None

    def append(self, event: dict[str, Any]) -> None:
        line = serialize_event(event)
        size = len(line.encode("utf-8"))
        self.events.append(event)
        self._sizes.append(size)
        self.bytes += size
        self._write_line(line)
        if self.bytes > self.max_bytes:
            self._evict()

    def _write_line(self, line: str) -> None:
        if self._file is None:
            return
        try:
            self._file.write(line + "\n")
            self._file.flush()
        except OSError as exc:
            app_log(self.namespace, "error", "Transcript write failed, disk log disabled", {"name": self.name, "error": str(exc)})
            self._close_file()

    def _evict(self) -> None:
        target = int(self.max_bytes * EVICTION_TARGET_RATIO)
        remove_count = 0
        remove_bytes = 0
        # The newest event always stays in memory.
        while remove_count < len(self._sizes) - 1 and self.bytes - remove_bytes > target:
            remove_bytes += self._sizes[remove_count]
            remove_count += 1
        if remove_count == 0:
            return

        del self.events[:remove_count]
        del self._sizes[:remove_count]
        self.bytes -= remove_bytes

        if not self.evicted:
            self.evicted = True
            app_log(
                self.namespace,
                "warn",
                "Transcript memory cap reached, evicting old events",
                {"name": self.name, "evicted_count": remove_count, "remaining": len(self.events), "bytes_freed": remove_bytes},
            )

    def memory_text(self) -> str:
        return "\n".join(serialize_event(e) for e in self.events)

    def close(self) -> None:
        self._close_file()

    def _close_file(self) -> None:
        if self._file is not None:
            try:
                self._file.close()
            finally:
                self._file = None


class TranscriptStore:
    """Owns the logs directory and the table of transcripts still being written."""

    def __init__(self, logs_dir: str | Path, max_bytes: int = 10 * 1024 * 1024) -> None:
        self._logs_dir = Path(logs_dir)
        self._max_bytes = max_bytes
        self._active: dict[str, TranscriptLog] = {}

    @property
    def logs_dir(self) -> Path:
        return self._logs_dir

    def path_for(self, name: str) -> Path:
        return self._logs_dir / f"{name}.jsonl"

    # -- Lifecycle -------------------------------------------------------------

    def open(self, name: str, namespace: str = "core:transcript") -> TranscriptLog:
        """Start a fresh transcript, truncating any previous file of that name."""
        log = TranscriptLog(name, self.path_for(name), self._max_bytes, namespace)
        self._active[name] = log
        return log

    def release(self, name: str, log: TranscriptLog) -> None:
        """Close *log*; forget it only if it is still the active log for *name*."""
        log.close()
        if self._active.get(name) is log:
            del self._active[name]

    def active(self, name: str) -> TranscriptLog | None:
        return self._active.get(name)

    # -- Read ------------------------------------------------------------------

    async def read_transcript(self, name: str) -> str | None:
        log = self._active.get(name)
        if log is not None:
            if log.evicted:
                try:
                    return await to_thread.run_sync(partial(_read_text, log.path))
                except OSError:
                    pass  # Partial in-memory copy is the best we have.
            return log.memory_text()
        try:
            return await to_thread.run_sync(partial(_read_text, self.path_for(name)))
        except OSError:
            return None

    async def get_transcript_info(self, name: str) -> TranscriptInfo | None:
        log = self._active.get(name)
        if log is not None and not log.evicted:
            return TranscriptInfo(total_events=len(log.events), file_size_bytes=log.bytes)
        path = log.path if log is not None else self.path_for(name)
        try:
            return await to_thread.run_sync(partial(_disk_info, path))
        except OSError:
            return None

    async def read_transcript_page(self, name: str, offset: int, limit: int) -> TranscriptPage | None:
        offset = max(offset, 0)
        limit = max(limit, 0)
        log = self._active.get(name)
        if log is not None and not log.evicted:
            return TranscriptPage(events=log.events[offset : offset + limit], total_events=len(log.events))
        path = log.path if log is not None else self.path_for(name)
        try:
            events = await to_thread.run_sync(partial(_read_events, path))
        except OSError:
            return None
        return TranscriptPage(events=events[offset : offset + limit], total_events=len(events))


# -- Sync helpers (run in thread pool) -----------------------------------------


def _read_text(path: Path) -> str:
    return path.read_text(encoding="utf-8")


def _disk_info(path: Path) -> TranscriptInfo:
    size = path.stat().st_size
    lines = [line for line in _read_text(path).split("\n") if line.strip()]
    return TranscriptInfo(total_events=len(lines), file_size_bytes=size)


def _read_events(path: Path) -> list[dict[str, Any]]:
    events: list[dict[str, Any]] = []
    for line in _read_text(path).split("\n"):
        if not line.strip():
            continue
        try:
            event = json.loads(line)
        except ValueError:
            continue
        if isinstance(event, dict):
            events.append(event)
    return events
