"""Headless process execution manager.

Runs one-shot agent processes (``claude -p ...`` and friends), classifies
their output into transcript events and normalized hook events, and fans
those out to UI consumers (via the broadcast throttler) and the internal
event bus.

Per agent id the lifecycle is ``none -> running -> terminated``.  A session
terminates through exactly one of *close* (pipes drained, exit code known)
or *error* (I/O failure); whichever comes second is ignored.  Termination
always produces exactly one exit notification: ``on_exit`` callback, the
``pty:exit`` broadcast and the bus ``emit_pty_exit``.

Output modes:

* ``stream-json`` -- stdout is parsed incrementally as JSONL; tool-use,
  tool-result and result records become ``pre_tool`` / ``post_tool`` /
  ``stop`` hook events.
* ``text`` -- stdout is buffered verbatim.  On close a single synthetic
  ``result`` record and ``stop`` hook are produced if anything was printed.

stderr lines are forwarded as ``notification`` hook events in both modes.
"""

from __future__ import annotations

import asyncio
import codecs
import sys
import time
from collections import defaultdict
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from anyio import to_thread

from clubhouse.agent_runtime.broadcast import BroadcastThrottler
from clubhouse.agent_runtime.bus import EventBus
from clubhouse.agent_runtime.execution.hooks import StreamHookMapper
from clubhouse.agent_runtime.execution.jsonl import JsonlParser
from clubhouse.agent_runtime.execution.spawn import build_env, launch
from clubhouse.agent_runtime.log import app_log
from clubhouse.agent_runtime.models.enums import Channel, HookEventKind, OutputKind, SessionKind
from clubhouse.agent_runtime.models.events import NormalizedHookEvent, now_ms
from clubhouse.agent_runtime.models.transcript import TranscriptInfo, TranscriptPage
from clubhouse.agent_runtime.registry import SessionRegistry, ShuttingDownError
from clubhouse.agent_runtime.shell import ShellEnvironment
from clubhouse.agent_runtime.store.transcript import TranscriptLog, TranscriptStore

NAMESPACE = "core:headless"

TEXT_MODE_NOTICE = "Agent running (text output, live events unavailable)"
STOP_MESSAGE_LIMIT = 500
STDOUT_CHUNK_SIZE = 64 * 1024

ExitCallback = Callable[[str, int], None]


@dataclass
class HeadlessSession:
    agent_id: str
    process: asyncio.subprocess.Process
    output_kind: OutputKind
    transcript: TranscriptLog
    started_at: float = field(default_factory=time.monotonic)
    on_exit: ExitCallback | None = None

    parser: JsonlParser | None = None
    mapper: StreamHookMapper = field(default_factory=StreamHookMapper)
    text_buffer: str = ""
    stdout_bytes: int = 0
    event_count: int = 0
    stderr_lines: list[str] = field(default_factory=list)

    exited: bool = False
    """One-shot guard: set by whichever of close / error / sweep gets there first."""

    pump: asyncio.Task[None] | None = None
    kill_handle: asyncio.TimerHandle | None = None

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)


class HeadlessManager:
    def __init__(
        self,
        store: TranscriptStore,
        throttler: BroadcastThrottler,
        bus: EventBus,
        shell_env: ShellEnvironment,
        *,
        kill_grace_seconds: float = 5.0,
        stale_sweep_interval: float = 30.0,
        windows: bool | None = None,
    ) -> None:
        self._store = store
        self._throttler = throttler
        self._bus = bus
        self._shell_env = shell_env
        self._kill_grace_seconds = kill_grace_seconds
        self._stale_sweep_interval = stale_sweep_interval
        self._windows = sys.platform == "win32" if windows is None else windows
        self._registry: SessionRegistry[HeadlessSession] = SessionRegistry("headless")
        self._sweep_task: asyncio.Task[None] | None = None
        # Serializes spawns per agent id across the awaits between the existing-session check and register.
        self._spawn_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def registry(self) -> SessionRegistry[HeadlessSession]:
        return self._registry

    # -- Spawn -----------------------------------------------------------------

    async def spawn(
        self,
        agent_id: str,
        cwd: str,
        binary: str,
        args: Sequence[str],
        extra_env: Mapping[str, str] | None = None,
        output_kind: OutputKind = OutputKind.STREAM_JSON,
        on_exit: ExitCallback | None = None,
        *,
        project_id: str = "",
    ) -> None:
        """Start a headless agent.  Failures surface as an exit notification with code 1.

        Overlapping spawns for the same id run one after another, so each one
        sees and replaces the session registered by the one before it.
        """
        if self._registry.is_shutting_down:
            raise ShuttingDownError

        async with self._spawn_locks[agent_id]:
            await self._spawn_locked(agent_id, cwd, binary, args, extra_env, output_kind, on_exit, project_id)

    async def _spawn_locked(
        self,
        agent_id: str,
        cwd: str,
        binary: str,
        args: Sequence[str],
        extra_env: Mapping[str, str] | None,
        output_kind: OutputKind,
        on_exit: ExitCallback | None,
        project_id: str,
    ) -> None:
        if self._registry.is_shutting_down:
            raise ShuttingDownError

        previous = self._registry.get(agent_id)
        if previous is not None:
            self.kill(agent_id)
            # The replacement truncates and owns the log file from here on.
            previous.transcript.close()

        # The first call may source the login shell.
        base_env = await to_thread.run_sync(self._shell_env.get)
        env = build_env(base_env, extra_env)
        app_log(
            NAMESPACE,
            "info",
            "Spawning headless agent",
            {
                "agent_id": agent_id,
                "binary": binary,
                "args": " ".join(args),
                "cwd": cwd,
                "has_anthropic_key": bool(env.get("ANTHROPIC_API_KEY")),
            },
        )

        transcript = self._store.open(agent_id, namespace=NAMESPACE)
        try:
            process = await launch(binary, args, cwd=cwd, env=env, windows=self._windows)
        except OSError as exc:
            app_log(NAMESPACE, "error", "Failed to spawn headless agent", {"agent_id": agent_id, "binary": binary, "error": str(exc)})
            self._store.release(agent_id, transcript)
            self._notify_exit(agent_id, 1, on_exit)
            return

        # `-p` mode takes the mission from argv; an open stdin can make the CLI wait.
        if process.stdin is not None:
            process.stdin.close()

        session = HeadlessSession(
            agent_id=agent_id,
            process=process,
            output_kind=output_kind,
            transcript=transcript,
            on_exit=on_exit,
            parser=JsonlParser() if output_kind == OutputKind.STREAM_JSON else None,
        )
        try:
            self._registry.register(agent_id, session)
        except ShuttingDownError:
            # Shutdown began while the process was launching.
            try:
                process.kill()
            except ProcessLookupError:
                pass
            self._store.release(agent_id, transcript)
            raise
        app_log(NAMESPACE, "info", "Process spawned", {"agent_id": agent_id, "pid": process.pid})

        self._bus.emit_agent_spawned(
            agent_id, SessionKind.HEADLESS, project_id, {"binary": binary, "output_kind": str(output_kind)}
        )
        if output_kind == OutputKind.TEXT:
            self._emit_hook(agent_id, NormalizedHookEvent(kind=HookEventKind.NOTIFICATION, message=TEXT_MODE_NOTICE))

        session.pump = asyncio.create_task(self._pump(session), name=f"headless:{agent_id}")

    # -- Output handling -------------------------------------------------------

    async def _pump(self, session: HeadlessSession) -> None:
        try:
            await asyncio.gather(self._read_stdout(session), self._read_stderr(session))
            code = await session.process.wait()
        except OSError as exc:
            self._on_error(session, exc)
            return
        self._on_close(session, code)

    async def _read_stdout(self, session: HeadlessSession) -> None:
        stream = session.process.stdout
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(STDOUT_CHUNK_SIZE)
            if not chunk:
                break
            self._handle_stdout(session, decoder.decode(chunk), len(chunk))
        tail = decoder.decode(b"", final=True)
        if tail:
            self._handle_stdout(session, tail, 0)

    def _handle_stdout(self, session: HeadlessSession, text: str, size: int) -> None:
        if session.exited:
            return
        if session.stdout_bytes == 0:
            app_log(NAMESPACE, "info", "First stdout data", {"agent_id": session.agent_id, "bytes": size, "preview": text[:200]})
        session.stdout_bytes += size
        if session.parser is None:
            session.text_buffer += text
            return
        for event in session.parser.feed(text):
            self._handle_stream_event(session, event)

    def _handle_stream_event(self, session: HeadlessSession, event: dict[str, Any]) -> None:
        session.transcript.append(event)
        session.event_count += 1
        if session.event_count == 1:
            app_log(NAMESPACE, "info", "First JSONL event received", {"agent_id": session.agent_id, "type": event.get("type")})
        for hook in session.mapper.map(event):
            self._emit_hook(session.agent_id, hook)

    async def _read_stderr(self, session: HeadlessSession) -> None:
        stream = session.process.stderr
        if stream is None:
            return
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # Line longer than the stream limit; take it in pieces.
                raw = await stream.read(STDOUT_CHUNK_SIZE)
            if not raw:
                break
            message = raw.decode("utf-8", errors="replace").strip()
            if not message or session.exited:
                continue
            session.stderr_lines.append(message)
            app_log(NAMESPACE, "warn", "stderr", {"agent_id": session.agent_id, "message": message})
            self._emit_hook(session.agent_id, NormalizedHookEvent(kind=HookEventKind.NOTIFICATION, message=message))

    def _emit_hook(self, agent_id: str, hook: NormalizedHookEvent) -> None:
        hook = hook.stamped()
        self._throttler.broadcast(Channel.HOOK_EVENT, agent_id, hook.to_wire())
        self._bus.emit_hook_event(agent_id, hook)

    # -- Termination -----------------------------------------------------------

    def _on_close(self, session: HeadlessSession, code: int) -> None:
        if session.exited:
            return
        session.exited = True

        if session.parser is not None:
            for event in session.parser.flush():
                self._handle_stream_event(session, event)

        if session.output_kind == OutputKind.TEXT and session.text_buffer:
            text = session.text_buffer.strip()
            session.transcript.append(
                {"type": "result", "result": text, "duration_ms": session.elapsed_ms, "cost_usd": 0}
            )
            self._emit_hook(
                session.agent_id,
                NormalizedHookEvent(kind=HookEventKind.STOP, message=text[:STOP_MESSAGE_LIMIT], timestamp=now_ms()),
            )

        app_log(
            NAMESPACE,
            "info",
            "Process exited",
            {
                "agent_id": session.agent_id,
                "exit_code": code,
                "stdout_bytes": session.stdout_bytes,
                "events": session.event_count,
                "stderr": "\n".join(session.stderr_lines)[:500],
            },
        )
        self._finish(session, code)

    def _on_error(self, session: HeadlessSession, exc: BaseException) -> None:
        if session.exited:
            return
        session.exited = True
        app_log(NAMESPACE, "error", "Process error", {"agent_id": session.agent_id, "error": str(exc)})
        self._finish(session, 1)

    def _finish(self, session: HeadlessSession, code: int) -> None:
        if session.kill_handle is not None:
            session.kill_handle.cancel()
            session.kill_handle = None
        self._store.release(session.agent_id, session.transcript)
        self._registry.unregister(session.agent_id, session)
        self._notify_exit(session.agent_id, code, session.on_exit)

    def _notify_exit(self, agent_id: str, code: int, on_exit: ExitCallback | None) -> None:
        if on_exit is not None:
            try:
                on_exit(agent_id, code)
            except Exception as exc:  # noqa: BLE001
                app_log(NAMESPACE, "error", "on_exit callback failed", {"agent_id": agent_id, "error": repr(exc)})
        self._throttler.broadcast(Channel.PTY_EXIT, agent_id, code)
        self._bus.emit_pty_exit(agent_id, code)

    # -- Kill ------------------------------------------------------------------

    def kill(self, agent_id: str) -> None:
        """Send SIGTERM; escalate to SIGKILL if the process is still alive after the grace period."""
        session = self._registry.get(agent_id)
        if session is None:
            return
        if session.kill_handle is not None:
            session.kill_handle.cancel()

        try:
            session.process.terminate()
        except ProcessLookupError:
            pass  # Already gone; close handling will follow.

        loop = asyncio.get_running_loop()
        session.kill_handle = loop.call_later(self._kill_grace_seconds, self._force_kill, agent_id, session)

    def _force_kill(self, agent_id: str, session: HeadlessSession) -> None:
        session.kill_handle = None
        # Bound to this session's own process, so a replacement under the same id is never hit.
        if session.exited or session.process.returncode is not None:
            return
        app_log(NAMESPACE, "warn", "Process ignored SIGTERM, sending SIGKILL", {"agent_id": agent_id, "pid": session.process.pid})
        try:
            session.process.kill()
        except ProcessLookupError:
            pass

    def kill_all(self) -> int:
        agent_ids = list(self._registry)
        for agent_id in agent_ids:
            self.kill(agent_id)
        return len(agent_ids)

    # -- Stale sweep -----------------------------------------------------------

    def start_stale_sweep(self) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop(), name="headless:stale-sweep")

    async def stop_stale_sweep(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._stale_sweep_interval)
            self.sweep_stale()

    def sweep_stale(self) -> int:
        """Finish sessions whose process exited but whose close handling never ran.

        Happens when a grandchild keeps the output pipes open after the agent
        itself is gone.
        """
        swept = 0
        for agent_id, session in self._registry.items():
            code = session.process.returncode
            if code is None or session.exited:
                continue
            app_log(NAMESPACE, "warn", "Stale headless session detected, cleaning up", {"agent_id": agent_id, "exit_code": code})
            session.exited = True
            if session.pump is not None:
                session.pump.cancel()
            self._finish(session, code)
            swept += 1
        return swept

    # -- Queries ---------------------------------------------------------------

    def is_headless(self, agent_id: str) -> bool:
        return agent_id in self._registry

    def active_session_count(self) -> int:
        return self._registry.active_count

    async def read_transcript(self, agent_id: str) -> str | None:
        return await self._store.read_transcript(agent_id)

    async def get_transcript_info(self, agent_id: str) -> TranscriptInfo | None:
        return await self._store.get_transcript_info(agent_id)

    async def read_transcript_page(self, agent_id: str, offset: int, limit: int) -> TranscriptPage | None:
        return await self._store.read_transcript_page(agent_id, offset, limit)
