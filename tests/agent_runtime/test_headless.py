"""Integration tests for HeadlessManager using small Python scripts as fake agents."""

from __future__ import annotations

import asyncio
import json
import signal
import sys
from collections.abc import Callable
from typing import Any
from unittest.mock import MagicMock

import pytest

from clubhouse.agent_runtime.broadcast import BroadcastThrottler
from clubhouse.agent_runtime.bus import EventBus
from clubhouse.agent_runtime.execution.headless import TEXT_MODE_NOTICE, HeadlessManager, HeadlessSession
from clubhouse.agent_runtime.models.enums import Channel, OutputKind
from clubhouse.agent_runtime.registry import ShuttingDownError
from clubhouse.agent_runtime.shell import ShellEnvironment
from clubhouse.agent_runtime.store.transcript import TranscriptStore

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX signal semantics")

FakeAgent = Callable[[str], tuple[str, list[str]]]

STREAM_JSON_AGENT = """
import json, sys

def emit(obj):
    sys.stdout.write(json.dumps(obj) + "\\n")
    sys.stdout.flush()

emit({"type": "system", "subtype": "init"})
emit({"type": "assistant", "message": {"content": [
    {"type": "tool_use", "id": "t1", "name": "Read", "input": {"file_path": "a.py"}}]}})
emit({"type": "user", "message": {"content": [{"type": "tool_result", "tool_use_id": "t1", "content": "ok"}]}})
sys.stdout.write("not json\\n")
# Final record without a trailing newline.
sys.stdout.write(json.dumps({"type": "result", "result": "Done", "cost_usd": 0.01, "duration_ms": 10}))
"""

SLEEPING_AGENT = """
import time
time.sleep(30)
"""

STUBBORN_AGENT = """
import signal, time
signal.signal(signal.SIGTERM, signal.SIG_IGN)
print("ready", flush=True)
time.sleep(30)
"""


@pytest.fixture
def manager(store: TranscriptStore, throttler: BroadcastThrottler, bus: EventBus, shell_env: ShellEnvironment) -> HeadlessManager:
    return HeadlessManager(store, throttler, bus, shell_env, kill_grace_seconds=0.3, stale_sweep_interval=0.02, windows=False)


class ExitRecorder:
    """``on_exit`` callback that can be awaited."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, int]] = []
        self._event = asyncio.Event()

    def __call__(self, agent_id: str, code: int) -> None:
        self.calls.append((agent_id, code))
        self._event.set()

    async def wait(self, timeout: float = 10.0) -> int:
        await asyncio.wait_for(self._event.wait(), timeout)
        return self.calls[-1][1]


async def _until(predicate: Callable[[], bool], timeout: float = 10.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


def _hooks(delivered: list[tuple[Any, ...]], agent_id: str) -> list[dict[str, Any]]:
    return [args[2] for args in delivered if args[0] == Channel.HOOK_EVENT and args[1] == agent_id]


# ---------------------------------------------------------------------------
# stream-json mode
# ---------------------------------------------------------------------------


async def test_stream_json_run(
    manager: HeadlessManager,
    store: TranscriptStore,
    bus: EventBus,
    delivered: list[tuple[Any, ...]],
    fake_agent: FakeAgent,
    tmp_path,
) -> None:
    spawned = MagicMock()
    bus_exits = MagicMock()
    bus.on_agent_spawned(spawned)
    bus.on_pty_exit(bus_exits)
    on_exit = ExitRecorder()
    binary, args = fake_agent(STREAM_JSON_AGENT)

    await manager.spawn("a1", str(tmp_path), binary, args, on_exit=on_exit, project_id="proj")
    assert manager.is_headless("a1")
    assert await on_exit.wait() == 0

    assert on_exit.calls == [("a1", 0)]
    assert not manager.is_headless("a1")
    assert manager.active_session_count() == 0
    spawned.assert_called_once()
    assert spawned.call_args.args[:3] == ("a1", "headless", "proj")
    bus_exits.assert_called_once_with("a1", 0)
    assert (Channel.PTY_EXIT, "a1", 0) in delivered

    hooks = _hooks(delivered, "a1")
    assert [h["kind"] for h in hooks] == ["pre_tool", "post_tool", "stop"]
    assert hooks[0]["toolName"] == "Read"
    assert hooks[0]["toolInput"] == {"file_path": "a.py"}
    assert hooks[2]["message"] == "Done"
    assert hooks[2]["costUsd"] == 0.01
    assert all("timestamp" in h for h in hooks)

    page = await manager.read_transcript_page("a1", 0, 10)
    assert page is not None
    assert [e["type"] for e in page.events] == ["system", "assistant", "user", "result"]
    lines = store.path_for("a1").read_text(encoding="utf-8").splitlines()
    assert json.loads(lines[-1])["result"] == "Done"


async def test_stderr_becomes_notifications(
    manager: HeadlessManager, delivered: list[tuple[Any, ...]], fake_agent: FakeAgent, tmp_path
) -> None:
    on_exit = ExitRecorder()
    binary, args = fake_agent('import sys\nsys.stderr.write("warning: slow\\n\\n")\nsys.exit(3)\n')

    await manager.spawn("a1", str(tmp_path), binary, args, on_exit=on_exit)

    assert await on_exit.wait() == 3
    hooks = _hooks(delivered, "a1")
    assert hooks == [{"kind": "notification", "message": "warning: slow", "timestamp": hooks[0]["timestamp"]}]


# ---------------------------------------------------------------------------
# text mode
# ---------------------------------------------------------------------------


async def test_text_mode_synthesizes_result(
    manager: HeadlessManager, delivered: list[tuple[Any, ...]], fake_agent: FakeAgent, tmp_path
) -> None:
    on_exit = ExitRecorder()
    binary, args = fake_agent('print("  hello world  ")\nprint("{\\"type\\": \\"assistant\\"}")\n')

    await manager.spawn("a1", str(tmp_path), binary, args, output_kind=OutputKind.TEXT, on_exit=on_exit)
    assert await on_exit.wait() == 0

    hooks = _hooks(delivered, "a1")
    assert [h["kind"] for h in hooks] == ["notification", "stop"]
    assert hooks[0]["message"] == TEXT_MODE_NOTICE
    assert hooks[1]["message"] == 'hello world  \n{"type": "assistant"}'

    page = await manager.read_transcript_page("a1", 0, 10)
    assert page is not None
    assert len(page.events) == 1
    result = page.events[0]
    assert result["type"] == "result"
    assert result["cost_usd"] == 0
    assert result["duration_ms"] >= 0


async def test_text_mode_silent_process_has_no_result(
    manager: HeadlessManager, delivered: list[tuple[Any, ...]], fake_agent: FakeAgent, tmp_path
) -> None:
    on_exit = ExitRecorder()
    binary, args = fake_agent("pass\n")

    await manager.spawn("a1", str(tmp_path), binary, args, output_kind=OutputKind.TEXT, on_exit=on_exit)
    assert await on_exit.wait() == 0

    assert [h["kind"] for h in _hooks(delivered, "a1")] == ["notification"]
    info = await manager.get_transcript_info("a1")
    assert info is not None
    assert info.total_events == 0


async def test_stdout_byte_count_is_in_bytes(manager: HeadlessManager, fake_agent: FakeAgent, tmp_path) -> None:
    on_exit = ExitRecorder()
    binary, args = fake_agent('import sys\nsys.stdout.buffer.write(("\\u00e9" * 10).encode("utf-8"))\n')

    await manager.spawn("a1", str(tmp_path), binary, args, output_kind=OutputKind.TEXT, on_exit=on_exit)
    session = manager.registry.get("a1")
    assert session is not None
    await on_exit.wait()

    assert session.stdout_bytes == 20
    assert session.text_buffer == "é" * 10


async def test_stop_message_truncated(
    manager: HeadlessManager, delivered: list[tuple[Any, ...]], fake_agent: FakeAgent, tmp_path
) -> None:
    on_exit = ExitRecorder()
    binary, args = fake_agent('print("x" * 2000)\n')

    await manager.spawn("a1", str(tmp_path), binary, args, output_kind=OutputKind.TEXT, on_exit=on_exit)
    await on_exit.wait()

    stop = _hooks(delivered, "a1")[-1]
    assert len(stop["message"]) == 500
    text = await manager.read_transcript("a1")
    assert text is not None
    assert len(json.loads(text.splitlines()[0])["result"]) == 2000


# ---------------------------------------------------------------------------
# Failures and termination
# ---------------------------------------------------------------------------


async def test_spawn_failure_reports_exit_code_one(
    manager: HeadlessManager, bus: EventBus, delivered: list[tuple[Any, ...]], tmp_path
) -> None:
    on_exit = ExitRecorder()
    exits = MagicMock()
    bus.on_pty_exit(exits)

    await manager.spawn("a1", str(tmp_path), str(tmp_path / "missing-agent"), [], on_exit=on_exit)

    assert on_exit.calls == [("a1", 1)]
    assert not manager.is_headless("a1")
    assert (Channel.PTY_EXIT, "a1", 1) in delivered
    exits.assert_called_once_with("a1", 1)


async def test_kill_sends_sigterm(manager: HeadlessManager, fake_agent: FakeAgent, tmp_path) -> None:
    on_exit = ExitRecorder()
    binary, args = fake_agent(SLEEPING_AGENT)
    await manager.spawn("a1", str(tmp_path), binary, args, output_kind=OutputKind.TEXT, on_exit=on_exit)

    manager.kill("a1")

    assert await on_exit.wait() == -signal.SIGTERM
    assert not manager.is_headless("a1")


async def test_kill_escalates_to_sigkill(manager: HeadlessManager, fake_agent: FakeAgent, tmp_path) -> None:
    on_exit = ExitRecorder()
    binary, args = fake_agent(STUBBORN_AGENT)
    await manager.spawn("a1", str(tmp_path), binary, args, output_kind=OutputKind.TEXT, on_exit=on_exit)
    await _until(lambda: "ready" in manager.registry.get("a1").text_buffer)

    manager.kill("a1")

    assert await on_exit.wait() == -signal.SIGKILL
    assert on_exit.calls == [("a1", -signal.SIGKILL)]


async def test_kill_unknown_is_noop(manager: HeadlessManager) -> None:
    manager.kill("ghost")
    assert manager.kill_all() == 0


async def test_respawn_replaces_running_session(
    manager: HeadlessManager, store: TranscriptStore, fake_agent: FakeAgent, tmp_path
) -> None:
    first_exit = ExitRecorder()
    second_exit = ExitRecorder()
    sleeper, sleeper_args = fake_agent(SLEEPING_AGENT)
    talker, talker_args = fake_agent('print("second run")\n')

    await manager.spawn("a1", str(tmp_path), sleeper, sleeper_args, output_kind=OutputKind.TEXT, on_exit=first_exit)
    first = manager.registry.get("a1")
    await manager.spawn("a1", str(tmp_path), talker, talker_args, output_kind=OutputKind.TEXT, on_exit=second_exit)

    assert manager.registry.get("a1") is not first
    assert await first_exit.wait() == -signal.SIGTERM
    assert await second_exit.wait() == 0
    assert not manager.is_headless("a1")

    text = await manager.read_transcript("a1")
    assert text is not None
    assert json.loads(text.splitlines()[0])["result"] == "second run"


async def test_concurrent_spawns_for_one_id_keep_one_process(
    manager: HeadlessManager, store: TranscriptStore, fake_agent: FakeAgent, tmp_path
) -> None:
    first_exit = ExitRecorder()
    second_exit = ExitRecorder()
    binary, args = fake_agent(SLEEPING_AGENT)

    await asyncio.gather(
        manager.spawn("a1", str(tmp_path), binary, args, output_kind=OutputKind.TEXT, on_exit=first_exit),
        manager.spawn("a1", str(tmp_path), binary, args, output_kind=OutputKind.TEXT, on_exit=second_exit),
    )

    survivor = manager.registry.get("a1")
    assert survivor is not None
    assert survivor.on_exit is second_exit
    assert manager.active_session_count() == 1
    assert await first_exit.wait() == -signal.SIGTERM
    assert second_exit.calls == []
    assert store.active("a1") is survivor.transcript

    manager.kill("a1")
    assert await second_exit.wait() == -signal.SIGTERM
    assert first_exit.calls == [("a1", -signal.SIGTERM)]


async def test_kill_all(manager: HeadlessManager, fake_agent: FakeAgent, tmp_path) -> None:
    recorders = [ExitRecorder(), ExitRecorder()]
    binary, args = fake_agent(SLEEPING_AGENT)
    for i, recorder in enumerate(recorders):
        await manager.spawn(f"a{i}", str(tmp_path), binary, args, output_kind=OutputKind.TEXT, on_exit=recorder)
    assert manager.active_session_count() == 2

    assert manager.kill_all() == 2

    for recorder in recorders:
        assert await recorder.wait() == -signal.SIGTERM
    assert await manager.registry.wait_until_drained(timeout=1.0)


async def test_refuses_spawn_during_shutdown(manager: HeadlessManager, fake_agent: FakeAgent, tmp_path) -> None:
    manager.registry.begin_shutdown()
    binary, args = fake_agent("pass\n")

    with pytest.raises(ShuttingDownError):
        await manager.spawn("a1", str(tmp_path), binary, args)


# ---------------------------------------------------------------------------
# Stale sweep
# ---------------------------------------------------------------------------


def _zombie_session(store: TranscriptStore, on_exit: ExitRecorder) -> HeadlessSession:
    process = MagicMock(returncode=0, pid=4242)
    return HeadlessSession(
        agent_id="a1",
        process=process,
        output_kind=OutputKind.TEXT,
        transcript=store.open("a1"),
        on_exit=on_exit,
    )


async def test_sweep_stale_finishes_exited_sessions(
    manager: HeadlessManager, store: TranscriptStore, delivered: list[tuple[Any, ...]]
) -> None:
    on_exit = ExitRecorder()
    session = _zombie_session(store, on_exit)
    manager.registry.register("a1", session)

    assert manager.sweep_stale() == 1
    assert manager.sweep_stale() == 0

    assert on_exit.calls == [("a1", 0)]
    assert not manager.is_headless("a1")
    assert session.transcript.closed
    assert (Channel.PTY_EXIT, "a1", 0) in delivered


async def test_sweep_ignores_running_sessions(manager: HeadlessManager, store: TranscriptStore) -> None:
    on_exit = ExitRecorder()
    session = _zombie_session(store, on_exit)
    session.process.returncode = None
    manager.registry.register("a1", session)

    assert manager.sweep_stale() == 0
    assert manager.is_headless("a1")


async def test_periodic_sweep(manager: HeadlessManager, store: TranscriptStore) -> None:
    on_exit = ExitRecorder()
    manager.registry.register("a1", _zombie_session(store, on_exit))

    manager.start_stale_sweep()
    try:
        assert await on_exit.wait(timeout=2.0) == 0
    finally:
        await manager.stop_stale_sweep()

# ---------------------------------------------------------------------------
# One-shot termination
# ---------------------------------------------------------------------------


def _count_exits(delivered: list[tuple[Any, ...]]) -> int:
    return sum(1 for args in delivered if args[0] == Channel.PTY_EXIT)


@pytest.mark.parametrize("order", ["error_then_close", "close_then_error"])
async def test_error_and_close_notify_once(
    manager: HeadlessManager, store: TranscriptStore, bus: EventBus, delivered: list[tuple[Any, ...]], order: str
) -> None:
    on_exit = ExitRecorder()
    bus_exits = MagicMock()
    bus.on_pty_exit(bus_exits)
    session = _zombie_session(store, on_exit)
    manager.registry.register("a1", session)

    if order == "error_then_close":
        manager._on_error(session, OSError("pipe broke"))
        manager._on_close(session, 0)
        expected = 1
    else:
        manager._on_close(session, 0)
        manager._on_error(session, OSError("pipe broke"))
        expected = 0

    assert on_exit.calls == [("a1", expected)]
    assert _count_exits(delivered) == 1
    bus_exits.assert_called_once_with("a1", expected)
    assert not manager.is_headless("a1")
    assert session.transcript.closed


async def test_sweep_racing_close_notifies_once(
    manager: HeadlessManager, store: TranscriptStore, bus: EventBus, delivered: list[tuple[Any, ...]]
) -> None:
    on_exit = ExitRecorder()
    bus_exits = MagicMock()
    bus.on_pty_exit(bus_exits)
    session = _zombie_session(store, on_exit)
    manager.registry.register("a1", session)

    assert manager.sweep_stale() == 1
    manager._on_close(session, 0)
    manager._on_error(session, OSError("late"))

    assert on_exit.calls == [("a1", 0)]
    assert _count_exits(delivered) == 1
    bus_exits.assert_called_once_with("a1", 0)
