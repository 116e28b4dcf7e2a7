"""Shared fixtures for agent-runtime tests."""

from __future__ import annotations

import sys
import textwrap
from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from clubhouse.agent_runtime.broadcast import BroadcastThrottler, CallbackTarget
from clubhouse.agent_runtime.bus import EventBus
from clubhouse.agent_runtime.providers.binary import BinaryResolver
from clubhouse.agent_runtime.shell import ShellEnvironment
from clubhouse.agent_runtime.store.transcript import TranscriptStore


@pytest.fixture
def shell_env() -> ShellEnvironment:
    """Process environment only -- never spawns a login shell."""
    return ShellEnvironment(login_shell=False, platform="linux")


@pytest.fixture
def resolver(shell_env: ShellEnvironment) -> MagicMock:
    """Resolver stub that resolves every provider to ``/usr/bin/<name>``."""
    stub = MagicMock(spec=BinaryResolver)
    stub.shell_env = shell_env
    stub.find.side_effect = lambda names, extra_paths=(): f"/usr/bin/{names[0]}"
    return stub


@pytest.fixture
def store(tmp_path: Path) -> TranscriptStore:
    return TranscriptStore(tmp_path / "agent-logs", max_bytes=10 * 1024 * 1024)


@pytest.fixture
def delivered() -> list[tuple[Any, ...]]:
    """Every ``(channel, *args)`` tuple the throttler delivered."""
    return []


@pytest.fixture
def throttler(delivered: list[tuple[Any, ...]]) -> BroadcastThrottler:
    target = CallbackTarget(lambda channel, *args: delivered.append((channel, *args)))
    return BroadcastThrottler(lambda: [target])


@pytest.fixture
def bus() -> EventBus:
    return EventBus(active=True)


@pytest.fixture
def fake_agent(tmp_path: Path) -> Callable[[str], tuple[str, list[str]]]:
    """Write a Python script standing in for an agent CLI.

    Returns ``(binary, args)`` ready for ``HeadlessManager.spawn``.
    """
    counter = iter(range(1_000_000))

    def _make(source: str) -> tuple[str, list[str]]:
        script = tmp_path / f"agent_{next(counter)}.py"
        script.write_text(textwrap.dedent(source), encoding="utf-8")
        return sys.executable, ["-u", str(script)]

    return _make
