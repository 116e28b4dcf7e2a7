"""Unit tests for the binary resolver and login-shell environment."""

from __future__ import annotations

import os
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from clubhouse.agent_runtime.providers.binary import BinaryNotFoundError, BinaryResolver
from clubhouse.agent_runtime.shell import ShellEnvironment, parse_env_output


def _touch(path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\n", encoding="utf-8")
    path.chmod(0o755)
    return path


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def no_shell_lookup():
    with patch("clubhouse.agent_runtime.providers.binary.subprocess.run") as run:
        run.return_value = subprocess.CompletedProcess(args=[], returncode=1, stdout="", stderr="")
        yield run


# ---------------------------------------------------------------------------
# find
# ---------------------------------------------------------------------------


def test_extra_paths_checked_first(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, no_shell_lookup: MagicMock) -> None:
    on_path = _touch(tmp_path / "bin" / "claude")
    pinned = _touch(tmp_path / "pinned" / "claude")
    monkeypatch.setenv("PATH", str(on_path.parent))

    resolver = BinaryResolver(ShellEnvironment(login_shell=False, platform="linux"))

    assert resolver.find(["claude"], [str(tmp_path / "missing" / "claude"), str(pinned)]) == str(pinned)
    no_shell_lookup.assert_not_called()


def test_path_scan(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, no_shell_lookup: MagicMock) -> None:
    binary = _touch(tmp_path / "bin" / "codex")
    monkeypatch.setenv("PATH", os.pathsep.join([str(tmp_path / "empty"), str(binary.parent)]))

    resolver = BinaryResolver(ShellEnvironment(login_shell=False, platform="linux"))

    assert resolver.find(["codex"]) == str(binary)
    no_shell_lookup.assert_not_called()


def test_path_scan_tries_alternate_names(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, no_shell_lookup: MagicMock) -> None:
    binary = _touch(tmp_path / "bin" / "gh-copilot")
    monkeypatch.setenv("PATH", str(binary.parent))

    resolver = BinaryResolver(ShellEnvironment(login_shell=False, platform="linux"))

    assert resolver.find(["copilot", "gh-copilot"]) == str(binary)


def test_windows_extensions(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, no_shell_lookup: MagicMock) -> None:
    binary = _touch(tmp_path / "bin" / "claude.cmd")
    monkeypatch.setenv("PATH", str(binary.parent))

    resolver = BinaryResolver(ShellEnvironment(platform="win32"))

    assert resolver.find(["claude"]) == str(binary)


def test_shell_lookup_uses_last_line(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, no_shell_lookup: MagicMock) -> None:
    binary = _touch(tmp_path / "hidden" / "opencode")
    monkeypatch.setenv("PATH", str(tmp_path / "empty"))
    no_shell_lookup.return_value = subprocess.CompletedProcess(
        args=[], returncode=0, stdout=f"Welcome to zsh!\n{binary}\n", stderr=""
    )

    resolver = BinaryResolver(ShellEnvironment(login_shell=False, platform="linux"))

    assert resolver.find(["opencode"]) == str(binary)
    cmd = no_shell_lookup.call_args.args[0]
    assert cmd[1:] == ["-ilc", "which opencode"]


def test_shell_lookup_timeout_is_not_fatal(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, no_shell_lookup: MagicMock) -> None:
    monkeypatch.setenv("PATH", str(tmp_path / "empty"))
    no_shell_lookup.side_effect = subprocess.TimeoutExpired(cmd="which", timeout=5)

    resolver = BinaryResolver(ShellEnvironment(login_shell=False, platform="linux"))

    with pytest.raises(BinaryNotFoundError):
        resolver.find(["codex"])


def test_not_found_message(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, no_shell_lookup: MagicMock) -> None:
    monkeypatch.setenv("PATH", str(tmp_path / "empty"))
    resolver = BinaryResolver(ShellEnvironment(login_shell=False, platform="linux"))

    with pytest.raises(BinaryNotFoundError) as exc_info:
        resolver.find(["copilot", "gh-copilot"])

    assert exc_info.value.names == ["copilot", "gh-copilot"]
    assert str(exc_info.value) == "Could not find any of [copilot, gh-copilot] on PATH. Make sure it is installed."


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


def test_cache_hit_within_ttl(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, no_shell_lookup: MagicMock) -> None:
    first = _touch(tmp_path / "a" / "claude")
    monkeypatch.setenv("PATH", str(first.parent))
    clock = _Clock()
    resolver = BinaryResolver(ShellEnvironment(login_shell=False, platform="linux"), ttl=300, clock=clock)

    assert resolver.find(["claude"]) == str(first)

    # A second install earlier on PATH is not noticed while the entry is fresh.
    second = _touch(tmp_path / "b" / "claude")
    monkeypatch.setenv("PATH", os.pathsep.join([str(second.parent), str(first.parent)]))
    clock.now = 299
    assert resolver.find(["claude"]) == str(first)

    clock.now = 301
    assert resolver.find(["claude"]) == str(second)


def test_cache_revalidates_existence(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, no_shell_lookup: MagicMock) -> None:
    first = _touch(tmp_path / "a" / "claude")
    second = _touch(tmp_path / "b" / "claude")
    monkeypatch.setenv("PATH", os.pathsep.join([str(first.parent), str(second.parent)]))
    resolver = BinaryResolver(ShellEnvironment(login_shell=False, platform="linux"), clock=_Clock())

    assert resolver.find(["claude"]) == str(first)
    first.unlink()
    assert resolver.find(["claude"]) == str(second)


def test_clear_cache(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, no_shell_lookup: MagicMock) -> None:
    first = _touch(tmp_path / "a" / "claude")
    monkeypatch.setenv("PATH", str(first.parent))
    resolver = BinaryResolver(ShellEnvironment(login_shell=False, platform="linux"), clock=_Clock())
    resolver.find(["claude"])

    second = _touch(tmp_path / "b" / "claude")
    monkeypatch.setenv("PATH", os.pathsep.join([str(second.parent), str(first.parent)]))
    resolver.clear_cache()

    assert resolver.find(["claude"]) == str(second)


def test_search_dirs_deduplicated(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PATH", os.pathsep.join(["/a", "/b", "/a"]))
    resolver = BinaryResolver(ShellEnvironment(login_shell=False, platform="linux"))

    assert resolver.search_dirs() == ["/a", "/b"]


# ---------------------------------------------------------------------------
# Shell environment
# ---------------------------------------------------------------------------


def test_parse_env_output_skips_noise() -> None:
    output = "Last login: today\nPATH=/usr/bin:/bin\nFOO=a=b\n  continued line\nBAD KEY=x\n"
    assert parse_env_output(output) == {"PATH": "/usr/bin:/bin", "FOO": "a=b"}


def test_shell_env_falls_back_to_process_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CLUBHOUSE_TEST_MARKER", "1")
    with patch(
        "clubhouse.agent_runtime.shell.subprocess.run",
        side_effect=subprocess.CalledProcessError(returncode=1, cmd="env"),
    ):
        env = ShellEnvironment(platform="linux").get()

    assert env["CLUBHOUSE_TEST_MARKER"] == "1"


def test_shell_env_merges_login_shell_output(monkeypatch: pytest.MonkeyPatch) -> None:
    completed = subprocess.CompletedProcess(args=[], returncode=0, stdout="OPENAI_API_KEY=sk-test\n", stderr="")
    with patch("clubhouse.agent_runtime.shell.subprocess.run", return_value=completed) as run:
        shell_env = ShellEnvironment(platform="linux")
        assert shell_env.get()["OPENAI_API_KEY"] == "sk-test"
        shell_env.get()
        assert run.call_count == 1

        shell_env.invalidate()
        shell_env.get()
        assert run.call_count == 2


def test_shell_env_get_returns_copy() -> None:
    shell_env = ShellEnvironment(login_shell=False, platform="linux")
    shell_env.get()["CLUBHOUSE_MUTATED"] = "1"

    assert "CLUBHOUSE_MUTATED" not in shell_env.get()
