"""Process launch helpers shared by the headless manager and structured adapters."""

from __future__ import annotations

import asyncio
import re
import sys
from collections.abc import Mapping, Sequence

# Markers Claude Code sets in its own environment; inherited, they make a
# nested Claude Code refuse to start.
STRIPPED_ENV_KEYS = ("CLAUDECODE", "CLAUDE_CODE_ENTRYPOINT")

_NEEDS_QUOTING = re.compile(r'[\s"&|<>^()%!,;]')


def build_env(base: Mapping[str, str], extra: Mapping[str, str] | None = None) -> dict[str, str]:
    """Shell environment minus nesting markers, with caller overrides on top."""
    env = dict(base)
    for key in STRIPPED_ENV_KEYS:
        env.pop(key, None)
    if extra:
        env.update(extra)
    return env


def quote_windows_arg(arg: str) -> str:
    """Quote a single argument for a ``cmd.exe`` command line.

    Arguments with whitespace, quotes or shell metacharacters (or empty ones)
    are wrapped in double quotes, embedded quotes are doubled.
    """
    if arg and not _NEEDS_QUOTING.search(arg):
        return arg
    return '"' + arg.replace('"', '""') + '"'


def windows_command_line(binary: str, args: Sequence[str]) -> str:
    return " ".join(quote_windows_arg(a) for a in (binary, *args))


async def launch(
    binary: str,
    args: Sequence[str],
    *,
    cwd: str | None,
    env: Mapping[str, str],
    windows: bool | None = None,
) -> asyncio.subprocess.Process:
    """Start ``binary`` with piped stdio.

    On Windows ``.cmd`` / ``.ps1`` shims only run through the command
    interpreter, so the pre-quoted command line is handed to it verbatim.
    Elsewhere the binary is executed directly, without a shell.
    """
    if windows is None:
        windows = sys.platform == "win32"
    pipes = {"stdin": asyncio.subprocess.PIPE, "stdout": asyncio.subprocess.PIPE, "stderr": asyncio.subprocess.PIPE}
    if windows:
        return await asyncio.create_subprocess_shell(
            windows_command_line(binary, args), cwd=cwd, env=dict(env), **pipes
        )
    return await asyncio.create_subprocess_exec(binary, *args, cwd=cwd, env=dict(env), **pipes)
