"""Login-shell environment.

Desktop-launched processes often see a minimal ``PATH``.  ``ShellEnvironment``
sources the user's interactive login shell once (``$SHELL -ilc env``), merges
the result over ``os.environ`` and caches it until invalidated.  On Windows
the process environment is used as-is.
"""

from __future__ import annotations

import os
import re
import subprocess
import sys

from loguru import logger

_ENV_KEY = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

DEFAULT_SHELL = "/bin/sh"


def login_shell() -> str:
    return os.environ.get("SHELL") or DEFAULT_SHELL


class ShellEnvironment:
    """Lazily resolved, cached login-shell environment.

    ``login_shell=False`` skips the shell round-trip entirely and always uses
    ``os.environ``.  Useful for tests and headless servers.
    """

    def __init__(self, *, timeout: float = 5.0, login_shell: bool = True, platform: str | None = None) -> None:
        self._timeout = timeout
        self._use_login_shell = login_shell
        self._platform = platform or sys.platform
        self._cached: dict[str, str] | None = None

    @property
    def is_windows(self) -> bool:
        return self._platform == "win32"

    def get(self) -> dict[str, str]:
        """Return a copy of the resolved environment."""
        if self._cached is None:
            self._cached = self._load()
        return dict(self._cached)

    def invalidate(self) -> None:
        self._cached = None

    def _load(self) -> dict[str, str]:
        env = dict(os.environ)
        if self.is_windows or not self._use_login_shell:
            return env

        shell = login_shell()
        try:
            result = subprocess.run(  # noqa: S603
                [shell, "-ilc", "env"],
                capture_output=True,
                text=True,
                timeout=self._timeout,
                check=True,
                stdin=subprocess.DEVNULL,
            )
        except (subprocess.SubprocessError, OSError) as exc:
            logger.warning("Shell env: could not source {} ({}), using process environment", shell, exc)
            return env

        env.update(parse_env_output(result.stdout))
        logger.debug("Shell env: sourced {} ({} variables)", shell, len(env))
        return env


def parse_env_output(output: str) -> dict[str, str]:
    """Parse ``env`` output, skipping shell banner noise and continuation lines."""
    parsed: dict[str, str] = {}
    for line in output.splitlines():
        key, sep, value = line.partition("=")
        if sep and _ENV_KEY.match(key):
            parsed[key] = value
    return parsed
