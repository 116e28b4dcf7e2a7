"""Binary resolver shared by every provider.

Lookup strategies, cheapest first:

1. Provider-supplied well-known install locations (existence check).
2. Scan of the deduplicated directories from the process ``PATH`` and the
   login-shell ``PATH``.  On Windows, ``.exe`` / ``.cmd`` / ``.ps1`` are tried
   as well.
3. ``where <name>`` (Windows) or ``$SHELL -ilc 'which <name>'`` elsewhere,
   timeboxed.  Spawning a login shell can take seconds on heavy shell setups,
   so this only runs when everything else failed.

Hits are cached per first candidate name for a TTL and revalidated with an
existence check before reuse, so uninstalls are noticed.
"""

from __future__ import annotations

import os
import shlex
import subprocess
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from loguru import logger

from clubhouse.agent_runtime.shell import ShellEnvironment, login_shell

WINDOWS_EXTENSIONS = (".exe", ".cmd", ".ps1")


class BinaryNotFoundError(LookupError):
    """None of the candidate names could be resolved."""

    def __init__(self, names: Sequence[str]) -> None:
        self.names = list(names)
        super().__init__(f"Could not find any of [{', '.join(self.names)}] on PATH. Make sure it is installed.")


@dataclass
class _CacheEntry:
    path: str
    resolved_at: float


class BinaryResolver:
    def __init__(
        self,
        shell_env: ShellEnvironment,
        *,
        ttl: float = 300.0,
        lookup_timeout: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._shell_env = shell_env
        self._ttl = ttl
        self._lookup_timeout = lookup_timeout
        self._clock = clock
        self._cache: dict[str, _CacheEntry] = {}

    @property
    def shell_env(self) -> ShellEnvironment:
        return self._shell_env

    def clear_cache(self) -> None:
        self._cache.clear()

    def find(self, names: Sequence[str], extra_paths: Sequence[str] = ()) -> str:
        """Return the absolute path of the first resolvable candidate.

        Raises ``BinaryNotFoundError`` when every strategy is exhausted.
        """
        key = names[0] if names else ""
        cached = self._cache.get(key)
        if cached is not None:
            if self._clock() - cached.resolved_at < self._ttl and os.path.exists(cached.path):
                return cached.path
            del self._cache[key]

        found = self._check_extra_paths(extra_paths) or self._scan_path(names) or self._shell_lookup(names)
        if found is None:
            raise BinaryNotFoundError(names)

        logger.debug("Binary resolver: {} -> {}", key, found)
        self._cache[key] = _CacheEntry(path=found, resolved_at=self._clock())
        return found

    # -- Strategies ------------------------------------------------------------

    def _check_extra_paths(self, extra_paths: Sequence[str]) -> str | None:
        for path in extra_paths:
            if os.path.exists(path):
                return path
        return None

    def search_dirs(self) -> list[str]:
        """Deduplicated PATH entries: process PATH first, then the login-shell PATH."""
        dirs: list[str] = []
        seen: set[str] = set()
        shell_path = self._shell_env.get().get("PATH", "")
        for raw in (os.environ.get("PATH", ""), shell_path):
            for entry in raw.split(os.pathsep):
                if entry and entry not in seen:
                    seen.add(entry)
                    dirs.append(entry)
        return dirs

    def _scan_path(self, names: Sequence[str]) -> str | None:
        windows = self._shell_env.is_windows
        for directory in self.search_dirs():
            for name in names:
                candidate = os.path.join(directory, name)
                if os.path.exists(candidate):
                    return candidate
                if windows:
                    for ext in WINDOWS_EXTENSIONS:
                        if os.path.exists(candidate + ext):
                            return candidate + ext
        return None

    def _shell_lookup(self, names: Sequence[str]) -> str | None:
        for name in names:
            if self._shell_env.is_windows:
                cmd = ["where", name]
            else:
                cmd = [login_shell(), "-ilc", f"which {shlex.quote(name)}"]
            try:
                result = subprocess.run(  # noqa: S603
                    cmd,
                    capture_output=True,
                    text=True,
                    timeout=self._lookup_timeout,
                    stdin=subprocess.DEVNULL,
                )
            except (subprocess.SubprocessError, OSError) as exc:
                logger.debug("Binary resolver: shell lookup for {} failed ({})", name, exc)
                continue
            if result.returncode != 0:
                continue

            lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
            if not lines:
                continue
            # `where` lists every match, first wins.  Login shells may print
            # banners before `which` output, so the path is the last line.
            found = lines[0] if self._shell_env.is_windows else lines[-1]
            if os.path.exists(found):
                return found
        return None
