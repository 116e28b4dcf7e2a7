"""Runtime configuration loaded from CLUBHOUSE_* environment variables."""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class ClubhouseSettings(BaseSettings):
    """Clubhouse Agent Runtime settings.

    All fields are read from environment variables with the ``CLUBHOUSE_``
    prefix.  For example, ``CLUBHOUSE_LOG_LEVEL=DEBUG`` maps to ``log_level``.

    Provider credentials (OPENAI_API_KEY, ...) are **not** managed here -- they
    flow through the login-shell environment to the agent processes.
    """

    model_config = SettingsConfigDict(
        env_prefix="CLUBHOUSE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # -- Logging ---------------------------------------------------------------
    log_level: str = "INFO"

    # -- Data storage ----------------------------------------------------------
    data_root: str = "./data"
    """Root directory for managed data.  Transcripts live under ``agent-logs/``."""

    max_transcript_bytes: int = 10 * 1024 * 1024
    """In-memory transcript cap per session.  Older events are evicted past this."""

    # -- Binary resolution -----------------------------------------------------
    binary_cache_ttl: float = 300.0
    binary_lookup_timeout: float = 5.0
    """Timeout for login-shell lookups (``which`` and environment sourcing)."""

    login_shell_env: bool = True
    """Source the user's login shell for PATH and credentials.  Disable on servers."""

    # -- Process lifecycle -----------------------------------------------------
    kill_grace_seconds: float = 5.0
    """Seconds between SIGTERM and the SIGKILL escalation."""

    stale_sweep_interval: float = 30.0

    graceful_shutdown_timeout: float = 10.0
    """Seconds to wait for sessions to drain during shutdown."""

    # -- Fan-out ---------------------------------------------------------------
    event_bus_enabled: bool = False
    """Activate the internal event bus (only needed by external relays)."""

    pty_data_interval_ms: int = 16
    hook_event_interval_ms: int = 50

    # -- Helpers ---------------------------------------------------------------

    @property
    def logs_dir(self) -> Path:
        return Path(self.data_root) / "agent-logs"


def get_settings() -> ClubhouseSettings:
    """Return a cached settings instance.

    Reads from environment variables and ``.env`` on first call, then returns
    the same object.  Call ``_get_settings_cached.cache_clear()`` in tests to force a
    re-read after overriding env vars.
    """
    return _get_settings_cached()


def _get_settings_cached() -> ClubhouseSettings:
    """Inner function wrapped by lru_cache (allows type-safe cache_clear)."""
    return ClubhouseSettings()


# Apply lru_cache at runtime so the function is only called once.
from functools import lru_cache  # noqa: E402

_get_settings_cached = lru_cache(maxsize=1)(_get_settings_cached)
