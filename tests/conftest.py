"""Shared test fixtures.

Settings are read from ``CLUBHOUSE_*`` environment variables and cached;
``clean_settings`` points the data root at a temporary directory and
invalidates the cache around each test that uses it.
"""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from clubhouse.agent_runtime.settings import ClubhouseSettings, _get_settings_cached


@pytest.fixture
def clean_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[ClubhouseSettings]:
    """Settings isolated from the developer's environment."""
    monkeypatch.setenv("CLUBHOUSE_DATA_ROOT", str(tmp_path / "data"))
    monkeypatch.setenv("CLUBHOUSE_LOGIN_SHELL_ENV", "false")
    _get_settings_cached.cache_clear()
    yield ClubhouseSettings(_env_file=None)
    _get_settings_cached.cache_clear()
