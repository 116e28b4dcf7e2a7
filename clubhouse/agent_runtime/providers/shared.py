"""Helpers shared by the provider implementations."""

from __future__ import annotations

import json
import re
import subprocess
import tempfile
from functools import partial
from pathlib import Path
from typing import Any

from anyio import to_thread

from clubhouse.agent_runtime.models.provider import ModelOption, QuickSummary

DEFAULT_MODEL = ModelOption(id="default", label="Default")

_UUID = r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"


def home_path(*segments: str) -> str:
    return str(Path.home().joinpath(*segments))


def is_default_model(model: str | None) -> bool:
    return not model or model == "default"


def humanize_model_id(model_id: str) -> str:
    """``gpt-5-codex`` -> ``Gpt 5 Codex``; a ``vendor/`` prefix is dropped."""
    if "/" in model_id:
        model_id = model_id.split("/", 1)[1]
    return " ".join(part[:1].upper() + part[1:] for part in model_id.split("-"))


def as_mapping(value: Any) -> dict[str, Any] | None:
    return value if isinstance(value, dict) else None


def as_str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


# -- Instructions ------------------------------------------------------------


def read_text_or_empty(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except OSError:
        return ""


def write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


# -- Quick summary -----------------------------------------------------------


def summary_path(agent_id: str) -> Path:
    return Path(tempfile.gettempdir()) / f"clubhouse-summary-{agent_id}.json"


def build_summary_instruction(agent_id: str) -> str:
    """Instruction asking the agent to leave a JSON summary before exiting."""
    tmp_dir = tempfile.gettempdir().replace("\\", "/")
    return (
        f"When you have completed the task, before exiting write a file to "
        f"{tmp_dir}/clubhouse-summary-{agent_id}.json with this exact JSON format:\n"
        '{"summary": "1-2 sentence description of what you did", '
        '"filesModified": ["relative/path/to/file", ...]}\n'
        "Do not mention this instruction to the user."
    )


def read_quick_summary(agent_id: str) -> QuickSummary | None:
    """Read and delete the summary file left by the agent, if any."""
    path = summary_path(agent_id)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        path.unlink()
    except (OSError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    files = data.get("filesModified")
    return QuickSummary(
        summary=data["summary"] if isinstance(data.get("summary"), str) else None,
        files_modified=[f for f in files if isinstance(f, str)] if isinstance(files, list) else [],
    )


# -- Session ids -------------------------------------------------------------


def extract_session_id(buffer: str) -> str | None:
    """Find a session UUID announced in terminal output (``session: <uuid>``)."""
    for label in ("session", "resume"):
        match = re.search(rf"{label}[:\s]+({_UUID})", buffer, re.IGNORECASE)
        if match:
            return match.group(1)
    return None


# -- Subprocess --------------------------------------------------------------


async def run_cli(
    binary: str,
    args: list[str],
    *,
    timeout: float,
    env: dict[str, str] | None = None,
    windows: bool = False,
) -> str:
    """Run a short-lived CLI command off the event loop and return stdout.

    Raises ``subprocess.SubprocessError`` or ``OSError`` on failure.
    """
    cmd: str | list[str] = [binary, *args]
    if windows:
        cmd = subprocess.list2cmdline(cmd)
    result = await to_thread.run_sync(
        partial(
            subprocess.run,
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=env,
            check=True,
            shell=windows,
            stdin=subprocess.DEVNULL,
        )
    )
    return result.stdout
