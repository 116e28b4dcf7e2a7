"""OpenCode provider.

OpenCode reports lifecycle events through its plugin, which already emits
the normalized ``kind`` vocabulary; parsing only validates the shape.
"""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Any

from loguru import logger

from clubhouse.agent_runtime.models.enums import HookEventKind, OutputKind
from clubhouse.agent_runtime.models.events import NormalizedHookEvent
from clubhouse.agent_runtime.models.provider import (
    HeadlessCommand,
    HeadlessOptions,
    ModelOption,
    ProviderCapabilities,
    ProviderConventions,
    SpawnCommand,
    SpawnOptions,
)
from clubhouse.agent_runtime.providers.base import BaseProvider
from clubhouse.agent_runtime.providers.binary import BinaryNotFoundError
from clubhouse.agent_runtime.providers.shared import (
    DEFAULT_MODEL,
    as_mapping,
    as_str,
    home_path,
    humanize_model_id,
    is_default_model,
    run_cli,
)


def parse_models_output(stdout: str) -> list[ModelOption] | None:
    """Parse ``opencode models`` output (one ``provider/model`` per line)."""
    ids = [line.strip() for line in stdout.strip().splitlines() if line.strip() and "migration" not in line]
    if not ids:
        return None
    return [DEFAULT_MODEL, *(ModelOption(id=i, label=humanize_model_id(i)) for i in ids)]


class OpenCodeProvider(BaseProvider):
    id = "opencode"
    display_name = "OpenCode"
    short_name = "OC"
    badge = "Beta"

    conventions = ProviderConventions(
        config_dir=".opencode",
        local_instructions_file="instructions.md",
        legacy_instructions_file="instructions.md",
        mcp_config_file="opencode.json",
        local_settings_file="opencode.json",
    )
    capabilities = ProviderCapabilities(
        headless=True,
        structured_output=False,
        hooks=False,
        session_resume=True,
        permissions=False,
    )

    binary_names = ("opencode",)
    tool_verbs = {
        "Bash": "Running command",
        "Edit": "Editing file",
        "Write": "Writing file",
        "Read": "Reading file",
        "Glob": "Searching files",
        "Grep": "Searching code",
        "Task": "Running task",
    }

    def extra_paths(self) -> list[str]:
        return [
            home_path(".local", "bin", "opencode"),
            home_path("go", "bin", "opencode"),
            "/usr/local/bin/opencode",
            "/opt/homebrew/bin/opencode",
        ]

    def instructions_path(self, worktree: str) -> Path:
        return Path(worktree) / self.conventions.config_dir / self.conventions.local_instructions_file

    # -- Commands --------------------------------------------------------------

    def build_spawn_command(self, opts: SpawnOptions) -> SpawnCommand:
        # No permission-skipping flag exists, free agent mode changes nothing.
        args: list[str] = []
        if not is_default_model(opts.model):
            args += ["--model", opts.model]  # type: ignore[list-item]
        if opts.mission:
            args.append(opts.mission)
        return SpawnCommand(binary=self.find_binary(), args=args)

    def build_headless_command(self, opts: HeadlessOptions) -> HeadlessCommand | None:
        if not opts.mission:
            return None
        args = ["run", opts.mission, "--format", "json"]
        if not is_default_model(opts.model):
            args += ["--model", opts.model]  # type: ignore[list-item]
        return HeadlessCommand(binary=self.find_binary(), args=args, output_kind=OutputKind.TEXT)

    # -- Hooks -----------------------------------------------------------------

    def parse_hook_event(self, raw: Any) -> NormalizedHookEvent | None:
        obj = as_mapping(raw)
        if obj is None:
            return None
        try:
            kind = HookEventKind(obj.get("kind"))
        except ValueError:
            return None
        return NormalizedHookEvent(
            kind=kind,
            tool_name=as_str(obj.get("tool_name")) or as_str(obj.get("toolName")),
            tool_input=as_mapping(obj.get("tool_input")) or as_mapping(obj.get("toolInput")),
            message=as_str(obj.get("message")),
        )

    # -- Catalogue -------------------------------------------------------------

    async def get_model_options(self) -> list[ModelOption]:
        try:
            binary = await self.find_binary_async()
            stdout = await run_cli(
                binary, ["models"], timeout=15, env=await self.shell_environment(), windows=self.is_windows
            )
        except (BinaryNotFoundError, subprocess.SubprocessError, OSError) as exc:
            logger.debug("OpenCode: model discovery failed ({})", exc)
            return [DEFAULT_MODEL]
        return parse_models_output(stdout) or [DEFAULT_MODEL]
