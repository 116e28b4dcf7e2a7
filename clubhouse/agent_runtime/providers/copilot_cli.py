"""GitHub Copilot CLI provider."""

from __future__ import annotations

from pathlib import Path
from typing import Any

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
from clubhouse.agent_runtime.providers.shared import (
    DEFAULT_MODEL,
    as_mapping,
    as_str,
    home_path,
    is_default_model,
)

EVENT_NAME_MAP: dict[str, HookEventKind] = {
    "preToolUse": HookEventKind.PRE_TOOL,
    "postToolUse": HookEventKind.POST_TOOL,
    "errorOccurred": HookEventKind.TOOL_ERROR,
    "sessionEnd": HookEventKind.STOP,
    "notification": HookEventKind.NOTIFICATION,
}

DURABLE_PERMISSIONS = ("shell(git:*)", "shell(npm:*)", "shell(npx:*)")


class CopilotCliProvider(BaseProvider):
    id = "copilot-cli"
    display_name = "GitHub Copilot CLI"
    short_name = "GHCP"

    conventions = ProviderConventions(
        config_dir=".github",
        local_instructions_file="copilot-instructions.md",
        legacy_instructions_file="copilot-instructions.md",
        mcp_config_file=".github/mcp.json",
        local_settings_file="hooks/hooks.json",
    )
    capabilities = ProviderCapabilities(
        headless=True,
        structured_output=False,
        hooks=True,
        session_resume=True,
        permissions=True,
    )

    binary_names = ("copilot",)
    tool_verbs = {
        "shell": "Running command",
        "edit": "Editing file",
        "write": "Writing file",
        "read": "Reading file",
        "search": "Searching code",
        "glob": "Searching files",
        "web_fetch": "Fetching page",
    }
    durable_permissions = DURABLE_PERMISSIONS
    quick_permissions = (*DURABLE_PERMISSIONS, "shell(*)", "read", "edit", "write")
    model_options = (
        DEFAULT_MODEL,
        ModelOption(id="claude-sonnet-4.5", label="Claude Sonnet 4.5"),
        ModelOption(id="gpt-5", label="GPT 5"),
    )

    def extra_paths(self) -> list[str]:
        paths = [home_path(".local", "bin", "copilot"), home_path(".npm-global", "bin", "copilot")]
        if self.is_windows:
            paths += [
                home_path("AppData", "Roaming", "npm", "copilot.cmd"),
                home_path("AppData", "Roaming", "npm", "copilot"),
            ]
        else:
            paths += [
                "/usr/local/bin/copilot",
                "/opt/homebrew/bin/copilot",
                home_path(".volta", "bin", "copilot"),
            ]
        return paths

    def instructions_path(self, worktree: str) -> Path:
        return Path(worktree) / self.conventions.config_dir / self.conventions.local_instructions_file

    @staticmethod
    def _prompt(system_prompt: str | None, mission: str | None) -> str:
        return "\n\n".join(part for part in (system_prompt, mission) if part)

    # -- Commands --------------------------------------------------------------

    def build_spawn_command(self, opts: SpawnOptions) -> SpawnCommand:
        args: list[str] = []
        if opts.free_agent_mode:
            args.append("--yolo")
        if not is_default_model(opts.model):
            args += ["--model", opts.model]  # type: ignore[list-item]
        prompt = self._prompt(opts.system_prompt, opts.mission)
        if prompt:
            args += ["-p", prompt]
        for tool in opts.allowed_tools:
            args += ["--allow-tool", tool]
        return SpawnCommand(binary=self.find_binary(), args=args)

    def build_headless_command(self, opts: HeadlessOptions) -> HeadlessCommand | None:
        if not opts.mission:
            return None
        args = ["-p", self._prompt(opts.system_prompt, opts.mission), "--allow-all", "--silent"]
        if not is_default_model(opts.model):
            args += ["--model", opts.model]  # type: ignore[list-item]
        return HeadlessCommand(binary=self.find_binary(), args=args, output_kind=OutputKind.TEXT)

    # -- Hooks -----------------------------------------------------------------

    def parse_hook_event(self, raw: Any) -> NormalizedHookEvent | None:
        obj = as_mapping(raw)
        if obj is None:
            return None
        kind = EVENT_NAME_MAP.get(as_str(obj.get("hook_event_name")) or "")
        if kind is None:
            return None
        return NormalizedHookEvent(
            kind=kind,
            tool_name=as_str(obj.get("tool_name")) or as_str(obj.get("toolName")),
            tool_input=as_mapping(obj.get("tool_input")) or as_mapping(obj.get("toolArgs")),
            message=as_str(obj.get("message")),
        )
