"""Claude Code provider."""

from __future__ import annotations

import json
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING, Any

from anyio import to_thread

from clubhouse.agent_runtime.models.enums import HookEventKind, SettingsFormat
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
    as_mapping,
    as_str,
    extract_session_id,
    home_path,
    is_default_model,
)

if TYPE_CHECKING:
    from clubhouse.agent_runtime.providers.claude_code_adapter import ClaudeCodeStructuredAdapter

EVENT_NAME_MAP: dict[str, HookEventKind] = {
    "PreToolUse": HookEventKind.PRE_TOOL,
    "PostToolUse": HookEventKind.POST_TOOL,
    "PostToolUseFailure": HookEventKind.TOOL_ERROR,
    "Stop": HookEventKind.STOP,
    "Notification": HookEventKind.NOTIFICATION,
    "PermissionRequest": HookEventKind.PERMISSION_REQUEST,
}

TOOL_VERBS = {
    "Bash": "Running command",
    "Edit": "Editing file",
    "Write": "Writing file",
    "Read": "Reading file",
    "Glob": "Searching files",
    "Grep": "Searching code",
    "Task": "Running task",
    "WebSearch": "Searching web",
    "WebFetch": "Fetching page",
    "EnterPlanMode": "Planning",
    "ExitPlanMode": "Finishing plan",
    "NotebookEdit": "Editing notebook",
}

DURABLE_PERMISSIONS = ("Bash(git:*)", "Bash(npm:*)", "Bash(npx:*)")

HOOK_MARKER = "CLUBHOUSE_AGENT_ID"
"""Every hook command we install references this variable; used to spot stale entries."""


class ClaudeCodeProvider(BaseProvider):
    id = "claude-code"
    display_name = "Claude Code"
    short_name = "CC"

    conventions = ProviderConventions(
        config_dir=".claude",
        local_instructions_file="CLAUDE.md",
        legacy_instructions_file="CLAUDE.md",
        mcp_config_file=".mcp.json",
        local_settings_file="settings.local.json",
        settings_format=SettingsFormat.JSON,
    )
    capabilities = ProviderCapabilities(
        headless=True,
        structured_output=True,
        hooks=True,
        session_resume=True,
        permissions=True,
        structured_mode=True,
        structured_protocol="stream-json",
    )

    binary_names = ("claude",)
    tool_verbs = TOOL_VERBS
    durable_permissions = DURABLE_PERMISSIONS
    quick_permissions = (*DURABLE_PERMISSIONS, "Read", "Write", "Edit", "Glob", "Grep")
    model_options = (
        ModelOption(id="default", label="Default"),
        ModelOption(id="opus", label="Opus"),
        ModelOption(id="sonnet", label="Sonnet"),
        ModelOption(id="haiku", label="Haiku"),
    )

    def extra_paths(self) -> list[str]:
        paths = [
            home_path(".local", "bin", "claude"),
            home_path(".claude", "local", "claude"),
            home_path(".npm-global", "bin", "claude"),
        ]
        if self.is_windows:
            paths += [
                home_path("AppData", "Roaming", "npm", "claude.cmd"),
                home_path("AppData", "Roaming", "npm", "claude"),
                home_path(".claude", "local", "claude.exe"),
            ]
        else:
            paths += [
                "/usr/local/bin/claude",
                "/opt/homebrew/bin/claude",
                home_path(".volta", "bin", "claude"),
                home_path(".local", "share", "pnpm", "claude"),
                home_path(".local", "share", "fnm", "aliases", "default", "bin", "claude"),
            ]
        return paths

    # -- Commands --------------------------------------------------------------

    def build_spawn_command(self, opts: SpawnOptions) -> SpawnCommand:
        args: list[str] = []
        if opts.resume:
            args += ["--resume", opts.session_id] if opts.session_id else ["--continue"]
        if opts.free_agent_mode:
            args.append("--dangerously-skip-permissions")
        if not is_default_model(opts.model):
            args += ["--model", opts.model]  # type: ignore[list-item]
        for tool in opts.allowed_tools:
            args += ["--allowedTools", tool]
        if opts.system_prompt:
            args += ["--append-system-prompt", opts.system_prompt]
        if opts.mission:
            args.append(opts.mission)
        return SpawnCommand(binary=self.find_binary(), args=args)

    def build_headless_command(self, opts: HeadlessOptions) -> HeadlessCommand | None:
        if not opts.mission:
            return None
        args = [
            "-p",
            opts.mission,
            "--output-format",
            opts.output_format or "stream-json",
            "--verbose",
            # Headless agents cannot answer permission prompts.
            "--dangerously-skip-permissions",
        ]
        if not is_default_model(opts.model):
            args += ["--model", opts.model]  # type: ignore[list-item]
        for tool in opts.allowed_tools:
            args += ["--allowedTools", tool]
        for tool in opts.disallowed_tools:
            args += ["--disallowedTools", tool]
        if opts.system_prompt:
            args += ["--append-system-prompt", opts.system_prompt]
        if opts.no_session_persistence:
            args.append("--no-session-persistence")
        return HeadlessCommand(binary=self.find_binary(), args=args)

    def create_structured_adapter(self) -> ClaudeCodeStructuredAdapter:
        from clubhouse.agent_runtime.providers.claude_code_adapter import ClaudeCodeStructuredAdapter

        return ClaudeCodeStructuredAdapter(self)

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
            tool_name=as_str(obj.get("tool_name")),
            tool_input=as_mapping(obj.get("tool_input")),
            message=as_str(obj.get("message")),
        )

    def hook_command(self, hook_url: str) -> str:
        if self.is_windows:
            return (
                f"curl -s -X POST {hook_url}/%CLUBHOUSE_AGENT_ID% -H \"Content-Type: application/json\" "
                '-H "X-Clubhouse-Nonce: %CLUBHOUSE_HOOK_NONCE%" -d @- || (exit /b 0)'
            )
        return (
            f"cat | curl -s -X POST {hook_url}/${{CLUBHOUSE_AGENT_ID}} -H 'Content-Type: application/json' "
            '-H "X-Clubhouse-Nonce: ${CLUBHOUSE_HOOK_NONCE}" --data-binary @- || true'
        )

    def hook_entries(self, hook_url: str) -> dict[str, list[dict[str, Any]]]:
        command = self.hook_command(hook_url)

        def entry(timeout: int = 5, *, is_async: bool = True) -> dict[str, Any]:
            hook: dict[str, Any] = {"type": "command", "command": command}
            if is_async:
                hook["async"] = True
            hook["timeout"] = timeout
            return {"hooks": [hook]}

        return {
            "PreToolUse": [entry()],
            "PostToolUse": [entry()],
            "PostToolUseFailure": [entry()],
            "Stop": [entry()],
            "Notification": [{"matcher": "", **entry()}],
            # Held open while a remote client decides on the permission.
            "PermissionRequest": [entry(120, is_async=False)],
        }

    async def write_hooks_config(self, cwd: str, hook_url: str) -> None:
        path = Path(cwd) / self.conventions.config_dir / self.conventions.local_settings_file
        await to_thread.run_sync(partial(merge_hooks_file, path, self.hook_entries(hook_url)))

    # -- Misc ------------------------------------------------------------------

    def get_profile_env_keys(self) -> list[str]:
        return ["CLAUDE_CONFIG_DIR"]

    def extract_session_id(self, buffer: str) -> str | None:
        return extract_session_id(buffer)


def is_clubhouse_hook_entry(entry: Any) -> bool:
    if not isinstance(entry, dict):
        return False
    hooks = entry.get("hooks")
    if not isinstance(hooks, list):
        return False
    return any(isinstance(h, dict) and HOOK_MARKER in str(h.get("command", "")) for h in hooks)


def merge_hooks_file(path: Path, entries: dict[str, list[dict[str, Any]]]) -> None:
    """Merge our hook entries into a settings file, keeping the user's own hooks.

    Entries we installed earlier are replaced, other keys are left untouched.
    """
    try:
        existing = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        existing = {}
    if not isinstance(existing, dict):
        existing = {}

    current = existing.get("hooks")
    merged: dict[str, Any] = dict(current) if isinstance(current, dict) else {}
    for event, ours in entries.items():
        previous = merged.get(event)
        user_entries = [e for e in previous if not is_clubhouse_hook_entry(e)] if isinstance(previous, list) else []
        merged[event] = [*user_entries, *ours]

    existing["hooks"] = merged
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(existing, indent=2), encoding="utf-8")
