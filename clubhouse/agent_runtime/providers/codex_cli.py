"""Codex CLI provider.

Codex has no hook mechanism; its ``notify`` payload only reports turn
completion.  Headless runs use ``codex exec --json`` whose output is not the
Claude stream-json dialect, so it is consumed as text.
"""

from __future__ import annotations

import re
import subprocess
from collections.abc import Mapping
from typing import Any

from loguru import logger

from clubhouse.agent_runtime.models.enums import HookEventKind, OutputKind, SettingsFormat
from clubhouse.agent_runtime.models.events import NormalizedHookEvent
from clubhouse.agent_runtime.models.provider import (
    Availability,
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

FALLBACK_MODEL_OPTIONS = (
    DEFAULT_MODEL,
    ModelOption(id="gpt-5.3-codex", label="GPT 5.3 Codex"),
    ModelOption(id="gpt-5.2-codex", label="GPT 5.2 Codex"),
    ModelOption(id="codex-mini-latest", label="Codex Mini"),
    ModelOption(id="gpt-5", label="GPT 5"),
)

DURABLE_PERMISSIONS = ("shell(git:*)", "shell(npm:*)", "shell(npx:*)")

PASSTHROUGH_ENV = ("OPENAI_API_KEY", "OPENAI_BASE_URL")

_MODEL_CHOICES = re.compile(r"--model\s+(?:<\w+>)?\s*.*?\(choices:\s*(.*?)\)", re.DOTALL)


def parse_model_choices(help_text: str) -> list[ModelOption] | None:
    """Extract ``--model`` choices from ``codex --help`` output."""
    match = _MODEL_CHOICES.search(help_text)
    if not match:
        return None
    ids = re.findall(r'"([^"]+)"', match.group(1).replace("\n", " "))
    if not ids:
        return None
    return [DEFAULT_MODEL, *(ModelOption(id=i, label=humanize_model_id(i)) for i in ids)]


class CodexCliProvider(BaseProvider):
    id = "codex-cli"
    display_name = "Codex CLI"
    short_name = "CX"
    badge = "Beta"

    conventions = ProviderConventions(
        config_dir=".codex",
        local_instructions_file="AGENTS.md",
        legacy_instructions_file="AGENTS.md",
        mcp_config_file=".codex/config.toml",
        local_settings_file="config.toml",
        settings_format=SettingsFormat.TOML,
    )
    capabilities = ProviderCapabilities(
        headless=True,
        structured_output=False,
        hooks=False,
        session_resume=True,
        permissions=True,
    )

    binary_names = ("codex",)
    tool_verbs = {
        "shell": "Running command",
        "shell_command": "Running command",
        "apply_patch": "Editing file",
    }
    durable_permissions = DURABLE_PERMISSIONS
    quick_permissions = (*DURABLE_PERMISSIONS, "shell(*)", "apply_patch")
    model_options = FALLBACK_MODEL_OPTIONS

    def extra_paths(self) -> list[str]:
        paths = [home_path(".local", "bin", "codex"), home_path(".npm-global", "bin", "codex")]
        if self.is_windows:
            paths += [
                home_path("AppData", "Roaming", "npm", "codex.cmd"),
                home_path("AppData", "Roaming", "npm", "codex"),
            ]
        else:
            paths += [
                "/usr/local/bin/codex",
                "/opt/homebrew/bin/codex",
                home_path(".volta", "bin", "codex"),
                home_path(".local", "share", "pnpm", "codex"),
                home_path(".local", "share", "fnm", "aliases", "default", "bin", "codex"),
                home_path(".nvm", "current", "bin", "codex"),
                home_path(".bun", "bin", "codex"),
            ]
        return paths

    async def check_availability(self, env_override: Mapping[str, str] | None = None) -> Availability:
        try:
            binary = await self.find_binary_async()
        except BinaryNotFoundError as exc:
            return Availability(available=False, error=str(exc))

        # Credentials may have been added to the shell profile since startup.
        env = {**await self.shell_environment(refresh=True), **(env_override or {})}
        try:
            await run_cli(binary, ["--version"], timeout=10, env=env, windows=self.is_windows)
        except (subprocess.SubprocessError, OSError):
            return Availability(
                available=False,
                error=f"Found Codex at {binary} but it failed to execute. Reinstall with: npm install -g @openai/codex",
            )
        return Availability(available=True)

    def _passthrough_env(self) -> dict[str, str]:
        shell_env = self._resolver.shell_env.get()
        return {key: shell_env[key] for key in PASSTHROUGH_ENV if shell_env.get(key)}

    @staticmethod
    def _prompt(system_prompt: str | None, mission: str | None) -> str:
        return "\n\n".join(part for part in (system_prompt, mission) if part)

    # -- Commands --------------------------------------------------------------

    def build_spawn_command(self, opts: SpawnOptions) -> SpawnCommand:
        binary = self.find_binary()
        args: list[str] = []
        if opts.resume:
            args.append("--continue")
        if opts.free_agent_mode:
            args.append("--full-auto")
        if not is_default_model(opts.model):
            args += ["--model", opts.model]  # type: ignore[list-item]
        prompt = self._prompt(opts.system_prompt, opts.mission)
        if prompt:
            args.append(prompt)
        return SpawnCommand(binary=binary, args=args, env=self._passthrough_env())

    def build_headless_command(self, opts: HeadlessOptions) -> HeadlessCommand | None:
        if not opts.mission:
            return None
        binary = self.find_binary()
        args = ["exec", self._prompt(opts.system_prompt, opts.mission), "--json", "--full-auto"]
        if not is_default_model(opts.model):
            args += ["--model", opts.model]  # type: ignore[list-item]
        return HeadlessCommand(binary=binary, args=args, env=self._passthrough_env(), output_kind=OutputKind.TEXT)

    # -- Hooks -----------------------------------------------------------------

    def parse_hook_event(self, raw: Any) -> NormalizedHookEvent | None:
        obj = as_mapping(raw)
        if obj is None or obj.get("type") != "agent-turn-complete":
            return None
        return NormalizedHookEvent(kind=HookEventKind.STOP, message=as_str(obj.get("last-assistant-message")))

    # -- Catalogue -------------------------------------------------------------

    async def get_model_options(self) -> list[ModelOption]:
        try:
            binary = await self.find_binary_async()
            help_text = await run_cli(
                binary, ["--help"], timeout=5, env=await self.shell_environment(), windows=self.is_windows
            )
        except (BinaryNotFoundError, subprocess.SubprocessError, OSError) as exc:
            logger.debug("Codex: model discovery failed ({}), using fallback list", exc)
            return list(FALLBACK_MODEL_OPTIONS)
        return parse_model_choices(help_text) or list(FALLBACK_MODEL_OPTIONS)

    def get_profile_env_keys(self) -> list[str]:
        return list(PASSTHROUGH_ENV)
