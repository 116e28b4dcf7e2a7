"""Provider descriptors, launch options and command results."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from clubhouse.agent_runtime.models.enums import OutputKind, SettingsFormat

# -- Descriptors -------------------------------------------------------------


class ProviderConventions(BaseModel):
    """Where a provider keeps its per-project configuration."""

    model_config = ConfigDict(frozen=True)

    config_dir: str
    local_instructions_file: str
    legacy_instructions_file: str
    mcp_config_file: str
    skills_dir: str = "skills"
    agent_templates_dir: str = "agents"
    local_settings_file: str
    settings_format: SettingsFormat = SettingsFormat.JSON


class ProviderCapabilities(BaseModel):
    model_config = ConfigDict(frozen=True)

    headless: bool
    structured_output: bool
    hooks: bool
    session_resume: bool
    permissions: bool
    structured_mode: bool = False
    structured_protocol: str | None = None


# -- Launch options ----------------------------------------------------------


class SpawnOptions(BaseModel):
    """Options for an interactive launch."""

    cwd: str
    model: str | None = None
    mission: str | None = None
    system_prompt: str | None = None
    allowed_tools: list[str] = Field(default_factory=list)
    agent_id: str | None = None
    free_agent_mode: bool = False
    resume: bool = False
    session_id: str | None = None


class HeadlessOptions(BaseModel):
    """Options for a one-shot, non-interactive run."""

    cwd: str
    model: str | None = None
    mission: str | None = None
    system_prompt: str | None = None
    allowed_tools: list[str] = Field(default_factory=list)
    disallowed_tools: list[str] = Field(default_factory=list)
    agent_id: str | None = None
    output_format: str = "stream-json"
    no_session_persistence: bool = False


class StructuredSessionOptions(BaseModel):
    mission: str
    cwd: str
    system_prompt: str | None = None
    model: str | None = None
    env: dict[str, str] | None = None
    session_id: str | None = None
    """Resume this provider session instead of starting fresh."""
    allowed_tools: list[str] = Field(default_factory=list)
    disallowed_tools: list[str] = Field(default_factory=list)
    free_agent_mode: bool = False


# -- Results -----------------------------------------------------------------


class SpawnCommand(BaseModel):
    binary: str
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] | None = None


class HeadlessCommand(SpawnCommand):
    output_kind: OutputKind = OutputKind.STREAM_JSON


class Availability(BaseModel):
    available: bool
    error: str | None = None


class ModelOption(BaseModel):
    id: str
    label: str


class QuickSummary(BaseModel):
    """Summary file an agent leaves behind before exiting."""

    summary: str | None = None
    files_modified: list[str] = Field(default_factory=list)
