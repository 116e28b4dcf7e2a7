"""Provider abstraction.

Every agent CLI is described by a ``Provider``: identity, filesystem
conventions, a capability record and the uniform operations (availability,
interactive launch, hook parsing, instructions, models, permissions).

Optional surfaces are separate protocols.  Callers go through
``supports_headless`` / ``supports_structured``, which require both the
capability flag and the method to be present, instead of probing methods
themselves.

``BaseProvider`` carries the behaviour most providers share; concrete
providers override what differs.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping
from pathlib import Path
from typing import Any, ClassVar, Protocol, runtime_checkable

from anyio import to_thread

from clubhouse.agent_runtime.models.enums import PermissionKind
from clubhouse.agent_runtime.models.events import NormalizedHookEvent, StructuredEvent
from clubhouse.agent_runtime.models.provider import (
    Availability,
    HeadlessCommand,
    HeadlessOptions,
    ModelOption,
    ProviderCapabilities,
    ProviderConventions,
    QuickSummary,
    SpawnCommand,
    SpawnOptions,
    StructuredSessionOptions,
)
from clubhouse.agent_runtime.providers import shared
from clubhouse.agent_runtime.providers.binary import BinaryNotFoundError, BinaryResolver

# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class Provider(Protocol):
    id: str
    display_name: str
    short_name: str
    badge: str | None
    conventions: ProviderConventions
    capabilities: ProviderCapabilities

    async def check_availability(self, env_override: Mapping[str, str] | None = None) -> Availability: ...

    def build_spawn_command(self, opts: SpawnOptions) -> SpawnCommand: ...

    def get_exit_command(self) -> str: ...

    async def write_hooks_config(self, cwd: str, hook_url: str) -> None: ...

    def parse_hook_event(self, raw: Any) -> NormalizedHookEvent | None: ...

    def read_instructions(self, worktree: str) -> str: ...

    def write_instructions(self, worktree: str, content: str) -> None: ...

    async def get_model_options(self) -> list[ModelOption]: ...

    def get_default_permissions(self, kind: PermissionKind) -> list[str]: ...

    def tool_verb(self, tool_name: str) -> str | None: ...

    def get_profile_env_keys(self) -> list[str]: ...

    def build_summary_instruction(self, agent_id: str) -> str: ...

    def read_quick_summary(self, agent_id: str) -> QuickSummary | None: ...


@runtime_checkable
class HeadlessProvider(Protocol):
    def build_headless_command(self, opts: HeadlessOptions) -> HeadlessCommand | None:
        """Return the one-shot command, or ``None`` when there is no mission to run."""
        ...


class StructuredAdapter(Protocol):
    """Bidirectional, typed event session with a provider."""

    def start(self, opts: StructuredSessionOptions) -> AsyncIterator[StructuredEvent]: ...

    async def send_message(self, message: str) -> None: ...

    async def respond_to_permission(self, request_id: str, approved: bool, reason: str | None = None) -> None: ...

    async def cancel(self) -> None: ...

    def dispose(self) -> None: ...


@runtime_checkable
class StructuredProvider(Protocol):
    def create_structured_adapter(self) -> StructuredAdapter: ...


def supports_headless(provider: Provider) -> bool:
    return provider.capabilities.headless and isinstance(provider, HeadlessProvider)


def supports_structured(provider: Provider) -> bool:
    return provider.capabilities.structured_mode and isinstance(provider, StructuredProvider)


# ---------------------------------------------------------------------------
# Shared implementation
# ---------------------------------------------------------------------------


class BaseProvider:
    """Defaults shared by the bundled providers.

    Subclasses set the identity class attributes and ``binary_names``, and
    implement ``extra_paths``, ``build_spawn_command`` and ``parse_hook_event``.
    """

    id: ClassVar[str]
    display_name: ClassVar[str]
    short_name: ClassVar[str]
    badge: ClassVar[str | None] = None
    conventions: ClassVar[ProviderConventions]
    capabilities: ClassVar[ProviderCapabilities]

    binary_names: ClassVar[tuple[str, ...]]
    tool_verbs: ClassVar[dict[str, str]] = {}
    durable_permissions: ClassVar[tuple[str, ...]] = ()
    quick_permissions: ClassVar[tuple[str, ...]] = ()
    model_options: ClassVar[tuple[ModelOption, ...]] = (shared.DEFAULT_MODEL,)

    def __init__(self, resolver: BinaryResolver) -> None:
        self._resolver = resolver

    # -- Binary ----------------------------------------------------------------

    @property
    def resolver(self) -> BinaryResolver:
        return self._resolver

    def extra_paths(self) -> list[str]:
        return []

    def find_binary(self) -> str:
        return self._resolver.find(self.binary_names, self.extra_paths())

    async def find_binary_async(self) -> str:
        """``find_binary`` on a worker thread; a cache miss can shell out for several seconds."""
        return await to_thread.run_sync(self.find_binary)

    async def shell_environment(self, *, refresh: bool = False) -> dict[str, str]:
        shell_env = self._resolver.shell_env
        if refresh:
            shell_env.invalidate()
        return await to_thread.run_sync(shell_env.get)

    @property
    def is_windows(self) -> bool:
        return self._resolver.shell_env.is_windows

    async def check_availability(self, env_override: Mapping[str, str] | None = None) -> Availability:
        try:
            await self.find_binary_async()
        except BinaryNotFoundError as exc:
            return Availability(available=False, error=str(exc))
        return Availability(available=True)

    # -- Interactive -----------------------------------------------------------

    def build_spawn_command(self, opts: SpawnOptions) -> SpawnCommand:
        raise NotImplementedError

    def get_exit_command(self) -> str:
        return "/exit\r"

    async def write_hooks_config(self, cwd: str, hook_url: str) -> None:
        """Providers without a hook mechanism have nothing to write."""

    def parse_hook_event(self, raw: Any) -> NormalizedHookEvent | None:
        raise NotImplementedError

    # -- Instructions ----------------------------------------------------------

    def instructions_path(self, worktree: str) -> Path:
        return Path(worktree) / self.conventions.local_instructions_file

    def read_instructions(self, worktree: str) -> str:
        return shared.read_text_or_empty(self.instructions_path(worktree))

    def write_instructions(self, worktree: str, content: str) -> None:
        shared.write_text(self.instructions_path(worktree), content)

    # -- Catalogue -------------------------------------------------------------

    async def get_model_options(self) -> list[ModelOption]:
        return list(self.model_options)

    def get_default_permissions(self, kind: PermissionKind) -> list[str]:
        if kind == PermissionKind.DURABLE:
            return list(self.durable_permissions)
        return list(self.quick_permissions)

    def tool_verb(self, tool_name: str) -> str | None:
        return self.tool_verbs.get(tool_name)

    def get_profile_env_keys(self) -> list[str]:
        return []

    # -- Summary ---------------------------------------------------------------

    def build_summary_instruction(self, agent_id: str) -> str:
        return shared.build_summary_instruction(agent_id)

    def read_quick_summary(self, agent_id: str) -> QuickSummary | None:
        return shared.read_quick_summary(agent_id)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} id={self.id!r}>"
