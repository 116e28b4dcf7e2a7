"""Provider registry.

Holds one instance per bundled provider, all sharing a single
``BinaryResolver`` (and therefore a single binary cache).
"""

from __future__ import annotations

from collections.abc import Iterator

from loguru import logger

from clubhouse.agent_runtime.providers.base import BaseProvider
from clubhouse.agent_runtime.providers.binary import BinaryResolver
from clubhouse.agent_runtime.providers.claude_code import ClaudeCodeProvider
from clubhouse.agent_runtime.providers.codex_cli import CodexCliProvider
from clubhouse.agent_runtime.providers.copilot_cli import CopilotCliProvider
from clubhouse.agent_runtime.providers.opencode import OpenCodeProvider

BUILTIN_PROVIDERS: tuple[type[BaseProvider], ...] = (
    ClaudeCodeProvider,
    CodexCliProvider,
    OpenCodeProvider,
    CopilotCliProvider,
)


class UnknownProviderError(LookupError):
    """Requested provider id is not registered."""

    def __init__(self, provider_id: str) -> None:
        super().__init__(f"Provider '{provider_id}' not found")


class ProviderRegistry:
    def __init__(self, resolver: BinaryResolver) -> None:
        self._resolver = resolver
        self._providers: dict[str, BaseProvider] = {}

    @classmethod
    def with_builtins(cls, resolver: BinaryResolver) -> ProviderRegistry:
        registry = cls(resolver)
        for provider_cls in BUILTIN_PROVIDERS:
            registry.register(provider_cls(resolver))
        return registry

    def register(self, provider: BaseProvider) -> None:
        logger.debug("Providers: register {}", provider.id)
        self._providers[provider.id] = provider

    def get(self, provider_id: str) -> BaseProvider:
        try:
            return self._providers[provider_id]
        except KeyError:
            raise UnknownProviderError(provider_id) from None

    def ids(self) -> list[str]:
        return list(self._providers)

    def __iter__(self) -> Iterator[BaseProvider]:
        return iter(self._providers.values())

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._providers
