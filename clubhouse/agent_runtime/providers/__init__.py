"""Agent CLI providers and the shared binary resolver."""

from clubhouse.agent_runtime.providers.base import (
    BaseProvider,
    HeadlessProvider,
    Provider,
    StructuredAdapter,
    StructuredProvider,
    supports_headless,
    supports_structured,
)
from clubhouse.agent_runtime.providers.binary import BinaryNotFoundError, BinaryResolver
from clubhouse.agent_runtime.providers.registry import ProviderRegistry, UnknownProviderError

__all__ = [
    "BaseProvider",
    "BinaryNotFoundError",
    "BinaryResolver",
    "HeadlessProvider",
    "Provider",
    "ProviderRegistry",
    "StructuredAdapter",
    "StructuredProvider",
    "UnknownProviderError",
    "supports_headless",
    "supports_structured",
]
