"""Event models.

``NormalizedHookEvent`` is the provider-agnostic lifecycle notification fanned
out to UI consumers and the internal bus.  ``StructuredEvent`` is the envelope
produced by structured-mode adapters.  Raw transcript records stay plain
``dict`` objects -- they are whatever the agent CLI printed.
"""

from __future__ import annotations

import time
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from clubhouse.agent_runtime.models.enums import HookEventKind, StructuredEventType

TranscriptEvent = dict[str, Any]


def now_ms() -> int:
    """Milliseconds since the epoch."""
    return int(time.time() * 1000)


class NormalizedHookEvent(BaseModel):
    """Canonical hook event.  Serialised camelCase on the wire, unset fields omitted."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    kind: HookEventKind
    tool_name: str | None = None
    tool_input: dict[str, Any] | None = None
    message: str | None = None
    timestamp: int | None = None

    # Only populated for stream-json ``stop`` events.
    cost_usd: float | None = None
    duration_ms: int | None = None

    def stamped(self) -> NormalizedHookEvent:
        """Return a copy carrying the current timestamp (kept if already set)."""
        if self.timestamp is not None:
            return self
        return self.model_copy(update={"timestamp": now_ms()})

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class StructuredEvent(BaseModel):
    """Envelope for a single structured-mode event."""

    type: StructuredEventType
    timestamp: int = Field(default_factory=now_ms)
    data: dict[str, Any] = Field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json")
