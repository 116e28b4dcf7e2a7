"""Mapping of agent output onto normalized hook events.

Two sources feed hook events:

* stream-json transcript records printed by headless Claude Code runs.  With
  ``--verbose`` these are conversation-level records::

      {"type": "assistant", "message": {"content": [{"type": "tool_use", ...}]}}
      {"type": "user", "message": {"content": [{"type": "tool_result", ...}]}}
      {"type": "result", "result": "...", "cost_usd": 0.05, "duration_ms": 3000}

  Without ``--verbose`` the legacy streaming format is emitted instead
  (``content_block_start`` / ``content_block_stop``), which needs the open
  tool blocks tracked per session by index.

* structured-mode events, where only a subset has a hook equivalent.
"""

from __future__ import annotations

from typing import Any

from clubhouse.agent_runtime.models.enums import HookEventKind, StructuredEventType
from clubhouse.agent_runtime.models.events import NormalizedHookEvent, StructuredEvent, now_ms


def _content_blocks(event: dict[str, Any]) -> list[dict[str, Any]]:
    message = event.get("message")
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if not isinstance(content, list):
        return []
    return [block for block in content if isinstance(block, dict)]


def _number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return value


class StreamHookMapper:
    """Per-session mapper from stream-json records to hook events."""

    def __init__(self) -> None:
        self._open_tool_blocks: dict[int, str] = {}

    def map(self, event: dict[str, Any]) -> list[NormalizedHookEvent]:
        timestamp = now_ms()
        hooks: list[NormalizedHookEvent] = []
        event_type = event.get("type")

        if event_type == "assistant":
            for block in _content_blocks(event):
                if block.get("type") == "tool_use" and isinstance(block.get("name"), str):
                    tool_input = block.get("input")
                    hooks.append(
                        NormalizedHookEvent(
                            kind=HookEventKind.PRE_TOOL,
                            tool_name=block["name"],
                            tool_input=tool_input if isinstance(tool_input, dict) else None,
                            timestamp=timestamp,
                        )
                    )

        elif event_type == "user":
            hooks.extend(
                NormalizedHookEvent(kind=HookEventKind.POST_TOOL, timestamp=timestamp)
                for block in _content_blocks(event)
                if block.get("type") == "tool_result"
            )

        elif event_type == "result":
            result = event.get("result")
            cost = _number(event.get("cost_usd"))
            if cost is None:
                cost = _number(event.get("total_cost_usd"))
            duration = _number(event.get("duration_ms"))
            hooks.append(
                NormalizedHookEvent(
                    kind=HookEventKind.STOP,
                    message=result if isinstance(result, str) else None,
                    cost_usd=cost,
                    duration_ms=int(duration) if duration is not None else None,
                    timestamp=timestamp,
                )
            )

        # Legacy streaming format
        index = event.get("index")
        index = index if isinstance(index, int) and index >= 0 else None
        if event_type == "content_block_start":
            block = event.get("content_block")
            if isinstance(block, dict) and block.get("type") == "tool_use":
                name = block.get("name") if isinstance(block.get("name"), str) else "unknown"
                if index is not None:
                    self._open_tool_blocks[index] = name
                hooks.append(NormalizedHookEvent(kind=HookEventKind.PRE_TOOL, tool_name=name, timestamp=timestamp))
        elif event_type == "content_block_stop" and index is not None and index in self._open_tool_blocks:
            name = self._open_tool_blocks.pop(index)
            hooks.append(NormalizedHookEvent(kind=HookEventKind.POST_TOOL, tool_name=name, timestamp=timestamp))

        return hooks


def structured_to_hook(event: StructuredEvent) -> NormalizedHookEvent | None:
    """Hook equivalent of a structured event, or ``None`` when it has none."""
    data = event.data
    match event.type:
        case StructuredEventType.TOOL_START:
            tool_input = data.get("input")
            return NormalizedHookEvent(
                kind=HookEventKind.PRE_TOOL,
                tool_name=data.get("name"),
                tool_input=tool_input if isinstance(tool_input, dict) else None,
                timestamp=event.timestamp,
            )
        case StructuredEventType.TOOL_END:
            return NormalizedHookEvent(kind=HookEventKind.POST_TOOL, tool_name=data.get("name"), timestamp=event.timestamp)
        case StructuredEventType.PERMISSION_REQUEST:
            tool_input = data.get("toolInput")
            return NormalizedHookEvent(
                kind=HookEventKind.PERMISSION_REQUEST,
                tool_name=data.get("toolName"),
                tool_input=tool_input if isinstance(tool_input, dict) else None,
                message=data.get("description"),
                timestamp=event.timestamp,
            )
        case StructuredEventType.ERROR:
            return NormalizedHookEvent(kind=HookEventKind.TOOL_ERROR, message=data.get("message"), timestamp=event.timestamp)
        case StructuredEventType.END:
            return NormalizedHookEvent(kind=HookEventKind.STOP, message=data.get("summary"), timestamp=event.timestamp)
        case _:
            return None
