"""Shared enumerations used across the agent runtime."""

from __future__ import annotations

from enum import StrEnum

# -- Hook events -------------------------------------------------------------


class HookEventKind(StrEnum):
    """Canonical lifecycle moments reported by any provider."""

    PRE_TOOL = "pre_tool"
    POST_TOOL = "post_tool"
    TOOL_ERROR = "tool_error"
    STOP = "stop"
    NOTIFICATION = "notification"
    PERMISSION_REQUEST = "permission_request"


# -- Execution ---------------------------------------------------------------


class OutputKind(StrEnum):
    """How a headless process's stdout is interpreted."""

    STREAM_JSON = "stream-json"
    TEXT = "text"


class SessionKind(StrEnum):
    HEADLESS = "headless"
    STRUCTURED = "structured"
    PTY = "pty"


# -- Structured mode ---------------------------------------------------------


class StructuredEventType(StrEnum):
    TEXT_DELTA = "text_delta"
    TEXT_DONE = "text_done"
    TOOL_START = "tool_start"
    TOOL_OUTPUT = "tool_output"
    TOOL_END = "tool_end"
    FILE_DIFF = "file_diff"
    COMMAND_OUTPUT = "command_output"
    PERMISSION_REQUEST = "permission_request"
    PLAN_UPDATE = "plan_update"
    THINKING = "thinking"
    ERROR = "error"
    USAGE = "usage"
    END = "end"


class EndReason(StrEnum):
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


# -- Providers ---------------------------------------------------------------


class PermissionKind(StrEnum):
    DURABLE = "durable"
    QUICK = "quick"


class SettingsFormat(StrEnum):
    JSON = "json"
    TOML = "toml"


# -- Broadcast ---------------------------------------------------------------


class Channel(StrEnum):
    """Outbound channels delivered to UI consumers."""

    PTY_DATA = "pty:data"
    PTY_EXIT = "pty:exit"
    HOOK_EVENT = "agent:hook-event"
    STRUCTURED_EVENT = "agent:structured-event"
