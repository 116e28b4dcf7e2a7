"""Data models for the agent runtime."""

from clubhouse.agent_runtime.models.enums import (
    Channel,
    EndReason,
    HookEventKind,
    OutputKind,
    PermissionKind,
    SessionKind,
    SettingsFormat,
    StructuredEventType,
)
from clubhouse.agent_runtime.models.events import NormalizedHookEvent, StructuredEvent, TranscriptEvent, now_ms
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
from clubhouse.agent_runtime.models.transcript import TranscriptInfo, TranscriptPage

__all__ = [
    "Availability",
    "Channel",
    "EndReason",
    "HeadlessCommand",
    "HeadlessOptions",
    "HookEventKind",
    "ModelOption",
    "NormalizedHookEvent",
    "OutputKind",
    "PermissionKind",
    "ProviderCapabilities",
    "ProviderConventions",
    "QuickSummary",
    "SessionKind",
    "SettingsFormat",
    "SpawnCommand",
    "SpawnOptions",
    "StructuredEvent",
    "StructuredEventType",
    "StructuredSessionOptions",
    "TranscriptEvent",
    "TranscriptInfo",
    "TranscriptPage",
    "now_ms",
]
