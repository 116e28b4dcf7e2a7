"""Transcript persistence."""

from clubhouse.agent_runtime.store.transcript import TranscriptLog, TranscriptStore, serialize_event

__all__ = ["TranscriptLog", "TranscriptStore", "serialize_event"]
