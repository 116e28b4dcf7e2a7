"""Transcript query results."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class TranscriptInfo(BaseModel):
    total_events: int
    file_size_bytes: int


class TranscriptPage(BaseModel):
    events: list[dict[str, Any]] = Field(default_factory=list)
    total_events: int
