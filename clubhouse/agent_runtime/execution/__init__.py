"""Execution layer: headless processes and structured sessions."""

from clubhouse.agent_runtime.execution.headless import HeadlessManager, HeadlessSession
from clubhouse.agent_runtime.execution.structured import SessionNotFoundError, StructuredManager, StructuredSession

__all__ = ["HeadlessManager", "HeadlessSession", "SessionNotFoundError", "StructuredManager", "StructuredSession"]
