"""Structured session manager.

Owns the lifecycle of structured-mode sessions: one adapter per agent id,
consumed on a background task.  Every event is recorded to the
``{agent_id}-structured`` transcript and broadcast on
``agent:structured-event``; kinds that have a hook equivalent are also
forwarded to the internal bus.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from clubhouse.agent_runtime.broadcast import BroadcastThrottler
from clubhouse.agent_runtime.bus import EventBus
from clubhouse.agent_runtime.execution.hooks import structured_to_hook
from clubhouse.agent_runtime.log import app_log
from clubhouse.agent_runtime.models.enums import Channel, SessionKind, StructuredEventType
from clubhouse.agent_runtime.models.events import StructuredEvent
from clubhouse.agent_runtime.models.provider import StructuredSessionOptions
from clubhouse.agent_runtime.models.transcript import TranscriptInfo, TranscriptPage
from clubhouse.agent_runtime.providers.base import StructuredAdapter
from clubhouse.agent_runtime.registry import SessionRegistry
from clubhouse.agent_runtime.store.transcript import TranscriptLog, TranscriptStore

NAMESPACE = "core:structured"

ADAPTER_ERROR = "ADAPTER_ERROR"


class SessionNotFoundError(LookupError):
    """No structured session is registered for the agent."""

    def __init__(self, agent_id: str) -> None:
        self.agent_id = agent_id
        super().__init__(f"No structured session found for agent {agent_id}")


@dataclass
class StructuredSession:
    agent_id: str
    adapter: StructuredAdapter
    transcript: TranscriptLog
    task: asyncio.Task[None] | None = None
    cancelled: bool = False
    cleaned_up: bool = False


def transcript_name(agent_id: str) -> str:
    return f"{agent_id}-structured"


class StructuredManager:
    def __init__(self, store: TranscriptStore, throttler: BroadcastThrottler, bus: EventBus) -> None:
        self._store = store
        self._throttler = throttler
        self._bus = bus
        self._registry: SessionRegistry[StructuredSession] = SessionRegistry("structured")

    @property
    def registry(self) -> SessionRegistry[StructuredSession]:
        return self._registry

    # -- Lifecycle -------------------------------------------------------------

    async def start_session(
        self,
        agent_id: str,
        adapter: StructuredAdapter,
        opts: StructuredSessionOptions,
        *,
        project_id: str = "",
    ) -> None:
        if agent_id in self._registry:
            await self.cancel_session(agent_id)

        transcript = self._store.open(transcript_name(agent_id), namespace=NAMESPACE)
        session = StructuredSession(agent_id=agent_id, adapter=adapter, transcript=transcript)
        try:
            self._registry.register(agent_id, session)
        except Exception:
            self._store.release(transcript_name(agent_id), transcript)
            raise

        app_log(NAMESPACE, "info", "Starting structured session", {"agent_id": agent_id, "cwd": opts.cwd, "model": opts.model})
        self._bus.emit_agent_spawned(agent_id, SessionKind.STRUCTURED, project_id, {"model": opts.model})
        session.task = asyncio.create_task(self._consume(session, opts), name=f"structured:{agent_id}")

    async def _consume(self, session: StructuredSession, opts: StructuredSessionOptions) -> None:
        try:
            async for event in session.adapter.start(opts):
                if session.cancelled:
                    break
                self._handle_event(session, event)
                if event.type == StructuredEventType.END:
                    break
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if not session.cancelled:
                app_log(NAMESPACE, "error", "Structured adapter failed", {"agent_id": session.agent_id, "error": repr(exc)})
                self._handle_event(
                    session,
                    StructuredEvent(
                        type=StructuredEventType.ERROR,
                        data={"message": str(exc) or type(exc).__name__, "code": ADAPTER_ERROR},
                    ),
                )
        finally:
            self._cleanup(session)

    def _handle_event(self, session: StructuredSession, event: StructuredEvent) -> None:
        wire = event.to_wire()
        session.transcript.append(wire)
        self._throttler.broadcast(Channel.STRUCTURED_EVENT, session.agent_id, wire)
        hook = structured_to_hook(event)
        if hook is not None:
            self._bus.emit_hook_event(session.agent_id, hook)

    def _cleanup(self, session: StructuredSession) -> None:
        if session.cleaned_up:
            return
        session.cleaned_up = True
        try:
            session.adapter.dispose()
        except Exception as exc:  # noqa: BLE001
            app_log(NAMESPACE, "warn", "Adapter dispose failed", {"agent_id": session.agent_id, "error": repr(exc)})
        self._store.release(transcript_name(session.agent_id), session.transcript)
        self._registry.unregister(session.agent_id, session)
        app_log(NAMESPACE, "info", "Structured session ended", {"agent_id": session.agent_id, "cancelled": session.cancelled})

    # -- Control ---------------------------------------------------------------

    def _require(self, agent_id: str) -> StructuredSession:
        session = self._registry.get(agent_id)
        if session is None:
            raise SessionNotFoundError(agent_id)
        return session

    async def send_message(self, agent_id: str, message: str) -> None:
        await self._require(agent_id).adapter.send_message(message)

    async def respond_to_permission(self, agent_id: str, request_id: str, approved: bool, reason: str | None = None) -> None:
        await self._require(agent_id).adapter.respond_to_permission(request_id, approved, reason)

    async def cancel_session(self, agent_id: str) -> None:
        session = self._registry.get(agent_id)
        if session is None:
            return
        session.cancelled = True
        try:
            await session.adapter.cancel()
        except Exception as exc:  # noqa: BLE001
            app_log(NAMESPACE, "warn", "Adapter cancel failed", {"agent_id": agent_id, "error": repr(exc)})
        self._cleanup(session)
        task = session.task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def cancel_all(self) -> int:
        agent_ids = list(self._registry)
        for agent_id in agent_ids:
            await self.cancel_session(agent_id)
        return len(agent_ids)

    # -- Queries ---------------------------------------------------------------

    def is_structured_session(self, agent_id: str) -> bool:
        return agent_id in self._registry

    def active_session_count(self) -> int:
        return self._registry.active_count

    async def read_transcript(self, agent_id: str) -> str | None:
        return await self._store.read_transcript(transcript_name(agent_id))

    async def get_transcript_info(self, agent_id: str) -> TranscriptInfo | None:
        return await self._store.get_transcript_info(transcript_name(agent_id))

    async def read_transcript_page(self, agent_id: str, offset: int, limit: int) -> TranscriptPage | None:
        return await self._store.read_transcript_page(transcript_name(agent_id), offset, limit)
