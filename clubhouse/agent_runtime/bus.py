"""Internal event bus.

Gated pub/sub relay between the execution managers and optional downstream
consumers (e.g. a companion-device relay).  While inactive every ``emit_*``
returns immediately, so the managers can call it unconditionally.

Listeners run synchronously, in subscription order.  A failing listener is
logged and does not stop delivery to the others.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from loguru import logger

from clubhouse.agent_runtime.models.events import NormalizedHookEvent

PtyDataListener = Callable[[str, str], None]
HookEventListener = Callable[[str, NormalizedHookEvent], None]
PtyExitListener = Callable[[str, int], None]
AgentSpawnedListener = Callable[[str, str, str, dict[str, Any]], None]

Unsubscribe = Callable[[], None]


@dataclass(frozen=True)
class ListenerCounts:
    pty_data: int
    hook_event: int
    pty_exit: int
    agent_spawned: int

    @property
    def total(self) -> int:
        return self.pty_data + self.hook_event + self.pty_exit + self.agent_spawned


class EventBus:
    def __init__(self, *, active: bool = False) -> None:
        self._active = active
        self._pty_data: list[PtyDataListener] = []
        self._hook_event: list[HookEventListener] = []
        self._pty_exit: list[PtyExitListener] = []
        self._agent_spawned: list[AgentSpawnedListener] = []

    # -- Gate ------------------------------------------------------------------

    def set_active(self, flag: bool) -> None:
        if flag != self._active:
            logger.info("Event bus: {}", "activated" if flag else "deactivated")
        self._active = flag

    @property
    def is_active(self) -> bool:
        return self._active

    # -- Emit ------------------------------------------------------------------

    def emit_pty_data(self, agent_id: str, data: str) -> None:
        if self._active:
            self._dispatch(self._pty_data, agent_id, data)

    def emit_hook_event(self, agent_id: str, event: NormalizedHookEvent) -> None:
        if self._active:
            self._dispatch(self._hook_event, agent_id, event)

    def emit_pty_exit(self, agent_id: str, exit_code: int) -> None:
        if self._active:
            self._dispatch(self._pty_exit, agent_id, exit_code)

    def emit_agent_spawned(self, agent_id: str, kind: str, project_id: str, meta: dict[str, Any] | None = None) -> None:
        if self._active:
            self._dispatch(self._agent_spawned, agent_id, kind, project_id, meta or {})

    @staticmethod
    def _dispatch(listeners: list[Callable[..., None]], *args: Any) -> None:
        # Snapshot: listeners may unsubscribe while being called.
        for listener in list(listeners):
            try:
                listener(*args)
            except Exception:
                logger.exception("Event bus: listener {!r} failed", listener)

    # -- Subscribe -------------------------------------------------------------

    def on_pty_data(self, listener: PtyDataListener) -> Unsubscribe:
        return self._subscribe(self._pty_data, listener)

    def on_hook_event(self, listener: HookEventListener) -> Unsubscribe:
        return self._subscribe(self._hook_event, listener)

    def on_pty_exit(self, listener: PtyExitListener) -> Unsubscribe:
        return self._subscribe(self._pty_exit, listener)

    def on_agent_spawned(self, listener: AgentSpawnedListener) -> Unsubscribe:
        return self._subscribe(self._agent_spawned, listener)

    @staticmethod
    def _subscribe(listeners: list[Any], listener: Any) -> Unsubscribe:
        listeners.append(listener)

        def unsubscribe() -> None:
            if listener in listeners:
                listeners.remove(listener)

        return unsubscribe

    def remove_all_listeners(self) -> None:
        self._pty_data.clear()
        self._hook_event.clear()
        self._pty_exit.clear()
        self._agent_spawned.clear()

    def listener_counts(self) -> ListenerCounts:
        return ListenerCounts(
            pty_data=len(self._pty_data),
            hook_event=len(self._hook_event),
            pty_exit=len(self._pty_exit),
            agent_spawned=len(self._agent_spawned),
        )
