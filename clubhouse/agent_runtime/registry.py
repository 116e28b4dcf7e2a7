"""In-process session registry.

Tracks live sessions keyed by agent id, with direct object references for
control (kill, cancel, message delivery).  Ephemeral -- empty on process
restart; transcripts on disk are the only durable state.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from typing import Generic, TypeVar

from loguru import logger

S = TypeVar("S")


class ShuttingDownError(RuntimeError):
    """Raised when attempting to register a session during shutdown."""


class SessionRegistry(Generic[S]):
    """Registry of currently executing sessions of one kind.

    At most one session per agent id: registering a new one replaces the
    previous entry.  ``unregister`` can be guarded by identity so that a
    session finishing late never removes the replacement that superseded it.

    The registry also provides a drain mechanism for graceful shutdown:
    ``wait_until_drained`` blocks until all sessions have been unregistered.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._sessions: dict[str, S] = {}
        self._drain_event = asyncio.Event()
        self._drain_event.set()  # Starts "drained" (no sessions).
        self._shutting_down = False

    # -- Mutation --------------------------------------------------------------

    def register(self, agent_id: str, session: S) -> None:
        """Register a session.  Raises ``ShuttingDownError`` if shutting down."""
        if self._shutting_down:
            raise ShuttingDownError
        logger.debug("Registry[{}]: register {}", self._name, agent_id)
        self._sessions[agent_id] = session
        self._drain_event.clear()

    def unregister(self, agent_id: str, session: S | None = None) -> S | None:
        """Remove *agent_id*.  With *session*, only if it is still the registered one."""
        current = self._sessions.get(agent_id)
        if current is None or (session is not None and current is not session):
            return None
        del self._sessions[agent_id]
        logger.debug("Registry[{}]: unregister {}", self._name, agent_id)
        if not self._sessions:
            self._drain_event.set()
        return current

    # -- Query -----------------------------------------------------------------

    def get(self, agent_id: str) -> S | None:
        return self._sessions.get(agent_id)

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._sessions

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._sessions))

    def items(self) -> list[tuple[str, S]]:
        """Return a snapshot of ``(agent_id, session)`` pairs."""
        return list(self._sessions.items())

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    # -- Lifecycle -------------------------------------------------------------

    def begin_shutdown(self) -> None:
        """Mark the registry as shutting down.  New registrations are refused."""
        self._shutting_down = True
        logger.info("Registry[{}]: shutdown initiated, refusing new sessions", self._name)
        if not self._sessions:
            self._drain_event.set()

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    async def wait_until_drained(self, timeout: float | None = None) -> bool:
        """Wait until all sessions have been unregistered (drained).

        Returns ``True`` if the registry is empty, ``False`` if *timeout*
        expired with sessions still active.
        """
        if not self._sessions:
            return True
        try:
            await asyncio.wait_for(self._drain_event.wait(), timeout=timeout)
        except TimeoutError:
            logger.warning(
                "Registry[{}]: drain timed out after {}s with {} sessions still active",
                self._name,
                timeout,
                len(self._sessions),
            )
            return False
        else:
            return True
