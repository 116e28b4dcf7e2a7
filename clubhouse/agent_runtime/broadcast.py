"""Outbound broadcast to every live UI consumer, with per-channel throttling.

Without a policy (or with ``interval_ms <= 0``) a broadcast is delivered
immediately.  With a policy, calls are grouped by ``channel`` plus an
optional ``key_fn(*args)`` and released together once the group's timer
fires:

* ``merge=True``  -- one delivery per window, carrying the latest args or
  ``merge_fn(existing, incoming)``.
* ``merge=False`` -- every call is kept and delivered in arrival order.

A group has exactly one timer; later calls in the same window do not push it
back.  Timers run on the asyncio loop (``loop.call_later``); outside a
running loop every call is delivered immediately.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from loguru import logger

from clubhouse.agent_runtime.models.enums import Channel

Args = tuple[Any, ...]


@runtime_checkable
class BroadcastTarget(Protocol):
    def is_destroyed(self) -> bool: ...

    def send(self, channel: str, *args: Any) -> None: ...


class CallbackTarget:
    """Broadcast target backed by a plain callable."""

    def __init__(self, callback: Callable[..., None]) -> None:
        self._callback = callback
        self._destroyed = False

    def is_destroyed(self) -> bool:
        return self._destroyed

    def destroy(self) -> None:
        self._destroyed = True

    def send(self, channel: str, *args: Any) -> None:
        self._callback(channel, *args)


@dataclass
class ChannelPolicy:
    interval_ms: int
    merge: bool = False
    key_fn: Callable[..., Any] | None = None
    merge_fn: Callable[[Args, Args], Args] | None = None


@dataclass
class _PendingBatch:
    channel: str
    calls: list[Args] = field(default_factory=list)
    handle: asyncio.TimerHandle | None = None


class BroadcastThrottler:
    def __init__(self, targets: Callable[[], Iterable[BroadcastTarget]]) -> None:
        self._targets = targets
        self._policies: dict[str, ChannelPolicy] = {}
        self._pending: dict[str, _PendingBatch] = {}

    # -- Policies --------------------------------------------------------------

    def set_channel_policy(self, channel: str, policy: ChannelPolicy) -> None:
        self._policies[channel] = policy

    def clear_channel_policy(self, channel: str) -> None:
        """Remove a channel's policy, delivering anything it still holds."""
        self._policies.pop(channel, None)
        for key in [k for k, batch in self._pending.items() if batch.channel == channel]:
            self._flush_group(key)

    def clear_all_policies(self) -> None:
        self.flush_all_pending()
        self._policies.clear()

    def policy_for(self, channel: str) -> ChannelPolicy | None:
        return self._policies.get(channel)

    # -- Broadcast -------------------------------------------------------------

    def broadcast(self, channel: str, *args: Any) -> None:
        policy = self._policies.get(channel)
        if policy is None or policy.interval_ms <= 0:
            self._deliver(channel, args)
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._deliver(channel, args)
            return

        key = channel if policy.key_fn is None else f"{channel}\x00{policy.key_fn(*args)}"
        batch = self._pending.get(key)
        if batch is None:
            batch = _PendingBatch(channel=channel, calls=[args])
            batch.handle = loop.call_later(policy.interval_ms / 1000, self._flush_group, key)
            self._pending[key] = batch
        elif policy.merge:
            previous = batch.calls[0]
            batch.calls[0] = tuple(policy.merge_fn(previous, args)) if policy.merge_fn else args
        else:
            batch.calls.append(args)

    def flush_all_pending(self) -> None:
        """Deliver every pending group now and cancel their timers."""
        for key in list(self._pending):
            self._flush_group(key)

    def pending_count(self) -> int:
        """Number of groups currently waiting on a timer."""
        return len(self._pending)

    def _flush_group(self, key: str) -> None:
        batch = self._pending.pop(key, None)
        if batch is None:
            return
        if batch.handle is not None:
            batch.handle.cancel()
        for args in batch.calls:
            self._deliver(batch.channel, args)

    def _deliver(self, channel: str, args: Args) -> None:
        for target in list(self._targets()):
            if target.is_destroyed():
                continue
            try:
                target.send(channel, *args)
            except Exception:
                logger.exception("Broadcast: delivery on {} failed", channel)


def _agent_key(agent_id: Any, *_: Any) -> str:
    return str(agent_id)


def _concat_data(existing: Args, incoming: Args) -> Args:
    agent_id, data = existing
    return (agent_id, data + incoming[1])


def register_default_policies(
    throttler: BroadcastThrottler,
    *,
    pty_data_interval_ms: int = 16,
    hook_event_interval_ms: int = 50,
) -> None:
    """Coalesce terminal output per agent and burst hook events per agent."""
    # pty:data (agent_id, data) -- concatenate within a frame
    throttler.set_channel_policy(
        Channel.PTY_DATA,
        ChannelPolicy(interval_ms=pty_data_interval_ms, merge=True, key_fn=_agent_key, merge_fn=_concat_data),
    )
    # agent:hook-event (agent_id, event) -- keep every event, in order
    throttler.set_channel_policy(
        Channel.HOOK_EVENT,
        ChannelPolicy(interval_ms=hook_event_interval_ms, merge=False, key_fn=_agent_key),
    )
