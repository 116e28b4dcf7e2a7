"""Runtime wiring.

``AgentRuntime`` owns the shared singletons (bus, throttler, resolver,
providers, transcript store and both execution managers).  ``lifespan``
starts the background machinery and tears everything down in order on exit.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from loguru import logger

from clubhouse.agent_runtime.broadcast import BroadcastTarget, BroadcastThrottler, register_default_policies
from clubhouse.agent_runtime.bus import EventBus
from clubhouse.agent_runtime.execution.headless import HeadlessManager
from clubhouse.agent_runtime.execution.structured import StructuredManager
from clubhouse.agent_runtime.log import setup_logging
from clubhouse.agent_runtime.providers.binary import BinaryResolver
from clubhouse.agent_runtime.providers.registry import ProviderRegistry
from clubhouse.agent_runtime.settings import ClubhouseSettings, get_settings
from clubhouse.agent_runtime.shell import ShellEnvironment
from clubhouse.agent_runtime.store.transcript import TranscriptStore


@dataclass
class AgentRuntime:
    settings: ClubhouseSettings
    bus: EventBus
    throttler: BroadcastThrottler
    shell_env: ShellEnvironment
    resolver: BinaryResolver
    providers: ProviderRegistry
    store: TranscriptStore
    headless: HeadlessManager
    structured: StructuredManager
    targets: list[BroadcastTarget] = field(default_factory=list)
    """Live UI consumers.  Append / remove freely; the throttler reads it on every delivery."""

    @classmethod
    def create(cls, settings: ClubhouseSettings | None = None, targets: Iterable[BroadcastTarget] = ()) -> AgentRuntime:
        settings = settings or get_settings()
        target_list = list(targets)

        bus = EventBus(active=False)
        throttler = BroadcastThrottler(lambda: target_list)
        shell_env = ShellEnvironment(timeout=settings.binary_lookup_timeout, login_shell=settings.login_shell_env)
        resolver = BinaryResolver(shell_env, ttl=settings.binary_cache_ttl, lookup_timeout=settings.binary_lookup_timeout)
        store = TranscriptStore(settings.logs_dir, max_bytes=settings.max_transcript_bytes)

        return cls(
            settings=settings,
            bus=bus,
            throttler=throttler,
            shell_env=shell_env,
            resolver=resolver,
            providers=ProviderRegistry.with_builtins(resolver),
            store=store,
            headless=HeadlessManager(
                store,
                throttler,
                bus,
                shell_env,
                kill_grace_seconds=settings.kill_grace_seconds,
                stale_sweep_interval=settings.stale_sweep_interval,
            ),
            structured=StructuredManager(store, throttler, bus),
            targets=target_list,
        )

    def active_session_count(self) -> int:
        return self.headless.active_session_count() + self.structured.active_session_count()


@asynccontextmanager
async def lifespan(runtime: AgentRuntime, *, configure_logging: bool = True) -> AsyncIterator[AgentRuntime]:
    # -- Startup ---------------------------------------------------------------
    settings = runtime.settings
    if configure_logging:
        setup_logging(settings.log_level)

    logger.info("Agent Runtime starting (data_root={})", settings.data_root)
    register_default_policies(
        runtime.throttler,
        pty_data_interval_ms=settings.pty_data_interval_ms,
        hook_event_interval_ms=settings.hook_event_interval_ms,
    )
    runtime.bus.set_active(settings.event_bus_enabled)
    runtime.headless.start_stale_sweep()

    try:
        yield runtime
    finally:
        # -- Shutdown ----------------------------------------------------------
        logger.info("Agent Runtime shutting down (active_sessions={})", runtime.active_session_count())

        # 1. Stop accepting new sessions.
        runtime.headless.registry.begin_shutdown()
        runtime.structured.registry.begin_shutdown()
        await runtime.headless.stop_stale_sweep()

        # 2. Stop whatever is still running.
        killed = runtime.headless.kill_all()
        cancelled = await runtime.structured.cancel_all()
        if killed or cancelled:
            logger.info("Stopping {} headless and {} structured sessions", killed, cancelled)

        # 3. Wait for exit notifications to go out.
        timeout = settings.graceful_shutdown_timeout
        drained = await runtime.headless.registry.wait_until_drained(timeout=timeout)
        if not drained:
            swept = runtime.headless.sweep_stale()
            logger.warning("Headless drain timed out; swept {} exited sessions", swept)

        # 4. Deliver anything still held by throttle windows, then detach consumers.
        runtime.throttler.flush_all_pending()
        runtime.bus.remove_all_listeners()
        logger.info("Agent Runtime stopped")
