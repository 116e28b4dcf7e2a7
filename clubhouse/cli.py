import click


@click.group()
@click.option("--log-level", default=None, help="Override CLUBHOUSE_LOG_LEVEL.")
@click.pass_context
def main(ctx: click.Context, log_level: str | None) -> None:
    """Clubhouse - run and observe coding-agent CLIs."""
    ctx.ensure_object(dict)
    ctx.obj["log_level"] = log_level


def _settings(ctx: click.Context):
    from clubhouse.agent_runtime.settings import ClubhouseSettings

    overrides = {}
    if ctx.obj and ctx.obj.get("log_level"):
        overrides["log_level"] = ctx.obj["log_level"]
    return ClubhouseSettings(**overrides)


@main.command()
@click.pass_context
def providers(ctx: click.Context) -> None:
    """List bundled providers and whether their CLI is installed."""
    import asyncio

    from clubhouse.agent_runtime.app import AgentRuntime
    from clubhouse.agent_runtime.log import setup_logging

    settings = _settings(ctx)
    setup_logging(settings.log_level)
    runtime = AgentRuntime.create(settings)

    async def _check() -> list[tuple[str, str, str]]:
        rows = []
        for provider in runtime.providers:
            availability = await provider.check_availability()
            status = "available" if availability.available else f"missing: {availability.error}"
            rows.append((provider.id, provider.display_name, status))
        return rows

    for provider_id, name, status in asyncio.run(_check()):
        click.echo(f"{provider_id:<12} {name:<14} {status}")


@main.command()
@click.argument("provider_id", metavar="PROVIDER")
@click.argument("mission")
@click.option("--cwd", default=".", type=click.Path(file_okay=False, exists=True), help="Working directory.")
@click.option("--model", default=None, help="Model id (provider default when omitted).")
@click.option("--agent-id", default=None, help="Agent id (random when omitted).")
@click.pass_context
def run(ctx: click.Context, provider_id: str, mission: str, cwd: str, model: str | None, agent_id: str | None) -> None:
    """Run MISSION headlessly and print hook events as JSON lines."""
    import asyncio
    import json
    import uuid
    from pathlib import Path

    from clubhouse.agent_runtime.app import AgentRuntime, lifespan
    from clubhouse.agent_runtime.broadcast import CallbackTarget
    from clubhouse.agent_runtime.models.enums import Channel
    from clubhouse.agent_runtime.models.provider import HeadlessOptions
    from clubhouse.agent_runtime.providers import BinaryNotFoundError, UnknownProviderError, supports_headless

    settings = _settings(ctx)
    agent_id = agent_id or f"agent-{uuid.uuid4().hex[:8]}"

    def _print(channel: str, *args) -> None:
        if channel == Channel.HOOK_EVENT:
            click.echo(json.dumps(args[1], ensure_ascii=False))

    runtime = AgentRuntime.create(settings, targets=[CallbackTarget(_print)])

    async def _run() -> int:
        async with lifespan(runtime):
            provider = runtime.providers.get(provider_id)
            if not supports_headless(provider):
                raise click.ClickException(f"{provider.display_name} does not support headless runs")
            opts = HeadlessOptions(cwd=str(Path(cwd).resolve()), model=model, mission=mission, agent_id=agent_id)
            command = provider.build_headless_command(opts)  # type: ignore[attr-defined]
            if command is None:
                raise click.ClickException("Nothing to run: empty mission")

            done: asyncio.Future[int] = asyncio.get_running_loop().create_future()

            def _on_exit(_agent_id: str, code: int) -> None:
                if not done.done():
                    done.set_result(code)

            await runtime.headless.spawn(
                agent_id, opts.cwd, command.binary, command.args, command.env, command.output_kind, _on_exit
            )
            return await done

    try:
        code = asyncio.run(_run())
    except (UnknownProviderError, BinaryNotFoundError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Transcript: {runtime.store.path_for(agent_id)}", err=True)
    ctx.exit(code)


@main.command()
@click.argument("agent_id")
@click.option("--offset", default=0, type=click.IntRange(min=0), help="First event to print.")
@click.option("--limit", default=100, type=click.IntRange(min=0), help="Maximum number of events.")
@click.option("--structured", is_flag=True, default=False, help="Read the structured-session transcript.")
@click.pass_context
def transcript(ctx: click.Context, agent_id: str, offset: int, limit: int, structured: bool) -> None:
    """Print a page of a stored transcript as JSON lines."""
    import asyncio
    import json

    from clubhouse.agent_runtime.execution.structured import transcript_name
    from clubhouse.agent_runtime.store.transcript import TranscriptStore

    settings = _settings(ctx)
    store = TranscriptStore(settings.logs_dir, max_bytes=settings.max_transcript_bytes)
    name = transcript_name(agent_id) if structured else agent_id

    page = asyncio.run(store.read_transcript_page(name, offset, limit))
    if page is None:
        raise click.ClickException(f"No transcript found for {agent_id}")
    for event in page.events:
        click.echo(json.dumps(event, ensure_ascii=False))
    click.echo(f"{len(page.events)} of {page.total_events} events", err=True)


if __name__ == "__main__":
    main()
