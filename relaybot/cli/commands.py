"""CLI commands for relaybot."""

import asyncio
import json
from pathlib import Path

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from relaybot import __logo__, __version__
from relaybot.errors import RelayError

app = typer.Typer(
    name="relaybot",
    help=f"{__logo__} relaybot - chat front-end for a long-lived agent",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} relaybot v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
):
    """relaybot - chat front-end for a long-lived agent."""
    pass


def _fail(message: str) -> None:
    console.print(f"[red]Error: {message}[/red]")
    raise typer.Exit(1)


# ============================================================================
# Agent Commands
# ============================================================================


@app.command()
def agent(
    message: str = typer.Option("", "--message", "-m", help="Message to send to the agent"),
    to: str = typer.Option(None, "--to", "-t", help="Recipient address; derives the session key"),
    session_id: str = typer.Option(None, "--session-id", help="Continue the session with this id"),
    thinking: str = typer.Option(None, "--thinking", help="Thinking level to persist for the session"),
    thinking_once: str = typer.Option(None, "--thinking-once", help="Thinking level for this run only"),
    verbose: str = typer.Option(None, "--verbose", help="Verbose level to persist (on|off)"),
    timeout: str = typer.Option(None, "--timeout", help="Run timeout in seconds"),
    json_output: bool = typer.Option(False, "--json", help="Print payloads and metadata as JSON"),
    deliver: bool = typer.Option(False, "--deliver", help="Send the reply through a channel"),
    channel: str = typer.Option("whatsapp", "--channel", help="Delivery channel (whatsapp|telegram)"),
    best_effort_deliver: bool = typer.Option(
        False, "--best-effort-deliver", help="Log delivery failures instead of failing"
    ),
    config_path: Path = typer.Option(None, "--config", "-c", help="Path to config.json"),
    logs: bool = typer.Option(False, "--logs/--no-logs", help="Show relaybot runtime logs"),
):
    """Run one agent turn directly, outside any chat channel."""
    from relaybot.agent.command import AgentCommandOptions, run_agent_command
    from relaybot.agent.engine import load_engine
    from relaybot.bus.queue import MessageBus
    from relaybot.channels.base import BaseChannel
    from relaybot.config.loader import load_config

    if logs:
        logger.enable("relaybot")
    else:
        logger.disable("relaybot")

    config = load_config(config_path)
    opts = AgentCommandOptions(
        message=message,
        to=to,
        session_id=session_id,
        thinking=thinking,
        thinking_once=thinking_once,
        verbose=verbose,
        timeout=timeout,
        json=json_output,
        deliver=deliver,
        channel=channel,
        best_effort_deliver=best_effort_deliver,
    )

    async def run():
        engine = load_engine(config)
        channels: dict[str, BaseChannel] = {}
        if deliver and (channel or "").lower() == "telegram" and config.channels.telegram.token:
            from relaybot.channels.telegram import TelegramChannel

            telegram = TelegramChannel(config.channels.telegram, MessageBus())
            await telegram.connect()
            channels["telegram"] = telegram
        try:
            return await run_agent_command(opts, config, engine, channels=channels)
        finally:
            for ch in channels.values():
                await ch.stop()

    try:
        outcome = asyncio.run(run())
    except RelayError as e:
        _fail(str(e))
        return

    for line in outcome.output:
        typer.echo(line)
    for line in outcome.delivery_errors:
        console.print(f"[yellow]{line}[/yellow]")


# ============================================================================
# Status Commands
# ============================================================================


@app.command()
def status(
    json_output: bool = typer.Option(False, "--json", help="Print the summary as JSON"),
    config_path: Path = typer.Option(None, "--config", "-c", help="Path to config.json"),
):
    """Show session store health and recent sessions."""
    from relaybot.agent.status import format_age, format_context_usage, summarize_sessions
    from relaybot.config.loader import load_config
    from relaybot.session.store import SessionStore, resolve_store_path

    config = load_config(config_path)
    store_path = resolve_store_path(config.session.store)
    records = asyncio.run(SessionStore(store_path).load())
    summary = summarize_sessions(records, config.agent)

    if json_output:
        typer.echo(json.dumps({
            "path": str(store_path),
            "count": summary["count"],
            "defaults": summary["defaults"],
            "recent": [
                {
                    "key": s.key,
                    "kind": s.kind,
                    "sessionId": s.session_id,
                    "updatedAt": s.updated_at,
                    "age": s.age,
                    "model": s.model,
                    "contextTokens": s.context_tokens,
                    "totalTokens": s.total_tokens,
                    "remainingTokens": s.remaining_tokens,
                    "percentUsed": s.percent_used,
                    "flags": s.flags,
                }
                for s in summary["recent"]
            ],
        }, indent=2))
        return

    defaults = summary["defaults"]
    console.print(f"{__logo__} relaybot Status\n")
    console.print(f"Session store: {store_path} {'[green]✓[/green]' if store_path.exists() else '[dim]missing[/dim]'}")
    console.print(f"Sessions: {summary['count']}")
    console.print(f"Default model: {defaults['model']} ({defaults['contextTokens']} ctx)")

    if not summary["recent"]:
        console.print("No session activity yet.")
        return

    table = Table(title="Recent sessions")
    table.add_column("Key", style="cyan")
    table.add_column("Kind")
    table.add_column("Updated")
    table.add_column("Model")
    table.add_column("Usage")
    table.add_column("Flags", style="dim")
    for s in summary["recent"]:
        table.add_row(
            s.key,
            s.kind,
            format_age(s.age),
            s.model or "unknown",
            format_context_usage(s),
            " ".join(s.flags),
        )
    console.print(table)


# ============================================================================
# Gateway / Server
# ============================================================================


@app.command()
def gateway(
    config_path: Path = typer.Option(None, "--config", "-c", help="Path to config.json"),
):
    """Start the relaybot gateway."""
    from relaybot.agent.engine import load_engine
    from relaybot.agent.loop import AgentLoop
    from relaybot.agent.reply import ReplyOrchestrator
    from relaybot.bus.queue import MessageBus
    from relaybot.channels.manager import ChannelManager
    from relaybot.config.loader import load_config

    config = load_config(config_path)
    try:
        engine = load_engine(config)
    except RelayError as e:
        _fail(str(e))
        return

    console.print(f"{__logo__} Starting relaybot gateway...")

    bus = MessageBus()
    channels = ChannelManager(config, bus)
    orchestrator = ReplyOrchestrator(config, engine, provider_summary=channels.provider_summary)
    loop = AgentLoop(bus, orchestrator, channels, max_concurrency=config.gateway.max_concurrency)

    if channels.enabled_channels:
        console.print(f"[green]✓[/green] Channels enabled: {', '.join(channels.enabled_channels)}")
    else:
        console.print("[yellow]Warning: No channels enabled[/yellow]")

    async def run():
        try:
            await asyncio.gather(loop.run(), channels.start_all())
        except KeyboardInterrupt:
            console.print("\nShutting down...")
        finally:
            loop.stop()
            await channels.stop_all()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\nShutting down...")


if __name__ == "__main__":
    app()
