"""CLI commands for relaybot."""

import asyncio
import secrets
import signal

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from relaybot import __logo__, __version__

app = typer.Typer(
    name="relaybot",
    help=f"{__logo__} relaybot - LLM chat agent for OneBot bridges",
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
    """relaybot - LLM chat agent for OneBot bridges."""
    pass


def _load_or_exit(config_path: str | None = None):
    """Load config, printing ConfigError and exiting with status 1."""
    from pathlib import Path

    from relaybot.config.loader import ConfigError, load_config

    try:
        return load_config(Path(config_path).expanduser() if config_path else None)
    except ConfigError as e:
        console.print(f"[red]Config error:[/red] {e}")
        raise typer.Exit(1)


# ============================================================================
# Setup
# ============================================================================


@app.command()
def init(
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite an existing config"),
):
    """Write a default config to ~/.relaybot/config.json."""
    from relaybot.config.loader import get_config_path, save_config
    from relaybot.config.schema import Config

    config_path = get_config_path()
    if config_path.exists() and not force:
        console.print(f"[yellow]Config already exists at {config_path}[/yellow]")
        if not typer.confirm("Overwrite?"):
            raise typer.Exit()

    save_config(Config())
    console.print(f"[green]✓[/green] Created config at {config_path} (mode 600)")
    console.print(f"\n{__logo__} relaybot is ready!")
    console.print("\nNext steps:")
    console.print("  1. Point [cyan]network.websocket[/cyan] / [cyan]network.http[/cyan] at your bridge")
    console.print("  2. Set the provider key, e.g. [cyan]RELAYBOT_PROVIDER__API_KEY=sk-...[/cyan] in ~/.relaybot/.env")
    console.print("  3. Start: [cyan]relaybot run[/cyan]")


# ============================================================================
# Run
# ============================================================================


def _build_runtime(config):
    """Wire repository, policy, store, gateway, client and dispatcher."""
    from relaybot.agent.dispatcher import Dispatcher
    from relaybot.channels.onebot import OneBotGateway
    from relaybot.permissions.engine import PermissionPolicy, PolicyHolder
    from relaybot.providers.litellm_provider import LiteLLMClient
    from relaybot.session.manager import ConversationStore
    from relaybot.session.repository import JsonFileRepository, MemoryRepository

    if config.storage.ephemeral:
        repository = MemoryRepository()
    else:
        repository = JsonFileRepository(config.data_path)

    policy = repository.load_policy()
    if policy is not None:
        logger.info("Using persisted permission policy (overrides config)")
    else:
        policy = PermissionPolicy.from_config(config.permission)
    holder = PolicyHolder(policy)

    store = ConversationStore(repository, max_turns=config.agent.max_context_turns)
    gateway = OneBotGateway(config.network, heart_beat=config.heart_beat)
    client = LiteLLMClient(
        api_key=config.provider.api_key,
        api_base=config.provider.api_base,
        default_model=config.provider.model,
        provider_name=config.provider.name,
        max_tokens=config.provider.max_tokens,
        temperature=config.provider.temperature,
        timeout=config.provider.timeout,
    )
    dispatcher = Dispatcher.from_config(config, gateway, client, store, holder)
    return repository, holder, dispatcher


@app.command()
def run(
    config_path: str | None = typer.Option(None, "--config", "-c", help="Path to config.json"),
    ephemeral: bool = typer.Option(False, "--ephemeral", help="Keep contexts in memory only"),
    control: bool = typer.Option(False, "--control", help="Serve the operator control plane"),
    port: int | None = typer.Option(None, "--port", "-p", help="Control plane port"),
):
    """Connect to the bridge and start answering messages."""
    from relaybot.logging.error_store import init_error_store
    from relaybot.logging.setup import setup_logging

    config = _load_or_exit(config_path)
    if ephemeral:
        config = config.with_updates(storage=config.storage.model_copy(update={"ephemeral": True}))
    if control or port is not None:
        config = config.with_updates(
            control=config.control.model_copy(
                update={"enabled": True, "port": port or config.control.port}
            )
        )

    log_file = setup_logging(config.logger, config.data_path)
    init_error_store(config.data_path / "logs" / "errors.jsonl")

    from relaybot.config.loader import ConfigError

    try:
        repository, holder, dispatcher = _build_runtime(config)
    except ConfigError as e:
        console.print(f"[red]Config error:[/red] {e}")
        raise typer.Exit(1)

    console.print(f"{__logo__} Starting relaybot (bridge {config.network.websocket})...")
    console.print(f"[green]✓[/green] Model: {config.provider.model}")
    if config.storage.ephemeral:
        console.print("[yellow]Contexts are kept in memory only[/yellow]")
    if log_file:
        console.print(f"[green]✓[/green] Logging to {log_file}")

    async def _serve() -> None:
        tasks = [asyncio.create_task(dispatcher.run())]
        server = None

        if config.control.enabled:
            import uvicorn

            from relaybot.gateway.api import create_control_app

            token = config.control.auth_token
            if not token:
                token = secrets.token_urlsafe(32)
                console.print(f"[yellow]No control.authToken set, using one-off token:[/yellow] {token}")
            api_app = create_control_app(dispatcher, holder, repository, token)
            server = uvicorn.Server(
                uvicorn.Config(
                    api_app,
                    host=config.control.host,
                    port=config.control.port,
                    log_level="warning",
                    access_log=False,
                )
            )
            # Signals are handled below, not by uvicorn.
            server.install_signal_handlers = lambda: None
            tasks.append(asyncio.create_task(server.serve()))
            console.print(
                f"[green]✓[/green] Control plane on http://{config.control.host}:{config.control.port}"
            )

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                pass

        waiter = asyncio.create_task(stop.wait())
        done, _ = await asyncio.wait([waiter, *tasks], return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            if task is not waiter and task.exception() is not None:
                logger.error(f"Background task failed: {task.exception()}")

        console.print("\nShutting down...")
        await dispatcher.stop(config.agent.drain_timeout)
        if server is not None:
            server.should_exit = True
        waiter.cancel()
        await asyncio.gather(*tasks, waiter, return_exceptions=True)

    asyncio.run(_serve())


# ============================================================================
# Policy
# ============================================================================


@app.command()
def policy(
    config_path: str | None = typer.Option(None, "--config", "-c", help="Path to config.json"),
):
    """Show the effective permission policy."""
    from relaybot.config.loader import ConfigError
    from relaybot.permissions.engine import PermissionPolicy
    from relaybot.session.repository import JsonFileRepository

    config = _load_or_exit(config_path)
    source = "config"
    effective = None
    if not config.storage.ephemeral:
        try:
            effective = JsonFileRepository(config.data_path).load_policy()
        except ConfigError as e:
            console.print(f"[yellow]Ignoring persisted policy: {e}[/yellow]")
        if effective is not None:
            source = "persisted"
    if effective is None:
        try:
            effective = PermissionPolicy.from_config(config.permission)
        except ConfigError as e:
            console.print(f"[red]Config error:[/red] {e}")
            raise typer.Exit(1)

    console.print(f"{__logo__} Permission policy ({source})\n")
    console.print(f"Default tier: [cyan]{effective.default_tier.name.lower()}[/cyan]")
    console.print(f"Private tier: [cyan]{effective.private_tier.name.lower()}[/cyan]")
    console.print(f"Admins: {', '.join(sorted(effective.admin_ids)) or '[dim]none[/dim]'}")

    if not effective.overrides:
        console.print("Overrides: [dim]none[/dim]")
        return

    table = Table(title="Overrides")
    table.add_column("Key", style="cyan")
    table.add_column("Tier")
    for key, tier in sorted(effective.overrides.items()):
        table.add_row(key, tier.name.lower())
    console.print(table)


if __name__ == "__main__":
    app()
