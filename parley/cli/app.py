"""
Main CLI application for parley.

Usage:
    parley serve [--host H] [--port P] [--profile NAME]
    parley chat [--url URL] [--user ID] [--thread ID] [--model ID] [--search]
    parley threads list|show|delete
    parley config show|validate
    parley version
"""

from __future__ import annotations

import asyncio
import os
import uuid
from typing import Optional

import typer
from rich.console import Console

from parley import __version__
from parley.config import find_config_path, load_config
from parley.logging_setup import configure_logging

app = typer.Typer(name="parley", help="Parley - bring-your-own-key chat server")
threads_app = typer.Typer(help="Thread management")
config_app = typer.Typer(help="Configuration management")

app.add_typer(threads_app, name="threads")
app.add_typer(config_app, name="config")

console = Console()

DEFAULT_USER = os.environ.get("PARLEY_USER", "local")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _load(profile: str | None = None, overrides: dict | None = None):
    cfg = load_config(find_config_path(), profile=profile, cli_overrides=overrides)
    configure_logging(cfg.logging.level, cfg.logging.file)
    return cfg


async def _open_store(cfg):
    from parley.storage.store import ChatStore

    store = ChatStore(cfg.storage.db_path, cfg.storage.files_dir)
    await store.init()
    return store


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Bind address"),
    port: Optional[int] = typer.Option(None, help="Bind port"),
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
):
    """Run the chat HTTP server."""
    import uvicorn

    from parley.server.app import create_app

    overrides = {}
    if host:
        overrides["server.host"] = host
    if port:
        overrides["server.port"] = port
    cfg = _load(profile, overrides)

    uvicorn.run(
        create_app(cfg),
        host=cfg.server.host,
        port=cfg.server.port,
        log_level=cfg.logging.level.lower(),
    )


@app.command()
def chat(
    url: Optional[str] = typer.Option(None, help="Server URL (default: configured host/port)"),
    user: str = typer.Option(DEFAULT_USER, help="User id sent to the server"),
    thread: Optional[str] = typer.Option(None, "--thread", help="Resume thread ID"),
    model: Optional[str] = typer.Option(None, help="Model id"),
    search: bool = typer.Option(False, "--search/--no-search", help="Enable web search"),
    reasoning: Optional[str] = typer.Option(None, help="Reasoning effort"),
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
):
    """Start an interactive chat against a running server."""
    from parley.cli.chat import ChatHandler
    from parley.client.state import ConversationState
    from parley.client.transport import ChatTransport, TurnContext

    cfg = _load(profile)
    base_url = url or f"http://{cfg.server.host}:{cfg.server.port}"
    context = TurnContext(
        search_enabled=search,
        reasoning_level=reasoning,
        model_id=model,
        openrouter_client_key=os.environ.get(cfg.llm.api_key_env) or None,
        parallel_client_key=os.environ.get(cfg.search.api_key_env) or None,
    )

    async def _run():
        transport = ChatTransport(base_url, user, user_header=cfg.server.user_header)
        if thread:
            state = await ConversationState.load(transport, thread, context)
        else:
            state = ConversationState(str(uuid.uuid4()), transport, context)
        await ChatHandler(state, console).run_loop()

    asyncio.run(_run())


@threads_app.command("list")
def threads_list(user: str = typer.Option(DEFAULT_USER, help="Owner user id")):
    """List threads in the local database."""

    async def _run():
        from parley.cli.output import OutputFormatter

        store = await _open_store(_load())
        try:
            OutputFormatter(console).format_thread_list(await store.list_threads(user))
        finally:
            await store.close()

    asyncio.run(_run())


@threads_app.command("show")
def threads_show(
    thread_id: str = typer.Argument(..., help="Thread ID"),
    user: str = typer.Option(DEFAULT_USER, help="Owner user id"),
):
    """Show a thread's messages."""

    async def _run():
        from parley.cli.output import OutputFormatter

        store = await _open_store(_load())
        try:
            if await store.get_thread(thread_id, user) is None:
                console.print(f"[red]Thread not found:[/red] {thread_id}")
                raise typer.Exit(1)
            OutputFormatter(console).format_messages(await store.get_messages(thread_id, user))
        finally:
            await store.close()

    asyncio.run(_run())


@threads_app.command("delete")
def threads_delete(
    thread_id: str = typer.Argument(..., help="Thread ID"),
    user: str = typer.Option(DEFAULT_USER, help="Owner user id"),
):
    """Delete a thread and its messages."""

    async def _run():
        store = await _open_store(_load())
        try:
            if await store.delete_thread(thread_id, user):
                console.print(f"Deleted thread: {thread_id}")
            else:
                console.print(f"[red]Thread not found:[/red] {thread_id}")
                raise typer.Exit(1)
        finally:
            await store.close()

    asyncio.run(_run())


@config_app.command("show")
def config_show(profile: Optional[str] = typer.Option(None, help="Config profile name")):
    """Show effective config."""
    from parley.cli.output import OutputFormatter

    OutputFormatter(console).format_config(_load(profile).to_dict())


@config_app.command("validate")
def config_validate(profile: Optional[str] = typer.Option(None, help="Config profile name")):
    """Validate config and show the resolved essentials."""
    config_path = find_config_path()
    try:
        cfg = load_config(config_path, profile=profile)
    except (ValueError, KeyError, TypeError) as e:
        console.print(f"[red]Config validation failed:[/red] {e}")
        raise typer.Exit(1)

    console.print("[green]Config is valid.[/green]")
    if config_path:
        console.print(f"  Loaded from: {config_path}")
    else:
        console.print("  [dim]No config file found, using defaults.[/dim]")
    console.print(f"  Server: {cfg.server.host}:{cfg.server.port}")
    console.print(f"  Default model: {cfg.llm.default_model}")
    console.print(f"  Database: {cfg.storage.db_path}")
    key_state = "set" if os.environ.get(cfg.llm.api_key_env) else "not set"
    console.print(f"  {cfg.llm.api_key_env}: {key_state}")


@app.command()
def version():
    """Show version."""
    console.print(f"parley v{__version__}")


def main():
    app()


if __name__ == "__main__":
    main()
