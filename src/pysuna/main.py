from __future__ import annotations

import asyncio
import json
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .app_context import AppContext
from .cache.memory import MemoryCache
from .compaction.policy import CompactionPolicy
from .config.loader import load_app_config
from .config.models import AppConfig
from .errors import PysunaError, ThreadNotFoundError
from .log import setup_logging
from .threads.manager import ThreadManager
from .threads.models import ThreadConfig
from .threads.store import JsonlThreadStore
from .tools.base import ToolContext
from .tools.builtin import register_builtin_tools
from .tools.registry import ToolRegistry

app = typer.Typer(add_completion=False, help="pysuna: tool-using chat agent with a sandboxed toolset.")
threads_app = typer.Typer(add_completion=False, help="Inspect and maintain stored threads.")
app.add_typer(threads_app, name="threads")
console = Console()


def _load(config: Path | None, cwd: Path | None = None) -> AppConfig:
    try:
        cfg = load_app_config(cwd=(cwd or Path.cwd()).resolve(), explicit_path=config)
    except PysunaError as e:
        raise typer.BadParameter(str(e)) from e
    setup_logging(cfg.log_level, cfg.log_json)
    return cfg


def _thread_manager(cfg: AppConfig) -> ThreadManager:
    store = JsonlThreadStore(cfg.data_dir / "threads" if cfg.data_dir else None)
    return ThreadManager(
        store,
        MemoryCache() if cfg.cache.enabled else None,
        enable_caching=cfg.cache.enabled,
        policy=CompactionPolicy.from_config(cfg.compaction),
    )


@app.command()
def serve(
    config: Path = typer.Option(None, "--config", help="JSON config path (default: ./pysuna.json or .pysuna.json)."),
    host: str = typer.Option(None, "--host", help="Bind address (default from config)."),
    port: int = typer.Option(None, "--port", help="Bind port (default from config)."),
):
    """Run the HTTP API."""
    import uvicorn

    from .api.app import create_app

    cfg = _load(config)
    uvicorn.run(
        create_app(cfg),
        host=host or cfg.host,
        port=port or cfg.port,
        log_config=None,
    )


@app.command()
def chat(
    prompt: str = typer.Option(..., "--prompt", "-p", help="User message to send."),
    config: Path = typer.Option(None, "--config", help="JSON config path."),
    thread: str = typer.Option(None, "--thread", help="Thread id to append to (default creates new)."),
    user: str = typer.Option("anonymous", "--user", help="Account id for a new thread."),
):
    """Send one message and stream the assistant reply."""
    cfg = _load(config)

    async def _run() -> str:
        ctx = await AppContext.create(cfg)
        try:
            thread_id = thread
            if not thread_id:
                created = await ctx.threads.create_thread(ThreadConfig(account_id=user, title="New Conversation"))
                thread_id = created.thread_id
            await ctx.threads.add_message(thread_id, "user", prompt)
            console.print(f"\n[bold]You:[/bold] {prompt}\n")
            console.print("[bold]Assistant:[/bold]")
            async for chunk in ctx.chat.stream_reply(thread_id, user):
                console.print(chunk, end="", markup=False, highlight=False)
            console.print()
            return thread_id
        finally:
            await ctx.close()

    try:
        thread_id = asyncio.run(_run())
    except PysunaError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)
    console.print(f"\n[dim]thread: {thread_id}[/dim]")


@app.command()
def tools(
    config: Path = typer.Option(None, "--config", help="JSON config path."),
    tags: bool = typer.Option(False, "--tags", help="Show tag examples too."),
):
    """List registered tools and their operations."""
    cfg = _load(config)

    async def _run() -> ToolRegistry:
        registry = ToolRegistry()
        await register_builtin_tools(registry, cfg)
        return registry

    registry = asyncio.run(_run())
    table = Table(title="Registered tools")
    table.add_column("tool", style="bold")
    table.add_column("version")
    table.add_column("function")
    table.add_column("tag")
    table.add_column("description")
    for name, tool in registry.get_all_tools().items():
        for op in tool.operations:
            table.add_row(name, tool.version, op.name, op.tag_name or "", op.description)
    console.print(table)

    overridden = registry.get_stats()["overridden"]
    if overridden:
        console.print(f"[yellow]overridden:[/yellow] {overridden}")
    if tags:
        for ex in registry.get_tag_examples():
            console.print(Panel(ex, border_style="bright_blue"))
    asyncio.run(registry.clear_all())


@app.command("exec")
def exec_function(
    function: str = typer.Argument(..., help="Function name, e.g. execute or read_file."),
    params: str = typer.Argument("{}", help="JSON object of parameters."),
    config: Path = typer.Option(None, "--config", help="JSON config path."),
):
    """Run one tool function directly, without a model."""
    cfg = _load(config)
    try:
        parsed = json.loads(params)
    except json.JSONDecodeError as e:
        raise typer.BadParameter(f"params must be JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise typer.BadParameter("params must be a JSON object")

    async def _run():
        registry = ToolRegistry()
        await register_builtin_tools(registry, cfg)
        try:
            return await registry.execute_function(function, parsed, ToolContext(user_id="cli", thread_id="cli"))
        finally:
            await registry.clear_all()

    result = asyncio.run(_run())
    console.print_json(json.dumps(result.to_dict(), ensure_ascii=False, default=str))
    if not result.success:
        raise typer.Exit(code=1)


@threads_app.command("list")
def threads_list(config: Path = typer.Option(None, "--config", help="JSON config path.")):
    """List stored threads."""
    cfg = _load(config)
    manager = _thread_manager(cfg)
    items = asyncio.run(manager.store.list_threads())
    if not items:
        console.print("No threads found.")
        raise typer.Exit(code=0)
    table = Table()
    table.add_column("thread_id", style="bold")
    table.add_column("account")
    table.add_column("title")
    table.add_column("updated_at")
    for t in items:
        table.add_row(t.thread_id, t.account_id, t.title or "", t.updated_at)
    console.print(table)


@threads_app.command("stats")
def threads_stats(
    thread_id: str = typer.Argument(..., help="Thread id."),
    config: Path = typer.Option(None, "--config", help="JSON config path."),
):
    """Show message counts for one thread."""
    cfg = _load(config)
    try:
        stats = asyncio.run(_thread_manager(cfg).get_thread_stats(thread_id))
    except ThreadNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)
    table = Table.grid(padding=(0, 2))
    for k, v in stats.to_dict().items():
        table.add_row(f"[bold green]{k}[/bold green]", f"[bright_cyan]{v}[/bright_cyan]")
    console.print(Panel(table, title=f"[bold magenta]{thread_id}[/bold magenta]", border_style="bright_blue"))


@threads_app.command("summarize")
def threads_summarize(
    thread_id: str = typer.Argument(..., help="Thread id."),
    keep: int = typer.Option(None, "--keep", help="Recent messages to keep (default from config)."),
    archive: bool = typer.Option(None, "--archive/--no-archive", help="Delete summarized messages."),
    config: Path = typer.Option(None, "--config", help="JSON config path."),
):
    """Summarize all but the most recent messages of a thread."""
    cfg = _load(config)
    summary = asyncio.run(_thread_manager(cfg).summarize_old_messages(thread_id, keep, archive))
    if summary is None:
        console.print("Nothing to summarize.")
        return
    console.print(summary.content)


@threads_app.command("cleanup")
def threads_cleanup(
    days: int = typer.Option(30, "--days", help="Delete threads not updated for this many days."),
    config: Path = typer.Option(None, "--config", help="JSON config path."),
):
    """Delete stale threads."""
    cfg = _load(config)
    removed = asyncio.run(_thread_manager(cfg).cleanup_old_threads(days))
    console.print(f"Removed {removed} thread(s).")


if __name__ == "__main__":
    app()
