import asyncio
import json
import logging
import signal
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

import typer
from rich import print
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from reflective.config import Settings, update_env_file
from reflective.core.models import Entry, Query, Tag
from reflective.core.scheduler import PeriodicSync
from reflective.core.sync import SyncEngine, build_engine
from reflective.core.tags import display_content
from reflective.errors import APIError, ReflectiveError, SearchError

logger = logging.getLogger(__name__)

APP_HELP = """
reflective: a journal that keeps itself in sync.

Entries are written locally and pushed to the journal server straight away.
Every #hashtag in an entry becomes a tag; edit the entry and its tags follow.

MODES:
- DURABLE (default): entries, tags and searches are kept in ~/.reflective.
- EPHEMERAL: nothing is written to disk; every command starts from the server.

CORE WORKFLOW:
1. WRITE:  `reflective write "Walked with #Alice today"`
2. BROWSE: `reflective list --tag alice`
3. SEARCH: `reflective search "walk"`
4. SYNC:   `reflective run` keeps the local copy fresh every 5 minutes.
"""

app = typer.Typer(name="reflective", help=APP_HELP, no_args_is_help=True)
config_app = typer.Typer(name="config", help="Manage server and storage settings.")
app.add_typer(config_app, name="config")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level."),
):
    """
    Reflective CLI: journal entries, tags and search.
    """
    settings = Settings()
    logging.basicConfig(
        level=logging.DEBUG if verbose else settings.log_level,
        format=LOG_FORMAT,
    )


@asynccontextmanager
async def open_engine(refresh: bool = False):
    """
    Build a started engine for one command.

    With ``refresh`` set and the cache in ephemeral mode, a full sync runs
    first so read commands have something to show.
    """
    settings = Settings()
    engine = build_engine(settings)
    try:
        await engine.start()
        if refresh and not engine.cache.durable:
            report = await engine.sync_all()
            if not report.success:
                print(f"[yellow]Could not refresh from server: {report.error}[/yellow]")
        yield engine
    finally:
        await engine.aclose()


async def resolve_entry(engine: SyncEngine, entry_id: str) -> Entry:
    """Find an entry by full id or unique id prefix, asking the server in ephemeral mode."""
    entry = None
    try:
        parsed = uuid.UUID(entry_id)
    except ValueError:
        parsed = None

    if parsed is not None:
        entry = engine.cache.get(Entry, parsed)
        if entry is None and not engine.cache.durable:
            try:
                entry = await engine.load_entry(parsed)
            except APIError as e:
                print(f"[red]Error: Could not load entry from server: {e}[/red]")
                raise typer.Exit(code=1)
    else:
        matches = engine.cache.objects(Entry, lambda e: str(e.id).startswith(entry_id.lower()))
        if len(matches) > 1:
            print(f"[red]Error: '{entry_id}' matches {len(matches)} entries, use more characters.[/red]")
            raise typer.Exit(code=1)
        entry = matches[0] if matches else None

    if entry is None:
        print(f"[red]Error: No entry found with ID: {entry_id}[/red]")
        raise typer.Exit(code=1)
    return entry


def short_id(value: uuid.UUID) -> str:
    return str(value)[:8]


def tag_list(tags: List[Tag]) -> str:
    return " ".join(f"#{tag.name}" for tag in tags) or "[dim]-[/dim]"


# ============================================================================
# Entries
# ============================================================================

@app.command("write")
def write_entry(
    content: str = typer.Argument(..., help="Entry text. #hashtags become tags; write \\# for a literal #."),
):
    """
    Write a new entry.

    The entry is sent to the server first and only kept locally once the
    server has accepted it.
    """
    async def do_write():
        async with open_engine() as engine:
            result = await engine.save_entry(content)
            return result, (engine.cache.tags_for_entry(result.entry) if result.success else [])

    result, tags = asyncio.run(do_write())
    if not result.success:
        print(f"[red]Error: {result.error}[/red]")
        raise typer.Exit(code=1)

    print(f"[bold green]CREATED:[/bold green] {result.entry.id}")
    print(f"Words: {result.entry.word_count}  Tags: {tag_list(tags)}")


@app.command("edit")
def edit_entry(
    entry_id: str = typer.Argument(..., help="Entry ID (or a unique prefix)"),
    content: str = typer.Argument(..., help="Replacement text"),
):
    """
    Replace the text of an entry.

    Tags are recomputed from the new text. If the server rejects the change
    the entry is left exactly as it was.
    """
    async def do_edit():
        async with open_engine(refresh=True) as engine:
            entry = await resolve_entry(engine, entry_id)
            result = await engine.save_entry(content, entry)
            return result, engine.cache.tags_for_entry(entry)

    result, tags = asyncio.run(do_edit())
    if not result.success:
        print(f"[red]Error: {result.error}[/red]")
        raise typer.Exit(code=1)

    print(f"[bold green]UPDATED:[/bold green] {result.entry.id}")
    print(f"Words: {result.entry.word_count}  Tags: {tag_list(tags)}")


@app.command("delete")
def delete_entry(
    entry_id: str = typer.Argument(..., help="Entry ID (or a unique prefix)"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
):
    """Delete an entry on the server and locally."""
    async def do_delete():
        async with open_engine(refresh=True) as engine:
            entry = await resolve_entry(engine, entry_id)
            if not yes and not typer.confirm(f"Delete entry {short_id(entry.id)}?"):
                raise typer.Abort()
            return entry.id, await engine.delete_entry(entry)

    deleted_id, ok = asyncio.run(do_delete())
    if not ok:
        print("[red]Error: Entry could not be deleted (see log for details).[/red]")
        raise typer.Exit(code=1)
    print(f"[bold green]DELETED:[/bold green] {deleted_id}")


@app.command("show")
def show_entry(
    entry_id: str = typer.Argument(..., help="Entry ID (or a unique prefix)"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show one entry with its tags."""
    async def do_show():
        async with open_engine() as engine:
            entry = await resolve_entry(engine, entry_id)
            return entry, engine.cache.tags_for_entry(entry)

    entry, tags = asyncio.run(do_show())

    if json_output:
        print(json.dumps({
            "id": str(entry.id),
            "content": entry.content,
            "created_at": entry.created_at.isoformat(),
            "updated_at": entry.updated_at.isoformat(),
            "word_count": entry.word_count,
            "processing_status": entry.processing_status.value,
            "tags": [tag.name for tag in tags],
        }))
        return

    header = f"**Created:** {entry.created_at:%Y-%m-%d %H:%M}  **Updated:** {entry.updated_at:%Y-%m-%d %H:%M}"
    print(Panel(
        Markdown(f"{header}\n\n{display_content(entry.content)}"),
        title=f"Entry {short_id(entry.id)}",
        border_style="green",
    ))
    print(f"Words: {entry.word_count}  Status: {entry.processing_status.value}  Tags: {tag_list(tags)}")


@app.command("list")
def list_entries(
    tag: Optional[List[str]] = typer.Option(None, "--tag", "-t", help="Only entries with this tag (repeatable, any match)."),
    contains: Optional[str] = typer.Option(None, "--contains", "-c", help="Only entries containing this text."),
    on_date: Optional[datetime] = typer.Option(None, "--date", "-d", formats=["%Y-%m-%d"], help="Only entries created on this day."),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum entries to show."),
):
    """List entries, newest first."""
    async def do_list():
        async with open_engine(refresh=True) as engine:
            cache = engine.cache
            if tag:
                entries = cache.entries_with_any_tag(tag)
            elif contains:
                entries = cache.entries_containing(contains)
            elif on_date:
                entries = cache.entries_on(on_date.date())
            else:
                entries = cache.recent_entries()

            # Remaining filters narrow the first one
            if tag and contains:
                wanted = {e.id for e in cache.entries_containing(contains)}
                entries = [e for e in entries if e.id in wanted]
            if (tag or contains) and on_date:
                wanted = {e.id for e in cache.entries_on(on_date.date())}
                entries = [e for e in entries if e.id in wanted]
            return [(e, cache.tags_for_entry(e)) for e in entries[:limit]], len(entries)

    rows, total = asyncio.run(do_list())
    if not rows:
        print("[dim]No entries found.[/dim]")
        return

    table = Table(title=f"Entries ({len(rows)} of {total})")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Created", style="magenta")
    table.add_column("Words", justify="right")
    table.add_column("Tags", style="green")
    table.add_column("Preview")
    for entry, tags in rows:
        preview = display_content(entry.content).replace("\n", " ")
        table.add_row(
            short_id(entry.id),
            f"{entry.created_at:%Y-%m-%d %H:%M}",
            str(entry.word_count),
            tag_list(tags),
            preview[:60] + ("..." if len(preview) > 60 else ""),
        )
    print(table)


@app.command("tags")
def list_tags():
    """List every tag with the number of entries using it."""
    async def do_tags():
        async with open_engine(refresh=True) as engine:
            cache = engine.cache
            tags = cache.objects(Tag, key=lambda t: t.name.casefold())
            return [(t, len({l.entry_id for l in cache.links_for_tag(t)})) for t in tags]

    rows = asyncio.run(do_tags())
    if not rows:
        print("[dim]No tags yet. Add #hashtags to your entries.[/dim]")
        return

    table = Table(title="Tags")
    table.add_column("Name", style="cyan")
    table.add_column("Color")
    table.add_column("Entries", justify="right")
    for tag, count in rows:
        color = f"[{tag.color}]{tag.color}[/{tag.color}]" if tag.color else "[dim]-[/dim]"
        table.add_row(tag.name, color, str(count))
    print(table)


# ============================================================================
# Search
# ============================================================================

@app.command("search")
def search(
    query: str = typer.Argument(..., help="Search text"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """
    Search entries on the server.

    Each search is remembered together with its ranked results; see `history`.
    """
    async def do_search():
        async with open_engine(refresh=True) as engine:
            record = await engine.perform_search(query)
            return record, engine.cache.results_for_query(record)

    try:
        record, results = asyncio.run(do_search())
    except SearchError as e:
        print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1)

    if json_output:
        print(json.dumps({
            "query": record.query_text,
            "execution_time": record.execution_time,
            "results": [
                {
                    "entry_id": str(r.entry_id),
                    "rank": r.rank,
                    "relevance_score": r.relevance_score,
                    "snippet": r.snippet_text,
                }
                for r in results
            ],
        }))
        return

    print(Panel(
        f"Search results for '{record.query_text}' ({record.result_count} in {record.execution_time or 0:.3f}s)",
        border_style="cyan",
    ))
    for r in results:
        score_color = "green" if r.relevance_score > 0.8 else "yellow"
        before = r.context_before or ""
        after = r.context_after or ""
        print(
            f"{r.rank}. [[{score_color}]{r.relevance_score:.2f}[/{score_color}]] "
            f"[cyan]{short_id(r.entry_id)}[/cyan] [dim]{before}[/dim]{r.snippet_text}[dim]{after}[/dim]"
        )


@app.command("history")
def history(
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum queries to show."),
):
    """Show recent searches."""
    async def do_history():
        async with open_engine() as engine:
            return engine.cache.recent_queries(limit)

    queries: List[Query] = asyncio.run(do_history())
    if not queries:
        print("[dim]No searches yet.[/dim]")
        return

    table = Table(title="Recent Searches")
    table.add_column("When", style="magenta")
    table.add_column("Query", style="cyan")
    table.add_column("Results", justify="right")
    table.add_column("Time (s)", justify="right")
    for q in queries:
        elapsed = f"{q.execution_time:.3f}" if q.execution_time is not None else "-"
        table.add_row(f"{q.created_at:%Y-%m-%d %H:%M}", q.query_text, str(q.result_count), elapsed)
    print(table)


# ============================================================================
# Sync
# ============================================================================

@app.command("sync")
def sync(
    push_tags: bool = typer.Option(False, "--push-tags", help="Also send every local tag to the server."),
):
    """Pull every entry and tag from the server once."""
    async def do_sync():
        async with open_engine() as engine:
            pushed = None
            if push_tags:
                try:
                    pushed = await engine.push_tags()
                except APIError as e:
                    print(f"[yellow]Could not push tags: {e}[/yellow]")
            return await engine.sync_all(), pushed

    report, pushed = asyncio.run(do_sync())
    if pushed is not None:
        print(f"[dim]Pushed {pushed} tags[/dim]")
    if not report.success:
        print(f"[red]Sync failed: {report.error}[/red]")
        raise typer.Exit(code=1)

    print("[green]Sync complete[/green]")
    print(f"Entries: {report.entries_created} new, {report.entries_updated} updated, {report.entries_unchanged} unchanged")
    print(f"Tags: {report.tags_created} new, {report.tags_updated} updated")


@app.command("run")
def run(
    interval: Optional[float] = typer.Option(None, "--interval", "-i", help="Seconds between syncs (default from config)."),
):
    """
    Keep syncing in the foreground until interrupted.

    Runs a full sync immediately and then every interval. Ctrl-C waits for a
    sync in progress to finish before exiting.
    """
    settings = Settings()
    every = interval or settings.sync_interval_seconds

    async def do_run():
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, stop_event.set)

        async with open_engine() as engine:
            async with PeriodicSync(engine, interval_seconds=every) as periodic:
                await stop_event.wait()
                logger.info("Received shutdown signal, stopping periodic sync...")
            return periodic.runs, engine.last_sync_error

    print(f"[bold green]Syncing every {every:g}s. Press Ctrl-C to stop.[/bold green]")
    runs, last_error = asyncio.run(do_run())
    print(f"[dim]Stopped after {runs} syncs.[/dim]")
    if last_error:
        print(f"[yellow]Last sync error: {last_error}[/yellow]")


@app.command("stats")
def stats(
    cleanup: bool = typer.Option(False, "--cleanup", help="Remove links whose entry or tag is gone."),
):
    """Show entry, tag and link counts."""
    async def do_stats():
        async with open_engine(refresh=True) as engine:
            cache = engine.cache
            removed = None
            if cleanup:
                async with cache.writer():
                    removed = cache.cleanup_orphaned_links()
                    cache.save()
            return {
                "Entries": cache.entry_count(),
                "Tags": len(cache.objects(Tag)),
                "Links": cache.association_count(),
                "Average tags per entry": f"{cache.average_tag_count():.2f}",
                "Searches": len(cache.objects(Query)),
                "Storage": "durable" if cache.durable else "ephemeral",
            }, removed

    try:
        rows, removed = asyncio.run(do_stats())
    except ReflectiveError as e:
        print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1)

    table = Table(title="Journal Statistics")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    for name, value in rows.items():
        table.add_row(name, str(value))
    print(table)
    if removed is not None:
        print(f"[green]Removed {removed} orphaned links[/green]")


# ============================================================================
# Configuration
# ============================================================================

@config_app.command("show")
def config_show():
    """Show the effective configuration."""
    settings = Settings()
    table = Table(title="Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    table.add_row("Server URL", settings.server_url)
    table.add_row("Database", settings.database_url)
    table.add_row("Storage mode", "durable" if settings.durable else "ephemeral (server only)")
    table.add_row("Skip API", "on" if settings.skip_api else "off")
    table.add_row("Sync interval (s)", f"{settings.sync_interval_seconds:g}")
    table.add_row("Log level", settings.log_level)
    print(table)


@config_app.command("set-server")
def config_set_server(
    url: str = typer.Argument(..., help="Journal server URL (e.g., http://127.0.0.1:8000)"),
):
    """
    Set the journal server URL.

    Saved to ~/.reflective/.env as REFLECTIVE_SERVER_URL.
    """
    if not url.startswith(("http://", "https://")):
        print("[red]Error: Server URL must start with http:// or https://[/red]")
        raise typer.Exit(code=1)
    env_path = update_env_file({"server_url": url.rstrip("/")})
    print(f"[green]Server URL set to {url.rstrip('/')} in {env_path}[/green]")


@config_app.command("set-mode")
def config_set_mode(
    mode: str = typer.Argument(..., help="'durable' to keep data on disk, 'ephemeral' to keep it in memory only"),
):
    """
    Choose where the local cache lives.

    Switching does not move data: entries already on disk stay there and are
    picked up again when switching back to durable.
    """
    mode = mode.lower()
    if mode not in ("durable", "ephemeral"):
        print("[red]Error: Mode must be 'durable' or 'ephemeral'[/red]")
        raise typer.Exit(code=1)
    env_path = update_env_file({"server_only_mode": "false" if mode == "durable" else "true"})
    print(f"[green]Storage mode set to {mode} in {env_path}[/green]")


@config_app.command("skip-api")
def config_skip_api(
    state: str = typer.Argument(..., help="'on' to stop talking to the server, 'off' to resume"),
):
    """Turn offline development mode on or off."""
    state = state.lower()
    if state not in ("on", "off"):
        print("[red]Error: State must be 'on' or 'off'[/red]")
        raise typer.Exit(code=1)
    env_path = update_env_file({"skip_api": "true" if state == "on" else "false"})
    print(f"[green]Skip API {state} in {env_path}[/green]")


if __name__ == "__main__":
    app()
