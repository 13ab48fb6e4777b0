import json
import logging
from contextlib import closing
from pathlib import Path
from typing import Optional

import typer
from rich import print
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .activitypub import ActivityPubResolver
from .errors import CacheError
from .models import TYPE_CACHE
from .storage import (
    counts_by_status, list_entries, list_workers, config_get, config_set,
    recover_running, purge_success,
)
from .worker import build_service, run_sweep, start_workers

app = typer.Typer(help="streamqueue - retryable cache queue for remote references in federated posts.")

worker_app = typer.Typer()
config_app = typer.Typer()

app.add_typer(worker_app, name="worker")
app.add_typer(config_app, name="config")


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging")):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


# -----------------------------
# Enqueue
# -----------------------------
@app.command()
def enqueue(
    token: str = typer.Argument(..., help="Token grouping entries created by one event"),
    stream_id: str = typer.Argument(..., help="Id of the local stream to process"),
    type: str = typer.Option(TYPE_CACHE, "--type", help="Entry type"),
):
    """Add a new entry to the queue."""
    with closing(build_service()) as service:
        entry = service.generate_stream_queue(token, type, stream_id)
    print(f"[green]Enqueued[/green] entry [bold]{entry.id}[/bold] ({entry.type} {entry.stream_id})")


@app.command("import-note")
def import_note(
    json_file: Path = typer.Argument(..., exists=True, readable=True, help="ActivityPub Note document"),
    token: Optional[str] = typer.Option(None, "--token", help="Token for the generated entry"),
):
    """Store a local note; queue its quoted references for caching."""
    try:
        data = json.loads(json_file.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise typer.BadParameter(f"Invalid JSON: {e.msg}")

    resolver = ActivityPubResolver()
    try:
        item = resolver.get_item_from_data(data)
        entry = resolver.get_interface_for_item(item).save(item, token)
    except CacheError as e:
        raise typer.BadParameter(f"{type(e).__name__}: {e}")

    if entry is None:
        print(f"[green]Stored[/green] {item.id} (nothing to cache)")
        return
    print(f"[green]Stored[/green] {item.id}, queued entry [bold]{entry.id}[/bold] token {entry.token}")


# -----------------------------
# Status & listing
# -----------------------------
@app.command()
def status():
    """Show entry status counts and active workers."""
    console = Console()
    tbl = Table(title="Queue")
    tbl.add_column("Status")
    tbl.add_column("Count")
    for row in counts_by_status():
        tbl.add_row(str(row[0]), str(row[1]))
    console.print(tbl)

    wt = Table(title="Active Workers")
    wt.add_column("worker_id")
    wt.add_column("pid")
    wt.add_column("started_at")
    for w in list_workers():
        wt.add_row(w["id"], str(w["pid"]), w["started_at"])
    console.print(wt)


def _entries_table(title, entries):
    t = Table(title=title)
    for c in ["id", "token", "type", "stream_id", "status", "tries", "last", "updated_at"]:
        t.add_column(c)
    for e in entries:
        t.add_row(str(e.id), e.token, e.type, e.stream_id, e.status.value, str(e.tries), str(e.last), e.updated_at)
    return t


@app.command("list")
def list_cmd(status: Optional[str] = typer.Option(None, "--status", help="Filter by status")):
    """List queue entries, optionally by status."""
    rows = list_entries(status)
    Console().print(_entries_table(f"Entries{'' if not status else f' ({status})'}", rows))


@app.command()
def due():
    """List standby entries whose backoff delay has elapsed."""
    with closing(build_service()) as service:
        Console().print(_entries_table("Due entries", service.get_request_standby()))


# -----------------------------
# Processing
# -----------------------------
@app.command()
def cache(token: str = typer.Argument(..., help="Token of the entries to process")):
    """Process every entry of a token now, ignoring backoff."""
    with closing(build_service()) as service:
        service.cache_stream_by_token(token)


@app.command()
def sweep():
    """Run a single scheduler pass."""
    with closing(build_service()) as service:
        report = run_sweep(service)
    print(f"processed {report.due} due entries, recovered {report.recovered}")


@app.command()
def recover():
    """Return entries stuck in running past the lease to standby."""
    count = recover_running(int(config_get("running_lease_seconds", "600")))
    print(f"recovered {count} entries")


@app.command()
def purge():
    """Delete entries that finished successfully."""
    print(f"purged {purge_success()} entries")


# -----------------------------
# Workers
# -----------------------------
@worker_app.command("start")
def worker_start(
    count: int = typer.Option(1, "--count", "-c", help="Number of worker processes"),
    reset_shutdown: bool = typer.Option(True, help="Set shutdown=false before start"),
):
    """Start worker processes."""
    if reset_shutdown:
        config_set("shutdown", "false")
    print(f"Starting {count} worker(s). Ctrl+C to stop.")
    start_workers(count)


@worker_app.command("stop")
def worker_stop():
    """Signal workers to stop gracefully (finish current sweep)."""
    config_set("shutdown", "true")
    print("[yellow]Set shutdown=true. Workers will exit after finishing the current sweep.[/yellow]")


# -----------------------------
# Config
# -----------------------------
@config_app.command("set")
def config_set_cmd(key: str = typer.Argument(..., help="Config key"), value: str = typer.Argument(..., help="Value")):
    config_set(key, value)
    print(f"set {key}={value}")


@config_app.command("get")
def config_get_cmd(key: str = typer.Argument(..., help="Config key")):
    print(config_get(key, ""))
