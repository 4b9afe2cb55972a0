"""CLI commands for draining an IMAP folder as a queue."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import NoReturn, Optional, Tuple

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .client import ImapMailClient
from .config import DEFAULT_CONFIG_PATH, Settings, build_queue_settings, load_settings, resolve_password
from .errors import ImapQueueError
from .queue import MailboxQueue
from .state import WatermarkRecord, WatermarkStore

console = Console()
error_console = Console(stderr=True)

app = typer.Typer(help="Use an IMAP folder as a FIFO queue of message identifiers")

logger = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=error_console, show_path=False)],
        force=True,
    )


def _abort(error: ImapQueueError, json_output: bool) -> NoReturn:
    if json_output:
        print(json.dumps({"success": False, "error": error.to_dict()}))
    else:
        error_console.print(f"[bold red]✗ {error.code}:[/bold red] {error.message}")
    raise typer.Exit(1)


def _load(config: Path, json_output: bool) -> Settings:
    try:
        return load_settings(config)
    except ImapQueueError as exc:
        _abort(exc, json_output)


def _resume_point(queue: MailboxQueue) -> Optional[int]:
    # Stopping mid-buffer must not skip the identifiers still buffered.
    pending = queue.peek_message()
    return pending if pending is not None else queue.watermark


def _open_queue(
    client: ImapMailClient,
    settings: Settings,
    store: Optional[WatermarkStore],
    skip_initial: bool,
) -> Tuple[MailboxQueue, int]:
    options = settings.queue.model_dump()
    if skip_initial:
        options["skip_initial"] = True

    delivered = 0
    folder = client.folder or settings.imap.folder
    record = store.fetch(settings.imap.account, folder) if store else None
    if record is not None:
        if record.matches(client.uidvalidity):
            options["initial_watermark"] = record.watermark
            delivered = record.delivered
            logger.info(f"Resuming {folder} at {record.watermark}")
        else:
            error_console.print(
                f"[yellow]UIDVALIDITY of {folder} changed; stored watermark discarded[/yellow]"
            )
    return MailboxQueue(client, build_queue_settings(**options)), delivered


def _save(
    store: Optional[WatermarkStore],
    settings: Settings,
    client: ImapMailClient,
    queue: MailboxQueue,
    delivered: int,
) -> None:
    watermark = _resume_point(queue)
    if store is None or watermark is None:
        return
    store.upsert(
        WatermarkRecord(
            account=settings.imap.account,
            folder=client.folder or settings.imap.folder,
            uidvalidity=client.uidvalidity,
            watermark=watermark,
            delivered=delivered,
        )
    )


@app.command("drain")
def drain(
    config: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help="Settings JSON file"),
    limit: Optional[int] = typer.Option(
        None, "--limit", "-n", min=1, help="Stop after this many messages"
    ),
    skip_initial: bool = typer.Option(
        False, "--skip-initial", help="Ignore messages already in the folder"
    ),
    no_state: bool = typer.Option(False, "--no-state", help="Do not read or store the watermark"),
    json_output: bool = typer.Option(False, "--json", help="Print JSON lines"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Print message identifiers as they arrive, oldest first.

    Blocks while the folder is empty. The watermark is stored after every
    batch so the next run resumes where this one stopped.

    Examples:
        imapqueue drain --config ~/.imapqueue/config.json
        imapqueue drain --limit 10 --json
    """
    _configure_logging(verbose)
    settings = _load(config, json_output)

    try:
        password = resolve_password(settings.imap)
    except ImapQueueError as exc:
        _abort(exc, json_output)

    client = ImapMailClient(settings.imap, password)
    persist = not no_state
    if persist and not settings.imap.use_uid:
        # sequence numbers shift on every expunge, so a stored one goes stale
        error_console.print(
            "[yellow]Sequence-number mode: watermark is not stored between runs[/yellow]"
        )
        persist = False
    store = WatermarkStore(settings.state_path) if persist else None
    try:
        try:
            client.connect()
            queue, delivered = _open_queue(client, settings, store, skip_initial)
        except ImapQueueError as exc:
            _abort(exc, json_output)

        count = 0
        try:
            while limit is None or count < limit:
                message = queue.dequeue_message()
                if message is None:
                    _save(store, settings, client, queue, delivered)
                    _abort(queue.last_error, json_output)
                count += 1
                delivered += 1
                if json_output:
                    print(json.dumps({"folder": client.folder, "id": message}))
                else:
                    console.print(message)
                if queue.is_empty():
                    _save(store, settings, client, queue, delivered)
        except KeyboardInterrupt:
            _save(store, settings, client, queue, delivered)
            raise typer.Exit(130)
        _save(store, settings, client, queue, delivered)
    finally:
        if store is not None:
            store.close()
        client.close()


@app.command("status")
def status(
    config: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help="Settings JSON file"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Show stored watermarks."""
    settings = _load(config, json_output)
    with WatermarkStore(settings.state_path) as store:
        records = store.list()

    if json_output:
        print(json.dumps([record.model_dump(mode="json") for record in records]))
        return

    if not records:
        console.print("[yellow]No watermarks stored.[/yellow]")
        return

    table = Table(title="Queue Watermarks")
    table.add_column("Account", style="cyan", no_wrap=True)
    table.add_column("Folder", style="green")
    table.add_column("UIDVALIDITY", style="blue")
    table.add_column("Next ID", style="magenta", justify="right")
    table.add_column("Delivered", justify="right")
    table.add_column("Updated", style="yellow")
    for record in records:
        table.add_row(
            record.account,
            record.folder,
            str(record.uidvalidity) if record.uidvalidity is not None else "-",
            str(record.watermark),
            str(record.delivered),
            record.updated_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)


@app.command("forget")
def forget(
    config: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help="Settings JSON file"),
    folder: Optional[str] = typer.Option(None, "--folder", "-f", help="Folder (default from settings)"),
) -> None:
    """Drop the stored watermark so the next drain starts from the full backlog."""
    settings = _load(config, False)
    target = folder or settings.imap.folder
    with WatermarkStore(settings.state_path) as store:
        removed = store.delete(settings.imap.account, target)
    if removed:
        console.print(f"[green]Watermark for {target} removed[/green]")
    else:
        console.print(f"[yellow]No watermark stored for {target}[/yellow]")


__all__ = ["app"]
