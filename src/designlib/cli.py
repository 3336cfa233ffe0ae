"""CLI entry point for the design-review ingestion tools.

Provides commands:
  - init: Create the database (optionally with a project, design, and version)
  - add-variations: Upload files as new variations of an existing version
  - add-version: Create the next version of a design from a set of files
  - replace: Upload a new file for an existing variation
  - status: List the variations of a version
  - config: Manage configuration (storage service key, settings)
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Annotated, Awaitable, Callable

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from designlib.config import get_service_key, load_ingest_config, set_service_key
from designlib.database import Database
from designlib.ingest.controller import BatchController
from designlib.ingest.exceptions import BatchValidationError, SequenceExhaustedError
from designlib.ingest.progress import IngestProgressTracker
from designlib.ingest.records import SQLiteRecordBackend
from designlib.ingest.sequence import allocate_labels
from designlib.ingest.storage import StorageClient
from designlib.models import BatchSummary, IngestConfig, ItemStatus, SourcePayload

logger = logging.getLogger(__name__)

app = typer.Typer(
    help="Design review - batch ingestion of design variations",
    rich_markup_mode="rich",
)
console = Console()

config_app = typer.Typer(help="Manage configuration (storage key, settings)")
app.add_typer(config_app, name="config")

DbOption = Annotated[
    Path,
    typer.Option("--db", "-d", help="Path to SQLite database"),
]
ConfigOption = Annotated[
    Path | None,
    typer.Option("--config", "-c", help="Path to ingest_config.json"),
]
ConcurrencyOption = Annotated[
    int | None,
    typer.Option("--concurrency", "-n", help="Max concurrent uploads (default 3)"),
]
DebugOption = Annotated[
    bool,
    typer.Option("--debug", help="Write debug logs to ~/.designlib/debug.log"),
]


@app.command()
def init(
    db_path: DbOption = Path("data/designs.db"),
    project: Annotated[
        str | None, typer.Option("--project", help="Create a project with this name")
    ] = None,
    design: Annotated[
        str | None, typer.Option("--design", help="Create a design in the new project")
    ] = None,
) -> None:
    """Create the database schema, optionally seeding a project and design."""
    with Database(db_path) as db:
        console.print(f"[green]Database ready:[/green] {db_path}")
        if project is None:
            return
        project_id = db.create_project(project)
        table = Table(title="Created")
        table.add_column("Kind", style="bold")
        table.add_column("Id", style="cyan")
        table.add_row("project", project_id)
        if design is not None:
            design_id = db.create_design(project_id, design)
            version_id = db.create_version(design_id)
            table.add_row("design", design_id)
            table.add_row("version 1", version_id)
        console.print(table)


@app.command("add-variations")
def add_variations(
    version_id: Annotated[str, typer.Argument(help="Version to add variations to")],
    files: Annotated[list[Path], typer.Argument(help="Image files, in label order")],
    db_path: DbOption = Path("data/designs.db"),
    config_path: ConfigOption = None,
    max_concurrent: ConcurrencyOption = None,
    dry_run: Annotated[
        bool, typer.Option("--dry-run", help="Show the labels that would be assigned")
    ] = False,
    debug: DebugOption = False,
) -> None:
    """Upload files as new variations (next free letters) of a version."""
    payloads = _load_payloads(files)

    if dry_run:
        _require_db(db_path)
        with Database(db_path) as db:
            if db.get_version(version_id) is None:
                console.print(f"[red]Error:[/red] Unknown version {version_id}")
                raise typer.Exit(code=1)
            used = [row["variation_letter"] for row in db.get_variations(version_id)]
        try:
            labels = allocate_labels(used, len(payloads))
        except SequenceExhaustedError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(code=1)

        preview = Table(title=f"Dry Run: {len(payloads)} file(s)")
        preview.add_column("Label", style="bold")
        preview.add_column("File", style="cyan", no_wrap=True)
        preview.add_column("Size", justify="right")
        preview.add_column("Type")
        for label, payload in zip(labels, payloads):
            preview.add_row(label, payload.filename, _format_size(payload.size), payload.content_type)
        console.print(preview)
        return

    config = _build_config(config_path, db_path, max_concurrent, debug)
    summary = _run_batch(
        config,
        len(payloads),
        lambda controller: controller.add_variations(version_id, payloads),
    )
    _print_summary(summary, title=f"Version {version_id}")
    _exit_for(summary)


@app.command("add-version")
def add_version(
    design_id: Annotated[str, typer.Argument(help="Design to create a new version of")],
    files: Annotated[list[Path], typer.Argument(help="Image files, in label order")],
    db_path: DbOption = Path("data/designs.db"),
    config_path: ConfigOption = None,
    max_concurrent: ConcurrencyOption = None,
    debug: DebugOption = False,
) -> None:
    """Create the next version of a design with one variation per file."""
    payloads = _load_payloads(files)
    config = _build_config(config_path, db_path, max_concurrent, debug)
    result = _run_batch(
        config,
        len(payloads),
        lambda controller: controller.add_version_with_variations(design_id, payloads),
    )
    _print_summary(result.summary, title=f"Version {result.version_number} ({result.version_id})")
    _exit_for(result.summary)


@app.command()
def replace(
    variation_id: Annotated[str, typer.Argument(help="Variation whose file is replaced")],
    file: Annotated[Path, typer.Argument(help="New image file")],
    db_path: DbOption = Path("data/designs.db"),
    config_path: ConfigOption = None,
    debug: DebugOption = False,
) -> None:
    """Upload a new file for an existing variation."""
    payloads = _load_payloads([file])
    config = _build_config(config_path, db_path, None, debug)
    summary = _run_batch(
        config,
        1,
        lambda controller: controller.replace_file(variation_id, payloads[0]),
    )
    _print_summary(summary, title=f"Variation {variation_id}")
    _exit_for(summary)


@app.command()
def status(
    version_id: Annotated[str, typer.Argument(help="Version to inspect")],
    db_path: DbOption = Path("data/designs.db"),
) -> None:
    """List the variations of a version and whether each has a linked file."""
    _require_db(db_path)
    with Database(db_path) as db:
        version = db.get_version(version_id)
        if version is None:
            console.print(f"[red]Error:[/red] Unknown version {version_id}")
            raise typer.Exit(code=1)
        rows = db.get_variations(version_id)

    table = Table(title=f"Version {version['version_number']} ({version['stage']})")
    table.add_column("Letter", style="bold")
    table.add_column("Status")
    table.add_column("File", style="cyan")
    table.add_column("Updated", style="dim")
    for row in rows:
        file_path = row["file_path"] or "[yellow]unlinked[/yellow]"
        table.add_row(row["variation_letter"], row["status"], file_path, row["updated_at"])
    console.print(table)


@config_app.command("set-key")
def config_set_key(
    key: Annotated[str, typer.Argument(help="Storage service key")],
) -> None:
    """Store the storage service key in the system keyring."""
    set_service_key(key)
    console.print("[green]Service key saved to keyring.[/green]")


@config_app.command("show")
def config_show(config_path: ConfigOption = None) -> None:
    """Show the effective ingestion configuration."""
    try:
        config = load_ingest_config(config_path)
    except ValueError as e:
        console.print(f"[red]Invalid configuration:[/red] {e}")
        raise typer.Exit(code=1)

    table = Table(title="Ingest Configuration")
    table.add_column("Setting", style="bold")
    table.add_column("Value")
    for name, value in vars(config).items():
        if name == "service_key":
            value = "[green]set[/green]" if value else "[red]missing[/red]"
        table.add_row(name, str(value))
    console.print(table)


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _load_payloads(files: list[Path]) -> list[SourcePayload]:
    missing = [str(f) for f in files if not f.is_file()]
    if missing:
        console.print(f"[red]Error:[/red] File(s) not found: {', '.join(missing)}")
        raise typer.Exit(code=1)
    return [SourcePayload.from_path(f) for f in files]


def _require_db(db_path: Path) -> None:
    if not db_path.exists():
        console.print(
            f"[red]Error:[/red] Database not found: {db_path}\n"
            "Run [bold]designlib init[/bold] first."
        )
        raise typer.Exit(code=1)


def _build_config(
    config_path: Path | None,
    db_path: Path,
    max_concurrent: int | None,
    debug: bool,
) -> IngestConfig:
    if debug:
        debug_dir = Path.home() / ".designlib"
        debug_dir.mkdir(exist_ok=True)
        fh = logging.FileHandler(debug_dir / "debug.log")
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        root = logging.getLogger("designlib")
        root.setLevel(logging.DEBUG)
        root.addHandler(fh)

    try:
        config = load_ingest_config(config_path)
    except ValueError as e:
        console.print(f"[red]Invalid configuration:[/red] {e}")
        raise typer.Exit(code=1)

    if config.service_key is None:
        try:
            config.service_key = get_service_key()
        except RuntimeError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(code=1)

    _require_db(db_path)
    config.db_path = str(db_path)
    if max_concurrent is not None:
        if max_concurrent < 1:
            console.print("[red]--concurrency must be at least 1[/red]")
            raise typer.Exit(code=1)
        config.max_concurrent_uploads = max_concurrent
    return config


def _run_batch(config: IngestConfig, total_files: int, start: Callable[..., Awaitable]):
    """Run one controller operation with live progress and Ctrl+C cancellation."""
    console.print(
        Panel(
            f"Uploading [bold]{total_files}[/bold] file(s) to "
            f"[bold]{config.bucket}[/bold]\n"
            f"Concurrency: {config.max_concurrent_uploads}",
            title="Ingest",
        )
    )

    async def _main():
        async with SQLiteRecordBackend(config.db_path) as backend, StorageClient(config) as storage:
            controller = BatchController(backend, storage, config)
            controller.setup_signal_handlers()
            tracker = IngestProgressTracker(total_files=total_files, console=console)
            with tracker:
                unsubscribe = controller.store.subscribe(tracker.on_item_changed)
                try:
                    return await start(controller)
                finally:
                    unsubscribe()

    try:
        return asyncio.run(_main())
    except BatchValidationError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)


def _print_summary(summary: BatchSummary, title: str) -> None:
    table = Table(title="Ingest Summary")
    table.add_column("Label", style="bold")
    table.add_column("File", style="cyan", no_wrap=True)
    table.add_column("Result")
    table.add_column("Detail", style="dim")

    for detail in summary.items:
        if detail.status == ItemStatus.SUCCESS:
            result = "[green]stored[/green]"
            info = detail.location or ""
            if detail.link_resolved is False:
                result = "[yellow]stored, unlinked[/yellow]"
                info = "file uploaded but the variation does not point to it"
        elif detail.status == ItemStatus.CANCELLED:
            result, info = "[yellow]cancelled[/yellow]", ""
        else:
            result = "[red]failed[/red]"
            info = detail.error_message or ""
        table.add_row(detail.label or "-", detail.filename, result, info)

    style = "green" if summary.failed == 0 and summary.unlinked == 0 else "yellow"
    console.print(Panel(table, title=title))
    console.print(f"[{style}]{summary.message}[/{style}]")


def _exit_for(summary: BatchSummary) -> None:
    if summary.failed:
        raise typer.Exit(code=1)


def _format_size(size: int) -> str:
    size_kb = size / 1024
    return f"{size_kb:.1f} KB" if size_kb < 1024 else f"{size_kb / 1024:.1f} MB"
