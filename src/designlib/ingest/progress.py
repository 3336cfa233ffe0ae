"""Rich live progress display fed by queue state store events.

Provides two tiers:

* **Batch level** -- files that reached a terminal state
* **File level** -- one bar per file with its label and transfer percentage
"""

from __future__ import annotations

from rich.console import Console
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
)

from designlib.models import ItemStatus, QueueItem

_STATUS_STYLE: dict[ItemStatus, str] = {
    ItemStatus.PENDING: "[dim]pending[/dim]",
    ItemStatus.PROVISIONING: "[cyan]creating record[/cyan]",
    ItemStatus.PROVISIONED: "[cyan]queued[/cyan]",
    ItemStatus.UPLOADING: "[blue]uploading[/blue]",
    ItemStatus.SUCCESS: "[green]done[/green]",
    ItemStatus.ERROR: "[red]FAIL[/red]",
    ItemStatus.CANCELLED: "[yellow]cancelled[/yellow]",
}


class IngestProgressTracker:
    """Listener for :class:`~designlib.ingest.store.QueueStateStore`.

    Usage::

        tracker = IngestProgressTracker(total_files=len(paths))
        with tracker:
            unsubscribe = controller.store.subscribe(tracker.on_item_changed)
            await controller.add_variations(version_id, payloads)
            unsubscribe()
    """

    def __init__(self, total_files: int, console: Console | None = None) -> None:
        self._total_files = total_files
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            TextColumn("{task.fields[status]}", style="dim"),
            console=console,
        )
        self._batch_task: TaskID | None = None
        self._file_tasks: dict[str, TaskID] = {}
        self._finished: set[str] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        self._progress.start()
        self._batch_task = self._progress.add_task(
            "[green]Batch", total=self._total_files, status="starting..."
        )

    def stop(self) -> None:
        self._progress.stop()

    def __enter__(self) -> IngestProgressTracker:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        self.stop()

    # ------------------------------------------------------------------
    # Store events
    # ------------------------------------------------------------------

    def on_item_changed(self, item: QueueItem) -> None:
        """Reflect one store change.  Called with the store lock held."""
        task = self._file_tasks.get(item.id)
        if task is None:
            task = self._progress.add_task(
                _truncate_name(item.source.filename),
                total=100,
                status=_STATUS_STYLE[item.status],
            )
            self._file_tasks[item.id] = task

        description = _truncate_name(item.source.filename)
        if item.label:
            description = f"[bold]{item.label}[/bold] {description}"
        status = _STATUS_STYLE[item.status]
        if item.status == ItemStatus.ERROR and item.error_message:
            status = f"{status} {item.error_message[:60]}"
        elif item.status == ItemStatus.SUCCESS and item.link_resolved is False:
            status = "[yellow]stored, unlinked[/yellow]"

        self._progress.update(
            task,
            description=description,
            completed=item.progress_percent,
            status=status,
        )

        if item.status.is_terminal and item.id not in self._finished:
            self._finished.add(item.id)
            if self._batch_task is not None:
                self._progress.advance(self._batch_task, 1)
                self._progress.update(
                    self._batch_task,
                    status=f"{len(self._finished)}/{self._total_files} finished",
                )


def _truncate_name(name: str, max_len: int = 32) -> str:
    """Truncate a file name for display, keeping its tail."""
    if len(name) <= max_len:
        return name
    return "..." + name[-(max_len - 3) :]
