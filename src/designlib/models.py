"""Data models and enums for the design-review ingestion pipeline."""

from __future__ import annotations

import asyncio
import mimetypes
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator


class ItemStatus(str, Enum):
    """Lifecycle status of a single queued file."""

    PENDING = "pending"
    PROVISIONING = "provisioning"
    PROVISIONED = "provisioned"
    UPLOADING = "uploading"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: frozenset[ItemStatus] = frozenset(
    {ItemStatus.SUCCESS, ItemStatus.ERROR, ItemStatus.CANCELLED}
)


class VariationFeedbackStatus(str, Enum):
    """Review status stored on a variation record."""

    PENDING_FEEDBACK = "Pending Feedback"
    NEEDS_CHANGES = "Needs Changes"
    APPROVED = "Approved"
    REJECTED = "Rejected"


class DesignStage(str, Enum):
    """Workflow stage of a design version."""

    SKETCH = "sketch"
    REFINE = "refine"
    COLOR = "color"
    FINAL = "final"


DEFAULT_CONTENT_TYPE = "application/octet-stream"


@dataclass(frozen=True)
class SourcePayload:
    """The bytes to transfer for one queued file.

    Exactly one of *path* or *data* is set.  Size and content type are known
    before the transfer starts.
    """

    filename: str
    size: int
    content_type: str = DEFAULT_CONTENT_TYPE
    path: Path | None = None
    data: bytes | None = None

    @classmethod
    def from_path(cls, path: str | os.PathLike[str]) -> SourcePayload:
        """Build a payload for a file on disk, guessing its content type."""
        p = Path(path)
        content_type, _ = mimetypes.guess_type(p.name)
        return cls(
            filename=p.name,
            size=p.stat().st_size,
            content_type=content_type or DEFAULT_CONTENT_TYPE,
            path=p,
        )

    @classmethod
    def from_bytes(
        cls, filename: str, data: bytes, content_type: str | None = None
    ) -> SourcePayload:
        if content_type is None:
            content_type, _ = mimetypes.guess_type(filename)
        return cls(
            filename=filename,
            size=len(data),
            content_type=content_type or DEFAULT_CONTENT_TYPE,
            data=data,
        )

    async def iter_chunks(self, chunk_size: int) -> AsyncIterator[bytes]:
        """Yield the payload in chunks of at most *chunk_size* bytes."""
        if self.data is not None:
            for start in range(0, len(self.data), chunk_size):
                yield self.data[start : start + chunk_size]
            return
        if self.path is None:
            raise ValueError(f"Payload {self.filename!r} has neither path nor data")
        # File I/O runs in worker threads
        f = await asyncio.to_thread(open, self.path, "rb")
        try:
            while True:
                chunk = await asyncio.to_thread(f.read, chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            await asyncio.to_thread(f.close)


@dataclass
class QueueItem:
    """One file's journey through provisioning and transfer.

    Instances are owned by :class:`~designlib.ingest.store.QueueStateStore`;
    callers receive copies from ``get()`` / ``snapshot_all()``.
    """

    id: str
    source: SourcePayload
    status: ItemStatus = ItemStatus.PENDING
    progress_percent: int = 0
    error_message: str | None = None
    error_kind: str | None = None
    record_id: str | None = None
    label: str | None = None
    location: str | None = None
    link_resolved: bool | None = None
    cancel_handle: Any | None = None


@dataclass
class Batch:
    """Files submitted together for one parent.  Lives only for one run."""

    parent_id: str
    collection_path: str
    item_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ProvisionedRecord:
    """Identity of a backend record created for a queued file."""

    record_id: str
    label: str


@dataclass(frozen=True)
class ItemDetail:
    """Per-item line of a batch summary."""

    item_id: str
    filename: str
    status: ItemStatus
    label: str | None = None
    record_id: str | None = None
    location: str | None = None
    error_kind: str | None = None
    error_message: str | None = None
    link_resolved: bool | None = None

    @classmethod
    def from_item(cls, item: QueueItem) -> ItemDetail:
        return cls(
            item_id=item.id,
            filename=item.source.filename,
            status=item.status,
            label=item.label,
            record_id=item.record_id,
            location=item.location,
            error_kind=item.error_kind,
            error_message=item.error_message,
            link_resolved=item.link_resolved,
        )


@dataclass
class BatchSummary:
    """Aggregate outcome of one batch, produced once when every item is terminal."""

    succeeded: int = 0
    failed: int = 0
    cancelled: int = 0
    unlinked: int = 0
    peak_active: int = 0
    items: list[ItemDetail] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.items)

    @property
    def message(self) -> str:
        """Single aggregate notification, e.g. ``"7 of 9 succeeded, 2 failed"``."""
        parts = [f"{self.succeeded} of {self.total} succeeded"]
        if self.failed:
            parts.append(f"{self.failed} failed")
        if self.cancelled:
            parts.append(f"{self.cancelled} cancelled")
        if self.unlinked:
            parts.append(f"{self.unlinked} unlinked")
        return ", ".join(parts)

    @classmethod
    def from_items(cls, items: list[QueueItem], peak_active: int = 0) -> BatchSummary:
        summary = cls(peak_active=peak_active)
        for item in items:
            if item.status == ItemStatus.SUCCESS:
                summary.succeeded += 1
                if item.link_resolved is False:
                    summary.unlinked += 1
            elif item.status == ItemStatus.ERROR:
                summary.failed += 1
            elif item.status == ItemStatus.CANCELLED:
                summary.cancelled += 1
            summary.items.append(ItemDetail.from_item(item))
        return summary

    def to_dict(self) -> dict[str, object]:
        return {
            "succeeded": self.succeeded,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "unlinked": self.unlinked,
        }


@dataclass
class VersionBatchResult:
    """Outcome of creating a new version and ingesting its variations."""

    version_id: str
    version_number: int
    summary: BatchSummary


@dataclass
class IngestConfig:
    """Configuration for the ingestion pipeline.

    Controls the storage endpoint, transfer concurrency, chunking, and
    reconciliation retries.
    """

    storage_url: str = "http://localhost:54321"
    bucket: str = "design-variations"
    service_key: str | None = None
    max_concurrent_uploads: int = 3
    chunk_size: int = 256 * 1024
    connect_timeout_seconds: float = 10.0
    link_retry_attempts: int = 3
    link_retry_max_wait: float = 4.0
    db_path: str = "data/designs.db"
