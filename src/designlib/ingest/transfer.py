"""Byte transfer for a single queued item.

The worker requests a fresh signed target, streams the file, and reports
progress into the queue state store.  The network operation runs in its own
task so that the item's :class:`CancelHandle` can abort it from any thread
without touching sibling transfers.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum

from designlib.ingest.exceptions import (
    AuthorizationError,
    TransferError,
    TransferNetworkError,
    TransferRejectedError,
)
from designlib.ingest.paths import build_object_path
from designlib.ingest.storage import StorageClient
from designlib.ingest.store import QueueStateStore

logger = logging.getLogger(__name__)


class TransferOutcome(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class TransferResult:
    """Result of one transfer attempt."""

    outcome: TransferOutcome
    location: str | None = None
    reason: str | None = None
    error_kind: str | None = None


class CancelHandle:
    """Opaque capability to abort one in-flight transfer.

    ``cancel()`` only posts a message to the event loop running the transfer,
    so it may be called from a UI callback or signal handler on another
    thread.
    """

    def __init__(self, task: asyncio.Task, loop: asyncio.AbstractEventLoop) -> None:
        self._task = task
        self._loop = loop
        self._requested = False

    @property
    def requested(self) -> bool:
        return self._requested

    def cancel(self) -> None:
        self._requested = True
        if self._task.done() or self._loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._task.cancel()
        else:
            self._loop.call_soon_threadsafe(self._task.cancel)


class TransferWorker:
    """Moves one item's bytes to object storage.

    Args:
        storage: Client used to sign targets and PUT bytes.
        store: Queue state store receiving progress and the cancel handle.
    """

    def __init__(self, storage: StorageClient, store: QueueStateStore) -> None:
        self._storage = storage
        self._store = store

    async def transfer(
        self, item_id: str, collection_path: str, upsert: bool = False
    ) -> TransferResult:
        """Transfer an ``uploading`` item and return its outcome.

        The item's terminal status is not recorded here; the caller does that
        once reconciliation has run.
        """
        item = self._store.get(item_id)
        if item.record_id is None:
            raise ValueError(f"{item_id} has no record; provision it first")
        path = build_object_path(collection_path, item.record_id, item.source.filename)
        label = item.label or item.record_id

        def _on_progress(sent: int, total: int) -> None:
            if total <= 0:
                return
            # 100 is recorded only with the success status
            self._store.set_progress(item_id, min(99, round(sent * 100 / total)))

        async def _send() -> None:
            target = await self._storage.request_write_target(path, upsert=upsert)
            await self._storage.put_object(target, item.source, on_progress=_on_progress)

        task = asyncio.create_task(_send(), name=f"transfer-{item_id}")
        handle = CancelHandle(task, asyncio.get_running_loop())
        self._store.register_cancel_handle(item_id, handle)

        try:
            await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if handle.requested and (current is None or current.cancelling() == 0):
                logger.info("Upload cancelled for variation %s (%s)", label, item_id)
                return TransferResult(TransferOutcome.CANCELLED)
            task.cancel()
            raise
        except AuthorizationError as exc:
            logger.error("Authorization failed for variation %s: %s", label, exc)
            return self._failed(exc)
        except TransferNetworkError as exc:
            logger.error("Network failure uploading variation %s: %s", label, exc)
            return self._failed(exc)
        except TransferRejectedError as exc:
            logger.error(
                "Storage rejected variation %s with status %d: %s",
                label,
                exc.status_code,
                exc,
            )
            return self._failed(exc)
        except TransferError as exc:
            logger.error("Transfer failed for variation %s: %s", label, exc)
            return self._failed(exc)
        except Exception as exc:
            logger.exception("Unexpected error uploading variation %s", label)
            return TransferResult(
                TransferOutcome.ERROR,
                reason=f"Upload failed: {exc}",
                error_kind=TransferError.kind,
            )
        finally:
            self._store.clear_cancel_handle(item_id)

        logger.debug("Uploaded %s to %s", item_id, path)
        return TransferResult(TransferOutcome.SUCCESS, location=path)

    @staticmethod
    def _failed(exc: TransferError) -> TransferResult:
        return TransferResult(
            TransferOutcome.ERROR, reason=str(exc), error_kind=exc.kind
        )
