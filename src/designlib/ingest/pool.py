"""Bounded worker pool for concurrent transfers.

Admission is controlled by an ``asyncio.Semaphore`` sized to the concurrency
ceiling.  Tasks are created in submission order and the semaphore wakes
waiters first-in first-out, so items are admitted in queue order.  A slot is
released in ``finally`` whatever the outcome, and the next waiting item is
admitted immediately.
"""

from __future__ import annotations

import asyncio
import logging

from designlib.ingest.reconciler import Reconciler
from designlib.ingest.store import QueueStateStore
from designlib.ingest.transfer import TransferOutcome, TransferResult, TransferWorker
from designlib.models import ItemStatus

logger = logging.getLogger(__name__)


class WorkerPool:
    """Runs transfers for provisioned items with at most *concurrency* active.

    Args:
        store: Queue state store.
        worker: Transfer worker shared by every slot.
        reconciler: Links successful uploads to their records.
        concurrency: Maximum simultaneously active transfers.
    """

    def __init__(
        self,
        store: QueueStateStore,
        worker: TransferWorker,
        reconciler: Reconciler,
        concurrency: int = 3,
    ) -> None:
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        self._store = store
        self._worker = worker
        self._reconciler = reconciler
        self._concurrency = concurrency
        self._semaphore = asyncio.Semaphore(concurrency)

        self._active = 0
        self.peak_active = 0

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def active_count(self) -> int:
        return self._active

    async def run(
        self, item_ids: list[str], collection_path: str, upsert: bool = False
    ) -> None:
        """Transfer every item in *item_ids*; returns once all are terminal."""
        if not item_ids:
            return

        tasks = [
            asyncio.create_task(
                self._run_one(item_id, collection_path, upsert),
                name=f"slot-{item_id}",
            )
            for item_id in item_ids
        ]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        for item_id, result in zip(item_ids, results):
            if isinstance(result, Exception):
                logger.error("Transfer task for %s crashed: %s", item_id, result)
                self._store.set_status(
                    item_id,
                    ItemStatus.ERROR,
                    error_message=f"Upload failed: {result}",
                    error_kind="transfer_failure",
                )

    async def _run_one(self, item_id: str, collection_path: str, upsert: bool) -> None:
        if self._store.get(item_id).status.is_terminal:
            return

        async with self._semaphore:
            # Cancelled while waiting for a slot
            if not self._store.set_status(item_id, ItemStatus.UPLOADING):
                return

            self._active += 1
            self.peak_active = max(self.peak_active, self._active)
            logger.debug(
                "Admitted %s (%d/%d active)", item_id, self._active, self._concurrency
            )
            try:
                result = await self._worker.transfer(item_id, collection_path, upsert)
                await self._finish(item_id, result)
            finally:
                self._active -= 1

    async def _finish(self, item_id: str, result: TransferResult) -> None:
        if result.outcome == TransferOutcome.SUCCESS:
            record_id = self._store.get(item_id).record_id
            linked = await self._reconciler.link(record_id, result.location)
            self._store.set_status(
                item_id,
                ItemStatus.SUCCESS,
                location=result.location,
                link_resolved=linked,
            )
        elif result.outcome == TransferOutcome.ERROR:
            self._store.set_status(
                item_id,
                ItemStatus.ERROR,
                error_message=result.reason,
                error_kind=result.error_kind,
            )
        else:
            self._store.set_status(item_id, ItemStatus.CANCELLED)
