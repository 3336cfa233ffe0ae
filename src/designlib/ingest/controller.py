"""Batch controller for the design-variation ingestion pipeline.

Composes the pipeline primitives (provisioner, worker pool, transfer
worker, reconciler, queue state store) into one batch operation:

* Phase 1 -- provision one record per file, sequentially, in submission order
* Phase 2 -- transfer every provisioned file through the bounded pool
* Phase 3 -- aggregate terminal states into a :class:`BatchSummary`

Per-item failures never abort the batch.  Only conditions that prevent a
batch from starting raise :class:`BatchValidationError`.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import uuid
from typing import Sequence

from designlib.ingest.exceptions import BatchValidationError, IngestError
from designlib.ingest.pool import WorkerPool
from designlib.ingest.provisioner import RecordProvisioner
from designlib.ingest.reconciler import Reconciler
from designlib.ingest.records import VersionedRecordBackend
from designlib.ingest.storage import StorageClient
from designlib.ingest.store import QueueStateStore
from designlib.ingest.transfer import TransferWorker
from designlib.models import (
    Batch,
    BatchSummary,
    IngestConfig,
    ItemStatus,
    QueueItem,
    SourcePayload,
    VersionBatchResult,
)

logger = logging.getLogger(__name__)


class BatchController:
    """End-to-end orchestration of one or more ingestion batches.

    Usage::

        controller = BatchController(backend, storage, config)
        summary = await controller.add_variations(version_id, payloads)
        print(summary.message)

    Args:
        backend: Record backend (variations live under versions).
        storage: Object storage client.
        config: Pipeline configuration.
        store: Optional shared queue state store; a UI subscribes to it for
            live progress.  A fresh store is created when omitted.
    """

    def __init__(
        self,
        backend: VersionedRecordBackend,
        storage: StorageClient,
        config: IngestConfig,
        store: QueueStateStore | None = None,
    ) -> None:
        self._backend = backend
        self._config = config
        self.store = store if store is not None else QueueStateStore()

        self._provisioner = RecordProvisioner(backend)
        self._reconciler = Reconciler(
            backend,
            attempts=config.link_retry_attempts,
            max_wait=config.link_retry_max_wait,
        )
        self._worker = TransferWorker(storage, self.store)
        self._running: set[str] = set()
        self._signal_count = 0

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self, item_id: str) -> bool:
        """Cancel one item; siblings are unaffected."""
        return self.store.cancel(item_id)

    def cancel_all(self) -> int:
        """Cancel every non-terminal item of the running batches.

        Returns:
            Number of items for which cancellation was recorded or requested.
        """
        count = 0
        for item_id in list(self._running):
            if self.store.cancel(item_id):
                count += 1
        if count:
            logger.warning("Cancelling %d queued upload(s)", count)
        return count

    def setup_signal_handlers(self) -> None:
        """Register a SIGINT handler that cancels the running batches.

        First signal cancels every queued and in-flight upload.  Second signal
        forces immediate exit.
        """
        loop = asyncio.get_running_loop()

        def _handler() -> None:
            self._signal_count += 1
            if self._signal_count == 1:
                logger.warning("Interrupt received, cancelling uploads...")
                self.cancel_all()
            else:
                logger.warning("Forced shutdown. Exiting immediately.")
                raise SystemExit(1)

        try:
            loop.add_signal_handler(signal.SIGINT, _handler)
        except (NotImplementedError, RuntimeError, ValueError):
            # add_signal_handler is unavailable off the main thread and on Windows
            logger.debug("Could not set signal handler")

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def add_variations(
        self,
        parent_id: str,
        sources: Sequence[SourcePayload],
        collection_path: str | None = None,
    ) -> BatchSummary:
        """Ingest *sources* as new variations of version *parent_id*.

        Labels continue from the highest label already under the version.

        Raises:
            BatchValidationError: If no files were given or the version is
                unknown.
        """
        if not sources:
            raise BatchValidationError("No files provided")
        await self._require_parent(parent_id)
        if collection_path is None:
            collection_path = await self._resolve_collection_path(parent_id)

        batch = self._enqueue(parent_id, collection_path, sources)
        logger.info(
            "Starting batch of %d file(s) for version %s", len(batch.item_ids), parent_id
        )
        try:
            provisioned = await self._provisioner.provision_batch(
                parent_id, self.store, batch.item_ids
            )
            logger.info(
                "Provisioned %d of %d record(s); starting transfers",
                len(provisioned),
                len(batch.item_ids),
            )
            pool = self._make_pool()
            await pool.run(provisioned, batch.collection_path)
            return self._summarize(batch, pool.peak_active)
        finally:
            self._running.difference_update(batch.item_ids)

    async def add_version_with_variations(
        self, design_id: str, sources: Sequence[SourcePayload]
    ) -> VersionBatchResult:
        """Create the next version of *design_id* and ingest *sources* into it.

        Raises:
            BatchValidationError: If no files were given, the design is
                unknown, or the version record could not be created.
        """
        if not sources:
            raise BatchValidationError("No files provided")
        if not await self._backend.design_exists(design_id):
            raise BatchValidationError(f"Unknown design {design_id}")
        try:
            version_id, version_number = await self._backend.create_version(design_id)
        except IngestError as exc:
            raise BatchValidationError(f"Failed to create version: {exc}") from exc

        summary = await self.add_variations(version_id, sources)
        return VersionBatchResult(
            version_id=version_id, version_number=version_number, summary=summary
        )

    async def replace_file(self, record_id: str, source: SourcePayload) -> BatchSummary:
        """Upload a new file for an existing variation and relink it.

        The object is written with upsert, so re-submitting overwrites the
        previous upload for the same record and file name.
        """
        record = await self._backend.get_record(record_id)
        if record is None:
            raise BatchValidationError(f"Unknown variation {record_id}")
        collection_path = await self._resolve_collection_path(record["version_id"])

        batch = self._enqueue(record["version_id"], collection_path, [source])
        item_id = batch.item_ids[0]
        try:
            adopted = self._provisioner.adopt_existing(
                self.store, item_id, record_id, record["variation_letter"]
            )
            pool = self._make_pool()
            await pool.run([item_id] if adopted else [], collection_path, upsert=True)
            return self._summarize(batch, pool.peak_active)
        finally:
            self._running.difference_update(batch.item_ids)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _require_parent(self, parent_id: str) -> None:
        try:
            exists = await self._backend.parent_exists(parent_id)
        except Exception as exc:
            raise BatchValidationError(
                f"Could not look up version {parent_id}: {exc}"
            ) from exc
        if not exists:
            raise BatchValidationError(f"Unknown version {parent_id}")

    async def _resolve_collection_path(self, parent_id: str) -> str:
        path = await self._backend.collection_path(parent_id)
        if path is None:
            raise BatchValidationError(f"Unknown version {parent_id}")
        return path

    def _make_pool(self) -> WorkerPool:
        return WorkerPool(
            self.store,
            self._worker,
            self._reconciler,
            concurrency=self._config.max_concurrent_uploads,
        )

    def _enqueue(
        self, parent_id: str, collection_path: str, sources: Sequence[SourcePayload]
    ) -> Batch:
        batch = Batch(parent_id=parent_id, collection_path=collection_path)
        for source in sources:
            item_id = uuid.uuid4().hex
            self.store.add(QueueItem(id=item_id, source=source))
            batch.item_ids.append(item_id)
        self._running.update(batch.item_ids)
        return batch

    def _summarize(self, batch: Batch, peak_active: int) -> BatchSummary:
        item_ids = batch.item_ids
        if not self.store.all_terminal(item_ids):
            for item_id in item_ids:
                item = self.store.get(item_id)
                if item.status.is_terminal:
                    continue
                logger.error("%s finished the batch in %s", item_id, item.status.value)
                self.store.set_status(
                    item_id,
                    ItemStatus.ERROR,
                    error_message="Upload never started",
                    error_kind="ingest_failure",
                )
        items = [self.store.get(item_id) for item_id in item_ids]
        summary = BatchSummary.from_items(items, peak_active=peak_active)
        logger.info("Batch complete: %s", summary.message)
        return summary

