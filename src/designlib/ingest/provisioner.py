"""Sequential creation of one backend record per queued file.

Labels depend on every earlier assignment in the same batch, so records for
one parent are always created one at a time, in submission order, while
holding that parent's lock.  A failure for one item is recorded on that item
and provisioning continues with the next.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable

from designlib.ingest.exceptions import IngestError, ProvisioningError
from designlib.ingest.records import RecordBackend
from designlib.ingest.sequence import next_label
from designlib.ingest.store import QueueStateStore
from designlib.models import ItemStatus, ProvisionedRecord, VariationFeedbackStatus

logger = logging.getLogger(__name__)


class RecordProvisioner:
    """Creates variation placeholders with collision-free sibling labels.

    Args:
        backend: Record store the placeholders are written to.
        initial_status: Feedback status given to every new record.
    """

    def __init__(
        self,
        backend: RecordBackend,
        initial_status: str = VariationFeedbackStatus.PENDING_FEEDBACK.value,
    ) -> None:
        self._backend = backend
        self._initial_status = initial_status
        self._locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, parent_id: str) -> asyncio.Lock:
        """Return the lock serialising provisioning under *parent_id*."""
        lock = self._locks.get(parent_id)
        if lock is None:
            lock = self._locks[parent_id] = asyncio.Lock()
        return lock

    async def existing_labels(self, parent_id: str) -> set[str]:
        """Read the labels already used under *parent_id* from the backend."""
        try:
            return set(await self._backend.list_sibling_labels(parent_id))
        except IngestError:
            raise
        except Exception as exc:
            raise ProvisioningError(
                f"Failed to fetch existing variations: {exc}"
            ) from exc

    async def provision_next(
        self, parent_id: str, used_labels: Iterable[str]
    ) -> ProvisionedRecord:
        """Create one record labelled after the highest of *used_labels*.

        Must not be called concurrently for the same parent; use
        :meth:`provision_batch` or hold :meth:`lock_for` while calling it.

        Raises:
            SequenceExhaustedError: If ``Z`` is already used.  No record is
                created.
            ProvisioningError: If the backend rejects the record or a used
                label is not a single letter A-Z.
        """
        try:
            label = next_label(used_labels)
        except ValueError as exc:
            raise ProvisioningError(
                f"Failed to fetch existing variations: {exc}"
            ) from exc
        try:
            record_id = await self._backend.create_record(
                parent_id, label, self._initial_status
            )
        except IngestError:
            raise
        except Exception as exc:
            raise ProvisioningError(
                f"Failed to create DB record for variation {label}: {exc}"
            ) from exc
        return ProvisionedRecord(record_id=record_id, label=label)

    async def provision_batch(
        self,
        parent_id: str,
        store: QueueStateStore,
        item_ids: list[str],
    ) -> list[str]:
        """Provision every item in *item_ids*, strictly in order.

        Items that are no longer pending (e.g. cancelled by the caller) are
        skipped.  Failed items move to ``error`` and do not consume a label.

        Returns:
            Ids of the items that reached ``provisioned``.
        """
        provisioned: list[str] = []
        async with self.lock_for(parent_id):
            try:
                used = await self.existing_labels(parent_id)
            except ProvisioningError as exc:
                logger.error("Cannot read labels under %s: %s", parent_id, exc)
                for item_id in item_ids:
                    store.set_status(
                        item_id,
                        ItemStatus.ERROR,
                        error_message=str(exc),
                        error_kind=exc.kind,
                    )
                return provisioned

            for item_id in item_ids:
                if not store.set_status(item_id, ItemStatus.PROVISIONING):
                    logger.debug("Skipping %s: no longer pending", item_id)
                    continue
                try:
                    record = await self.provision_next(parent_id, used)
                except ProvisioningError as exc:
                    logger.error("Provisioning failed for %s: %s", item_id, exc)
                    store.set_status(
                        item_id,
                        ItemStatus.ERROR,
                        error_message=str(exc),
                        error_kind=exc.kind,
                    )
                    continue

                used.add(record.label)
                applied = store.set_status(
                    item_id,
                    ItemStatus.PROVISIONED,
                    record_id=record.record_id,
                    label=record.label,
                )
                if applied:
                    provisioned.append(item_id)
                    logger.info(
                        "Provisioned variation %s (%s) for %s",
                        record.label,
                        record.record_id,
                        item_id,
                    )
                else:
                    logger.warning(
                        "Record %s created for %s after it was cancelled",
                        record.record_id,
                        item_id,
                    )
        return provisioned

    def adopt_existing(
        self, store: QueueStateStore, item_id: str, record_id: str, label: str
    ) -> bool:
        """Mark an item provisioned against a record that already exists."""
        if not store.set_status(item_id, ItemStatus.PROVISIONING):
            return False
        return store.set_status(
            item_id, ItemStatus.PROVISIONED, record_id=record_id, label=label
        )
