"""Queue state store: the single authoritative record of every item's state.

All mutations go through one ``threading.RLock`` so that N concurrent
transfers, the batch controller, and cancel requests arriving from other
threads never interleave.  Lock-held sections only touch in-memory state and
notify listeners; no network or database calls happen under the lock.

Listeners are called inside the lock with a copy of the changed item, which
guarantees that subscribers observe transitions in the order they were
recorded (a late progress event can never be seen after a terminal status).
Listeners must therefore be quick and must not block.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from typing import Callable, Iterable

from statemachine.exceptions import TransitionNotAllowed

from designlib.ingest.exceptions import InvalidTransitionError
from designlib.ingest.fsm import EVENT_FOR_STATUS, ItemLifecycleSM, create_fsm
from designlib.models import ItemStatus, QueueItem

logger = logging.getLogger(__name__)

Listener = Callable[[QueueItem], None]


class QueueStateStore:
    """Thread-safe store of :class:`QueueItem` lifecycle, progress, and errors.

    Usage::

        store = QueueStateStore()
        store.add(QueueItem(id="f1", source=payload))
        unsubscribe = store.subscribe(lambda item: print(item.status))
        store.set_status("f1", ItemStatus.PROVISIONING)
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._items: dict[str, QueueItem] = {}
        self._fsms: dict[str, ItemLifecycleSM] = {}
        self._listeners: list[Listener] = []
        # Uploading items cancelled before their handle was registered
        self._cancel_requested: set[str] = set()
        # Uploading items whose transfer already finished
        self._handle_released: set[str] = set()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def add(self, item: QueueItem) -> None:
        """Register a new item.  Its id must be unique within the store."""
        with self._lock:
            if item.id in self._items:
                raise ValueError(f"Duplicate queue item id {item.id!r}")
            stored = dataclasses.replace(item)
            self._items[item.id] = stored
            self._fsms[item.id] = create_fsm(stored.status)
            self._notify(stored)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener* for every change; returns an unsubscribe callable."""
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, item_id: str) -> QueueItem:
        """Return a copy of the item.  Raises ``KeyError`` for unknown ids."""
        with self._lock:
            return dataclasses.replace(self._items[item_id])

    def snapshot_all(self) -> list[QueueItem]:
        """Return copies of every item in insertion (submission) order."""
        with self._lock:
            return [dataclasses.replace(item) for item in self._items.values()]

    def all_terminal(self, item_ids: Iterable[str] | None = None) -> bool:
        """Return True if every item (or every item in *item_ids*) is terminal."""
        with self._lock:
            ids = self._items.keys() if item_ids is None else item_ids
            return all(self._items[i].status.is_terminal for i in ids)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def set_status(
        self,
        item_id: str,
        status: ItemStatus,
        *,
        error_message: str | None = None,
        error_kind: str | None = None,
        record_id: str | None = None,
        label: str | None = None,
        location: str | None = None,
        link_resolved: bool | None = None,
    ) -> bool:
        """Move an item to *status*, recording the accompanying details.

        Returns:
            True if the transition was applied, False if the item was already
            terminal (the call is then a no-op).

        Raises:
            InvalidTransitionError: For an illegal transition out of a
                non-terminal status (e.g. ``pending -> success``).
        """
        status = ItemStatus(status)
        with self._lock:
            item = self._items[item_id]
            if item.status.is_terminal:
                logger.debug(
                    "Ignoring %s for %s: already %s",
                    status.value,
                    item_id,
                    item.status.value,
                )
                return False

            event = EVENT_FOR_STATUS.get(status)
            if event is None:
                raise InvalidTransitionError(
                    f"{item_id}: cannot move {item.status.value} -> {status.value}"
                )
            try:
                self._fsms[item_id].send(event)
            except TransitionNotAllowed as exc:
                raise InvalidTransitionError(
                    f"{item_id}: cannot move {item.status.value} -> {status.value}"
                ) from exc

            item.status = status
            if record_id is not None:
                item.record_id = record_id
            if label is not None:
                item.label = label

            if status == ItemStatus.UPLOADING:
                item.progress_percent = 0
            else:
                item.cancel_handle = None
                self._cancel_requested.discard(item_id)
                self._handle_released.discard(item_id)

            if status == ItemStatus.SUCCESS:
                item.progress_percent = 100
                item.location = location
                item.link_resolved = link_resolved
            elif status == ItemStatus.ERROR:
                item.error_message = error_message or "Unknown error"
                item.error_kind = error_kind

            self._notify(item)
            return True

    def set_progress(self, item_id: str, percent: int) -> bool:
        """Record transfer progress for an uploading item.

        Values are clamped to 0..100 and never move backwards.  Calls for an
        item that is not ``uploading`` (including terminal items) are no-ops.
        """
        with self._lock:
            item = self._items[item_id]
            if item.status != ItemStatus.UPLOADING:
                return False
            percent = max(0, min(100, int(percent)))
            if percent <= item.progress_percent:
                return False
            item.progress_percent = percent
            self._notify(item)
            return True

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def register_cancel_handle(self, item_id: str, handle: object) -> bool:
        """Attach *handle* to an uploading item.  Returns False otherwise.

        If the item was cancelled after it started uploading but before its
        handle arrived, the handle is invoked at once.
        """
        with self._lock:
            item = self._items[item_id]
            if item.status != ItemStatus.UPLOADING:
                return False
            item.cancel_handle = handle
            self._handle_released.discard(item_id)
            pending_cancel = item_id in self._cancel_requested
            self._cancel_requested.discard(item_id)

        if pending_cancel:
            logger.debug("Delivering deferred cancel to %s", item_id)
            handle.cancel()
        return True

    def clear_cancel_handle(self, item_id: str) -> None:
        """Detach the cancel handle once the item's bytes are no longer moving."""
        with self._lock:
            item = self._items[item_id]
            item.cancel_handle = None
            if item.status == ItemStatus.UPLOADING:
                self._handle_released.add(item_id)

    def cancel(self, item_id: str) -> bool:
        """Request cancellation of one item.

        Items that have not started transferring are moved to ``cancelled``
        directly.  For an uploading item the registered cancel handle is
        invoked and the transfer worker records the terminal state once the
        network operation has been aborted.  An uploading item whose handle
        is not registered yet keeps the request until it is.

        Returns:
            True if a cancellation was recorded or requested.
        """
        with self._lock:
            item = self._items[item_id]
            if item.status.is_terminal:
                return False
            if item.status != ItemStatus.UPLOADING:
                return self.set_status(item_id, ItemStatus.CANCELLED)
            handle = item.cancel_handle
            if handle is None:
                if item_id in self._handle_released:
                    logger.debug("Transfer for %s already finished; not cancelling", item_id)
                    return False
                self._cancel_requested.add(item_id)
                return True

        handle.cancel()
        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _notify(self, item: QueueItem) -> None:
        if not self._listeners:
            return
        snapshot = dataclasses.replace(item)
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Queue listener failed for %s", item.id)
