"""Tests for single-item transfers and their cancel handles."""

from __future__ import annotations

import asyncio

import pytest

from designlib.ingest.store import QueueStateStore
from designlib.ingest.transfer import CancelHandle, TransferOutcome, TransferWorker
from designlib.models import ItemStatus, QueueItem, SourcePayload

from conftest import FakeStorage

COLLECTION = "projects/p/designs/d/versions/v/variations"


def _uploading_item(store: QueueStateStore, name: str = "hero.png", size: int = 10) -> str:
    item_id = f"item-{name}"
    store.add(QueueItem(id=item_id, source=SourcePayload.from_bytes(name, bytes(size))))
    store.set_status(item_id, ItemStatus.PROVISIONING)
    store.set_status(item_id, ItemStatus.PROVISIONED, record_id="rec-1", label="A")
    store.set_status(item_id, ItemStatus.UPLOADING)
    return item_id


@pytest.fixture
def store() -> QueueStateStore:
    return QueueStateStore()


class TestTransferWorker:
    async def test_success_returns_location(self, store):
        storage = FakeStorage(chunk_size=2)
        item_id = _uploading_item(store)
        result = await TransferWorker(storage, store).transfer(item_id, COLLECTION)

        assert result.outcome == TransferOutcome.SUCCESS
        assert result.location == f"{COLLECTION}/rec-1/hero.png"
        assert storage.objects[result.location] == bytes(10)

    async def test_progress_capped_below_100_until_success(self, store):
        storage = FakeStorage(chunk_size=5)
        item_id = _uploading_item(store)
        seen: list[int] = []
        store.subscribe(lambda item: seen.append(item.progress_percent))

        await TransferWorker(storage, store).transfer(item_id, COLLECTION)

        assert seen == [50, 99]
        # The worker never records the terminal status itself
        assert store.get(item_id).status == ItemStatus.UPLOADING

    async def test_handle_registered_only_while_running(self, store):
        storage = FakeStorage()
        item_id = _uploading_item(store)
        reached, release = storage.hold("hero.png", at_percent=40)

        task = asyncio.create_task(TransferWorker(storage, store).transfer(item_id, COLLECTION))
        await reached.wait()
        assert isinstance(store.get(item_id).cancel_handle, CancelHandle)
        release.set()
        await task
        assert store.get(item_id).cancel_handle is None

    @pytest.mark.parametrize(
        "setup, kind",
        [
            (lambda s: s.deny.add("hero.png"), "authorization_failure"),
            (lambda s: s.drop.add("hero.png"), "transfer_network_failure"),
            (lambda s: s.reject.update({"hero.png": 500}), "transfer_server_rejection"),
        ],
    )
    async def test_failures_are_classified(self, store, setup, kind):
        storage = FakeStorage()
        setup(storage)
        item_id = _uploading_item(store)
        result = await TransferWorker(storage, store).transfer(item_id, COLLECTION)

        assert result.outcome == TransferOutcome.ERROR
        assert result.error_kind == kind
        assert result.reason

    async def test_rejection_reason_has_status(self, store):
        storage = FakeStorage()
        storage.reject["hero.png"] = 500
        item_id = _uploading_item(store)
        result = await TransferWorker(storage, store).transfer(item_id, COLLECTION)
        assert result.reason == "Storage upload failed: Status 500 (Internal Server Error)"

    async def test_requires_record(self, store):
        store.add(QueueItem(id="f1", source=SourcePayload.from_bytes("a.png", b"x")))
        with pytest.raises(ValueError):
            await TransferWorker(FakeStorage(), store).transfer("f1", COLLECTION)


class TestCancellation:
    async def test_cancel_mid_transfer(self, store):
        storage = FakeStorage(chunk_size=2)
        item_id = _uploading_item(store)
        reached, _ = storage.hold("hero.png", at_percent=40)

        task = asyncio.create_task(TransferWorker(storage, store).transfer(item_id, COLLECTION))
        await reached.wait()
        assert store.get(item_id).progress_percent == 40
        assert store.cancel(item_id)

        result = await task
        assert result.outcome == TransferOutcome.CANCELLED
        assert storage.objects == {}
        assert len(storage.signed) == 1

    async def test_cancel_from_another_thread(self, store):
        storage = FakeStorage()
        item_id = _uploading_item(store)
        reached, _ = storage.hold("hero.png", at_percent=50)

        task = asyncio.create_task(TransferWorker(storage, store).transfer(item_id, COLLECTION))
        await reached.wait()
        assert await asyncio.to_thread(store.cancel, item_id)

        result = await task
        assert result.outcome == TransferOutcome.CANCELLED

    async def test_outer_cancellation_propagates(self, store):
        """Cancelling the caller is not mistaken for an item cancel."""
        storage = FakeStorage()
        item_id = _uploading_item(store)
        reached, _ = storage.hold("hero.png", at_percent=50)

        task = asyncio.create_task(TransferWorker(storage, store).transfer(item_id, COLLECTION))
        await reached.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    async def test_cancel_after_completion_is_noop(self):
        async def _done():
            return None

        task = asyncio.create_task(_done())
        await task
        handle = CancelHandle(task, asyncio.get_running_loop())
        handle.cancel()
        assert handle.requested
        assert not task.cancelled()
