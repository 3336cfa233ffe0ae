"""Tests for linking uploaded locations back to their records."""

from __future__ import annotations

from unittest.mock import AsyncMock

from designlib.ingest.exceptions import LinkError
from designlib.ingest.reconciler import Reconciler


def _backend(side_effect=None) -> AsyncMock:
    backend = AsyncMock()
    backend.update_record.side_effect = side_effect
    return backend


class TestReconciler:
    async def test_link_success(self):
        backend = _backend()
        assert await Reconciler(backend, max_wait=0).link("r1", "a/r1/x.png") is True
        backend.update_record.assert_awaited_once_with("r1", "a/r1/x.png")

    async def test_transient_failure_retried(self):
        backend = _backend([RuntimeError("database is locked"), None])
        assert await Reconciler(backend, attempts=3, max_wait=0).link("r1", "p") is True
        assert backend.update_record.await_count == 2

    async def test_final_failure_returns_false(self):
        backend = _backend(LinkError("write failed"))
        assert await Reconciler(backend, attempts=3, max_wait=0).link("r1", "p") is False
        assert backend.update_record.await_count == 3

    async def test_missing_record_not_retried(self):
        backend = _backend(LinkError("Variation r1 no longer exists", retryable=False))
        assert await Reconciler(backend, attempts=5, max_wait=0).link("r1", "p") is False
        assert backend.update_record.await_count == 1

    async def test_attempts_floor_is_one(self):
        backend = _backend(LinkError("write failed"))
        assert await Reconciler(backend, attempts=0, max_wait=0).link("r1", "p") is False
        assert backend.update_record.await_count == 1
