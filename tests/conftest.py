"""Shared pytest fixtures for the ingestion pipeline tests.

Provides a seeded temporary database (project, design, version), a connected
async record backend, a failure-injecting backend wrapper, and an in-memory
storage double that can fail, reject, or pause individual uploads.
"""

from __future__ import annotations

import asyncio
import posixpath
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path

import pytest

from designlib.database import Database
from designlib.ingest.controller import BatchController
from designlib.ingest.exceptions import (
    AuthorizationError,
    TransferNetworkError,
    TransferRejectedError,
)
from designlib.ingest.records import SQLiteRecordBackend
from designlib.ingest.storage import SignedUploadTarget
from designlib.models import IngestConfig, SourcePayload


@dataclass
class Seed:
    """Ids of the rows created by the ``seeded_db`` fixture."""

    db_path: Path
    project_id: str
    design_id: str
    version_id: str


@pytest.fixture
def seeded_db(tmp_path: Path) -> Seed:
    """A file-based SQLite database with one project, design, and version."""
    db_path = tmp_path / "designs.db"
    with Database(db_path) as db:
        project_id = db.create_project("Spring campaign")
        design_id = db.create_design(project_id, "Poster")
        version_id = db.create_version(design_id)
    return Seed(db_path, project_id, design_id, version_id)


@pytest.fixture
async def backend(seeded_db: Seed):
    async with SQLiteRecordBackend(str(seeded_db.db_path)) as b:
        yield b


@pytest.fixture
def config(seeded_db: Seed) -> IngestConfig:
    return IngestConfig(
        storage_url="https://storage.test",
        service_key="test-key",
        chunk_size=4,
        link_retry_attempts=3,
        link_retry_max_wait=0,
        db_path=str(seeded_db.db_path),
    )


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def controller(backend, storage, config) -> BatchController:
    return BatchController(backend, storage, config)


def add_variation(db_path: Path, version_id: str, letter: str) -> None:
    """Insert an existing variation row directly."""
    with Database(db_path) as db:
        with db.conn:
            db.conn.execute(
                "INSERT INTO variations (id, version_id, variation_letter) VALUES (?, ?, ?)",
                (f"existing-{letter}", version_id, letter),
            )


def payloads(*names: str, size: int = 20) -> list[SourcePayload]:
    return [SourcePayload.from_bytes(name, bytes(size)) for name in names]


class FlakyBackend:
    """Wraps a real backend and fails selected calls.

    Args:
        inner: Backend every call is delegated to.
        fail_create_labels: Labels whose ``create_record`` raises.
        fail_updates: Number of ``update_record`` calls that raise before
            delegating.
        sibling_labels: Labels ``list_sibling_labels`` returns instead of
            the stored ones.
    """

    def __init__(
        self, inner, fail_create_labels=(), fail_updates=0, exc=None, sibling_labels=None
    ):
        self._inner = inner
        self.fail_create_labels = set(fail_create_labels)
        self.fail_updates = fail_updates
        self.exc = exc or RuntimeError("database is locked")
        self.create_calls: list[str] = []
        self.update_calls = 0
        self.sibling_labels = sibling_labels

    def __getattr__(self, name):
        return getattr(self._inner, name)

    async def list_sibling_labels(self, parent_id):
        if self.sibling_labels is not None:
            return list(self.sibling_labels)
        return await self._inner.list_sibling_labels(parent_id)

    async def create_record(self, parent_id, label, initial_status):
        self.create_calls.append(label)
        if label in self.fail_create_labels:
            self.fail_create_labels.discard(label)
            raise self.exc
        return await self._inner.create_record(parent_id, label, initial_status)

    async def update_record(self, record_id, location):
        self.update_calls += 1
        if self.fail_updates:
            self.fail_updates -= 1
            raise self.exc
        return await self._inner.update_record(record_id, location)


class FakeStorage:
    """In-memory stand-in for :class:`~designlib.ingest.storage.StorageClient`.

    Uploads are streamed chunk by chunk with a yield to the event loop
    between chunks, so concurrent transfers genuinely interleave.
    """

    def __init__(self, chunk_size: int = 4) -> None:
        self.chunk_size = chunk_size
        self.objects: dict[str, bytes] = {}
        self.signed: list[str] = []
        self.deny: set[str] = set()
        self.drop: set[str] = set()
        self.reject: dict[str, int] = {}
        self.started: dict[str, asyncio.Event] = defaultdict(asyncio.Event)
        self._holds: dict[str, tuple[int, asyncio.Event, asyncio.Event]] = {}
        self.active = 0
        self.peak = 0

    def hold(self, filename: str, at_percent: int = 100) -> tuple[asyncio.Event, asyncio.Event]:
        """Pause *filename* once it reaches *at_percent*.

        Returns:
            ``(reached, release)`` events.
        """
        reached, release = asyncio.Event(), asyncio.Event()
        self._holds[filename] = (at_percent, reached, release)
        return reached, release

    async def request_write_target(self, path: str, upsert: bool = False) -> SignedUploadTarget:
        self.signed.append(path)
        if posixpath.basename(path) in self.deny:
            raise AuthorizationError("Failed to get signed upload URL: Status 403 denied")
        return SignedUploadTarget(
            bucket="design-variations",
            path=path,
            url=f"https://storage.test/upload/{path}?token=t",
            upsert=upsert,
        )

    async def put_object(self, target, payload, on_progress=None) -> None:
        name = payload.filename
        self.active += 1
        self.peak = max(self.peak, self.active)
        self.started[name].set()
        try:
            buf = bytearray()
            async for chunk in payload.iter_chunks(self.chunk_size):
                buf.extend(chunk)
                if on_progress is not None:
                    on_progress(len(buf), payload.size)
                hold = self._holds.get(name)
                if hold is not None and len(buf) * 100 >= hold[0] * payload.size:
                    del self._holds[name]
                    hold[1].set()
                    await hold[2].wait()
                await asyncio.sleep(0)
            if name in self.drop:
                raise TransferNetworkError("Storage upload failed: Network error (ReadError)")
            if name in self.reject:
                raise TransferRejectedError(self.reject[name], "Internal Server Error")
            self.objects[target.path] = bytes(buf)
        finally:
            self.active -= 1
