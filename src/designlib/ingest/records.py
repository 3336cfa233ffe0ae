"""Record backend used by provisioning and reconciliation.

:class:`RecordBackend` is the boundary the pipeline depends on;
:class:`SQLiteRecordBackend` implements it on aiosqlite against the schema in
:mod:`designlib.database`.  Each write commits immediately -- no transaction
is held across ``await`` boundaries.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timezone
from typing import Protocol

import aiosqlite

from designlib.database import SCHEMA_SQL, new_id
from designlib.ingest.exceptions import LinkError, ProvisioningError
from designlib.ingest.paths import variation_collection_path
from designlib.models import DesignStage, VariationFeedbackStatus

logger = logging.getLogger(__name__)


class RecordBackend(Protocol):
    """Operations the pipeline needs from the record store."""

    async def parent_exists(self, parent_id: str) -> bool: ...

    async def list_sibling_labels(self, parent_id: str) -> list[str]: ...

    async def create_record(
        self, parent_id: str, label: str, initial_status: str
    ) -> str: ...

    async def update_record(self, record_id: str, location: str) -> None: ...

    async def collection_path(self, parent_id: str) -> str | None: ...


class VersionedRecordBackend(RecordBackend, Protocol):
    """Record backend that can also create versions and look up records."""

    async def design_exists(self, design_id: str) -> bool: ...

    async def create_version(self, design_id: str) -> tuple[str, int]: ...

    async def get_record(self, record_id: str) -> dict | None: ...


class SQLiteRecordBackend:
    """Async SQLite implementation of :class:`RecordBackend`.

    Parents are versions; records are variations.

    Usage::

        async with SQLiteRecordBackend("data/designs.db") as backend:
            labels = await backend.list_sibling_labels(version_id)
            record_id = await backend.create_record(version_id, "C", "Pending Feedback")
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the connection, enable WAL and foreign keys, ensure the schema."""
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA synchronous=NORMAL")
        await self._db.execute("PRAGMA foreign_keys=ON")
        await self._db.executescript(SCHEMA_SQL)
        await self._db.commit()

    async def close(self) -> None:
        """Close the connection if open."""
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> SQLiteRecordBackend:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    def _ensure_connected(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Not connected -- use 'async with' or call connect()")
        return self._db

    @staticmethod
    def _now_iso() -> str:
        return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")

    # ------------------------------------------------------------------
    # RecordBackend
    # ------------------------------------------------------------------

    async def parent_exists(self, parent_id: str) -> bool:
        db = self._ensure_connected()
        cursor = await db.execute("SELECT 1 FROM versions WHERE id = ?", (parent_id,))
        return await cursor.fetchone() is not None

    async def list_sibling_labels(self, parent_id: str) -> list[str]:
        """Return the labels of every variation under *parent_id*, highest first."""
        db = self._ensure_connected()
        cursor = await db.execute(
            """SELECT variation_letter FROM variations
               WHERE version_id = ?
               ORDER BY variation_letter DESC""",
            (parent_id,),
        )
        rows = await cursor.fetchall()
        return [row["variation_letter"] for row in rows]

    async def create_record(
        self,
        parent_id: str,
        label: str,
        initial_status: str = VariationFeedbackStatus.PENDING_FEEDBACK.value,
    ) -> str:
        """Insert a variation placeholder and return its id.

        Raises:
            ProvisioningError: On any constraint violation or database error;
                nothing is written in that case.
        """
        db = self._ensure_connected()
        record_id = new_id()
        try:
            await db.execute(
                """INSERT INTO variations (id, version_id, variation_letter, status)
                   VALUES (?, ?, ?, ?)""",
                (record_id, parent_id, label, initial_status),
            )
            await db.commit()
        except sqlite3.Error as exc:
            await db.rollback()
            raise ProvisioningError(
                f"Failed to create DB record for variation {label}: {exc}"
            ) from exc
        logger.debug("Created variation %s (%s) under %s", record_id, label, parent_id)
        return record_id

    async def update_record(self, record_id: str, location: str) -> None:
        """Write the stored file path back into a variation.

        Raises:
            LinkError: If the record is gone (not retryable) or the write
                failed (retryable).
        """
        db = self._ensure_connected()
        try:
            cursor = await db.execute(
                "UPDATE variations SET file_path = ?, updated_at = ? WHERE id = ?",
                (location, self._now_iso(), record_id),
            )
            await db.commit()
        except sqlite3.Error as exc:
            raise LinkError(
                f"Failed to link file path for {record_id}: {exc}", retryable=True
            ) from exc
        if cursor.rowcount == 0:
            raise LinkError(f"Variation {record_id} no longer exists", retryable=False)

    # ------------------------------------------------------------------
    # Version and path helpers
    # ------------------------------------------------------------------

    async def design_exists(self, design_id: str) -> bool:
        db = self._ensure_connected()
        cursor = await db.execute("SELECT 1 FROM designs WHERE id = ?", (design_id,))
        return await cursor.fetchone() is not None

    async def create_version(
        self,
        design_id: str,
        stage: DesignStage = DesignStage.SKETCH,
        status: str = "Work in Progress",
    ) -> tuple[str, int]:
        """Create the next version of a design.

        Returns:
            Tuple of (version_id, version_number).
        """
        db = self._ensure_connected()
        cursor = await db.execute(
            "SELECT COALESCE(MAX(version_number), 0) AS latest FROM versions WHERE design_id = ?",
            (design_id,),
        )
        row = await cursor.fetchone()
        version_number = row["latest"] + 1
        version_id = new_id()
        try:
            await db.execute(
                """INSERT INTO versions (id, design_id, version_number, status, stage)
                   VALUES (?, ?, ?, ?, ?)""",
                (version_id, design_id, version_number, status, stage.value),
            )
            await db.commit()
        except sqlite3.Error as exc:
            await db.rollback()
            raise ProvisioningError(f"Failed to create version: {exc}") from exc
        logger.info("Created version %d (%s) of design %s", version_number, version_id, design_id)
        return version_id, version_number

    async def collection_path(self, version_id: str) -> str | None:
        """Return the storage prefix for a version's variations, or None if unknown."""
        db = self._ensure_connected()
        cursor = await db.execute(
            """SELECT d.project_id, v.design_id
               FROM versions v JOIN designs d ON d.id = v.design_id
               WHERE v.id = ?""",
            (version_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return variation_collection_path(row["project_id"], row["design_id"], version_id)

    async def get_record(self, record_id: str) -> dict | None:
        """Return a variation row as a dict, or None."""
        db = self._ensure_connected()
        cursor = await db.execute(
            """SELECT id, version_id, variation_letter, status, file_path
               FROM variations WHERE id = ?""",
            (record_id,),
        )
        row = await cursor.fetchone()
        return dict(row) if row is not None else None
