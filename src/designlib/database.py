"""SQLite database layer for design-review records.

Manages schema initialization, WAL mode pragmas, and the handful of
synchronous CRUD helpers the CLI needs (creating projects, designs, and
versions, listing variations).  The ingestion pipeline itself talks to the
same schema asynchronously through
:class:`~designlib.ingest.records.SQLiteRecordBackend`.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from pathlib import Path

from designlib.models import DesignStage

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now'))
);

CREATE TABLE IF NOT EXISTS designs (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now'))
);

CREATE TABLE IF NOT EXISTS versions (
    id TEXT PRIMARY KEY,
    design_id TEXT NOT NULL REFERENCES designs(id) ON DELETE CASCADE,
    version_number INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'Work in Progress',
    stage TEXT NOT NULL DEFAULT 'sketch'
        CHECK(stage IN ('sketch', 'refine', 'color', 'final')),
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now')),
    updated_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now')),
    UNIQUE(design_id, version_number)
);

-- One row per uploaded image; variation_letter is the sibling label (A-Z)
CREATE TABLE IF NOT EXISTS variations (
    id TEXT PRIMARY KEY,
    version_id TEXT NOT NULL REFERENCES versions(id) ON DELETE CASCADE,
    variation_letter TEXT NOT NULL
        CHECK(length(variation_letter) = 1 AND variation_letter BETWEEN 'A' AND 'Z'),
    status TEXT NOT NULL DEFAULT 'Pending Feedback',
    file_path TEXT,
    notes TEXT,
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now')),
    updated_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now')),
    UNIQUE(version_id, variation_letter)
);

CREATE INDEX IF NOT EXISTS idx_variations_version ON variations(version_id);
CREATE INDEX IF NOT EXISTS idx_versions_design ON versions(design_id);
"""


def new_id() -> str:
    """Return a fresh opaque record identifier."""
    return str(uuid.uuid4())


class Database:
    """SQLite database wrapper for projects, designs, versions, and variations.

    Usage:
        with Database("data/designs.db") as db:
            project_id = db.create_project("Spring campaign")
            design_id = db.create_design(project_id, "Poster")
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = str(db_path)
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self.conn = sqlite3.connect(
            self.db_path,
            autocommit=sqlite3.LEGACY_TRANSACTION_CONTROL,
        )
        self.conn.row_factory = sqlite3.Row
        self._setup_pragmas()
        self._setup_schema()

    def _setup_pragmas(self) -> None:
        """Configure SQLite pragmas for performance and reliability."""
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA synchronous=NORMAL")
        self.conn.execute("PRAGMA foreign_keys=ON")

        result = self.conn.execute("PRAGMA journal_mode").fetchone()[0]
        if result != "wal":
            logger.warning("WAL mode not enabled, got: %s", result)

    def _setup_schema(self) -> None:
        """Create tables and indexes if they don't exist."""
        self.conn.executescript(SCHEMA_SQL)
        self.conn.execute("PRAGMA user_version = 1")

    def create_project(self, name: str) -> str:
        project_id = new_id()
        with self.conn:
            self.conn.execute(
                "INSERT INTO projects (id, name) VALUES (?, ?)", (project_id, name)
            )
        return project_id

    def create_design(self, project_id: str, name: str) -> str:
        design_id = new_id()
        with self.conn:
            self.conn.execute(
                "INSERT INTO designs (id, project_id, name) VALUES (?, ?, ?)",
                (design_id, project_id, name),
            )
        return design_id

    def create_version(
        self,
        design_id: str,
        version_number: int | None = None,
        stage: DesignStage = DesignStage.SKETCH,
    ) -> str:
        """Insert a version; *version_number* defaults to the next free number."""
        version_id = new_id()
        with self.conn:
            if version_number is None:
                row = self.conn.execute(
                    "SELECT COALESCE(MAX(version_number), 0) FROM versions WHERE design_id = ?",
                    (design_id,),
                ).fetchone()
                version_number = row[0] + 1
            self.conn.execute(
                """INSERT INTO versions (id, design_id, version_number, stage)
                   VALUES (?, ?, ?, ?)""",
                (version_id, design_id, version_number, stage.value),
            )
        return version_id

    def get_version(self, version_id: str) -> sqlite3.Row | None:
        """Return a version joined with its design's project id, or None."""
        return self.conn.execute(
            """SELECT v.id, v.design_id, v.version_number, v.status, v.stage,
                      d.project_id
               FROM versions v JOIN designs d ON d.id = v.design_id
               WHERE v.id = ?""",
            (version_id,),
        ).fetchone()

    def get_variations(self, version_id: str) -> list[sqlite3.Row]:
        """Return the variations of a version ordered by letter."""
        return self.conn.execute(
            """SELECT id, variation_letter, status, file_path, updated_at
               FROM variations
               WHERE version_id = ?
               ORDER BY variation_letter""",
            (version_id,),
        ).fetchall()

    def close(self) -> None:
        """Close the database connection."""
        self.conn.close()

    def __enter__(self) -> Database:
        return self

    def __exit__(self, exc_type: type | None, exc_val: BaseException | None, exc_tb: object) -> None:
        self.close()
