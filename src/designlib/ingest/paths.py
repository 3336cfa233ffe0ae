"""Object path scheme for uploaded files.

Paths are deterministic (``{collection}/{record_id}/{filename}``) so a failed
upload that is re-submitted for the same record overwrites the earlier
attempt instead of leaving an orphan.
"""

from __future__ import annotations

import posixpath


def variation_collection_path(project_id: str, design_id: str, version_id: str) -> str:
    return f"projects/{project_id}/designs/{design_id}/versions/{version_id}/variations"


def build_object_path(collection_path: str, record_id: str, filename: str) -> str:
    """Join the collection prefix, record id, and the file's base name."""
    name = posixpath.basename(filename.replace("\\", "/"))
    if not name:
        raise ValueError(f"Cannot derive an object name from {filename!r}")
    return f"{collection_path.strip('/')}/{record_id}/{name}"
