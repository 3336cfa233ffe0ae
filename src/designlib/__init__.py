"""Design-review records and batch file ingestion."""

__version__ = "0.1.0"

from designlib.models import (
    BatchSummary,
    IngestConfig,
    ItemStatus,
    QueueItem,
    SourcePayload,
)

__all__ = [
    "BatchSummary",
    "IngestConfig",
    "ItemStatus",
    "QueueItem",
    "SourcePayload",
    "__version__",
]
