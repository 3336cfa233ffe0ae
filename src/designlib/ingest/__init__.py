"""Batch file-ingestion pipeline for design variations.

Public API
----------
.. autoclass:: BatchController
.. autoclass:: QueueStateStore
.. autoclass:: RecordProvisioner
.. autoclass:: WorkerPool
.. autoclass:: TransferWorker
.. autoclass:: Reconciler
.. autoclass:: StorageClient
.. autoclass:: SQLiteRecordBackend
.. autoclass:: IngestProgressTracker
"""

from designlib.ingest.controller import BatchController
from designlib.ingest.exceptions import (
    AuthorizationError,
    BatchValidationError,
    IngestError,
    InvalidTransitionError,
    LinkError,
    ProvisioningError,
    SequenceExhaustedError,
    TransferError,
    TransferNetworkError,
    TransferRejectedError,
)
from designlib.ingest.pool import WorkerPool
from designlib.ingest.progress import IngestProgressTracker
from designlib.ingest.provisioner import RecordProvisioner
from designlib.ingest.reconciler import Reconciler
from designlib.ingest.records import RecordBackend, SQLiteRecordBackend
from designlib.ingest.sequence import allocate_labels, next_label
from designlib.ingest.storage import SignedUploadTarget, StorageClient
from designlib.ingest.store import QueueStateStore
from designlib.ingest.transfer import CancelHandle, TransferOutcome, TransferWorker

__all__ = [
    "AuthorizationError",
    "BatchController",
    "BatchValidationError",
    "CancelHandle",
    "IngestError",
    "IngestProgressTracker",
    "InvalidTransitionError",
    "LinkError",
    "ProvisioningError",
    "QueueStateStore",
    "Reconciler",
    "RecordBackend",
    "RecordProvisioner",
    "SQLiteRecordBackend",
    "SequenceExhaustedError",
    "SignedUploadTarget",
    "StorageClient",
    "TransferError",
    "TransferNetworkError",
    "TransferOutcome",
    "TransferRejectedError",
    "TransferWorker",
    "WorkerPool",
    "allocate_labels",
    "next_label",
]
