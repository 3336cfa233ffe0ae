"""Exception taxonomy for the ingestion pipeline.

Per-item failures are recorded in the queue state store and never propagate
past the batch controller; only :class:`BatchValidationError` reaches callers.
"""

from __future__ import annotations


class IngestError(Exception):
    """Base class for ingestion pipeline errors."""

    kind = "ingest_failure"


class BatchValidationError(IngestError):
    """Raised when a batch cannot start (no files, unknown parent)."""

    kind = "batch_validation"


class ProvisioningError(IngestError):
    """Raised when the record backend rejects record creation."""

    kind = "provisioning_failure"


class SequenceExhaustedError(ProvisioningError):
    """Raised when no label remains after ``Z`` for a parent collection."""

    kind = "sequence_exhausted"


class TransferError(IngestError):
    """Base class for failures while moving bytes to object storage."""

    kind = "transfer_failure"


class AuthorizationError(TransferError):
    """Raised when a signed upload target cannot be obtained."""

    kind = "authorization_failure"


class TransferNetworkError(TransferError):
    """Raised when the connection drops during the byte transfer."""

    kind = "transfer_network_failure"


class TransferRejectedError(TransferError):
    """Raised when the storage server answers the upload with a non-2xx status."""

    kind = "transfer_server_rejection"

    def __init__(self, status_code: int, detail: str = "") -> None:
        self.status_code = status_code
        self.detail = detail
        message = f"Storage upload failed: Status {status_code}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class LinkError(IngestError):
    """Raised when the uploaded location cannot be written back to its record."""

    kind = "link_failure"

    def __init__(self, message: str, retryable: bool = True) -> None:
        self.retryable = retryable
        super().__init__(message)


class InvalidTransitionError(IngestError):
    """Raised on an illegal non-terminal lifecycle transition."""

    kind = "invalid_transition"
