"""Write uploaded locations back into their provisioned records.

A link failure never fails the item: the bytes are already stored, so the
item stays ``success`` and is flagged as unlinked in the batch summary.
"""

from __future__ import annotations

import logging

from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from designlib.ingest.exceptions import LinkError
from designlib.ingest.records import RecordBackend

logger = logging.getLogger(__name__)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, LinkError) and exc.retryable


class Reconciler:
    """Links a stored object path to its variation record.

    Args:
        backend: Record store to update.
        attempts: Total attempts for retryable link failures.
        max_wait: Upper bound in seconds for the exponential back-off.
    """

    def __init__(
        self, backend: RecordBackend, attempts: int = 3, max_wait: float = 4.0
    ) -> None:
        self._backend = backend
        self._attempts = max(1, attempts)
        self._max_wait = max_wait

    async def _update(self, record_id: str, location: str) -> None:
        try:
            await self._backend.update_record(record_id, location)
        except LinkError:
            raise
        except Exception as exc:
            raise LinkError(f"Failed to link file path for {record_id}: {exc}") from exc

    async def link(self, record_id: str, location: str) -> bool:
        """Record *location* on *record_id*.

        Returns:
            True when linked, False on a final :class:`LinkError`.
        """
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._attempts),
                wait=wait_exponential(multiplier=min(0.5, self._max_wait), max=self._max_wait),
                retry=retry_if_exception(_is_retryable),
                reraise=True,
            ):
                with attempt:
                    await self._update(record_id, location)
        except LinkError as exc:
            logger.warning(
                "Uploaded %s but could not link it to record %s: %s",
                location,
                record_id,
                exc,
            )
            return False
        logger.debug("Linked %s -> %s", record_id, location)
        return True
