"""Object storage client for signed, single-use uploads.

Implements the two-step upload against a Supabase-compatible Storage API:

  1. ``POST /storage/v1/object/upload/sign/{bucket}/{path}`` -- returns a
     time-boxed signed URL valid for exactly one upload
  2. ``PUT`` the bytes to that URL, streamed in chunks so progress can be
     reported as the transport consumes them

Signed targets are never cached; every transfer attempt requests its own.
"""

from __future__ import annotations

import logging
from typing import Callable
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from designlib.ingest.exceptions import (
    AuthorizationError,
    TransferNetworkError,
    TransferRejectedError,
)
from designlib.models import IngestConfig, SourcePayload

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


class SignedUrlResponse(BaseModel):
    """Body returned by the sign endpoint."""

    model_config = ConfigDict(extra="ignore")

    url: str


class SignedUploadTarget(BaseModel):
    """A single-use write authorization for one object path."""

    model_config = ConfigDict(frozen=True)

    bucket: str
    path: str
    url: str
    upsert: bool = False


class StorageClient:
    """Async HTTP client for the object store.

    Usage::

        async with StorageClient(config) as storage:
            target = await storage.request_write_target("projects/p/.../a.png")
            await storage.put_object(target, payload, on_progress=print)

    Args:
        config: Pipeline configuration (endpoint, bucket, key, chunk size).
        transport: Optional httpx transport, e.g. ``httpx.MockTransport`` in
            tests.
    """

    def __init__(
        self,
        config: IngestConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._base_url = config.storage_url.rstrip("/")
        headers = {}
        if config.service_key:
            headers["Authorization"] = f"Bearer {config.service_key}"
            headers["apikey"] = config.service_key
        # No read/write timeout: transfers run until they finish, fail, or are cancelled
        self._client = httpx.AsyncClient(
            headers=headers,
            timeout=httpx.Timeout(None, connect=config.connect_timeout_seconds),
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> StorageClient:
        return self

    async def __aexit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Step 1: signed upload target
    # ------------------------------------------------------------------

    async def request_write_target(
        self, path: str, upsert: bool = False
    ) -> SignedUploadTarget:
        """Obtain a fresh signed upload URL for *path*.

        Raises:
            AuthorizationError: On network failure, non-2xx status, or a
                malformed response.
        """
        bucket = self._config.bucket
        endpoint = (
            f"{self._base_url}/storage/v1/object/upload/sign/"
            f"{quote(bucket)}/{quote(path)}"
        )
        headers = {"x-upsert": "true"} if upsert else {}
        try:
            response = await self._client.post(endpoint, headers=headers)
        except httpx.HTTPError as exc:
            raise AuthorizationError(
                f"Failed to get signed upload URL: {exc}"
            ) from exc

        if not response.is_success:
            raise AuthorizationError(
                f"Failed to get signed upload URL: Status {response.status_code} "
                f"{response.text[:200]}"
            )
        try:
            signed = SignedUrlResponse.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise AuthorizationError(
                f"Failed to get signed upload URL: malformed response ({exc})"
            ) from exc

        url = signed.url
        if not url.startswith("http"):
            url = f"{self._base_url}/storage/v1{url}"
        logger.debug("Signed upload target for %s/%s", bucket, path)
        return SignedUploadTarget(bucket=bucket, path=path, url=url, upsert=upsert)

    # ------------------------------------------------------------------
    # Step 2: streamed PUT
    # ------------------------------------------------------------------

    async def put_object(
        self,
        target: SignedUploadTarget,
        payload: SourcePayload,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        """Stream *payload* to *target*.

        *on_progress* receives ``(bytes_sent, total_bytes)`` each time the
        transport has consumed a chunk.

        Raises:
            TransferNetworkError: If the connection fails mid-transfer.
            TransferRejectedError: If the server answers with a non-2xx status.
        """
        chunk_size = self._config.chunk_size

        async def _body():
            sent = 0
            async for chunk in payload.iter_chunks(chunk_size):
                yield chunk
                sent += len(chunk)
                if on_progress is not None:
                    on_progress(sent, payload.size)

        headers = {
            "Content-Type": payload.content_type,
            "Content-Length": str(payload.size),
        }
        if target.upsert:
            headers["x-upsert"] = "true"

        try:
            response = await self._client.put(target.url, content=_body(), headers=headers)
        except httpx.TransportError as exc:
            raise TransferNetworkError(
                f"Storage upload failed: Network error ({exc.__class__.__name__})"
            ) from exc

        if not response.is_success:
            raise TransferRejectedError(response.status_code, response.reason_phrase)
