"""Storage gateway for publicly readable buckets served over HTTP."""

from __future__ import annotations

import asyncio
import logging
import urllib.parse
from typing import Any, Dict, Iterable, Optional

import aiohttp

from common.logging_utils import Timer, extra_context, is_debug_enabled, safe_url
from constants import Constants

from .errors import StorageUnavailable
from .storage import BodyStream, ObjectMeta, StorageGateway, StorageObject

logger = logging.getLogger(__name__)


class HttpBucketGateway(StorageGateway):
    """Reads objects from an S3/R2-compatible public bucket endpoint.

    ``base_url`` is the URL under which object keys are addressable, e.g.
    ``https://bucket.example.r2.dev``. Absence is reported only for
    ``not_found_statuses``; every other failure becomes StorageUnavailable.
    """

    # Bodies are forwarded byte for byte, so ask for them unencoded.
    _REQUEST_HEADERS = {
        "User-Agent": "npm-bucket-proxy/1.0",
        "Accept": "*/*",
        "Accept-Encoding": "identity",
    }

    def __init__(
        self,
        base_url: str,
        timeout: int = Constants.REQUEST_TIMEOUT,
        chunk_size: int = Constants.STREAM_CHUNK_SIZE,
        not_found_statuses: Iterable[int] = (404,),
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """Initialize the gateway.

        Args:
            base_url: Bucket base URL.
            timeout: Total request timeout in seconds.
            chunk_size: Size of body chunks pulled from the bucket.
            not_found_statuses: Upstream statuses meaning "no such key".
            session: Optional externally managed client session.
        """
        self._base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._chunk_size = max(1, chunk_size)
        self._not_found_statuses = frozenset(not_found_statuses)
        self._session = session
        self._owns_session = session is None

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def not_found_statuses(self) -> frozenset:
        return self._not_found_statuses

    async def start(self) -> None:
        """Start the HTTP session."""
        if self._session is None:
            connector = aiohttp.TCPConnector(limit=100)
            self._session = aiohttp.ClientSession(
                timeout=self._timeout,
                connector=connector,
                auto_decompress=False,
            )
            self._owns_session = True

    async def stop(self) -> None:
        """Stop the HTTP session."""
        if self._session and self._owns_session:
            await self._session.close()
        self._session = None

    def build_url(self, key: str) -> str:
        """Build the object URL for a storage key."""
        return f"{self._base_url}/{urllib.parse.quote(key, safe='/@')}"

    async def head(self, key: str) -> Optional[ObjectMeta]:
        if not key:
            return None
        response = await self._request("HEAD", key)
        try:
            if response.status in self._not_found_statuses:
                return None
            self._raise_for_status(key, response)
            return self._meta(key, response.headers)
        finally:
            response.release()

    async def get(self, key: str) -> Optional[StorageObject]:
        if not key:
            return None
        response = await self._request("GET", key)
        try:
            if response.status in self._not_found_statuses:
                response.release()
                return None
            self._raise_for_status(key, response)
        except StorageUnavailable:
            response.release()
            raise

        return StorageObject(
            meta=self._meta(key, response.headers),
            body=BodyStream(self._iter_body(key, response), release=response.release),
        )

    async def _request(self, method: str, key: str) -> aiohttp.ClientResponse:
        if self._session is None:
            await self.start()
        assert self._session is not None

        url = self.build_url(key)
        with Timer() as t:
            try:
                response = await self._session.request(
                    method,
                    url,
                    headers=self._REQUEST_HEADERS,
                    allow_redirects=False,
                )
            except asyncio.TimeoutError as e:
                logger.warning("Storage %s timed out: %s", method, safe_url(url))
                raise StorageUnavailable(key, "timed out") from e
            except aiohttp.ClientError as e:
                logger.warning("Storage %s failed: %s (%s)", method, safe_url(url), e)
                raise StorageUnavailable(key, str(e) or type(e).__name__) from e

        if is_debug_enabled(logger):
            logger.debug(
                "Storage response",
                extra=extra_context(
                    event="storage_response",
                    component="http_bucket",
                    action=method,
                    status_code=response.status,
                    duration_ms=t.duration_ms(),
                    target=safe_url(url),
                ),
            )
        return response

    def _raise_for_status(self, key: str, response: aiohttp.ClientResponse) -> None:
        if 200 <= response.status < 300:
            return
        logger.warning("Storage returned %s for key %s", response.status, key)
        raise StorageUnavailable(
            key,
            f"unexpected upstream status {response.status}",
            upstream_status=response.status,
            retryable=response.status >= 500 or response.status == 429,
        )

    async def _iter_body(self, key: str, response: aiohttp.ClientResponse):
        try:
            async for chunk in response.content.iter_chunked(self._chunk_size):
                yield chunk
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Storage body read failed for key %s: %s", key, e)
            raise StorageUnavailable(key, "body read failed") from e

    @staticmethod
    def _meta(key: str, headers: Any) -> ObjectMeta:
        lower: Dict[str, str] = {k.lower(): str(v) for k, v in headers.items()}
        size: Optional[int] = None
        length = lower.get("content-length")
        if length is not None and length.isdigit():
            size = int(length)
        return ObjectMeta(
            key=key,
            size=size,
            content_type=lower.get("content-type") or None,
            etag=lower.get("etag") or None,
        )

    def describe(self) -> Dict[str, Any]:
        return {"backend": "http", "base_url": safe_url(self._base_url)}

    async def __aenter__(self) -> "HttpBucketGateway":
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.stop()
