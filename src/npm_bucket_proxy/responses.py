"""Assemble HTTP responses from storage results.

This is the only module that maps outcomes (object, missing object, error)
to HTTP status codes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional

from constants import Constants

from .cache import CachedResponse
from .errors import BadPath, ProxyError, StorageUnavailable
from .storage import BodyStream, ObjectMeta, StorageObject, iter_bytes


@dataclass
class ProxyResponse:
    """Status, headers and an optional lazily streamed body."""

    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[BodyStream] = None
    cacheable: bool = False

    async def read(self) -> bytes:
        """Drain the body into memory (tests and small payloads only)."""
        if self.body is None:
            return b""
        return await self.body.read()

    async def close(self) -> None:
        if self.body is not None:
            await self.body.aclose()


def etag_matches(if_none_match: Optional[str], etag: Optional[str]) -> bool:
    """Weak comparison of an If-None-Match header against an entity tag."""
    if not if_none_match or not etag:
        return False
    candidates = [token.strip() for token in if_none_match.split(",") if token.strip()]
    if "*" in candidates:
        return True

    def _opaque(tag: str) -> str:
        return tag[2:] if tag.startswith("W/") else tag

    target = _opaque(etag)
    return any(_opaque(candidate) == target for candidate in candidates)


class ResponseBuilder:
    """Converts gateway results into :class:`ProxyResponse` objects."""

    def __init__(
        self,
        default_content_type: str = Constants.DEFAULT_CONTENT_TYPE,
        retry_after: int = Constants.RETRY_AFTER_SEC,
    ):
        self._default_content_type = default_content_type
        self._retry_after = retry_after

    def object_headers(self, meta: ObjectMeta) -> Dict[str, str]:
        """Headers shared by HEAD and GET responses for an object."""
        headers = {"Content-Type": meta.content_type or self._default_content_type}
        if meta.size is not None:
            headers["Content-Length"] = str(meta.size)
        if meta.etag:
            headers["ETag"] = meta.etag
        return headers

    def not_found(self) -> ProxyResponse:
        return ProxyResponse(status=404, headers={"Content-Length": "0"})

    def not_modified(self, etag: Optional[str]) -> ProxyResponse:
        headers = {"ETag": etag} if etag else {}
        return ProxyResponse(status=304, headers=headers)

    def from_head(self, meta: Optional[ObjectMeta], if_none_match: Optional[str] = None) -> ProxyResponse:
        """Build the response to a HEAD request."""
        if meta is None:
            return self.not_found()
        if etag_matches(if_none_match, meta.etag):
            return self.not_modified(meta.etag)
        return ProxyResponse(status=200, headers=self.object_headers(meta), cacheable=True)

    async def from_get(
        self, obj: Optional[StorageObject], if_none_match: Optional[str] = None
    ) -> ProxyResponse:
        """Build the response to a GET request, forwarding the body stream as is."""
        if obj is None:
            return self.not_found()
        if etag_matches(if_none_match, obj.meta.etag):
            await obj.body.aclose()
            return self.not_modified(obj.meta.etag)
        return ProxyResponse(
            status=200,
            headers=self.object_headers(obj.meta),
            body=obj.body,
            cacheable=True,
        )

    def from_error(self, error: ProxyError) -> ProxyResponse:
        """Map a pipeline error to an empty-bodied error response."""
        if isinstance(error, BadPath):
            return ProxyResponse(status=400, headers={"Content-Length": "0"})
        if isinstance(error, StorageUnavailable):
            upstream = error.upstream_status
            if upstream is None or upstream in (429, 503):
                return ProxyResponse(
                    status=503,
                    headers={"Content-Length": "0", "Retry-After": str(self._retry_after)},
                )
            return ProxyResponse(status=502, headers={"Content-Length": "0"})
        raise error

    def from_cached(
        self, cached: CachedResponse, method: str, if_none_match: Optional[str] = None
    ) -> ProxyResponse:
        """Rebuild a response from a cache entry."""
        if etag_matches(if_none_match, cached.etag):
            return self.not_modified(cached.etag)
        body = None
        if method != "HEAD" and cached.body:
            body = BodyStream(iter_bytes(cached.body, Constants.STREAM_CHUNK_SIZE))
        return ProxyResponse(status=cached.status, headers=dict(cached.headers), body=body)
