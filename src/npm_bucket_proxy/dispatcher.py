"""Per-request pipeline: cache lookup, rewrite, resolve, storage, response."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

from common.logging_utils import extra_context, is_debug_enabled
from constants import CachePolicies

from .cache import CachedResponse, EdgeCache, cache_key
from .errors import ProxyError
from .path_resolver import PathResolver
from .responses import ProxyResponse, ResponseBuilder
from .rewrite import RewriteHook, apply_rewrite
from .storage import BodyStream, StorageGateway

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProxyRequest:
    """An inbound request, reduced to what the pipeline needs.

    ``raw_path`` is the path exactly as sent, still percent-encoded and
    without the query string. ``url`` is the normalized request URL the
    edge cache is keyed on.
    """

    method: str
    raw_path: str
    url: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def if_none_match(self) -> Optional[str]:
        for key, value in self.headers.items():
            if key.lower() == "if-none-match":
                return value
        return None

    @property
    def cache_url(self) -> str:
        return self.url or self.raw_path


class RequestDispatcher:
    """Wires the proxy pipeline together for each request.

    The dispatcher keeps no per-request state on the instance, so one
    dispatcher serves any number of concurrent requests. It performs a single
    storage call per request (plus one HEAD per cache hit under the
    revalidate policy) and never retries.
    """

    def __init__(
        self,
        storage: StorageGateway,
        cache: Optional[EdgeCache] = None,
        rewrite: Optional[RewriteHook] = None,
        cache_policy: CachePolicies = CachePolicies.TRUST_TTL,
        resolver: Optional[PathResolver] = None,
        builder: Optional[ResponseBuilder] = None,
    ):
        """Initialize the dispatcher.

        Args:
            storage: Bucket gateway.
            cache: Optional edge cache; None disables caching entirely.
            rewrite: Optional rewrite hook applied to the raw path.
            cache_policy: Whether cache hits are trusted or revalidated.
            resolver: Path resolver override.
            builder: Response builder override.
        """
        self._storage = storage
        self._cache = cache
        self._rewrite = rewrite
        self._cache_policy = cache_policy
        self._resolver = resolver or PathResolver()
        self._builder = builder or ResponseBuilder()

    @property
    def storage(self) -> StorageGateway:
        return self._storage

    @property
    def cache(self) -> Optional[EdgeCache]:
        return self._cache

    async def dispatch(self, request: ProxyRequest) -> ProxyResponse:
        """Handle one GET or HEAD request.

        Args:
            request: The inbound request.

        Returns:
            The response; a GET body is a lazy stream the caller must drain
            or close.
        """
        method = request.method.upper()
        key = cache_key(method, request.cache_url)

        cached = await self._lookup(key, request)
        if cached is not None:
            logger.debug("Cache hit: %s", key)
            return self._builder.from_cached(cached, method, request.if_none_match)

        try:
            raw_path = apply_rewrite(self._rewrite, request.raw_path)
            resolved = self._resolver.resolve(raw_path)
            if is_debug_enabled(logger):
                logger.debug(
                    "Resolved %s %s -> %r",
                    method, request.raw_path, resolved.key,
                    extra=extra_context(
                        event="path_resolved",
                        component="dispatcher",
                        package_name=resolved.package_name,
                        version=resolved.version,
                        is_tarball=resolved.is_tarball,
                    ),
                )

            if method == "HEAD":
                meta = await self._storage.head(resolved.key)
                response = self._builder.from_head(meta, request.if_none_match)
            else:
                obj = await self._storage.get(resolved.key)
                response = await self._builder.from_get(obj, request.if_none_match)
        except ProxyError as e:
            logger.info("%s %s failed: %s", method, request.raw_path, e)
            return self._builder.from_error(e)

        if response.status == 404:
            logger.debug("Not found: %s %s", method, request.raw_path)

        if self._cache is not None and response.cacheable and response.status == 200:
            if response.body is None:
                await self._store(key, CachedResponse(response.status, dict(response.headers)))
            else:
                self._tee_into_cache(key, response)
        return response

    async def _lookup(self, key: str, request: ProxyRequest) -> Optional[CachedResponse]:
        if self._cache is None:
            return None
        try:
            cached = await self._cache.lookup(key)
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.warning("Cache lookup failed for %s: %s", key, e)
            return None
        if cached is None:
            return None
        if self._cache_policy is CachePolicies.REVALIDATE and not await self._is_fresh(cached, request):
            logger.debug("Cache entry stale: %s", key)
            return None
        return cached

    async def _is_fresh(self, cached: CachedResponse, request: ProxyRequest) -> bool:
        """Check a cache entry's validator against storage with a HEAD."""
        if not cached.etag:
            return True
        try:
            resolved = self._resolver.resolve(apply_rewrite(self._rewrite, request.raw_path))
            meta = await self._storage.head(resolved.key)
        except ProxyError as e:
            logger.info("Revalidation failed for %s: %s", request.raw_path, e)
            return False
        return meta is not None and meta.etag == cached.etag

    async def _store(self, key: str, cached: CachedResponse) -> None:
        cache = self._cache
        if cache is None:
            return
        try:
            await cache.store(key, cached)
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.warning("Cache store failed for %s: %s", key, e)

    def _tee_into_cache(self, key: str, response: ProxyResponse) -> None:
        """Accumulate the streamed body and store it once fully forwarded.

        Only bodies with a known size within the cache's entry limit are
        teed; anything else streams through untouched.
        """
        cache = self._cache
        source = response.body
        if cache is None or source is None:
            return
        declared = response.headers.get("Content-Length")
        size = int(declared) if declared is not None and declared.isdigit() else None
        limit = cache.max_entry_bytes()
        if limit is not None and (size is None or size > limit):
            return

        status = response.status
        headers = dict(response.headers)

        async def _chunks():
            buffer: List[bytes] = []
            async for chunk in source:
                buffer.append(chunk)
                yield chunk
            body = b"".join(buffer)
            if size is not None and len(body) != size:
                logger.warning("Body for %s was %d bytes, expected %d; not caching", key, len(body), size)
                return
            await self._store(key, CachedResponse(status, headers, body))

        response.body = BodyStream(_chunks(), release=source.aclose)
