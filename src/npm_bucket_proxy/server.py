"""Bucket proxy server using aiohttp."""

from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from aiohttp import web

from constants import CachePolicies, Constants

from .cache import MemoryEdgeCache
from .dispatcher import ProxyRequest, RequestDispatcher
from .http_bucket import HttpBucketGateway
from .responses import ProxyResponse
from .rewrite import StaticRewrite
from .storage import DirectoryBucket, StorageGateway

logger = logging.getLogger(__name__)


@dataclass
class ProxyConfig:
    """Configuration for the proxy server."""

    host: str = Constants.DEFAULT_HOST
    port: int = Constants.DEFAULT_PORT
    bucket_url: Optional[str] = None
    bucket_dir: Optional[str] = None
    rewrites: Dict[str, str] = field(default_factory=lambda: dict(Constants.DEFAULT_REWRITES))
    cache_enabled: bool = True
    cache_ttl: int = Constants.CACHE_TTL_SEC
    cache_max_bytes: int = Constants.CACHE_MAX_BYTES
    cache_policy: str = CachePolicies.TRUST_TTL.value
    timeout: int = Constants.REQUEST_TIMEOUT
    chunk_size: int = Constants.STREAM_CHUNK_SIZE
    not_found_statuses: List[int] = field(default_factory=lambda: list(Constants.NOT_FOUND_STATUSES))
    allow_external: bool = False

    _FILE_KEYS = (
        "host", "port", "bucket_url", "bucket_dir", "rewrites", "cache_enabled",
        "cache_ttl", "cache_max_bytes", "cache_policy", "timeout", "chunk_size",
        "not_found_statuses",
    )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProxyConfig":
        """Create config from a mapping (e.g. a parsed YAML file); unknown keys are ignored."""
        config = cls()
        for key in cls._FILE_KEYS:
            if key in data and data[key] is not None:
                setattr(config, key, data[key])
        if not isinstance(config.rewrites, dict):
            raise ValueError("'rewrites' must be a mapping of raw paths")
        config.rewrites = {str(k): str(v) for k, v in config.rewrites.items()}
        if config.cache_policy not in Constants.CACHE_POLICIES:
            raise ValueError(f"Unknown cache_policy {config.cache_policy!r}")
        if isinstance(config.not_found_statuses, int):
            config.not_found_statuses = [config.not_found_statuses]
        try:
            config.not_found_statuses = [int(status) for status in config.not_found_statuses]
        except (TypeError, ValueError) as e:
            raise ValueError("'not_found_statuses' must be a list of HTTP status codes") from e
        return config

    @classmethod
    def from_args(cls, args: Any, base: Optional["ProxyConfig"] = None) -> "ProxyConfig":
        """Create config from CLI arguments.

        Args:
            args: Parsed CLI arguments namespace.
            base: Config loaded from file; CLI values override it.

        Returns:
            ProxyConfig instance.
        """
        config = base or cls()

        overrides = {
            "host": getattr(args, "PROXY_HOST", None),
            "port": getattr(args, "PROXY_PORT", None),
            "bucket_url": getattr(args, "BUCKET_URL", None),
            "bucket_dir": getattr(args, "BUCKET_DIR", None),
            "cache_ttl": getattr(args, "CACHE_TTL", None),
            "cache_max_bytes": getattr(args, "CACHE_MAX_BYTES", None),
            "cache_policy": getattr(args, "CACHE_POLICY", None),
            "timeout": getattr(args, "PROXY_TIMEOUT", None),
            "not_found_statuses": getattr(args, "NOT_FOUND_STATUSES", None),
        }
        for key, value in overrides.items():
            if value is not None:
                setattr(config, key, value)

        if getattr(args, "NO_CACHE", False):
            config.cache_enabled = False
        if getattr(args, "NO_REWRITES", False):
            config.rewrites = {}
        if getattr(args, "ALLOW_EXTERNAL", False):
            config.allow_external = True
        return config

    def build_storage(self) -> StorageGateway:
        """Create the storage gateway this config describes."""
        if self.bucket_url and self.bucket_dir:
            raise ValueError("Configure either bucket_url or bucket_dir, not both")
        if self.bucket_url:
            return HttpBucketGateway(
                self.bucket_url,
                timeout=self.timeout,
                chunk_size=self.chunk_size,
                not_found_statuses=self.not_found_statuses,
            )
        if self.bucket_dir:
            return DirectoryBucket(self.bucket_dir, chunk_size=self.chunk_size)
        raise ValueError("No bucket configured: set bucket_url or bucket_dir")


class BucketProxyServer:
    """HTTP front end translating npm registry requests into bucket reads.

    Only GET and HEAD are routed; aiohttp answers every other method with 405.
    """

    def __init__(self, config: ProxyConfig, storage: Optional[StorageGateway] = None):
        """Initialize the proxy server.

        Args:
            config: Server configuration.
            storage: Storage gateway override; built from config when omitted.
        """
        self._config = config
        self._app: Optional[web.Application] = None
        self._runner: Optional[web.AppRunner] = None

        self._storage = storage if storage is not None else config.build_storage()
        self._cache = (
            MemoryEdgeCache(default_ttl=config.cache_ttl, max_bytes=config.cache_max_bytes)
            if config.cache_enabled
            else None
        )
        self._dispatcher = RequestDispatcher(
            storage=self._storage,
            cache=self._cache,
            rewrite=StaticRewrite(config.rewrites) if config.rewrites else None,
            cache_policy=CachePolicies(config.cache_policy),
        )

    @property
    def dispatcher(self) -> RequestDispatcher:
        return self._dispatcher

    def _create_app(self) -> web.Application:
        """Create the aiohttp application."""
        app = web.Application()
        app.router.add_get(Constants.HEALTH_PATH, self._health_check)
        # add_get also registers HEAD for the same handler
        app.router.add_get("/{path:.*}", self._handle_request)
        app.on_startup.append(self._on_startup)
        app.on_cleanup.append(self._on_cleanup)
        return app

    async def _health_check(self, request: web.Request) -> web.Response:
        """Health check endpoint."""
        return web.json_response({
            "status": "ok",
            "storage": self._storage.describe(),
            "cache": self.cache_stats(),
        })

    async def _on_startup(self, app: web.Application) -> None:
        """Called when the server starts."""
        await self._storage.start()
        logger.info("Proxy server starting on %s:%s", self._config.host, self._config.port)

    async def _on_cleanup(self, app: web.Application) -> None:
        """Called when the server stops."""
        await self._storage.stop()
        logger.info("Proxy server stopped")

    @staticmethod
    def to_proxy_request(request: web.Request) -> ProxyRequest:
        """Reduce an aiohttp request to the pipeline's view of it.

        The path is taken still percent-encoded so scoped names sent as
        ``%2F`` survive until the resolver decodes them.
        """
        raw_path = request.rel_url.raw_path or "/"
        url = f"{request.scheme}://{request.host.lower()}{raw_path}"
        headers = {}
        if_none_match = request.headers.get("If-None-Match")
        if if_none_match is not None:
            headers["If-None-Match"] = if_none_match
        return ProxyRequest(method=request.method, raw_path=raw_path, url=url, headers=headers)

    async def _handle_request(self, request: web.Request) -> web.StreamResponse:
        """Handle incoming registry requests.

        Args:
            request: Incoming HTTP request.

        Returns:
            HTTP response.
        """
        proxy_request = self.to_proxy_request(request)
        result = await self._dispatcher.dispatch(proxy_request)
        logger.info("%s %s -> %s", proxy_request.method, proxy_request.raw_path, result.status)
        return await self._send(request, result)

    async def _send(self, request: web.Request, result: ProxyResponse) -> web.StreamResponse:
        """Write a pipeline response, streaming the body chunk by chunk."""
        response = web.StreamResponse(status=result.status, headers=result.headers)
        try:
            await response.prepare(request)
            if result.body is not None and request.method != "HEAD":
                async for chunk in result.body:
                    await response.write(chunk)
            await response.write_eof()
        finally:
            # Also runs on client disconnect or cancellation: stop pulling from storage.
            await result.close()
        return response

    def cache_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        if self._cache is None:
            return {"enabled": False}
        return {"enabled": True, **self._cache.stats()}

    async def start(self) -> None:
        """Start the proxy server."""
        self._app = self._create_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()

        site = web.TCPSite(
            self._runner,
            self._config.host,
            self._config.port,
        )
        await site.start()

        logger.info(
            "npm bucket proxy listening on http://%s:%s",
            self._config.host, self._config.port,
        )
        logger.info("Storage: %s", self._storage.describe())
        logger.info("Cache: %s", "enabled" if self._cache is not None else "disabled")

    async def stop(self) -> None:
        """Stop the proxy server."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self._app = None


def run_proxy_server_sync(config: ProxyConfig, storage: Optional[StorageGateway] = None) -> None:
    """Run the proxy server synchronously.

    Installs signal handlers for SIGTERM and SIGINT for clean shutdown.

    Args:
        config: Server configuration.
        storage: Prebuilt storage gateway, if any.
    """
    server = BucketProxyServer(config, storage=storage)
    loop = asyncio.new_event_loop()

    async def run():
        await server.start()
        stop_event = asyncio.Event()
        running_loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            running_loop.add_signal_handler(sig, stop_event.set)
        await stop_event.wait()
        logger.info("Shutdown signal received, stopping...")
        await server.stop()

    try:
        loop.run_until_complete(run())
    except KeyboardInterrupt:
        # Fallback for platforms where signal handlers don't work (Windows)
        loop.run_until_complete(server.stop())
    finally:
        loop.close()
        logger.info("Proxy server shutdown complete")
