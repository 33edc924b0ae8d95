"""Tests for the proxy server."""

import asyncio
from unittest.mock import MagicMock, patch

import pytest

# Check if aiohttp is available
aiohttp_mod = pytest.importorskip("aiohttp")

import aiohttp
import aiohttp.test_utils
from aiohttp import web
from yarl import URL

from npm_bucket_proxy.errors import StorageUnavailable
from npm_bucket_proxy.http_bucket import HttpBucketGateway
from npm_bucket_proxy.server import BucketProxyServer, ProxyConfig
from npm_bucket_proxy.storage import BodyStream, DirectoryBucket, MemoryBucket, ObjectMeta, StorageObject


def _bucket():
    bucket = MemoryBucket(chunk_size=4)
    bucket.put("@jsr/std__yaml", "{}", content_type="application/json")
    bucket.put("root.json", '{"registry":"root"}', content_type="application/json")
    return bucket


def _serve(server, scenario):
    """Run ``scenario(session, base_url)`` against the server's app."""
    async def _run():
        app = server._create_app()
        async with aiohttp.test_utils.TestServer(app) as ts:
            async with aiohttp.ClientSession() as session:
                return await scenario(session, f"http://{ts.host}:{ts.port}")

    return asyncio.run(_run())


class TestProxyConfig:
    """Tests for ProxyConfig."""

    def test_default_config(self):
        """Test default configuration values."""
        config = ProxyConfig()
        assert config.host == "127.0.0.1"
        assert config.port == 8080
        assert config.rewrites == {"/": "/root.json"}
        assert config.cache_enabled is True
        assert config.cache_policy == "trust-ttl"

    def test_config_from_args(self):
        """Test configuration from CLI arguments."""
        args = MagicMock()
        args.PROXY_HOST = "0.0.0.0"
        args.PROXY_PORT = 9000
        args.BUCKET_URL = "https://bucket.example.com"
        args.BUCKET_DIR = None
        args.CACHE_TTL = 60
        args.CACHE_MAX_BYTES = None
        args.CACHE_POLICY = "revalidate"
        args.PROXY_TIMEOUT = 10
        args.NOT_FOUND_STATUSES = [403, 404]
        args.NO_CACHE = False
        args.NO_REWRITES = True
        args.ALLOW_EXTERNAL = True

        config = ProxyConfig.from_args(args)

        assert config.host == "0.0.0.0"
        assert config.port == 9000
        assert config.bucket_url == "https://bucket.example.com"
        assert config.cache_ttl == 60
        assert config.cache_policy == "revalidate"
        assert config.timeout == 10
        assert config.not_found_statuses == [403, 404]
        assert config.rewrites == {}
        assert config.allow_external is True

    def test_cli_overrides_file(self):
        """CLI values win over file values; unset flags keep file values."""
        base = ProxyConfig.from_dict({"port": 7000, "cache_ttl": 900, "bucket_dir": "/srv/bucket"})
        args = MagicMock()
        for name in ("PROXY_HOST", "BUCKET_URL", "BUCKET_DIR", "CACHE_TTL", "CACHE_MAX_BYTES",
                     "CACHE_POLICY", "PROXY_TIMEOUT", "NOT_FOUND_STATUSES"):
            setattr(args, name, None)
        args.PROXY_PORT = 7100
        args.NO_CACHE = True
        args.NO_REWRITES = False
        args.ALLOW_EXTERNAL = False

        config = ProxyConfig.from_args(args, base=base)

        assert config.port == 7100
        assert config.cache_ttl == 900
        assert config.bucket_dir == "/srv/bucket"
        assert config.cache_enabled is False

    def test_from_dict_rewrites(self):
        config = ProxyConfig.from_dict({"rewrites": {"/": "/index.json"}, "unknown": 1})
        assert config.rewrites == {"/": "/index.json"}

    def test_from_dict_rejects_bad_values(self):
        with pytest.raises(ValueError):
            ProxyConfig.from_dict({"rewrites": ["/"]})
        with pytest.raises(ValueError):
            ProxyConfig.from_dict({"cache_policy": "forever"})

    def test_from_dict_not_found_statuses(self):
        """Buckets that hide absence behind 403 can be configured so."""
        assert ProxyConfig().not_found_statuses == [404]
        assert ProxyConfig.from_dict({"not_found_statuses": [403, "404"]}).not_found_statuses == [403, 404]
        assert ProxyConfig.from_dict({"not_found_statuses": 403}).not_found_statuses == [403]
        with pytest.raises(ValueError):
            ProxyConfig.from_dict({"not_found_statuses": ["missing"]})

    def test_build_storage_passes_not_found_statuses(self):
        config = ProxyConfig(bucket_url="https://b.example.com", not_found_statuses=[403, 404])
        assert config.build_storage().not_found_statuses == frozenset({403, 404})

    def test_build_storage(self, tmp_path):
        """The configured backend is built."""
        assert isinstance(ProxyConfig(bucket_url="https://b.example.com").build_storage(), HttpBucketGateway)
        assert isinstance(ProxyConfig(bucket_dir=str(tmp_path)).build_storage(), DirectoryBucket)
        with pytest.raises(ValueError):
            ProxyConfig().build_storage()
        with pytest.raises(ValueError):
            ProxyConfig(bucket_url="https://b.example.com", bucket_dir=str(tmp_path)).build_storage()


class TestProxyServerBasic:
    """Basic tests for the proxy server."""

    def test_server_initialization(self):
        """Test server initialization."""
        server = BucketProxyServer(ProxyConfig(), storage=_bucket())
        assert server.dispatcher.cache is not None

    def test_cache_disabled(self):
        server = BucketProxyServer(ProxyConfig(cache_enabled=False), storage=_bucket())
        assert server.dispatcher.cache is None
        assert server.cache_stats() == {"enabled": False}

    def test_start_and_stop(self):
        """The server binds, then releases its runner on stop."""
        server = BucketProxyServer(ProxyConfig(port=0), storage=_bucket())

        async def _run():
            await server.start()
            started = server._runner is not None
            await server.stop()
            return started

        assert asyncio.run(_run()) is True
        assert server._runner is None


class TestProxyServerHttp:
    """End-to-end tests over HTTP."""

    def test_health_check_endpoint(self):
        """Test health check returns 200 with status ok."""
        server = BucketProxyServer(ProxyConfig(), storage=_bucket())

        async def _scenario(session, base):
            resp = await session.get(f"{base}/_proxy/health")
            return resp.status, await resp.json()

        status, data = _serve(server, _scenario)
        assert status == 200
        assert data["status"] == "ok"
        assert data["storage"]["backend"] == "memory"
        assert data["cache"]["enabled"] is True

    @pytest.mark.parametrize("path", ["/@jsr/std__yaml", "/@jsr%2Fstd__yaml"])
    def test_get_scoped_package(self, path):
        """Both path encodings serve the object."""
        server = BucketProxyServer(ProxyConfig(cache_enabled=False), storage=_bucket())

        async def _scenario(session, base):
            resp = await session.get(URL(f"{base}{path}", encoded=True))
            return resp.status, resp.headers.get("Content-Type"), await resp.read()

        status, content_type, body = _serve(server, _scenario)
        assert status == 200
        assert content_type == "application/json"
        assert body == b"{}"

    def test_head_encoded_path(self):
        """HEAD returns GET's headers with an empty body."""
        server = BucketProxyServer(ProxyConfig(cache_enabled=False), storage=_bucket())

        async def _scenario(session, base):
            url = URL(f"{base}/@jsr%2Fstd__yaml", encoded=True)
            head = await session.head(url)
            head_body = await head.read()
            get = await session.get(url)
            await get.read()
            return head, head_body, get

        head, head_body, get = _serve(server, _scenario)
        assert head.status == 200
        assert head_body == b""
        assert head.headers["Content-Length"] == "2"
        assert head.headers["Content-Type"] == get.headers["Content-Type"]
        assert head.headers["ETag"] == get.headers["ETag"]

    def test_root_rewrite(self):
        """The registry root is served from root.json."""
        server = BucketProxyServer(ProxyConfig(), storage=_bucket())

        async def _scenario(session, base):
            resp = await session.get(f"{base}/")
            return resp.status, await resp.read()

        status, body = _serve(server, _scenario)
        assert status == 200
        assert body == b'{"registry":"root"}'

    def test_missing_package(self):
        server = BucketProxyServer(ProxyConfig(), storage=_bucket())

        async def _scenario(session, base):
            resp = await session.get(f"{base}/@jsr/nonexistent")
            return resp.status, await resp.read()

        status, body = _serve(server, _scenario)
        assert status == 404
        assert body == b""

    def test_bad_encoding(self):
        server = BucketProxyServer(ProxyConfig(), storage=_bucket())

        async def _scenario(session, base):
            resp = await session.get(URL(f"{base}/@jsr%zzstd", encoded=True))
            return resp.status

        assert _serve(server, _scenario) == 400

    def test_other_methods_rejected(self):
        """Only GET and HEAD are routed."""
        server = BucketProxyServer(ProxyConfig(), storage=_bucket())

        async def _scenario(session, base):
            resp = await session.put(f"{base}/@jsr/std__yaml", data=b"{}")
            return resp.status

        assert _serve(server, _scenario) == 405

    def test_storage_outage_is_503(self):
        """A down bucket never looks like a missing package."""
        storage = MemoryBucket()

        async def _fail(key):
            raise StorageUnavailable(key, "connection refused")

        storage.get = _fail
        server = BucketProxyServer(ProxyConfig(), storage=storage)

        async def _scenario(session, base):
            resp = await session.get(f"{base}/@jsr/std__yaml")
            return resp.status, resp.headers.get("Retry-After")

        status, retry_after = _serve(server, _scenario)
        assert status == 503
        assert retry_after is not None

    def test_conditional_get(self):
        server = BucketProxyServer(ProxyConfig(cache_enabled=False), storage=_bucket())

        async def _scenario(session, base):
            first = await session.get(f"{base}/@jsr/std__yaml")
            await first.read()
            second = await session.get(
                f"{base}/@jsr/std__yaml", headers={"If-None-Match": first.headers["ETag"]}
            )
            return second.status, await second.read()

        status, body = _serve(server, _scenario)
        assert status == 304
        assert body == b""

    def test_cached_repeat_is_identical(self):
        """Repeated GETs through the cache return the same bytes and headers."""
        server = BucketProxyServer(ProxyConfig(), storage=_bucket())

        async def _scenario(session, base):
            results = []
            for _ in range(2):
                resp = await session.get(f"{base}/@jsr/std__yaml")
                results.append((resp.status, resp.headers["Content-Type"], resp.headers["ETag"], await resp.read()))
            return results

        first, second = _serve(server, _scenario)
        assert first == second
        assert server.cache_stats()["total_entries"] == 1


class TestProxyServerStreaming:
    """Tests for streaming of large bodies."""

    def test_large_body_streams_chunk_by_chunk(self):
        """Bodies are written as they are pulled, never joined first."""
        written = []
        pulled = []

        async def _chunks():
            for i in range(4):
                pulled.append(i)
                yield bytes([65 + i]) * 8

        storage = MemoryBucket()

        async def _get(key):
            return StorageObject(
                meta=ObjectMeta(key=key, size=32, content_type="application/octet-stream"),
                body=BodyStream(_chunks()),
            )

        storage.get = _get
        server = BucketProxyServer(ProxyConfig(cache_enabled=False), storage=storage)

        async def _run():
            request = MagicMock()
            request.method = "GET"
            request.headers = {}
            request.rel_url = URL("/@jsr/std__fs/-/std__fs-1.0.0.tgz")
            request.scheme = "http"
            request.host = "npm.example.com"

            mock_stream = MagicMock()

            async def _prepare(req):
                pass

            async def _write(chunk):
                written.append((len(pulled), chunk))

            async def _write_eof():
                pass

            mock_stream.prepare = _prepare
            mock_stream.write = _write
            mock_stream.write_eof = _write_eof

            with patch.object(web, "StreamResponse", return_value=mock_stream):
                await server._handle_request(request)

        asyncio.run(_run())

        assert b"".join(chunk for _, chunk in written) == b"A" * 8 + b"B" * 8 + b"C" * 8 + b"D" * 8
        # Each chunk is written right after it is pulled.
        assert [pulled_count for pulled_count, _ in written] == [1, 2, 3, 4]

    def test_client_abort_releases_storage(self):
        """A failing write closes the storage stream."""
        released = []

        async def _chunks():
            for _ in range(100):
                yield b"x" * 1024

        storage = MemoryBucket()

        async def _get(key):
            return StorageObject(
                meta=ObjectMeta(key=key, size=100 * 1024),
                body=BodyStream(_chunks(), release=lambda: released.append(1)),
            )

        storage.get = _get
        server = BucketProxyServer(ProxyConfig(cache_enabled=False), storage=storage)

        async def _run():
            request = MagicMock()
            request.method = "GET"
            request.headers = {}
            request.rel_url = URL("/big.tgz")
            request.scheme = "http"
            request.host = "npm.example.com"

            mock_stream = MagicMock()

            async def _prepare(req):
                pass

            async def _write(chunk):
                raise ConnectionResetError("client went away")

            mock_stream.prepare = _prepare
            mock_stream.write = _write

            with patch.object(web, "StreamResponse", return_value=mock_stream):
                await server._handle_request(request)

        with pytest.raises(ConnectionResetError):
            asyncio.run(_run())
        assert released == [1]
