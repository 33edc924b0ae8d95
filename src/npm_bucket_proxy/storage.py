"""Storage gateways: HEAD/GET access to bucket objects by key.

Gateways return ``None`` for a missing object and raise
:class:`~npm_bucket_proxy.errors.StorageUnavailable` when the backend cannot
answer. Bodies are exposed as :class:`BodyStream` so callers pull bytes only as
fast as they forward them.
"""

from __future__ import annotations

import asyncio
import hashlib
import inspect
import logging
import mimetypes
import os
import stat as stat_mode
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Union

from constants import Constants

from .errors import StorageUnavailable

logger = logging.getLogger(__name__)

ReleaseCallback = Callable[[], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class ObjectMeta:
    """Descriptor of a stored object; HEAD and GET agree on it for a key."""

    key: str
    size: Optional[int] = None
    content_type: Optional[str] = None
    etag: Optional[str] = None


class BodyStream:
    """Lazily consumed object body.

    Wraps an async iterator of chunks plus an optional release callback that
    frees the backend resource. ``aclose()`` runs the release exactly once,
    whether the stream was fully read, partially read or never started.
    """

    def __init__(self, chunks: AsyncIterator[bytes], release: Optional[ReleaseCallback] = None):
        self._chunks = chunks
        self._release = release
        self._closed = False
        self.bytes_read = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> "BodyStream":
        return self

    async def __anext__(self) -> bytes:
        if self._closed:
            raise StopAsyncIteration
        try:
            chunk = await self._chunks.__anext__()
        except StopAsyncIteration:
            await self.aclose()
            raise
        except Exception:
            await self.aclose()
            raise
        self.bytes_read += len(chunk)
        return chunk

    async def aclose(self) -> None:
        """Stop pulling from the backend and release it."""
        if self._closed:
            return
        self._closed = True
        aclose = getattr(self._chunks, "aclose", None)
        if aclose is not None:
            await aclose()
        if self._release is not None:
            result = self._release()
            if inspect.isawaitable(result):
                await result

    async def read(self) -> bytes:
        """Drain the remaining chunks into memory. Only for small bodies."""
        return b"".join([chunk async for chunk in self])


@dataclass
class StorageObject:
    """Result of a successful GET: metadata plus a streamable body."""

    meta: ObjectMeta
    body: BodyStream


class StorageGateway:
    """Interface for bucket access by key."""

    async def head(self, key: str) -> Optional[ObjectMeta]:  # pragma: no cover - interface
        raise NotImplementedError

    async def get(self, key: str) -> Optional[StorageObject]:  # pragma: no cover - interface
        raise NotImplementedError

    async def start(self) -> None:
        """Acquire backend resources (no-op by default)."""

    async def stop(self) -> None:
        """Release backend resources (no-op by default)."""

    def describe(self) -> Dict[str, Any]:
        return {"backend": type(self).__name__}


def _md5_etag(body: bytes) -> str:
    return f'"{hashlib.md5(body).hexdigest()}"'


async def iter_bytes(body: bytes, chunk_size: int) -> AsyncIterator[bytes]:
    for offset in range(0, len(body), chunk_size):
        yield body[offset:offset + chunk_size]


@dataclass(frozen=True)
class _MemoryObject:
    body: bytes
    content_type: Optional[str]
    etag: str


class MemoryBucket(StorageGateway):
    """In-process bucket, for tests and embedding applications."""

    def __init__(self, chunk_size: int = Constants.STREAM_CHUNK_SIZE):
        self._objects: Dict[str, _MemoryObject] = {}
        self._chunk_size = max(1, chunk_size)

    def put(self, key: str, body: Union[bytes, str], content_type: Optional[str] = None) -> None:
        """Store an object under ``key``."""
        data = body.encode("utf-8") if isinstance(body, str) else bytes(body)
        self._objects[key] = _MemoryObject(data, content_type, _md5_etag(data))

    def delete(self, key: str) -> None:
        self._objects.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self._objects

    def __len__(self) -> int:
        return len(self._objects)

    def _meta(self, key: str, obj: _MemoryObject) -> ObjectMeta:
        return ObjectMeta(key=key, size=len(obj.body), content_type=obj.content_type, etag=obj.etag)

    async def head(self, key: str) -> Optional[ObjectMeta]:
        obj = self._objects.get(key) if key else None
        if obj is None:
            return None
        return self._meta(key, obj)

    async def get(self, key: str) -> Optional[StorageObject]:
        obj = self._objects.get(key) if key else None
        if obj is None:
            return None
        return StorageObject(
            meta=self._meta(key, obj),
            body=BodyStream(iter_bytes(obj.body, self._chunk_size)),
        )

    def describe(self) -> Dict[str, Any]:
        return {"backend": "memory", "objects": len(self._objects)}


class DirectoryBucket(StorageGateway):
    """Bucket mirrored onto a local directory, one file per key."""

    def __init__(self, root: Union[str, Path], chunk_size: int = Constants.STREAM_CHUNK_SIZE):
        self._root = Path(root).resolve()
        self._chunk_size = max(1, chunk_size)

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, key: str) -> Optional[Path]:
        """Map a key onto a file below the root, or None if it would escape it."""
        if not key or "\x00" in key:
            return None
        try:
            candidate = self._root.joinpath(*key.split("/")).resolve(strict=False)
        except ValueError:
            return None
        if candidate == self._root or self._root not in candidate.parents:
            return None
        return candidate

    @staticmethod
    def content_type_for(path: Path) -> str:
        """Guess a content type; registry metadata files carry no extension."""
        content_type, encoding = mimetypes.guess_type(path.name)
        if encoding is not None or path.suffix == ".tgz":
            return "application/octet-stream"
        return content_type or "application/json"

    def _meta(self, key: str, path: Path, stat: os.stat_result) -> ObjectMeta:
        return ObjectMeta(
            key=key,
            size=stat.st_size,
            content_type=self.content_type_for(path),
            etag=f'"{int(stat.st_mtime):x}-{stat.st_size:x}"',
        )

    async def _stat(self, key: str) -> Optional[tuple[Path, os.stat_result]]:
        path = self.path_for(key)
        if path is None:
            return None
        try:
            stat = await asyncio.to_thread(path.stat)
        except (FileNotFoundError, NotADirectoryError):
            return None
        except OSError as e:
            logger.warning("Failed to stat %s: %s", path, e)
            raise StorageUnavailable(key, str(e)) from e
        if not stat_mode.S_ISREG(stat.st_mode):
            return None
        return path, stat

    async def head(self, key: str) -> Optional[ObjectMeta]:
        found = await self._stat(key)
        if found is None:
            return None
        path, stat = found
        return self._meta(key, path, stat)

    async def get(self, key: str) -> Optional[StorageObject]:
        found = await self._stat(key)
        if found is None:
            return None
        path, stat = found
        try:
            handle = await asyncio.to_thread(path.open, "rb")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("Failed to open %s: %s", path, e)
            raise StorageUnavailable(key, str(e)) from e

        return StorageObject(
            meta=self._meta(key, path, stat),
            body=BodyStream(self._iter_file(key, handle), release=handle.close),
        )

    async def _iter_file(self, key: str, handle) -> AsyncIterator[bytes]:
        while True:
            try:
                chunk = await asyncio.to_thread(handle.read, self._chunk_size)
            except OSError as e:
                raise StorageUnavailable(key, str(e)) from e
            if not chunk:
                return
            yield chunk

    def describe(self) -> Dict[str, Any]:
        return {"backend": "directory", "root": str(self._root)}
