"""npm bucket proxy package.

This package serves npm registry requests (``/@scope/name``,
``/@scope%2Fname``, tarball paths) straight out of an object-storage bucket
whose keys follow the scoped package names, with HEAD/GET symmetry, lazy body
streaming and an optional read-through edge cache.
"""

from .errors import BadPath, ProxyError, StorageUnavailable
from .path_resolver import PathResolver, ResolvedPath
from .rewrite import RewriteHook, StaticRewrite
from .storage import (
    BodyStream,
    DirectoryBucket,
    MemoryBucket,
    ObjectMeta,
    StorageGateway,
    StorageObject,
)
from .cache import CachedResponse, EdgeCache, MemoryEdgeCache
from .responses import ProxyResponse, ResponseBuilder
from .dispatcher import ProxyRequest, RequestDispatcher

__all__ = [
    "BadPath",
    "ProxyError",
    "StorageUnavailable",
    "PathResolver",
    "ResolvedPath",
    "RewriteHook",
    "StaticRewrite",
    "BodyStream",
    "DirectoryBucket",
    "MemoryBucket",
    "ObjectMeta",
    "StorageGateway",
    "StorageObject",
    "CachedResponse",
    "EdgeCache",
    "MemoryEdgeCache",
    "ProxyResponse",
    "ResponseBuilder",
    "ProxyRequest",
    "RequestDispatcher",
]
