"""Error types raised by the proxy pipeline.

A missing object is not an error: storage gateways return ``None`` for it.
"""

from __future__ import annotations

from typing import Optional


class ProxyError(Exception):
    """Base class for proxy pipeline errors."""


class BadPath(ProxyError):
    """The request path carries malformed percent-encoding."""

    def __init__(self, path: str, reason: str = "malformed percent-encoding"):
        super().__init__(f"{reason}: {path!r}")
        self.path = path
        self.reason = reason


class StorageUnavailable(ProxyError):
    """The storage backend could not answer for a key.

    Distinct from a missing object so that clients never see a transient
    outage as "package does not exist".
    """

    def __init__(
        self,
        key: str,
        message: str,
        upstream_status: Optional[int] = None,
        retryable: bool = True,
    ):
        super().__init__(f"storage unavailable for {key!r}: {message}")
        self.key = key
        self.message = message
        self.upstream_status = upstream_status
        self.retryable = retryable
