"""Resolve inbound npm request paths to bucket storage keys."""

from __future__ import annotations

import re
import urllib.parse
from dataclasses import dataclass
from typing import Optional

from .errors import BadPath


@dataclass(frozen=True)
class ResolvedPath:
    """Result of resolving a request path.

    ``key`` is the only field that affects storage access; the package
    descriptors are best-effort and only feed log context.
    """

    raw_path: str
    key: str
    package_name: Optional[str] = None
    version: Optional[str] = None
    is_tarball: bool = False


class PathResolver:
    """Turns a raw (possibly percent-encoded) request path into a storage key.

    Package managers disagree on how to send scoped names: npm sends
    ``/@scope/name`` while pnpm sends ``/@scope%2Fname``. The bucket stores
    objects under the decoded scoped name, so both must land on the same key.
    """

    # Any '%' that does not introduce two hex digits.
    _BAD_ESCAPE_PATTERN = re.compile(r"%(?![0-9A-Fa-f]{2})")

    # @scope/name[/rest] and name[/rest], rest being a version or a tarball
    _NPM_SCOPED_PATTERN = re.compile(r"^@([^/]+)/([^/]+)(?:/(.*))?$")
    _NPM_UNSCOPED_PATTERN = re.compile(r"^([^/@][^/]*)(?:/(.*))?$")
    _NPM_TARBALL_PATTERN = re.compile(
        r"^-/(.+)-(\d+\.\d+\.\d+(?:-[a-zA-Z0-9.-]+)?(?:\+[a-zA-Z0-9.-]+)?)\.tgz$"
    )

    def resolve(self, raw_path: str) -> ResolvedPath:
        """Resolve a raw request path.

        Args:
            raw_path: Path as received (after any rewrite), leading '/' included.

        Returns:
            ResolvedPath with the canonical storage key.

        Raises:
            BadPath: If the path carries malformed percent-encoding.
        """
        key = self.to_key(raw_path)
        package_name, version, is_tarball = self._describe(key)
        return ResolvedPath(
            raw_path=raw_path,
            key=key,
            package_name=package_name,
            version=version,
            is_tarball=is_tarball,
        )

    def to_key(self, raw_path: str) -> str:
        """Strip the leading slash and percent-decode the remainder once."""
        remainder = raw_path[1:] if raw_path.startswith("/") else raw_path
        if "%" not in remainder:
            return remainder

        if self._BAD_ESCAPE_PATTERN.search(remainder):
            raise BadPath(raw_path)
        try:
            return urllib.parse.unquote_to_bytes(remainder).decode("utf-8")
        except UnicodeDecodeError as e:
            raise BadPath(raw_path, "percent-encoded octets are not UTF-8") from e

    def _describe(self, key: str) -> tuple[Optional[str], Optional[str], bool]:
        """Extract npm package name/version from a key, if it looks like one."""
        match = self._NPM_SCOPED_PATTERN.match(key)
        if match:
            scope, name, rest = match.groups()
            package_name = f"@{scope}/{name}"
        else:
            match = self._NPM_UNSCOPED_PATTERN.match(key)
            if not match:
                return None, None, False
            package_name, rest = match.groups()

        if not rest:
            return package_name, None, False

        tarball_match = self._NPM_TARBALL_PATTERN.match(rest)
        if tarball_match:
            return package_name, tarball_match.group(2), True
        if rest.startswith("-"):
            return package_name, None, False
        return package_name, rest, False
