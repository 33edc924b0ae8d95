"""Rewrite hooks for virtual paths.

A rewrite hook is any callable taking the raw, still-encoded request path and
returning the raw path to resolve instead. It runs once per request, before
percent-decoding, so it only ever matches literal paths.
"""

from __future__ import annotations

from typing import Callable, Dict, Mapping, Optional

RewriteHook = Callable[[str], str]


class StaticRewrite:
    """Rewrite hook backed by an exact-match table of raw paths."""

    def __init__(self, mapping: Optional[Mapping[str, str]] = None):
        self._mapping: Dict[str, str] = dict(mapping or {})

    def __call__(self, raw_path: str) -> str:
        return self._mapping.get(raw_path, raw_path)

    @property
    def mapping(self) -> Dict[str, str]:
        return dict(self._mapping)

    def __repr__(self) -> str:
        return f"StaticRewrite({self._mapping!r})"


def apply_rewrite(hook: Optional[RewriteHook], raw_path: str) -> str:
    """Run ``hook`` on ``raw_path``; without a hook the path passes through."""
    if hook is None:
        return raw_path
    return hook(raw_path)
