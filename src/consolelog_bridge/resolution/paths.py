"""Normalization of source paths declared by mapping payloads.

Bundlers record original sources in many shapes: scheme-prefixed
(``webpack://_N_E/./app/page.tsx``), virtualized (``/@fs/home/me/app/x.ts``),
relative (``../../src/x.ts``), Windows-style, or carrying a query. The
collector needs one stable project-relative spelling, so every shape is
reduced to the suffix starting at a project source root segment when one is
present.

Paths that point into dependency directories or into bundler runtime code are
unresolvable: normalization returns None and the caller keeps the unmapped
location.
"""
from __future__ import annotations

import re
from typing import Iterable, Optional

from ..config import DEFAULT_SOURCE_ROOTS

DEPENDENCY_DIRS = frozenset({"node_modules"})

_SCHEME_AUTHORITY = re.compile(r"^[^:]+://[^/]*/")
_FS_PREFIX = re.compile(r"^/*@fs/")
_LEADING_RELATIVE = re.compile(r"^(\.\.?/)+")
_QUERY_OR_FRAGMENT = re.compile(r"[?#].*$")
_DRIVE_LETTER = re.compile(r"^[A-Za-z]:/")

__all__ = ["normalize_source_path", "is_bundler_runtime_path"]


def is_bundler_runtime_path(path: str) -> bool:
    return (
        path.startswith("webpack/")
        or path.startswith("(webpack)")
        or "webpack/runtime" in path
    )


def normalize_source_path(
    source_path: Optional[str], source_roots: Optional[Iterable[str]] = None
) -> Optional[str]:
    """Reduce a declared source path to its project-relative form.

    Args:
        source_path: Path as found in a payload's ``sources`` or in a
            virtual-module reference.
        source_roots: Segment names marking the start of project sources.
            Defaults to ``app``, ``pages``, ``src``.

    Returns:
        The normalized path, or None when the path is empty or lives under a
        dependency directory or bundler runtime path.

    Example:
        >>> normalize_source_path("virtual:///(group)/./app/page.tsx")
        'app/page.tsx'
    """
    if not source_path:
        return None
    roots = set(DEFAULT_SOURCE_ROOTS if source_roots is None else source_roots)

    normalized = source_path
    if "://" in normalized:
        normalized = _SCHEME_AUTHORITY.sub("", normalized, count=1)
    normalized = _FS_PREFIX.sub("", normalized, count=1)
    normalized = _LEADING_RELATIVE.sub("", normalized, count=1)
    normalized = _QUERY_OR_FRAGMENT.sub("", normalized, count=1)
    normalized = normalized.replace("\\", "/")
    normalized = _DRIVE_LETTER.sub("", normalized, count=1)
    normalized = normalized.lstrip("/")

    if is_bundler_runtime_path(normalized):
        return None

    parts = [p for p in normalized.split("/") if p and p != "."]
    if any(p in DEPENDENCY_DIRS for p in parts):
        return None

    for i, part in enumerate(parts):
        if part in roots:
            return "/".join(parts[i:])
    return "/".join(parts) or None
