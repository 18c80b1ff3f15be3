"""Stack-frame grammar: raw stack text -> first usable Location.

Rules are applied per line, in this order:

1. Skip predicates: the bridge's own frames, the capture shim, framework
   runtime helpers and browser extensions never describe user code.
2. Virtual-module form: ``at fn (webpack-internal:///(<layer>)/./<path>:L:C)``.
   The reference names the original module path directly but still needs an
   index lookup to find the asset that carries its mapping table.
3. Generic form: ``at fn (<url>:L:C)`` or ``at <url>:L:C`` whose basename is a
   script file.

Frames under dependency directories or framework runtime bundles are skipped
in both forms. Reference classification (which of those references can be
fetched, and how) lives here too so the whole heuristic is testable without
any network or transport.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..models.frames import Location

# Header line ("Error") and the capture shim's own frame.
DEFAULT_SKIP_LEADING = 2

RAW_GENERIC_CONFIDENCE = 0.8
RAW_VIRTUAL_CONFIDENCE = 0.9

SKIP_MARKERS = (
    "__consolelogInjected",
    "consolelog_bridge",
    "extractLocation",
    "console.<computed>",
    "hydration-error-info.js",
    "chrome-extension://",
)
DEPENDENCY_FRAGMENTS = ("/node_modules/", "/next/dist/")

VIRTUAL_MODULE_FRAME = re.compile(
    r"at\s+(?:.*?\s+\()?(webpack-internal:///\(([^)]+)\)/\./(.+?)):(\d+):(\d+)"
)
GENERIC_FRAME = re.compile(r"at\s+(?:.*?\s+\()?(.+?):(\d+):(\d+)")
SCRIPT_FILE = re.compile(r"\.(jsx?|tsx?)$")
_PORT_PATH = re.compile(r":\d+/")

__all__ = [
    "DEFAULT_SKIP_LEADING",
    "ReferenceKind",
    "Reference",
    "should_skip_line",
    "parse_frame",
    "resolve_raw",
    "classify_reference",
    "unknown_location",
]


class ReferenceKind(str, Enum):
    VIRTUAL_MODULE = "virtual_module"
    SCHEME_PREFIXED = "scheme_prefixed"
    STATIC_ASSET = "static_asset"
    EXTERNAL = "external"


@dataclass(frozen=True)
class Reference:
    """How a frame's reference URL can be turned into a fetchable asset.

    ``fetch_url`` is None for virtual-module references (the owning asset is
    found through the chunk index) and for external references.
    """

    kind: ReferenceKind
    url: str
    fetch_url: Optional[str] = None
    target_file: Optional[str] = None


def unknown_location() -> Location:
    return Location()


def _is_dependency_path(path: str) -> bool:
    probe = path if path.startswith("/") else "/" + path
    return any(fragment in probe for fragment in DEPENDENCY_FRAGMENTS)


def should_skip_line(line: str) -> bool:
    return any(marker in line for marker in SKIP_MARKERS)


def parse_frame(line: str) -> Optional[Location]:
    """Parse one stack line; None when it is skipped or matches no form."""
    if should_skip_line(line):
        return None

    match = VIRTUAL_MODULE_FRAME.search(line)
    if match:
        full_url, layer, file_path, line_no, column = match.groups()
        if _is_dependency_path(file_path):
            return None
        return Location(
            file=file_path,
            line=int(line_no),
            column=int(column),
            confidence=RAW_VIRTUAL_CONFIDENCE,
            url=full_url,
            context=layer,
        )

    match = GENERIC_FRAME.search(line)
    if match:
        url, line_no, column = match.groups()
        if _is_dependency_path(url):
            return None
        file_name = url.rsplit("/", 1)[-1].split("?", 1)[0]
        if SCRIPT_FILE.search(file_name):
            return Location(
                file=file_name,
                line=int(line_no),
                column=int(column),
                confidence=RAW_GENERIC_CONFIDENCE,
                url=url,
            )
    return None


def resolve_raw(stack_text: Optional[str], skip_leading: int = DEFAULT_SKIP_LEADING) -> Location:
    """Return the first usable frame of ``stack_text``.

    Args:
        stack_text: Raw stack text as captured by the shim.
        skip_leading: Number of leading lines ignored (error header and the
            shim's own frame).

    Returns:
        The parsed Location, or the unknown Location (confidence 0) when no
        line yields a usable frame.
    """
    if not stack_text:
        return unknown_location()
    for line in stack_text.splitlines()[skip_leading:]:
        location = parse_frame(line)
        if location is not None:
            return location
    return unknown_location()


def classify_reference(url: str, app_origin: str) -> Reference:
    """Classify a frame reference URL, first matching rule wins.

    Args:
        url: The ``url`` of a raw Location.
        app_origin: Origin of the running application, used to turn a
            scheme-prefixed reference into a fetchable URL.
    """
    if "webpack-internal://" in url:
        target: Optional[str] = None
        parts = url.split("/./", 1)
        if len(parts) > 1:
            target = parts[1].split(":", 1)[0].split("?", 1)[0]
        return Reference(ReferenceKind.VIRTUAL_MODULE, url, target_file=target)
    if "webpack://" in url:
        rest = url.split("webpack://", 1)[1]
        if not rest:
            return Reference(ReferenceKind.EXTERNAL, url)
        return Reference(
            ReferenceKind.SCHEME_PREFIXED, url, fetch_url=app_origin.rstrip("/") + "/" + rest
        )
    if "_next/static" in url:
        return Reference(ReferenceKind.STATIC_ASSET, url, fetch_url=url)
    if "localhost" not in url and "127.0.0.1" not in url and not _PORT_PATH.search(url):
        return Reference(ReferenceKind.EXTERNAL, url)
    return Reference(ReferenceKind.STATIC_ASSET, url, fetch_url=url)
