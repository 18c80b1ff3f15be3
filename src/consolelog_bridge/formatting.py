"""Message text and fingerprint rendering for captured console calls.

Both functions work on the raw argument list of one console call:

- `format_arguments` renders the human-readable message (arguments joined by
  a space, containers pretty-printed as JSON, ANSI colour codes removed).
- `generate_fingerprint` renders a stable ``method:pattern`` key that groups
  calls differing only in their dynamic values (numbers, objects, ...).

Terminal-coloured loggers call ``console.log("\\x1b[36m%s\\x1b[0m", text)``;
such a leading format argument carries no content and is dropped from both.
"""
from __future__ import annotations

import json
import numbers
import re
from collections.abc import Mapping
from typing import Any, List, Sequence

ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;]*m")
FINGERPRINT_TEXT_LIMIT = 50

__all__ = ["format_arguments", "generate_fingerprint", "strip_ansi"]


def strip_ansi(text: str) -> str:
    return ANSI_ESCAPE.sub("", text)


def _drop_format_prefix(args: Sequence[Any]) -> List[Any]:
    cleaned = list(args)
    if len(cleaned) >= 2 and isinstance(cleaned[0], str):
        first = cleaned[0]
        if ("\x1b[" in first or "\\u001b[" in first) and "%s" in first:
            cleaned.pop(0)
    return cleaned


def _render(arg: Any) -> str:
    if arg is None:
        return "null"
    if isinstance(arg, bool):
        return "true" if arg else "false"
    if isinstance(arg, (Mapping, list, tuple)):
        try:
            return json.dumps(arg, indent=2)
        except (TypeError, ValueError):
            return f"[{type(arg).__name__}]"
    return strip_ansi(str(arg))


def format_arguments(args: Sequence[Any]) -> str:
    """Render console arguments as one message string.

    Args:
        args: Positional arguments of the console call.

    Returns:
        The space-joined rendering of every argument.
    """
    return " ".join(_render(arg) for arg in _drop_format_prefix(args))


def _pattern(arg: Any) -> str:
    if arg is None:
        return "null"
    if isinstance(arg, str):
        return strip_ansi(arg).strip()[:FINGERPRINT_TEXT_LIMIT]
    # bool is an int subclass; check it first
    if isinstance(arg, bool):
        return "{true}" if arg else "{false}"
    if isinstance(arg, numbers.Number):
        return "{number}"
    if isinstance(arg, (list, tuple)):
        return "{array}"
    if isinstance(arg, Mapping):
        return "{object}"
    if callable(arg):
        return "{function}"
    return "{object}"


def generate_fingerprint(method: str, args: Sequence[Any]) -> str:
    """Build the grouping key ``method:pattern`` for a console call.

    Strings keep their (ANSI-stripped, trimmed) text up to 50 characters;
    every other value is replaced by a type placeholder.
    """
    pattern = ",".join(_pattern(arg) for arg in _drop_format_prefix(args))
    return f"{method}:{pattern}"
