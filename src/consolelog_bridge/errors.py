"""Error taxonomy for the bridge.

None of these errors escape to the capture path. Each is raised at the point
where the failure is detected and caught at a single documented boundary:

- CollectorConnectionError: caught by the connection manager, which schedules
  a reconnect.
- ProtocolParseError: caught by the inbound frame dispatcher; the frame is
  discarded.
- MappingDecodeError: caught per segment by the mapping decoder; only that
  segment is lost.
- ResolutionError: caught by ``LocationResolver.resolve_mapped``, which returns
  the unresolved location.
- PersistenceError: caught by the persistence hooks; in-memory state stays
  authoritative.
"""
from __future__ import annotations

from typing import Optional


class BridgeError(Exception):
    """Base class for all bridge errors."""


class CollectorConnectionError(BridgeError):
    """Transient transport failure talking to the collector."""


class ProtocolParseError(BridgeError):
    """An inbound frame is not valid JSON or does not match a known frame kind."""

    def __init__(self, message: str, raw: Optional[str] = None):
        super().__init__(message)
        self.raw = raw


class MappingDecodeError(BridgeError):
    """A delta-encoded mapping segment contains an invalid digit or is truncated."""

    def __init__(self, message: str, segment: str = "", offset: int = 0):
        super().__init__(message)
        self.segment = segment
        self.offset = offset


class ResolutionError(BridgeError):
    """Network or decode failure while resolving a location through a mapping table."""


class PersistenceError(BridgeError):
    """Session storage is unavailable or its content is unreadable."""


__all__ = [
    "BridgeError",
    "CollectorConnectionError",
    "ProtocolParseError",
    "MappingDecodeError",
    "ResolutionError",
    "PersistenceError",
]
