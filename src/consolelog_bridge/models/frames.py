"""Pydantic models for the collector wire protocol and bridge state.

Field names follow the collector's JSON keys (camelCase) so models can be
dumped straight onto the wire. Every frame carries a literal ``type`` tag;
`Frame` is the discriminated union over all of them and is what the codec
validates inbound text against.

Frame kinds:
    identify  client -> collector, once after open
    console   client -> collector, one captured event
    batch     client -> collector, coalesced or retried events
    ping      client -> collector, liveness probe
    pong      both directions, liveness answer
    ack       collector -> client, acknowledges one message id
    command   collector -> client, control (ping|shutdown|disable|enable)
"""
from __future__ import annotations

from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field

UNKNOWN_FILE = "unknown"


class Location(BaseModel):
    """A best-effort code location for a captured call.

    ``confidence`` grows with resolution depth: 0 for an unparseable stack,
    0.8 for a generic frame, 0.9 for a virtual-module frame, 0.95 once the
    location went through a mapping table (``sourceMapped``).
    """

    file: str = UNKNOWN_FILE
    line: int = 1
    column: int = 0
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    sourceMapped: bool = False
    # Reference the frame was parsed from (asset URL or virtual-module reference)
    url: Optional[str] = None
    # Bundler layer name of a virtual-module reference, e.g. "app-pages-browser"
    context: Optional[str] = None

    @property
    def is_unknown(self) -> bool:
        return self.file == UNKNOWN_FILE or self.confidence == 0

    @property
    def key(self) -> str:
        """Location key used for execution counting: ``file:line:column``."""
        return f"{self.file}:{self.line}:{self.column}"


class ConsoleContext(BaseModel):
    projectId: str
    url: Optional[str] = None
    timestamp: int


class ConsoleMessage(BaseModel):
    """One captured console event.

    ``id`` and ``timestamp`` are assigned by the connection manager at enqueue
    time; they are None until then.
    """

    type: Literal["console"] = "console"
    id: Optional[int] = None
    timestamp: Optional[int] = None
    method: str
    message: str
    location: Location
    locationKey: str
    fingerprint: str
    executionCount: int = 1
    framework: str = "unknown"
    context: ConsoleContext


class IdentifyFrame(BaseModel):
    type: Literal["identify"] = "identify"
    projectId: str
    projectPath: Optional[str] = None
    url: Optional[str] = None
    timestamp: int


class BatchFrame(BaseModel):
    type: Literal["batch"] = "batch"
    messages: List[ConsoleMessage] = Field(default_factory=list)
    timestamp: int


class PingFrame(BaseModel):
    type: Literal["ping"] = "ping"
    timestamp: Optional[int] = None


class PongFrame(BaseModel):
    type: Literal["pong"] = "pong"


class AckFrame(BaseModel):
    type: Literal["ack"] = "ack"
    messageId: int


class CommandFrame(BaseModel):
    type: Literal["command"] = "command"
    command: Literal["ping", "shutdown", "disable", "enable"]


Frame = Annotated[
    Union[
        IdentifyFrame,
        ConsoleMessage,
        BatchFrame,
        PingFrame,
        PongFrame,
        AckFrame,
        CommandFrame,
    ],
    Field(discriminator="type"),
]


class PendingAck(BaseModel):
    """A sent message awaiting acknowledgement.

    ``sentAt`` is in milliseconds on the connection manager's clock.
    """

    message: ConsoleMessage
    sentAt: float
    retryCount: int = 0


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    SHUTTING_DOWN = "shutting_down"


__all__ = [
    "UNKNOWN_FILE",
    "Location",
    "ConsoleContext",
    "ConsoleMessage",
    "IdentifyFrame",
    "BatchFrame",
    "PingFrame",
    "PongFrame",
    "AckFrame",
    "CommandFrame",
    "Frame",
    "PendingAck",
    "ConnectionState",
]
