"""Frame codec: JSON text <-> typed frame models.

Decoding validates the ``type`` tag first (discriminated union) and only then
the payload shape of that kind, so a frame with an unknown tag and a frame
with a malformed payload both surface as `ProtocolParseError`.

Encoding drops None-valued fields; the collector treats missing and null
optional keys alike.
"""
from __future__ import annotations

import logging
from typing import Union

from pydantic import TypeAdapter, ValidationError

from .errors import ProtocolParseError
from .models.frames import Frame

logger = logging.getLogger(__name__)

_FRAME_ADAPTER: TypeAdapter[Frame] = TypeAdapter(Frame)

__all__ = ["encode_frame", "decode_frame"]


def encode_frame(frame: Frame) -> str:
    """Serialize a frame model to compact JSON text."""
    return frame.model_dump_json(exclude_none=True)


def decode_frame(raw: Union[str, bytes]) -> Frame:
    """Parse and validate one inbound frame.

    Args:
        raw: Frame text as received from the connection.

    Returns:
        The typed frame model matching the ``type`` tag.

    Raises:
        ProtocolParseError: If the text is not JSON, lacks a known ``type`` tag,
            or the payload does not match that kind.
    """
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    try:
        return _FRAME_ADAPTER.validate_json(text)
    except ValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        raise ProtocolParseError(
            f"invalid frame: {first.get('type', 'unknown')} at {first.get('loc', ())}",
            raw=text,
        ) from e
