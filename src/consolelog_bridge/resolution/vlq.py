"""Position-mapping decoder for delta-encoded mapping tables.

A mapping table is a string of generated-line groups separated by ``;``; each
group is a ``,``-separated list of segments. A segment is a run of base-64
digits encoding consecutive signed integers (VLQ):

    digit bits 0-4   payload, least significant group first
    digit bit 5      continuation (another digit follows)
    reassembled bit 0  sign (value = magnitude >> 1, negated when set)

Segment fields, in order:
    generatedColumn   delta, reset to 0 at the start of every generated line
    sourceIndex       delta, cumulative across the whole table
    originalLine      delta, cumulative across the whole table (0-based on wire)
    originalColumn    delta, cumulative across the whole table
    nameIndex         optional, ignored

Only generatedColumn is mandatory. A one-field segment marks a generated
position without an original-source counterpart.

Lines are exposed 1-based (generated and original); columns are kept as
encoded. A malformed segment is skipped as a whole: its deltas are decoded
before any of them is applied, so cumulative state for later segments is the
same as if the segment were absent.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from ..errors import MappingDecodeError

logger = logging.getLogger(__name__)

VLQ_BASE_SHIFT = 5
VLQ_BASE = 1 << VLQ_BASE_SHIFT
VLQ_BASE_MASK = VLQ_BASE - 1
VLQ_CONTINUATION_BIT = VLQ_BASE

BASE64_CHARS = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/"
_BASE64_MAP: Dict[str, int] = {ch: i for i, ch in enumerate(BASE64_CHARS)}

__all__ = [
    "MappingRecord",
    "MappingTable",
    "decode_vlq",
    "decode_segment",
    "decode_mappings",
    "find_original_position",
]


@dataclass(frozen=True)
class MappingRecord:
    generatedLine: int
    generatedColumn: int
    sourceIndex: Optional[int] = None
    originalLine: Optional[int] = None
    originalColumn: Optional[int] = None

    @property
    def has_original(self) -> bool:
        return self.originalLine is not None


@dataclass
class MappingTable:
    """Decoded records in table order plus the number of segments skipped."""

    records: List[MappingRecord] = field(default_factory=list)
    skipped_segments: int = 0
    _by_line: Optional[Dict[int, List[MappingRecord]]] = field(
        default=None, init=False, repr=False, compare=False
    )

    def records_for_line(self, line: int) -> List[MappingRecord]:
        if self._by_line is None:
            by_line: Dict[int, List[MappingRecord]] = {}
            for rec in self.records:
                by_line.setdefault(rec.generatedLine, []).append(rec)
            self._by_line = by_line
        return self._by_line.get(line, [])

    def lookup(self, line: int, column: int) -> Optional[MappingRecord]:
        return find_original_position(self.records_for_line(line), line, column)


def decode_vlq(text: str, index: int) -> Tuple[int, int]:
    """Decode one signed VLQ integer starting at ``index``.

    Args:
        text: Segment text.
        index: Offset of the first digit.

    Returns:
        ``(value, next_index)``.

    Raises:
        MappingDecodeError: On a character outside the base-64 alphabet or when
            the text ends while the continuation bit is still set.
    """
    result = 0
    shift = 0
    continuation = True
    while continuation:
        if index >= len(text):
            raise MappingDecodeError("unexpected end of VLQ", segment=text, offset=index)
        digit = _BASE64_MAP.get(text[index])
        if digit is None:
            raise MappingDecodeError(
                f"invalid base64 digit {text[index]!r}", segment=text, offset=index
            )
        index += 1
        continuation = bool(digit & VLQ_CONTINUATION_BIT)
        result += (digit & VLQ_BASE_MASK) << shift
        shift += VLQ_BASE_SHIFT
    negate = result & 1
    result >>= 1
    return (-result if negate else result), index


def decode_segment(segment: str) -> List[int]:
    """Decode every field of one segment into its raw deltas.

    >>> decode_segment("AAAA")
    [0, 0, 0, 0]
    >>> decode_segment("CAAA")[0]
    1
    """
    values: List[int] = []
    index = 0
    while index < len(segment):
        value, index = decode_vlq(segment, index)
        values.append(value)
    return values


def decode_mappings(mappings: str) -> MappingTable:
    """Decode a full mapping string into ordered records.

    Args:
        mappings: The delta-encoded table (the ``mappings`` field of a payload).

    Returns:
        A `MappingTable`. Segments that fail to decode are counted in
        ``skipped_segments`` and contribute no record and no delta.
    """
    table = MappingTable()
    generated_line = 0
    prev_source = 0
    prev_orig_line = 0
    prev_orig_col = 0

    for group in mappings.split(";"):
        generated_line += 1
        prev_gen_col = 0
        for segment in group.split(","):
            if not segment:
                continue
            try:
                deltas = decode_segment(segment)
            except MappingDecodeError as e:
                table.skipped_segments += 1
                logger.debug(
                    "Skipping mapping segment %r on generated line %d: %s",
                    segment,
                    generated_line,
                    e,
                )
                continue

            prev_gen_col += deltas[0]
            if len(deltas) == 1:
                table.records.append(MappingRecord(generated_line, prev_gen_col))
                continue
            prev_source += deltas[1]
            if len(deltas) == 2:
                table.records.append(
                    MappingRecord(generated_line, prev_gen_col, sourceIndex=prev_source)
                )
                continue
            prev_orig_line += deltas[2]
            if len(deltas) == 3:
                table.records.append(
                    MappingRecord(
                        generated_line,
                        prev_gen_col,
                        sourceIndex=prev_source,
                        originalLine=prev_orig_line + 1,
                    )
                )
                continue
            prev_orig_col += deltas[3]
            table.records.append(
                MappingRecord(
                    generated_line,
                    prev_gen_col,
                    sourceIndex=prev_source,
                    originalLine=prev_orig_line + 1,
                    originalColumn=prev_orig_col,
                )
            )
    return table


def find_original_position(
    records: Iterable[MappingRecord], line: int, column: int
) -> Optional[MappingRecord]:
    """Pick the record closest at or before ``(line, column)``.

    Only records on the queried generated line with an original position and
    ``generatedColumn <= column`` are eligible; the one with the smallest
    ``column - generatedColumn`` wins (first one on ties).
    """
    best: Optional[MappingRecord] = None
    best_distance: Optional[int] = None
    for rec in records:
        if rec.generatedLine != line or not rec.has_original:
            continue
        if rec.generatedColumn > column:
            continue
        distance = column - rec.generatedColumn
        if best_distance is None or distance < best_distance:
            best = rec
            best_distance = distance
    return best
