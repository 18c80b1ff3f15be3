"""Location resolution: stack-frame grammar, mapping decoder and resolver.

Public Modules:
    stack_frames: Raw stack text parsing and reference classification
    vlq: Delta-encoded mapping table decoder and position lookup
    paths: Source path normalization
    resolver: LocationResolver (chunk index, payload fetch, caching)
"""
from .paths import normalize_source_path
from .resolver import LocationResolver
from .stack_frames import Reference, ReferenceKind, classify_reference, resolve_raw
from .vlq import MappingRecord, MappingTable, decode_mappings, decode_segment, find_original_position

__all__ = [
    "LocationResolver",
    "MappingRecord",
    "MappingTable",
    "Reference",
    "ReferenceKind",
    "classify_reference",
    "decode_mappings",
    "decode_segment",
    "find_original_position",
    "normalize_source_path",
    "resolve_raw",
]
