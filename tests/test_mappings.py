from __future__ import annotations

import pytest

from consolelog_bridge.errors import MappingDecodeError
from consolelog_bridge.resolution.vlq import (
    MappingRecord,
    decode_mappings,
    decode_segment,
    decode_vlq,
    find_original_position,
)


def test_decode_vlq_single_and_multi_digit():
    assert decode_vlq("A", 0) == (0, 1)
    assert decode_vlq("C", 0) == (1, 1)
    assert decode_vlq("D", 0) == (-1, 1)
    assert decode_vlq("K", 0) == (5, 1)
    assert decode_vlq("U", 0) == (10, 1)
    # continuation bit set on 'g'
    assert decode_vlq("gB", 0) == (16, 2)


def test_decode_vlq_rejects_invalid_digit_and_truncation():
    with pytest.raises(MappingDecodeError) as exc:
        decode_vlq("A!", 1)
    assert exc.value.offset == 1
    with pytest.raises(MappingDecodeError):
        decode_vlq("g", 0)


def test_decode_segment_fields():
    assert decode_segment("AAAA") == [0, 0, 0, 0]
    assert decode_segment("UAAK") == [10, 0, 0, 5]
    assert decode_segment("AACAC") == [0, 0, 1, 0, 1]


def test_decode_mappings_lines_are_one_based_and_columns_reset():
    table = decode_mappings("AAAA;AACA,UAAK")
    assert table.skipped_segments == 0
    assert table.records == [
        MappingRecord(1, 0, sourceIndex=0, originalLine=1, originalColumn=0),
        MappingRecord(2, 0, sourceIndex=0, originalLine=2, originalColumn=0),
        MappingRecord(2, 10, sourceIndex=0, originalLine=2, originalColumn=5),
    ]


def test_empty_groups_advance_generated_line():
    table = decode_mappings(";;AAAA")
    assert [r.generatedLine for r in table.records] == [3]


def test_single_field_segment_has_no_original():
    table = decode_mappings("A,KAAA")
    first, second = table.records
    assert not first.has_original
    assert second.has_original
    assert table.lookup(1, 2) is None
    assert table.lookup(1, 7) == second


def test_malformed_segment_is_skipped_without_applying_deltas():
    # "!!" is not decodable; the later segment still sees original line 1
    table = decode_mappings("AAAA,!!,KACA")
    assert table.skipped_segments == 1
    assert len(table.records) == 2
    assert table.records[1].originalLine == 2
    assert table.records[1].generatedColumn == 5


def test_truncated_segment_is_skipped():
    table = decode_mappings("AAAA;g")
    assert table.skipped_segments == 1
    assert len(table.records) == 1


def test_lookup_picks_closest_preceding_column():
    table = decode_mappings("AAAA;AACA,UAAK")
    assert table.lookup(2, 0).originalColumn == 0
    assert table.lookup(2, 9).originalColumn == 0
    assert table.lookup(2, 10).originalColumn == 5
    assert table.lookup(2, 400).originalColumn == 5
    assert table.lookup(5, 0) is None


def test_find_original_position_requires_same_line_and_not_after_column():
    records = [
        MappingRecord(1, 4, sourceIndex=0, originalLine=3, originalColumn=1),
        MappingRecord(2, 0, sourceIndex=0, originalLine=9, originalColumn=0),
    ]
    assert find_original_position(records, 1, 3) is None
    assert find_original_position(records, 1, 4) == records[0]


def test_find_original_position_first_record_wins_ties():
    a = MappingRecord(1, 2, sourceIndex=0, originalLine=1, originalColumn=0)
    b = MappingRecord(1, 2, sourceIndex=1, originalLine=7, originalColumn=3)
    assert find_original_position([a, b], 1, 5) is a
