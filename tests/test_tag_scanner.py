from __future__ import annotations

import uuid

import pytest
from nbtlib import (
    Byte,
    ByteArray,
    Compound,
    Double,
    Float,
    Int,
    IntArray,
    List,
    Long,
    LongArray,
    Short,
    String,
)

from uuid_remap_formats import MalformedTagStream
from uuid_remap_scan import (
    DASHED,
    INT_ARRAY,
    LONG_PAIR,
    find_tag_stream_uuids,
    resolve_occurrences,
)
from worldgen import (
    CAVE,
    FROM,
    NOTCH,
    TO,
    int_array,
    long_halves,
    mapping_remap,
    parse_tag_stream,
    tag_stream,
    uuid_from_ints,
    uuid_from_longs,
)


def _remap(payload: bytes, table) -> bytes:
    buf = bytearray(payload)
    resolve_occurrences(buf, find_tag_stream_uuids(payload), mapping_remap(table))
    return bytes(buf)


def _never_called(value: uuid.UUID):
    raise AssertionError(f"remap called for {value}")


def test_stream_without_uuids_is_left_alone() -> None:
    payload = tag_stream(
        {
            "name": String("CaveNightingale"),
            "byte": Byte(1),
            "short": Short(-2),
            "int": Int(3),
            "long": Long(-4),
            "float": Float(0.5),
            "double": Double(-0.25),
            "ints": List[Int]([Int(1), Int(2)]),
            "longs": List[Long]([Long(5)]),
            "empty": List[Int]([]),
            "compounds": List[Compound]([Compound({"x": Int(1)}), Compound({})]),
            "nested": Compound({"inner": Compound({"deep": Short(7)})}),
            "bytes": ByteArray([1, 2, 3, 4]),
            "three_ints": IntArray([1, 2, 3]),
            "longarr": LongArray([1, 2, 3, 4]),
        }
    )
    assert find_tag_stream_uuids(payload) == []
    buf = bytearray(payload)
    assert resolve_occurrences(buf, [], _never_called) == (0, 0)
    assert bytes(buf) == payload


def test_long_pair_is_found_and_replaced() -> None:
    most, least = long_halves(FROM)
    payload = tag_stream({"OwnerUUIDMost": most, "Health": Float(20.0), "OwnerUUIDLeast": least})

    found = find_tag_stream_uuids(payload)
    assert [(o.kind, o.uuid, o.where) for o in found] == [(LONG_PAIR, FROM, "OwnerUUIDMost")]

    out = _remap(payload, {FROM: TO})
    assert len(out) == len(payload)
    tree = parse_tag_stream(out)
    assert uuid_from_longs(tree["OwnerUUIDMost"], tree["OwnerUUIDLeast"]) == TO
    assert float(tree["Health"]) == 20.0


def test_long_pair_in_either_order() -> None:
    most, least = long_halves(FROM)
    payload = tag_stream({"UUIDLeast": least, "UUIDMost": most})
    found = find_tag_stream_uuids(payload)
    assert [(o.kind, o.uuid) for o in found] == [(LONG_PAIR, FROM)]


def test_long_pairs_match_by_prefix() -> None:
    a_most, a_least = long_halves(FROM)
    b_most, b_least = long_halves(NOTCH)
    payload = tag_stream(
        {"AUUIDMost": a_most, "BUUIDMost": b_most, "BUUIDLeast": b_least, "AUUIDLeast": a_least}
    )
    assert sorted(str(o.uuid) for o in find_tag_stream_uuids(payload)) == sorted([str(FROM), str(NOTCH)])


def test_unpaired_and_mistyped_halves_are_ignored() -> None:
    most, least = long_halves(FROM)
    payload = tag_stream(
        {
            "lonely": Compound({"UUIDMost": most}),
            "other": Compound({"UUIDLeast": least}),
            "wrong": Compound({"UUIDMost": Int(1), "UUIDLeast": Int(2)}),
        }
    )
    assert find_tag_stream_uuids(payload) == []


def test_int_array_in_nested_lists() -> None:
    payload = tag_stream(
        {
            "Entities": List[Compound](
                [
                    Compound({"id": String("minecraft:cow")}),
                    Compound({"Owner": int_array(FROM), "Pos": List[Double]([Double(1.0)])}),
                ]
            )
        }
    )
    found = find_tag_stream_uuids(payload)
    assert [(o.kind, o.uuid, o.where) for o in found] == [(INT_ARRAY, FROM, "Entities[1].Owner")]

    tree = parse_tag_stream(_remap(payload, {FROM: TO}))
    assert uuid_from_ints(tree["Entities"][1]["Owner"]) == TO
    assert str(tree["Entities"][0]["id"]) == "minecraft:cow"


def test_any_four_int_array_is_treated_as_uuid() -> None:
    payload = tag_stream({"NotAPlayer": IntArray([1, 2, 3, 4])})
    candidate = uuid.UUID(int=(1 << 96) | (2 << 64) | (3 << 32) | 4)
    assert [o.uuid for o in find_tag_stream_uuids(payload)] == [candidate]

    tree = parse_tag_stream(_remap(payload, {candidate: CAVE}))
    assert uuid_from_ints(tree["NotAPlayer"]) == CAVE


def test_uuids_inside_string_values() -> None:
    text = f'{{"text":"hi","owner":"{FROM}"}}'
    payload = tag_stream({"CustomName": String(text)})
    found = find_tag_stream_uuids(payload)
    assert [(o.kind, o.uuid, o.where) for o in found] == [(DASHED, FROM, "CustomName")]

    tree = parse_tag_stream(_remap(payload, {FROM: TO}))
    assert str(tree["CustomName"]) == text.replace(str(FROM), str(TO))


def test_string_scanning_can_be_disabled() -> None:
    payload = tag_stream({"CustomName": String(str(FROM))})
    assert find_tag_stream_uuids(payload, scan_strings=False) == []


def test_unmapped_occurrences_are_counted() -> None:
    payload = tag_stream({"a": int_array(FROM), "b": int_array(NOTCH)})
    buf = bytearray(payload)
    replaced, unmapped = resolve_occurrences(buf, find_tag_stream_uuids(payload), mapping_remap({FROM: TO}))
    assert (replaced, unmapped) == (1, 1)
    tree = parse_tag_stream(bytes(buf))
    assert uuid_from_ints(tree["a"]) == TO
    assert uuid_from_ints(tree["b"]) == NOTCH


@pytest.mark.parametrize(
    "raw",
    [
        b"",
        bytes([10, 0, 30, 0]),
        bytes([10, 0, 0, 9, 0, 255, 255, 255, 255]),
        bytes([10, 0, 0, 9, 1, 255, 255, 255, 255]),
        bytes([10, 0, 0, 255, 0]),
        bytes([10, 0, 0, 255, 0, 0]),
        bytes([10, 0, 0, 0, 0, 0, 0, 0]),
        bytes([0]),
        bytes([10, 0, 0, 11, 0, 0, 0, 0, 0, 4, 0, 0]),
    ],
)
def test_malformed_streams_are_rejected(raw: bytes) -> None:
    with pytest.raises(MalformedTagStream):
        find_tag_stream_uuids(raw)
