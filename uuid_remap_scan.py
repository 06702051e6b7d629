"""
Heuristic UUID locators.

Tag streams are walked with a small frame stack instead of being parsed into
a tree. Two binary shapes are reported:
- a `<prefix>UUIDMost` / `<prefix>UUIDLeast` pair of longs in one compound
- any int array of exactly four elements (no check that it really is a UUID)
String tag values are handed to the text locator, which finds dashed
(8-4-4-4-12) and bare 32 digit hex UUIDs.

UUIDs written as SNBT int-array literals inside JSON text, or kept outside
tag streams altogether, are not found.
"""

from __future__ import annotations

import re
import struct
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from uuid_remap_formats import MalformedTagStream


TAG_END = 0
TAG_BYTE = 1
TAG_SHORT = 2
TAG_INT = 3
TAG_LONG = 4
TAG_FLOAT = 5
TAG_DOUBLE = 6
TAG_BYTE_ARRAY = 7
TAG_STRING = 8
TAG_LIST = 9
TAG_COMPOUND = 10
TAG_INT_ARRAY = 11
TAG_LONG_ARRAY = 12

_FIXED_SIZES = {
    TAG_END: 0,
    TAG_BYTE: 1,
    TAG_SHORT: 2,
    TAG_INT: 4,
    TAG_LONG: 8,
    TAG_FLOAT: 4,
    TAG_DOUBLE: 8,
}
_ARRAY_ELEMENT_SIZES = {TAG_BYTE_ARRAY: 1, TAG_INT_ARRAY: 4, TAG_LONG_ARRAY: 8}

LONG_PAIR = "long-pair"
INT_ARRAY = "int-array"
DASHED = "dashed"
HEX = "hex"

TEXT_WIDTHS = {DASHED: 36, HEX: 32}

_MOST = b"UUIDMost"
_LEAST = b"UUIDLeast"
_MASK64 = (1 << 64) - 1

RemapFunction = Callable[[uuid.UUID], Optional[uuid.UUID]]
Text = Union[str, bytes]


@dataclass(frozen=True)
class Occurrence:
    offset: int
    kind: str
    uuid: uuid.UUID
    least_offset: Optional[int] = None
    where: str = ""

    def describe(self) -> str:
        loc = self.where or f"@{self.offset}"
        return f"{self.kind} {self.uuid} at {loc}"


# ---------- text ----------

_H = "[0-9a-fA-F]"
_DASHED_SRC = f"{_H}{{8}}-{_H}{{4}}-{_H}{{4}}-{_H}{{4}}-{_H}{{12}}"
_BARE_SRC = f"{_H}{{32}}"

_DASHED_STR = re.compile(_DASHED_SRC)
_BARE_STR = re.compile(_BARE_SRC)
_DASHED_BYTES = re.compile(_DASHED_SRC.encode("ascii"))
_BARE_BYTES = re.compile(_BARE_SRC.encode("ascii"))


def _parse_hex(s: Text) -> uuid.UUID:
    if isinstance(s, bytes):
        s = s.decode("ascii")
    return uuid.UUID(hex=s)


def find_text_uuids(text: Text) -> List[Occurrence]:
    """
    Dashed and undashed UUIDs in `text`, ordered by offset.

    Dashed matches are masked out before the undashed pass, so a dashed UUID
    is never also reported (or split) as a 32 digit run.
    """
    if isinstance(text, str):
        dashed, bare, blank = _DASHED_STR, _BARE_STR, "-" * TEXT_WIDTHS[DASHED]
    else:
        dashed, bare, blank = _DASHED_BYTES, _BARE_BYTES, b"-" * TEXT_WIDTHS[DASHED]

    found = [Occurrence(m.start(), DASHED, _parse_hex(m.group())) for m in dashed.finditer(text)]
    masked = dashed.sub(blank, text) if found else text
    found.extend(Occurrence(m.start(), HEX, _parse_hex(m.group())) for m in bare.finditer(masked))
    found.sort(key=lambda o: o.offset)
    return found


def encode_text(value: uuid.UUID, kind: str, like: Text) -> Text:
    """Render `value` like the occurrence it replaces: same form, same letter case."""
    s = str(value) if kind == DASHED else value.hex
    if like.isupper():
        s = s.upper()
    return s.encode("ascii") if isinstance(like, bytes) else s


def encode_uuid(occ: Occurrence, value: uuid.UUID, like: Text = b"") -> List[Tuple[int, Text]]:
    """(offset, replacement) pieces for writing `value` over `occ`."""
    if occ.kind == LONG_PAIR:
        return [
            (occ.offset, struct.pack(">Q", value.int >> 64)),
            (occ.least_offset, struct.pack(">Q", value.int & _MASK64)),
        ]
    if occ.kind == INT_ARRAY:
        # four big-endian ints packed most significant first == the UUID's bytes
        return [(occ.offset, value.bytes)]
    return [(occ.offset, encode_text(value, occ.kind, like))]


# ---------- tag streams ----------


@dataclass
class _Compound:
    name: Optional[bytes]
    pending: Dict[bytes, Tuple[Optional[int], Optional[int]]] = field(default_factory=dict)


@dataclass
class _List:
    name: Optional[bytes]
    kind: int
    count: int
    index: int = 0


class TagStreamScanner:
    """
    Single pass over an uncompressed tag stream.

    Long pairs are matched by a per-compound table of pending halves keyed by
    the name prefix; a half still pending when its compound closes is dropped.
    """

    def __init__(self, data: bytes, *, scan_strings: bool = True):
        self.data = data
        self.pos = 0
        self.scan_strings = scan_strings
        self.occurrences: List[Occurrence] = []
        self._stack: List[Union[_Compound, _List]] = []

    def _need(self, n: int) -> None:
        if self.pos + n > len(self.data):
            raise MalformedTagStream(f"Unexpected end of tag stream at offset {self.pos}")

    def _u8(self) -> int:
        self._need(1)
        v = self.data[self.pos]
        self.pos += 1
        return v

    def _u16(self) -> int:
        self._need(2)
        v = struct.unpack_from(">H", self.data, self.pos)[0]
        self.pos += 2
        return v

    def _u32(self) -> int:
        self._need(4)
        v = struct.unpack_from(">I", self.data, self.pos)[0]
        self.pos += 4
        return v

    def _skip(self, n: int) -> int:
        self._need(n)
        start = self.pos
        self.pos += n
        return start

    def _name(self) -> bytes:
        start = self._skip(self._u16())
        return bytes(self.data[start : self.pos])

    def _where(self, leaf: Optional[bytes] = None) -> str:
        parts: List[str] = []
        for frame in self._stack:
            if frame.name:
                parts.append("." + frame.name.decode("utf-8", errors="replace"))
            if isinstance(frame, _List):
                parts.append(f"[{frame.index - 1}]")
        if leaf:
            parts.append("." + leaf.decode("utf-8", errors="replace"))
        return "".join(parts).lstrip(".")

    def scan(self) -> List[Occurrence]:
        kind = self._u8()
        if kind == TAG_END:
            raise MalformedTagStream("Tag stream has no root tag")
        self._value(kind, self._name())
        while self._stack:
            top = self._stack[-1]
            if isinstance(top, _List):
                if top.index == top.count:
                    self._stack.pop()
                    continue
                top.index += 1
                self._value(top.kind, None)
                continue

            kind = self._u8()
            if kind == TAG_END:
                self._stack.pop()
                continue
            name = self._name()
            value_at = self.pos
            self._value(kind, name)
            if kind == TAG_LONG:
                self._long_half(top, name, value_at)

        if self.pos != len(self.data):
            raise MalformedTagStream(f"Unexpected trailing data at offset {self.pos}")
        return self.occurrences

    def _value(self, kind: int, name: Optional[bytes]) -> None:
        size = _FIXED_SIZES.get(kind)
        if size is not None:
            self._skip(size)
        elif kind == TAG_INT_ARRAY:
            count = self._u32()
            start = self._skip(count * 4)
            if count == 4:
                raw = bytes(self.data[start : start + 16])
                self.occurrences.append(
                    Occurrence(start, INT_ARRAY, uuid.UUID(bytes=raw), where=self._where(name))
                )
        elif kind in _ARRAY_ELEMENT_SIZES:
            self._skip(self._u32() * _ARRAY_ELEMENT_SIZES[kind])
        elif kind == TAG_STRING:
            length = self._u16()
            start = self._skip(length)
            if self.scan_strings and length >= TEXT_WIDTHS[HEX]:
                where = self._where(name)
                for occ in find_text_uuids(bytes(self.data[start : start + length])):
                    self.occurrences.append(
                        Occurrence(start + occ.offset, occ.kind, occ.uuid, where=where)
                    )
        elif kind == TAG_LIST:
            elem = self._u8()
            count = self._u32()
            elem_size = _FIXED_SIZES.get(elem)
            if elem_size is not None:
                self._skip(count * elem_size)
            else:
                self._stack.append(_List(name, elem, count))
        elif kind == TAG_COMPOUND:
            self._stack.append(_Compound(name))
        else:
            raise MalformedTagStream(f"Unknown tag type {kind} at offset {self.pos - 1}")

    def _long_half(self, frame: _Compound, name: bytes, value_at: int) -> None:
        if name.endswith(_MOST):
            prefix = name[: -len(_MOST)]
            most, least = value_at, frame.pending.get(prefix, (None, None))[1]
        elif name.endswith(_LEAST):
            prefix = name[: -len(_LEAST)]
            most, least = frame.pending.get(prefix, (None, None))[0], value_at
        else:
            return
        if most is None or least is None:
            frame.pending[prefix] = (most, least)
            return
        del frame.pending[prefix]
        hi = struct.unpack_from(">Q", self.data, most)[0]
        lo = struct.unpack_from(">Q", self.data, least)[0]
        self.occurrences.append(
            Occurrence(
                most,
                LONG_PAIR,
                uuid.UUID(int=(hi << 64) | lo),
                least_offset=least,
                where=self._where(prefix + _MOST),
            )
        )


def find_tag_stream_uuids(payload: bytes, *, scan_strings: bool = True) -> List[Occurrence]:
    """All UUID-shaped values in one tag stream; raises MalformedTagStream."""
    return TagStreamScanner(payload, scan_strings=scan_strings).scan()


def resolve_occurrences(
    buf: Union[bytearray, List[str]],
    occurrences: Sequence[Occurrence],
    remap: RemapFunction,
) -> Tuple[int, int]:
    """
    Write remapped values over `buf` in place.

    `buf` is a bytearray for file content and tag streams, or a list of
    characters for a filename. Returns (replaced, unmapped).
    """
    replaced = unmapped = 0
    for occ in occurrences:
        new = remap(occ.uuid)
        if new is None:
            unmapped += 1
            continue
        replaced += 1
        like: Text = b""
        width = TEXT_WIDTHS.get(occ.kind)
        if width is not None:
            like = buf[occ.offset : occ.offset + width]
            if isinstance(buf, list):
                like = "".join(like)
            else:
                like = bytes(like)
        for offset, piece in encode_uuid(occ, new, like):
            buf[offset : offset + len(piece)] = piece
    return replaced, unmapped
