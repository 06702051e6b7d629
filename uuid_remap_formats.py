"""
File classification and container codecs for world saves.

Only enough of each container is decoded to expose flat tag-stream payloads
plus the byte ranges needed to put them back:
- single-blob files (*.dat, *.dat_old, *.nbt): gzip, zlib or raw tag stream
- Anvil region files (*.mca): 8 KiB header, sector addressed chunk blobs
- external chunk files (*.mcc): one oversized chunk stored next to its region

Nothing here builds a document tree; see uuid_remap_scan for the locators.
"""

from __future__ import annotations

import gzip
import math
import re
import struct
import zlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple, Union


SECTOR_BYTES = 4096
HEADER_BYTES = SECTOR_BYTES * 2
SLOT_COUNT = 1024
MAX_CHUNK_SECTORS = 255

COMPRESSION_GZIP = 1
COMPRESSION_ZLIB = 2
COMPRESSION_NONE = 3
COMPRESSION_LZ4 = 4
COMPRESSION_EXTERNAL = 128

GZIP_MAGIC = b"\x1f\x8b"

TEXT = "text"
BINARY = "binary"
SKIP = "skip"

TEXT_EXTENSIONS = frozenset({"txt", "json", "json5"})
BINARY_EXTENSIONS = frozenset({"dat", "dat_old", "nbt", "mca", "mcc"})

_REGION_NAME = re.compile(r"^r\.(-?\d+)\.(-?\d+)\.mca$", re.IGNORECASE)
_EXTERNAL_NAME = re.compile(r"^c\.(-?\d+)\.(-?\d+)\.mcc$", re.IGNORECASE)

PathLike = Union[str, Path]


class RemapError(Exception):
    """Base class for per-file problems; none of these abort a run."""


class UnreadableFile(RemapError, OSError):
    pass


class MalformedContainer(RemapError, ValueError):
    pass


class MalformedTagStream(MalformedContainer):
    pass


class WriteFailure(RemapError, OSError):
    pass


def file_extension(path: PathLike) -> str:
    return Path(path).suffix[1:].lower()


def classify(path: PathLike) -> str:
    """Return TEXT, BINARY or SKIP for a path, judged by extension only."""
    ext = file_extension(path)
    if ext in TEXT_EXTENSIONS:
        return TEXT
    if ext in BINARY_EXTENSIONS:
        return BINARY
    return SKIP


# ---------- single-blob containers ----------


@dataclass
class BlobContainer:
    scheme: int
    payload: bytes
    gzip_mtime: int = 0


def _sniff_scheme(data: bytes) -> int:
    if data[:2] == GZIP_MAGIC:
        return COMPRESSION_GZIP
    # zlib header: CM=8 and FCHECK makes the first two bytes a multiple of 31
    if len(data) >= 2 and data[0] & 0x0F == 8 and ((data[0] << 8) | data[1]) % 31 == 0:
        return COMPRESSION_ZLIB
    return COMPRESSION_NONE


def _decompress(data: bytes, scheme: int) -> bytes:
    if scheme == COMPRESSION_GZIP:
        return gzip.decompress(data)
    if scheme == COMPRESSION_ZLIB:
        return zlib.decompress(data)
    if scheme == COMPRESSION_NONE:
        return bytes(data)
    if scheme == COMPRESSION_LZ4:
        raise MalformedContainer("LZ4 compressed chunks are not supported")
    raise MalformedContainer(f"Unknown compression type: {scheme}")


def _compress(payload: bytes, scheme: int, gzip_mtime: int = 0) -> bytes:
    if scheme == COMPRESSION_GZIP:
        return gzip.compress(payload, mtime=gzip_mtime)
    if scheme == COMPRESSION_ZLIB:
        return zlib.compress(payload)
    if scheme == COMPRESSION_NONE:
        return bytes(payload)
    raise MalformedContainer(f"Cannot recompress with compression type {scheme}")


def _gzip_mtime(data: bytes) -> int:
    if len(data) < 8:
        return 0
    return struct.unpack("<I", data[4:8])[0]


def decode_blob(data: bytes) -> BlobContainer:
    """
    Decode a whole-file container.

    gzip when the magic bytes are present, otherwise zlib; if that fails too,
    a file that already starts with a compound or list tag is taken as an
    uncompressed tag stream.
    """
    if data[:2] == GZIP_MAGIC:
        try:
            payload = gzip.decompress(data)
        except (OSError, EOFError, zlib.error) as e:
            raise MalformedContainer(f"Broken gzip stream: {e}") from e
        return BlobContainer(COMPRESSION_GZIP, payload, _gzip_mtime(data))
    try:
        return BlobContainer(COMPRESSION_ZLIB, zlib.decompress(data))
    except zlib.error:
        pass
    if data[:1] in (b"\x0a", b"\x09"):
        return BlobContainer(COMPRESSION_NONE, bytes(data))
    raise MalformedContainer("Not a gzip, zlib or raw tag stream")


def encode_blob(container: BlobContainer, payload: bytes) -> bytes:
    return _compress(payload, container.scheme, container.gzip_mtime)


# ---------- external chunk containers ----------


def external_chunk_path(region_path: Path, idx: int) -> Optional[Path]:
    """c.<X>.<Z>.mcc sibling for slot `idx` of r.<rx>.<rz>.mca, or None for odd names."""
    m = _REGION_NAME.match(region_path.name)
    if not m:
        return None
    x = int(m.group(1)) * 32 + (idx & 31)
    z = int(m.group(2)) * 32 + (idx >> 5)
    return region_path.with_name(f"c.{x}.{z}.mcc")


def owning_region(external_path: Path) -> Optional[Tuple[Path, int]]:
    m = _EXTERNAL_NAME.match(external_path.name)
    if not m:
        return None
    x, z = int(m.group(1)), int(m.group(2))
    region = external_path.with_name(f"r.{x >> 5}.{z >> 5}.mca")
    return region, (x & 31) + (z & 31) * 32


def _stub_scheme(external_path: Path) -> Optional[int]:
    owner = owning_region(external_path)
    if owner is None:
        return None
    region_path, idx = owner
    try:
        with region_path.open("rb") as fp:
            fp.seek(idx * 4)
            entry = fp.read(4)
            if len(entry) < 4:
                return None
            off = int.from_bytes(entry[:3], "big")
            if off == 0:
                return None
            fp.seek(off * SECTOR_BYTES + 4)
            b = fp.read(1)
    except OSError:
        return None
    if b and b[0] >= COMPRESSION_EXTERNAL:
        return b[0] - COMPRESSION_EXTERNAL
    return None


def decode_external(path: Path, data: bytes) -> BlobContainer:
    """
    Decode a *.mcc file. Its compression type lives in the region stub, so ask
    the owning region first and only fall back to sniffing the magic bytes.
    """
    scheme = _stub_scheme(path)
    if scheme is None:
        scheme = _sniff_scheme(data)
    try:
        payload = _decompress(data, scheme)
    except (OSError, EOFError, zlib.error) as e:
        raise MalformedContainer(f"Broken external chunk stream: {e}") from e
    mtime = _gzip_mtime(data) if scheme == COMPRESSION_GZIP else 0
    return BlobContainer(scheme, payload, mtime)


# ---------- region containers ----------


@dataclass(frozen=True)
class ChunkPointer:
    idx: int
    off_sectors: int
    sector_count: int

    @property
    def local(self) -> Tuple[int, int]:
        return (self.idx & 31, self.idx >> 5)


@dataclass
class RegionChunk:
    pointer: ChunkPointer
    scheme: int
    payload: bytes


@dataclass(frozen=True)
class ExternalChunk:
    pointer: ChunkPointer
    scheme: int
    path: Path


@dataclass(frozen=True)
class ChunkFailure:
    idx: int
    reason: str

    def __str__(self) -> str:
        x, z = self.idx & 31, self.idx >> 5
        return f"chunk ({x}, {z}): {self.reason}"


@dataclass
class RegionFile:
    data: bytes
    slots: List[Tuple[int, int]]
    chunks: List[RegionChunk] = field(default_factory=list)
    external: List[ExternalChunk] = field(default_factory=list)
    failures: List[ChunkFailure] = field(default_factory=list)


def _read_locations(region_bytes: bytes) -> List[Tuple[int, int]]:
    locs: List[Tuple[int, int]] = []
    for i in range(SLOT_COUNT):
        entry = region_bytes[i * 4 : i * 4 + 4]
        off = int.from_bytes(entry[:3], "big")
        count = entry[3]
        locs.append((off, count))
    return locs


def _iter_present_chunks(slots: List[Tuple[int, int]]) -> Iterable[ChunkPointer]:
    for idx, (off, count) in enumerate(slots):
        if off:
            yield ChunkPointer(idx=idx, off_sectors=off, sector_count=count)


def _get_chunk_blob(region_bytes: bytes, ptr: ChunkPointer) -> bytes:
    if ptr.off_sectors < 2:
        raise MalformedContainer(f"Chunk offset {ptr.off_sectors} points into the header")
    if ptr.sector_count == 0:
        raise MalformedContainer("Chunk has an offset but no sectors")
    start = ptr.off_sectors * SECTOR_BYTES
    if start + 5 > len(region_bytes):
        raise MalformedContainer("Chunk starts beyond the end of the file")
    length = struct.unpack(">I", region_bytes[start : start + 4])[0]
    if length < 1:
        raise MalformedContainer("Invalid chunk length")
    if 4 + length > ptr.sector_count * SECTOR_BYTES:
        raise MalformedContainer(
            f"Chunk length {length} does not fit in {ptr.sector_count} sectors"
        )
    blob_end = start + 4 + length
    if blob_end > len(region_bytes):
        raise MalformedContainer("Chunk length mismatch")
    return region_bytes[start:blob_end]


def _decompress_chunk_nbt(blob: bytes) -> bytes:
    comp = blob[4]
    try:
        return _decompress(blob[5:], comp)
    except (OSError, EOFError, zlib.error) as e:
        raise MalformedContainer(f"Failed to decompress (type {comp}): {e}") from e


def _compress_chunk_nbt(nbt_bytes: bytes, compression_type: int) -> bytes:
    payload = _compress(nbt_bytes, compression_type)
    length = len(payload) + 1
    return struct.pack(">I", length) + bytes([compression_type]) + payload


def decode_region(data: bytes, path: Optional[Path] = None) -> RegionFile:
    """
    Split a region file into decoded chunks.

    Broken chunks end up in `failures` and are left alone on write-back; only
    a header that is too short to hold both tables fails the whole file.
    """
    if len(data) < HEADER_BYTES:
        raise MalformedContainer(f"Region header truncated ({len(data)} bytes)")

    region = RegionFile(data=data, slots=_read_locations(data))
    for ptr in _iter_present_chunks(region.slots):
        try:
            blob = _get_chunk_blob(data, ptr)
            comp = blob[4]
            if comp >= COMPRESSION_EXTERNAL:
                ext_path = external_chunk_path(path, ptr.idx) if path is not None else None
                if ext_path is None:
                    raise MalformedContainer("External chunk but the region name has no coordinates")
                if not ext_path.is_file():
                    raise MalformedContainer(f"External chunk file missing: {ext_path.name}")
                region.external.append(ExternalChunk(ptr, comp - COMPRESSION_EXTERNAL, ext_path))
                continue
            region.chunks.append(RegionChunk(ptr, comp, _decompress_chunk_nbt(blob)))
        except MalformedContainer as e:
            region.failures.append(ChunkFailure(ptr.idx, str(e)))
    return region


def _write_location(header: bytearray, idx: int, off: int, count: int) -> None:
    header[idx * 4 : idx * 4 + 3] = int(off).to_bytes(3, "big")
    header[idx * 4 + 3] = int(count) & 0xFF


def rebuild_region(region: RegionFile, updated: Dict[int, bytes]) -> Tuple[bytes, List[ChunkFailure]]:
    """
    Splice recompressed chunks back into the original bytes.

    `updated` maps slot index -> new uncompressed payload. A chunk that still
    fits its sectors is rewritten in place; a grown chunk is appended at the
    end of the file and only its location entry changes. Timestamps and every
    untouched chunk keep their exact bytes.
    """
    out = bytearray(region.data)
    failures: List[ChunkFailure] = []
    by_idx = {c.pointer.idx: c for c in region.chunks}
    # first free sector lies past every declared run, even runs cut short by EOF
    next_free = max(
        [math.ceil(len(out) / SECTOR_BYTES)] + [off + count for off, count in region.slots if off]
    )

    for idx in sorted(updated):
        chunk = by_idx[idx]
        payload = updated[idx]
        if len(payload) != len(chunk.payload):
            failures.append(ChunkFailure(idx, "Payload size changed during substitution"))
            continue
        try:
            blob = _compress_chunk_nbt(payload, chunk.scheme)
        except MalformedContainer as e:
            failures.append(ChunkFailure(idx, str(e)))
            continue
        sectors_needed = max(1, math.ceil(len(blob) / SECTOR_BYTES))
        if sectors_needed > MAX_CHUNK_SECTORS:
            failures.append(ChunkFailure(idx, f"Chunk too large for region format ({sectors_needed} sectors)"))
            continue

        ptr = chunk.pointer
        start = ptr.off_sectors * SECTOR_BYTES
        if sectors_needed <= ptr.sector_count:
            end = start + ptr.sector_count * SECTOR_BYTES
            tail = min(end, max(len(out), start + len(blob)))
            out[start:tail] = blob + bytes(tail - start - len(blob))
            continue

        new_off = next_free
        out.extend(b"\x00" * (new_off * SECTOR_BYTES - len(out)))
        out.extend(blob)
        out.extend(b"\x00" * (sectors_needed * SECTOR_BYTES - len(blob)))
        _write_location(out, idx, new_off, sectors_needed)
        next_free = new_off + sectors_needed

    return bytes(out), failures
