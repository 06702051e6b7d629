"""
Local sources for the UUID -> UUID table handed to the remapper.

Supported kinds:
  csv                  header line ignored, then `from,to` rows
  json                 {"from": "to", ...}
  ini                  [mapping] section, `from = to`
  offline-rename-csv   header line ignored, then `old_name,new_name` rows,
                       both sides turned into offline-mode UUIDs

Rows that do not parse are skipped.
"""

from __future__ import annotations

import configparser
import hashlib
import json
import uuid
from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple


MAPPING_KINDS = ("csv", "json", "ini", "offline-rename-csv")


class MappingRemap:
    """Dict backed remap function. Picklable, so it can be shipped to worker processes."""

    def __init__(self, mapping: Optional[Dict[uuid.UUID, uuid.UUID]] = None):
        self.mapping: Dict[uuid.UUID, uuid.UUID] = dict(mapping or {})

    def __call__(self, value: uuid.UUID) -> Optional[uuid.UUID]:
        return self.mapping.get(value)

    def __len__(self) -> int:
        return len(self.mapping)

    def items(self) -> Iterable[Tuple[uuid.UUID, uuid.UUID]]:
        return self.mapping.items()


def _parse_uuid(s: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(s.strip())
    except (ValueError, AttributeError):
        return None


def offline_uuid(name: str) -> uuid.UUID:
    # Same as Java's UUID.nameUUIDFromBytes: MD5, version 3, IETF variant
    digest = hashlib.md5(("OfflinePlayer:" + name).encode("utf-8")).digest()
    return uuid.UUID(bytes=digest, version=3)


def _csv_pairs(path: Path) -> Iterable[Tuple[str, str]]:
    lines = path.read_text(encoding="utf-8").splitlines()
    for line in lines[1:]:
        parts = line.split(",")
        if len(parts) != 2:
            continue
        yield parts[0].strip(), parts[1].strip()


def load_csv(path: Path) -> Dict[uuid.UUID, uuid.UUID]:
    out: Dict[uuid.UUID, uuid.UUID] = {}
    for a, b in _csv_pairs(path):
        src, dst = _parse_uuid(a), _parse_uuid(b)
        if src and dst:
            out[src] = dst
    return out


def load_json(path: Path) -> Dict[uuid.UUID, uuid.UUID]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object in {path}")
    out: Dict[uuid.UUID, uuid.UUID] = {}
    for k, v in data.items():
        src = _parse_uuid(k)
        dst = _parse_uuid(v) if isinstance(v, str) else None
        if src and dst:
            out[src] = dst
    return out


def load_ini(path: Path) -> Dict[uuid.UUID, uuid.UUID]:
    """
    Expected format:
      [mapping]
      069a79f4-44e9-4726-a5be-fca90e38aaf5 = 2d318504-1a7b-39dc-8c18-44df798a5c06
    """
    # Only '=' separates keys from values.
    cfg = configparser.ConfigParser(delimiters=("=",), interpolation=None)
    cfg.optionxform = str
    cfg.read(path, encoding="utf-8")
    if "mapping" not in cfg:
        return {}
    out: Dict[uuid.UUID, uuid.UUID] = {}
    for k, v in cfg["mapping"].items():
        src, dst = _parse_uuid(k), _parse_uuid(v)
        if src and dst:
            out[src] = dst
    return out


def load_offline_rename(path: Path) -> Dict[uuid.UUID, uuid.UUID]:
    out: Dict[uuid.UUID, uuid.UUID] = {}
    for old, new in _csv_pairs(path):
        if old and new:
            out[offline_uuid(old)] = offline_uuid(new)
    return out


def get_mapping(kind: str, path: Path) -> MappingRemap:
    loaders = {
        "csv": load_csv,
        "json": load_json,
        "ini": load_ini,
        "offline-rename-csv": load_offline_rename,
    }
    if kind not in loaders:
        raise ValueError(f"Unknown mapping kind: {kind}")
    return MappingRemap(loaders[kind](Path(path)))
