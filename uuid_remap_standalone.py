"""
Standalone UUID remapper for Minecraft Java worlds.

Key points:
- Walks the whole world folder and rewrites player UUIDs in place.
- Region files (*.mca), external chunks (*.mcc), gzip/zlib files (*.dat, *.nbt)
  and text files (*.txt, *.json, *.json5) are edited without re-serializing:
  every replacement has the same width as the value it replaces.
- File names that contain a UUID (playerdata/<uuid>.dat, stats/<uuid>.json, ...)
  are renamed after their content was written.
- Matching is heuristic. UUID-looking values that are not player ids (any
  4-element int array) are remapped too, and some encodings are never found.

Typical usage:
  python uuid_remap_standalone.py "C:\\path\\to\\world" --mapping-kind csv --mapping map.csv
  python uuid_remap_standalone.py "C:\\path\\to\\world" --mapping-kind offline-rename-csv --mapping names.csv --yes
  python uuid_remap_standalone.py "C:\\path\\to\\world" --mapping map.json --mapping-kind json --dry-run --show-occurrences
"""

from __future__ import annotations

import argparse
import contextlib
import io
import os
import time
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence
import multiprocessing

import nbtlib

from uuid_remap_formats import (
    BINARY,
    SKIP,
    TEXT,
    ChunkFailure,
    MalformedTagStream,
    RemapError,
    UnreadableFile,
    WriteFailure,
    classify,
    decode_blob,
    decode_external,
    decode_region,
    encode_blob,
    file_extension,
    rebuild_region,
)
from uuid_remap_mapping import MAPPING_KINDS, MappingRemap, get_mapping
from uuid_remap_scan import (
    Occurrence,
    RemapFunction,
    find_tag_stream_uuids,
    find_text_uuids,
    resolve_occurrences,
)


@dataclass
class FileResult:
    path: str
    classification: str
    found: int = 0
    replaced: int = 0
    unmapped: int = 0
    changed: bool = False
    renamed_to: Optional[str] = None
    occurrences: List[Occurrence] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def tally(self, occurrences: Sequence[Occurrence], replaced: int, unmapped: int) -> None:
        self.occurrences.extend(occurrences)
        self.found += len(occurrences)
        self.replaced += replaced
        self.unmapped += unmapped


@dataclass
class RemapReport:
    files_processed: int = 0
    files_changed: int = 0
    files_renamed: int = 0
    found: int = 0
    replaced: int = 0
    unmapped: int = 0
    failures: List[str] = field(default_factory=list)

    def add(self, result: FileResult) -> None:
        self.files_processed += 1
        self.found += result.found
        self.replaced += result.replaced
        self.unmapped += result.unmapped
        if result.changed:
            self.files_changed += 1
        if result.renamed_to:
            self.files_renamed += 1
        for f in result.failures:
            self.failures.append(f"{result.path}: {f}")
        if result.error:
            self.failures.append(f"{result.path}: {result.error}")


def _remap_payload(payload: bytes, remap: RemapFunction, result: FileResult) -> bytes:
    occurrences = find_tag_stream_uuids(payload)
    buf = bytearray(payload)
    replaced, unmapped = resolve_occurrences(buf, occurrences, remap)
    result.tally(occurrences, replaced, unmapped)
    return bytes(buf)


def _remap_text(original: bytes, remap: RemapFunction, result: FileResult) -> bytes:
    occurrences = find_text_uuids(original)
    buf = bytearray(original)
    replaced, unmapped = resolve_occurrences(buf, occurrences, remap)
    result.tally(occurrences, replaced, unmapped)
    return bytes(buf)


def _remap_region(path: Path, original: bytes, remap: RemapFunction, result: FileResult) -> bytes:
    region = decode_region(original, path)
    result.failures.extend(str(f) for f in region.failures)

    updated = {}
    for chunk in region.chunks:
        idx = chunk.pointer.idx
        try:
            new_payload = _remap_payload(chunk.payload, remap, result)
        except MalformedTagStream as e:
            result.failures.append(str(ChunkFailure(idx, str(e))))
            continue
        if new_payload != chunk.payload:
            updated[idx] = new_payload

    if not updated:
        return original
    rebuilt, failures = rebuild_region(region, updated)
    result.failures.extend(str(f) for f in failures)
    return rebuilt


def _remap_content(path: Path, original: bytes, remap: RemapFunction, result: FileResult) -> bytes:
    if result.classification == TEXT:
        return _remap_text(original, remap, result)

    ext = file_extension(path)
    if ext == "mca":
        return _remap_region(path, original, remap, result)
    container = decode_external(path, original) if ext == "mcc" else decode_blob(original)
    new_payload = _remap_payload(container.payload, remap, result)
    if new_payload == container.payload:
        return original
    return encode_blob(container, new_payload)


def _remap_filename(name: str, remap: RemapFunction, result: FileResult) -> str:
    suffix = Path(name).suffix
    stem = name[: len(name) - len(suffix)]
    occurrences = find_text_uuids(stem)
    if not occurrences:
        return name
    chars = list(stem)
    replaced, unmapped = resolve_occurrences(chars, occurrences, remap)
    result.tally(occurrences, replaced, unmapped)
    return "".join(chars) + suffix


def _write_atomic(path: Path, original: bytes, rebuilt: bytes, make_backup: bool) -> None:
    # backups + atomic replace
    tmp = path.with_suffix(path.suffix + ".tmp")
    try:
        if make_backup:
            backup_path = path.with_suffix(path.suffix + ".bak")
            if not backup_path.exists():
                backup_path.write_bytes(original)
        tmp.write_bytes(rebuilt)
        tmp.replace(path)
    except OSError as e:
        with contextlib.suppress(OSError):
            tmp.unlink()
        raise WriteFailure(f"Failed to write {path}: {e}") from e


def remap_file(
    path,
    remap: RemapFunction,
    *,
    dry_run: bool = False,
    make_backup: bool = False,
) -> FileResult:
    """
    Locate and remap every UUID in one file, then its name.

    Content goes through a temporary file and an atomic rename, so the
    original is either fully replaced or untouched. A file whose bytes come
    out identical is not written at all. The rename to a new file name only
    happens after the content was written and never overwrites an existing
    file; a rename that fails is reported in `error` of the returned result.
    """
    path = Path(path)
    result = FileResult(path=str(path), classification=classify(path))

    if result.classification != SKIP:
        try:
            original = path.read_bytes()
        except OSError as e:
            raise UnreadableFile(f"Cannot read {path}: {e}") from e
        if original:
            rebuilt = _remap_content(path, original, remap, result)
            if rebuilt != original:
                result.changed = True
                if not dry_run:
                    _write_atomic(path, original, rebuilt, make_backup)

    new_name = _remap_filename(path.name, remap, result)
    if new_name != path.name:
        target = path.with_name(new_name)
        if not dry_run:
            try:
                _rename_no_clobber(path, target)
            except WriteFailure as e:
                # content may already be rewritten, so keep the counts
                result.error = f"{type(e).__name__}: {e}"
                return result
        result.renamed_to = str(target)
    return result


def _rename_no_clobber(path: Path, target: Path) -> None:
    if target.exists():
        raise WriteFailure(f"Cannot rename {path.name} to {target.name}: target exists")
    try:
        path.rename(target)
    except OSError as e:
        raise WriteFailure(f"Failed to rename {path} to {target.name}: {e}") from e


def _process_file(path: str, remap: RemapFunction, dry_run: bool, make_backup: bool) -> FileResult:
    try:
        return remap_file(path, remap, dry_run=dry_run, make_backup=make_backup)
    except Exception as e:
        # one bad file never stops the run; the error travels back in the result
        return FileResult(path=path, classification=classify(path), error=f"{type(e).__name__}: {e}")


# our own leftovers: backups and temp files of interrupted writes
_ARTEFACT_SUFFIXES = (".bak", ".tmp")


def scan_world(world: Path) -> List[Path]:
    return sorted(
        p
        for p in Path(world).rglob("*")
        if p.is_file() and not p.is_symlink() and p.suffix.lower() not in _ARTEFACT_SUFFIXES
    )


def remap_world(
    world,
    remap: RemapFunction,
    *,
    workers: int = 1,
    use_processes: bool = False,
    dry_run: bool = False,
    make_backup: bool = False,
    log: Optional[Callable[[str], None]] = None,
    files: Optional[Sequence[Path]] = None,
    show_occurrences: bool = False,
) -> RemapReport:
    """
    Remap every file under `world` on a pool of `workers`.

    Each file is one task, handled start to finish by a single worker.
    Results are folded into the report here, in the calling thread. With
    `use_processes` the remap function must be picklable (MappingRemap is).
    """
    if files is None:
        files = scan_world(Path(world))
    report = RemapReport()
    total = len(files)
    started = time.time()
    last_progress = started

    pool_cls = ProcessPoolExecutor if use_processes else ThreadPoolExecutor
    with pool_cls(max_workers=max(1, workers)) as ex:
        futures = [ex.submit(_process_file, str(p), remap, dry_run, make_backup) for p in files]

        for fut in as_completed(futures):
            result = fut.result()
            report.add(result)
            if log is None:
                continue

            if result.error:
                log(f"[error] {result.path}: {result.error}")
            for f in result.failures:
                log(f"[error] {result.path}: {f}")
            if show_occurrences:
                for occ in result.occurrences:
                    log(f"  {result.path}: {occ.describe()}")
            if result.renamed_to:
                log(f"Renamed {result.path} -> {Path(result.renamed_to).name}")

            # Progress output (so long runs don't look "stuck")
            now = time.time()
            if result.changed or (now - last_progress) >= 5.0 or report.files_processed == total:
                elapsed = now - started
                fps = (report.files_processed / elapsed) if elapsed > 0 else 0.0
                log(
                    f"Progress: files {report.files_processed}/{total} "
                    f"({fps:.2f} f/s), found {report.found}, replaced {report.replaced}, "
                    f"unmapped {report.unmapped}"
                )
                last_progress = now

    return report


def _debug_structure(path: Path, limit: int, log: Callable[[str], None]) -> int:
    """Print root keys of up to `limit` tag streams in `path`; returns how many were printed."""
    try:
        data = path.read_bytes()
        ext = file_extension(path)
        if ext == "mca":
            payloads = [(f"idx={c.pointer.idx}", c.payload) for c in decode_region(data, path).chunks]
        elif ext == "mcc":
            payloads = [("", decode_external(path, data).payload)]
        else:
            payloads = [("", decode_blob(data).payload)]
    except (OSError, RemapError) as e:
        log(f"[debug-structure] {path.name}: {type(e).__name__}: {e}")
        return 0

    printed = 0
    for label, payload in payloads[:limit]:
        where = f"{path.name} {label}" if label else path.name
        try:
            root = nbtlib.File.parse(io.BytesIO(payload), byteorder="big")
            log(f"[debug-structure] {where}: root keys={list(root.keys())}")
        except Exception as e:
            log(f"[debug-structure] {where}: {type(e).__name__}: {e}")
        printed += 1
    return printed


def run(argv: Optional[Sequence[str]] = None, *, log=print, ask=input) -> int:
    """
    Main implementation. Kept separate so a caller can capture output via `log`.
    """
    parser = argparse.ArgumentParser(description="Remap player UUIDs in a Minecraft Java world folder.")
    parser.add_argument("world", type=str, help="Path to the Minecraft world folder.")
    parser.add_argument(
        "--mapping-kind",
        choices=MAPPING_KINDS,
        default="csv",
        help="Format of the mapping file (default: csv).",
    )
    parser.add_argument(
        "--mapping",
        type=str,
        default="",
        help="Path to the mapping file. If omitted, nothing is remapped (occurrences are only counted).",
    )
    parser.add_argument(
        "--processes",
        type=int,
        default=(os.cpu_count() or 1),
        help="Worker count (default: CPU logical thread count).",
    )
    parser.add_argument("--threads", action="store_true", help="Use worker threads instead of worker processes.")
    parser.add_argument("--dry-run", action="store_true", help="Do not write files, just report what would change.")
    parser.add_argument("--no-backup", action="store_true", help="Do not create .bak backups for modified files.")
    parser.add_argument("--yes", "-y", action="store_true", help="Skip the confirmation prompt.")
    parser.add_argument("--show-occurrences", action="store_true", help="Print every located UUID and where it was found.")
    parser.add_argument("--debug-structure", type=int, default=0, help="Print root keys for the first N tag streams (0 disables).")
    args = parser.parse_args(list(argv) if argv is not None else None)

    world_path = Path(args.world)
    if not world_path.is_dir():
        raise SystemExit(f"World folder not found: {world_path}")

    mapping_src = "none"
    if args.mapping:
        mapping_path = Path(args.mapping)
        if not mapping_path.exists():
            raise SystemExit(f"Mapping file not found: {mapping_path}")
        try:
            remap = get_mapping(args.mapping_kind, mapping_path)
        except ValueError as e:
            raise SystemExit(f"Failed to load mapping {mapping_path}: {e}")
        mapping_src = f"{args.mapping_kind}:{mapping_path}"
    else:
        remap = MappingRemap()

    files = scan_world(world_path)
    if not files:
        raise SystemExit(f"No files found in: {world_path}")

    log(f"World folder: {world_path}")
    log(f"Files: {len(files)} ({sum(1 for p in files if classify(p) != SKIP)} with remappable content)")
    log(f"Mapping entries: {len(remap)} (source: {mapping_src})")
    if not len(remap):
        log("Empty mapping: every located UUID will be left as is (useful to audit a world).")
    for src, dst in remap.items():
        log(f"  {src} -> {dst}")
    log(f"Workers: {args.processes} ({'threads' if args.threads else 'processes'})")
    log(f"Backups: {'off' if args.no_backup else 'on'}")

    if args.debug_structure > 0:
        remaining = args.debug_structure
        for p in files:
            if remaining <= 0:
                break
            if classify(p) == BINARY:
                remaining -= _debug_structure(p, remaining, log)

    if not (args.yes or args.dry_run):
        log(f"We will modify up to {len(files)} files in {world_path}. Make sure to back up your world first.")
        answer = ask("Is this correct? [YES/NO/Y/N] ")
        if answer.strip().lower() not in ("yes", "y"):
            log("Cancelled by user")
            return 1

    started = time.time()
    report = remap_world(
        world_path,
        remap,
        workers=args.processes,
        use_processes=not args.threads,
        dry_run=args.dry_run,
        make_backup=not args.no_backup,
        log=log,
        files=files,
        show_occurrences=args.show_occurrences,
    )

    elapsed = time.time() - started
    mm = int(elapsed // 60)
    ss = int(elapsed % 60)
    log(
        "Summary: "
        f"files {report.files_processed} processed, {report.files_changed} changed, "
        f"{report.files_renamed} renamed; "
        f"UUIDs {report.found} found, {report.replaced} replaced, {report.unmapped} unmapped; "
        f"failures {len(report.failures)}; "
        f"elapsed {mm:02d}:{ss:02d}"
    )
    if args.dry_run:
        log("Dry-run: no files were modified.")
    return 2 if report.failures else 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    return run(argv, log=print)


if __name__ == "__main__":
    multiprocessing.freeze_support()
    raise SystemExit(main())
