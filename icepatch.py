#!/usr/bin/env python3
"""Merge loose files into the ICE containers of a game data directory.

An ICE container bundles many named files into two independent groups.  This
tool takes a *patch tree* laid out as::

    <patch_root>/<platform>/<container>_ice/<group>/<file name>

where ``<group>`` is ``1`` or ``2``, and rewrites every matching container of
the *data tree* (``<data_root>/<platform>/<container>``) so that:

* entries whose name matches a patch file get the patch file's payload while
  keeping their position inside the group;
* patch files without a matching entry are appended after the existing
  entries, in the order the patch tree lists them.

Entries are never removed by a patch.  Before a container is overwritten, its
current bytes are copied to ``<data_root>/BACKUP/<platform>/<container>``; the
backup is replaced on every run, so it always holds the state the container had
right before the most recent patch.

```
python icepatch.py <patch_root> <data_root>
```

Every container is handled on its own: a malformed or unreadable container is
reported at the end of the run and the remaining containers are still patched.
Writes go through a temporary sibling file that is renamed over the target, so
an interrupted run never leaves a half written container behind.
"""

from __future__ import annotations

import argparse
import enum
import logging
import mmap
import os
import shutil
import struct
import sys
import tempfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path, PurePath
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

LOGGER = logging.getLogger("icepatch")

ICE_MAGIC = b"ICE\x00"
ICE_VERSION = 4
# magic, version, flags, header_size, total_size, g1 count, g1 size, g2 count, g2 size
CONTAINER_HEADER = struct.Struct("<4s8I")
CONTAINER_HEADER_SPAN = 0x40
# ext, entry_size, data_size, header_size, name_length
ENTRY_HEADER = struct.Struct("<4sIIII")
ENTRY_ALIGNMENT = 16
MAX_U32 = 0xFFFFFFFF

GROUP_LABELS = ("1", "2")
CONTAINER_SUFFIX = "_ice"
BACKUP_DIR_NAME = "BACKUP"
RESERVED_PATCH_DIR_NAME = "backup"

# Containers above this size will be memory-mapped instead of fully loaded into RAM.
MEMORY_MAP_THRESHOLD = int(os.environ.get("ICEPATCH_MEMORY_MAP_THRESHOLD", 256 * 1024 * 1024))
DEFAULT_WORKERS = int(os.environ.get("ICEPATCH_WORKERS", min(8, os.cpu_count() or 1)))
WRITE_CHUNK_SIZE = int(os.environ.get("ICEPATCH_WRITE_CHUNK_SIZE", 2 * 1024 * 1024))

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_CONFIGURATION = 2


class IcePatchError(RuntimeError):
    """Base class for every error raised by the patcher."""

    @property
    def kind(self) -> str:
        return type(self).__name__


class ConfigurationError(IcePatchError):
    """Raised when the run cannot start; no container is touched."""


class ContainerError(IcePatchError):
    """Raised when a single container cannot be patched."""


class NoGroupsSpecified(ContainerError):
    """Raised when a container patch supplies files for neither group."""


class ContainerUnavailable(ContainerError):
    """Raised when the target container is missing or cannot be read."""


class MalformedContainer(ContainerError):
    pass


class MalformedHeader(MalformedContainer):
    """Raised when the fixed-layout container header cannot be decoded."""


class MalformedGroupTable(MalformedContainer):
    """Raised when a group's entry records do not fit the container."""


class PatchFileUnreadable(ContainerError):
    """Raised when a file of the container's patch directory cannot be read."""


class DuplicatePatchFile(ContainerError):
    """Raised when one group receives two patch files with the same name."""


class InvalidEntryName(ContainerError):
    """Raised when an entry name cannot be stored in a container."""


class BackupFailure(ContainerError):
    pass


class WriteFailure(ContainerError):
    pass


@dataclass
class Entry:
    """A named payload stored inside a group."""

    name: str
    payload: bytes
    position: int
    ext: bytes = b""
    # Byte offset inside the group as found on disk; informational only.
    offset: int = field(default=0, compare=False)

    @property
    def size(self) -> int:
        return len(self.payload)


@dataclass
class Group:
    label: str
    entries: List[Entry] = field(default_factory=list)

    def names(self) -> List[str]:
        return [entry.name for entry in self.entries]


@dataclass
class Container:
    version: int
    flags: int
    groups: Dict[str, Group]

    def group(self, label: str) -> Group:
        group = self.groups.get(label)
        if group is None:
            return Group(label)
        return group


@dataclass(frozen=True)
class PatchFile:
    name: str
    payload: bytes
    order: int


@dataclass
class ContainerPatch:
    """Loose files that should be merged into one container.

    ``relative_path`` locates the container below the data root (and its backup
    below the backup root).  A group list is ``None`` when the patch tree has no
    directory for that group.  ``scan_error`` is set when the patch directory
    could not be read; patching the container then fails with that error.
    """

    relative_path: PurePath
    source: Optional[Path] = None
    group1: Optional[List[PatchFile]] = None
    group2: Optional[List[PatchFile]] = None
    scan_error: Optional[ContainerError] = None

    def group_files(self, label: str) -> Optional[List[PatchFile]]:
        if label == "1":
            return self.group1
        if label == "2":
            return self.group2
        raise KeyError(label)

    def has_files(self) -> bool:
        return bool(self.group1) or bool(self.group2)


@dataclass
class ContainerOutcome:
    relative_path: PurePath
    error: Optional[ContainerError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class PatchReport:
    outcomes: List[ContainerOutcome] = field(default_factory=list)

    @property
    def patched(self) -> List[ContainerOutcome]:
        return [outcome for outcome in self.outcomes if outcome.ok]

    @property
    def failures(self) -> List[ContainerOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.ok]

    @property
    def ok(self) -> bool:
        return not self.failures

    def summary_lines(self) -> List[str]:
        return [
            f"{outcome.relative_path.as_posix()}: {outcome.error.kind}: {outcome.error}"
            for outcome in self.failures
        ]


def _parse_header(data: bytes | mmap.mmap) -> Tuple[int, int, int, int, int, int, int]:
    """Validate the container header and return its fields (minus the magic)."""

    if len(data) < CONTAINER_HEADER.size:
        raise MalformedHeader(
            f"truncated header: {len(data)} bytes available, {CONTAINER_HEADER.size} required"
        )

    (
        magic,
        version,
        flags,
        header_size,
        total_size,
        g1_count,
        g1_size,
        g2_count,
        g2_size,
    ) = CONTAINER_HEADER.unpack_from(data, 0)

    if magic != ICE_MAGIC:
        raise MalformedHeader(f"not an ICE container (magic={magic!r})")
    if version != ICE_VERSION:
        raise MalformedHeader(f"unsupported ICE version {version}")
    if header_size < CONTAINER_HEADER.size:
        raise MalformedHeader(f"declared header size {header_size} is too small")
    if total_size != len(data):
        raise MalformedHeader(
            f"declared total size {total_size} does not match the actual length {len(data)}"
        )
    if header_size + g1_size + g2_size != total_size:
        raise MalformedHeader("group sizes do not add up to the declared total size")

    return version, flags, header_size, g1_count, g1_size, g2_count, g2_size


def _read_entry_name(data: bytes | mmap.mmap, offset: int, length: int, label: str, position: int) -> str:
    raw = bytes(data[offset : offset + length])
    terminator = raw.find(b"\x00")
    if terminator < 0:
        raise MalformedGroupTable(f"group {label}: entry {position} has an unterminated name")
    if terminator == 0:
        raise MalformedGroupTable(f"group {label}: entry {position} has an empty name")
    try:
        return raw[:terminator].decode("ascii")
    except UnicodeDecodeError as exc:
        raise MalformedGroupTable(
            f"group {label}: entry {position} name is not valid ASCII"
        ) from exc


def _parse_group(data: bytes | mmap.mmap, label: str, start: int, size: int, count: int) -> Group:
    """Walk ``count`` entry records stored back to back in ``data[start:start+size]``."""

    end = start + size
    cursor = start
    entries: List[Entry] = []
    seen: set[str] = set()

    for position in range(count):
        if cursor + ENTRY_HEADER.size > end:
            raise MalformedGroupTable(
                f"group {label}: entry {position} of {count} runs past the end of the group"
            )
        raw_ext, entry_size, data_size, header_size, name_length = ENTRY_HEADER.unpack_from(data, cursor)
        if name_length == 0 or header_size < ENTRY_HEADER.size + name_length:
            raise MalformedGroupTable(f"group {label}: entry {position} has an inconsistent header")
        if entry_size < header_size + data_size:
            raise MalformedGroupTable(
                f"group {label}: entry {position} declares a payload larger than its record"
            )
        if cursor + entry_size > end:
            raise MalformedGroupTable(
                f"group {label}: entry {position} runs past the end of the group"
            )

        name = _read_entry_name(data, cursor + ENTRY_HEADER.size, name_length, label, position)
        if name in seen:
            raise MalformedGroupTable(f"group {label}: entry name {name!r} appears more than once")
        seen.add(name)

        payload_start = cursor + header_size
        entries.append(
            Entry(
                name=name,
                payload=bytes(data[payload_start : payload_start + data_size]),
                position=position,
                ext=raw_ext.rstrip(b"\x00"),
                offset=cursor - start,
            )
        )
        cursor += entry_size

    if cursor != end:
        raise MalformedGroupTable(
            f"group {label}: {end - cursor} unexpected trailing bytes after {count} entries"
        )
    return Group(label, entries)


def parse_container(data: bytes | mmap.mmap) -> Container:
    """Decode raw container bytes into their groups and entries.

    Parsing never mutates ``data``; every payload is copied out so the returned
    container stays valid after the source buffer has been released.
    """

    version, flags, header_size, g1_count, g1_size, g2_count, g2_size = _parse_header(data)
    group1 = _parse_group(data, "1", header_size, g1_size, g1_count)
    group2 = _parse_group(data, "2", header_size + g1_size, g2_size, g2_count)
    return Container(version=version, flags=flags, groups={"1": group1, "2": group2})


def _read_container_bytes(path: Path) -> bytes | mmap.mmap:
    """Return the bytes for ``path`` using a memory map when appropriate."""

    if not path.is_file():
        raise ContainerUnavailable(f"target container {path} does not exist or is not a file")

    try:
        size = path.stat().st_size
        if size and size >= max(0, MEMORY_MAP_THRESHOLD):
            flags = os.O_RDONLY
            # Windows requires the O_BINARY flag to avoid implicit newline conversion.
            flags |= getattr(os, "O_BINARY", 0)
            fd = os.open(path, flags)
            try:
                return mmap.mmap(fd, length=0, access=mmap.ACCESS_READ)
            finally:
                os.close(fd)
        return path.read_bytes()
    except OSError as exc:
        raise ContainerUnavailable(f"unable to read container {path}: {exc}") from exc


def _release_container_buffer(buffer: object) -> None:
    """Release buffers that expose a ``close`` method (e.g. memory maps)."""

    close = getattr(buffer, "close", None)
    if callable(close):
        close()


def load_container(path: Path) -> Container:
    """Read and parse the container stored at ``path``."""

    data = _read_container_bytes(path)
    try:
        return parse_container(data)
    finally:
        _release_container_buffer(data)


def _extension_for(name: str) -> bytes:
    return PurePath(name).suffix[1:].encode("ascii", "replace")[:4]


def merge_group(group: Group, patch_files: Optional[Sequence[PatchFile]]) -> Group:
    """Return ``group`` with ``patch_files`` merged in.

    Existing entries keep their relative order; an entry whose name matches a
    patch file takes over that file's payload.  Patch files without a matching
    entry are appended in enumeration order.  Nothing is ever removed.
    """

    replacements: Dict[str, PatchFile] = {}
    for patch_file in patch_files or ():
        if patch_file.name in replacements:
            raise DuplicatePatchFile(
                f"group {group.label}: {patch_file.name!r} is supplied more than once"
            )
        replacements[patch_file.name] = patch_file

    merged: List[Entry] = []
    consumed: set[str] = set()
    for entry in sorted(group.entries, key=lambda item: item.position):
        patch_file = replacements.get(entry.name)
        payload = entry.payload
        if patch_file is not None:
            payload = patch_file.payload
            consumed.add(entry.name)
        merged.append(Entry(name=entry.name, payload=payload, position=len(merged), ext=entry.ext))

    appended = [item for item in replacements.values() if item.name not in consumed]
    for patch_file in sorted(appended, key=lambda item: item.order):
        merged.append(
            Entry(
                name=patch_file.name,
                payload=patch_file.payload,
                position=len(merged),
                ext=_extension_for(patch_file.name),
            )
        )

    LOGGER.debug(
        "group %s: %d replaced, %d appended, %d total",
        group.label,
        len(consumed),
        len(appended),
        len(merged),
    )
    return Group(group.label, merged)


def _align(value: int, alignment: int = ENTRY_ALIGNMENT) -> int:
    return value + (-value) % alignment


def _encode_entry_name(name: str, label: str) -> bytes:
    if not name:
        raise InvalidEntryName(f"group {label}: entry names must not be empty")
    try:
        encoded = name.encode("ascii")
    except UnicodeEncodeError as exc:
        raise InvalidEntryName(f"group {label}: entry name {name!r} is not valid ASCII") from exc
    if b"\x00" in encoded:
        raise InvalidEntryName(f"group {label}: entry name {name!r} contains a NUL byte")
    return encoded + b"\x00"


def _entry_spans(encoded_name: bytes, data_size: int) -> Tuple[int, int]:
    """Return ``(header_size, entry_size)`` for a record, both 16-byte aligned."""

    header_size = _align(ENTRY_HEADER.size + len(encoded_name))
    return header_size, _align(header_size + data_size)


def _encode_entry(entry: Entry, label: str) -> bytes:
    encoded_name = _encode_entry_name(entry.name, label)
    header_size, entry_size = _entry_spans(encoded_name, entry.size)
    if entry_size > MAX_U32:
        raise WriteFailure(f"group {label}: entry {entry.name!r} exceeds 32-bit size capacity")

    record = bytearray(
        ENTRY_HEADER.pack(
            entry.ext[:4],
            entry_size,
            entry.size,
            header_size,
            len(encoded_name),
        )
    )
    record.extend(encoded_name)
    record.extend(b"\x00" * (header_size - len(record)))
    record.extend(entry.payload)
    record.extend(b"\x00" * (entry_size - len(record)))
    return bytes(record)


def layout_group(group: Group) -> List[int]:
    """Return the offset every entry of ``group`` will have inside its region."""

    offsets: List[int] = []
    cursor = 0
    for entry in group.entries:
        offsets.append(cursor)
        _header_size, entry_size = _entry_spans(_encode_entry_name(entry.name, group.label), entry.size)
        cursor += entry_size
    return offsets


def serialize_container(container: Container) -> bytes:
    """Encode ``container`` with freshly computed sizes, counts and offsets."""

    regions: List[bytes] = []
    counts: List[int] = []
    for label in GROUP_LABELS:
        group = container.group(label)
        records = [_encode_entry(entry, label) for entry in group.entries]
        offsets = layout_group(group)
        region = bytearray(offsets[-1] + len(records[-1]) if records else 0)
        for offset, record in zip(offsets, records):
            region[offset : offset + len(record)] = record
        regions.append(bytes(region))
        counts.append(len(group.entries))

    total_size = CONTAINER_HEADER_SPAN + sum(len(region) for region in regions)
    if total_size > MAX_U32:
        raise WriteFailure("patched container exceeds 32-bit size capacity")

    header = CONTAINER_HEADER.pack(
        ICE_MAGIC,
        ICE_VERSION,
        container.flags & MAX_U32,
        CONTAINER_HEADER_SPAN,
        total_size,
        counts[0],
        len(regions[0]),
        counts[1],
        len(regions[1]),
    )

    output = bytearray(header)
    output.extend(b"\x00" * (CONTAINER_HEADER_SPAN - len(header)))
    for region in regions:
        output.extend(region)
    return bytes(output)


def _atomic_write_bytes(
    path: Path,
    data: bytes | mmap.mmap,
    *,
    chunk_size: int | None = None,
    mode_source: Path | None = None,
) -> None:
    """Write *data* to *path* through a temporary sibling file.

    The payload is written in chunks, flushed to disk and then renamed over
    *path*, so readers of *path* only ever see the old or the new contents.
    The permission bits are taken from *mode_source* when given, otherwise
    from the file being replaced.  The temporary file is removed when anything
    goes wrong.
    """

    if chunk_size is None:
        chunk_size = WRITE_CHUNK_SIZE
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")

    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    temp_path = Path(temp_name)
    try:
        with os.fdopen(fd, "wb") as handle:
            for start in range(0, len(data), chunk_size):
                handle.write(data[start : start + chunk_size])
            handle.flush()
            os.fsync(handle.fileno())
        if mode_source is None and path.is_file():
            mode_source = path
        if mode_source is not None:
            shutil.copymode(mode_source, temp_path)
        os.replace(temp_path, path)
    except Exception:
        try:
            temp_path.unlink()
        except FileNotFoundError:
            pass
        raise


def backup_path_for(data_root: Path, relative_path: PurePath) -> Path:
    """Return where the backup of ``data_root / relative_path`` lives."""

    return data_root / BACKUP_DIR_NAME / relative_path


def write_backup(data: bytes | mmap.mmap, backup_path: Path, source: Path | None = None) -> None:
    """Replace whatever is stored at ``backup_path`` with ``data``.

    The backup takes the permission bits of ``source``, the container it copies.
    """

    try:
        backup_path.parent.mkdir(parents=True, exist_ok=True)
        _atomic_write_bytes(backup_path, data, mode_source=source)
    except OSError as exc:
        raise BackupFailure(f"unable to write backup {backup_path}: {exc}") from exc


class NodeKind(enum.Enum):
    """What a directory of the patch tree stands for."""

    FOLDER = "folder"
    CONTAINER = "container"
    GROUP = "group"
    IGNORED = "ignored"


def classify_directory(name: str, *, inside_container: bool = False) -> NodeKind:
    if inside_container:
        return NodeKind.GROUP if name in GROUP_LABELS else NodeKind.IGNORED
    if name.endswith(CONTAINER_SUFFIX) and len(name) > len(CONTAINER_SUFFIX):
        return NodeKind.CONTAINER
    return NodeKind.FOLDER


def _sorted_children(directory: Path) -> List[os.DirEntry]:
    with os.scandir(directory) as iterator:
        return sorted(iterator, key=lambda child: child.name)


def _scan_group(directory: Path) -> List[PatchFile]:
    files: List[PatchFile] = []
    for child in _sorted_children(directory):
        if not child.is_file():
            LOGGER.warning("ignoring %s: only files are patched from a group directory", child.path)
            continue
        files.append(PatchFile(name=child.name, payload=Path(child.path).read_bytes(), order=len(files)))
    return files


def _scan_container(directory: Path, relative_path: PurePath) -> ContainerPatch:
    groups: Dict[str, List[PatchFile]] = {}
    for child in _sorted_children(directory):
        if not child.is_dir():
            LOGGER.debug("ignoring loose file %s", child.path)
            continue
        if classify_directory(child.name, inside_container=True) is NodeKind.IGNORED:
            LOGGER.debug("ignoring directory %s", child.path)
            continue
        try:
            groups[child.name] = _scan_group(Path(child.path))
        except OSError as exc:
            return ContainerPatch(
                relative_path=relative_path,
                source=directory,
                scan_error=PatchFileUnreadable(f"unable to read patch files in {child.path}: {exc}"),
            )

    return ContainerPatch(
        relative_path=relative_path,
        source=directory,
        group1=groups.get("1"),
        group2=groups.get("2"),
    )


def _scan_folder(directory: Path, relative_path: PurePath, patch_set: List[ContainerPatch]) -> None:
    for child in _sorted_children(directory):
        if not child.is_dir():
            LOGGER.debug("ignoring loose file %s", child.path)
            continue
        child_path = Path(child.path)
        if classify_directory(child.name) is NodeKind.CONTAINER:
            target = relative_path / child.name[: -len(CONTAINER_SUFFIX)]
            patch_set.append(_scan_container(child_path, target))
        else:
            _scan_folder(child_path, relative_path / child.name, patch_set)


def scan_patch_tree(patch_root: Path) -> List[ContainerPatch]:
    """Collect a :class:`ContainerPatch` for every ``*_ice`` directory below ``patch_root``."""

    patch_set: List[ContainerPatch] = []
    try:
        _scan_folder(patch_root, PurePath(), patch_set)
    except OSError as exc:
        raise ConfigurationError(f"unable to scan patch tree {patch_root}: {exc}") from exc
    return patch_set


def patch_container(container_patch: ContainerPatch, data_root: Path) -> Container:
    """Parse, back up, merge and rewrite a single container.

    Returns the container as written.  Any failure raises a
    :class:`ContainerError`; the file at the original path is then left as it
    was before the call.
    """

    relative_path = container_patch.relative_path
    if container_patch.scan_error is not None:
        raise container_patch.scan_error
    if not container_patch.has_files():
        raise NoGroupsSpecified("neither group 1 nor group 2 supplies files to patch")

    target = data_root / relative_path
    data = _read_container_bytes(target)
    try:
        original = parse_container(data)
        write_backup(data, backup_path_for(data_root, relative_path), target)
    finally:
        _release_container_buffer(data)

    merged = Container(
        version=original.version,
        flags=original.flags,
        groups={
            label: merge_group(original.group(label), container_patch.group_files(label))
            for label in GROUP_LABELS
        },
    )
    patched_bytes = serialize_container(merged)

    try:
        _atomic_write_bytes(target, patched_bytes)
    except OSError as exc:
        raise WriteFailure(f"unable to write patched container {target}: {exc}") from exc

    LOGGER.info(
        "patched %s (group 1: %d entries, group 2: %d entries)",
        relative_path.as_posix(),
        len(merged.group("1").entries),
        len(merged.group("2").entries),
    )
    return merged


def apply_patch_set(
    patch_set: Sequence[ContainerPatch],
    data_root: Path,
    *,
    workers: int | None = None,
) -> PatchReport:
    """Patch every container of ``patch_set`` and collect the outcomes.

    Containers are independent, so they are processed by a bounded thread pool.
    Outcomes are reported in patch set order regardless of completion order.
    """

    def _patch_one(container_patch: ContainerPatch) -> ContainerOutcome:
        try:
            patch_container(container_patch, data_root)
        except ContainerError as exc:
            LOGGER.error(
                "failed to patch %s from %s: %s",
                container_patch.relative_path.as_posix(),
                container_patch.source or "an in-memory patch set",
                exc,
            )
            return ContainerOutcome(container_patch.relative_path, exc)
        return ContainerOutcome(container_patch.relative_path)

    worker_count = max(1, DEFAULT_WORKERS if workers is None else workers)
    if worker_count == 1 or len(patch_set) <= 1:
        return PatchReport([_patch_one(container_patch) for container_patch in patch_set])

    with ThreadPoolExecutor(max_workers=min(worker_count, len(patch_set))) as executor:
        return PatchReport(list(executor.map(_patch_one, patch_set)))


def validate_roots(patch_root: Path, data_root: Path) -> None:
    """Raise :class:`ConfigurationError` when the run must not start."""

    if not patch_root.exists():
        raise ConfigurationError(f"patch root {patch_root} does not exist")
    if not patch_root.is_dir():
        raise ConfigurationError(f"patch root {patch_root} is not a directory")
    if not data_root.exists():
        raise ConfigurationError(f"data root {data_root} does not exist")
    if not data_root.is_dir():
        raise ConfigurationError(f"data root {data_root} is not a directory")

    if patch_root.resolve().name == RESERVED_PATCH_DIR_NAME:
        raise ConfigurationError(
            f"patch root {patch_root} is named {RESERVED_PATCH_DIR_NAME!r}, which is not allowed"
        )
    for child in patch_root.iterdir():
        if child.is_dir() and child.name in (RESERVED_PATCH_DIR_NAME, BACKUP_DIR_NAME):
            raise ConfigurationError(
                f"patch directory {child} would collide with the backup directory"
            )


def run(patch_root: Path, data_root: Path, *, workers: int | None = None) -> PatchReport:
    """Validate the roots, scan the patch tree and patch every container found."""

    validate_roots(patch_root, data_root)
    patch_set = scan_patch_tree(patch_root)
    LOGGER.info("found %d container(s) to patch in %s", len(patch_set), patch_root)
    return apply_patch_set(patch_set, data_root, workers=workers)


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError("must be at least 1")
    return number


def build_cli() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="icepatch",
        description="Repack the ICE containers of a data directory with loose files",
    )
    parser.add_argument("patch_root", type=Path, help="patch tree to apply")
    parser.add_argument("data_root", type=Path, help="data directory to patch")
    parser.add_argument(
        "-j",
        "--workers",
        type=_positive_int,
        default=DEFAULT_WORKERS,
        help=f"containers patched concurrently (default: {DEFAULT_WORKERS})",
    )
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true", help="log every step")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="only log errors")
    return parser


def main(argv: Iterable[str] | None = None) -> int:
    parser = build_cli()
    args = parser.parse_args(argv)

    level = logging.INFO
    if args.verbose:
        level = logging.DEBUG
    elif args.quiet:
        level = logging.ERROR
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")

    try:
        report = run(args.patch_root, args.data_root, workers=args.workers)
    except ConfigurationError as exc:
        print(f"icepatch: {exc}", file=sys.stderr)
        return EXIT_CONFIGURATION

    print(f"Patched {len(report.patched)} of {len(report.outcomes)} container(s)")
    if not report.ok:
        print(f"{len(report.failures)} container(s) failed:", file=sys.stderr)
        for line in report.summary_lines():
            print(f"  {line}", file=sys.stderr)
        return EXIT_FAILURES
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
