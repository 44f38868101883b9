"""Change detection: scan the source tree and compare it against the ledger."""

from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from autobackup.exceptions import ScanError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from autobackup.services.buffer_pool import BufferPool

logger = logging.getLogger(__name__)

FULL_HASH_THRESHOLD = 16 * 1024
SAMPLE_WINDOW = 8 * 1024
MTIME_TOLERANCE_SECONDS = 1.0
EXCLUDED_NAMES = frozenset({"System Volume Information", "$RECYCLE.BIN", "lost+found"})


@dataclass(frozen=True)
class FileState:
    """What is known about one file: modification time and quick fingerprint."""

    mod_time: float
    fingerprint: str = ""


@dataclass
class ChangeSet:
    """Paths that need archiving in this run.

    ``snapshot`` holds the state of every file seen while resolving; it becomes
    the ledger once the run succeeds.
    """

    changed: dict[str, bool] = field(default_factory=dict)
    empty_dirs: list[str] = field(default_factory=list)
    snapshot: dict[str, FileState] = field(default_factory=dict)
    deleted: int = 0

    def __bool__(self) -> bool:
        return bool(self.changed)

    def __len__(self) -> int:
        return len(self.changed)

    @property
    def paths(self) -> list[str]:
        return sorted(self.changed)


@dataclass
class TreeScan:
    """Result of walking a source tree."""

    files: dict[str, FileState] = field(default_factory=dict)
    empty_dirs: list[str] = field(default_factory=list)


def is_excluded(name: str) -> bool:
    """Hidden entries and well-known system folders are never backed up."""
    return name.startswith(".") or name in EXCLUDED_NAMES


def quick_fingerprint(path: Path, pool: BufferPool) -> str:
    """MD5 of the whole file when small, otherwise of its first and last 8 KiB.

    Changes confined to the interior of a large file are not detected by the
    fingerprint alone; the mtime tolerance rule covers most of those.
    """
    md5 = hashlib.md5(usedforsecurity=False)
    with pool.checkout() as buf, memoryview(buf) as view, open(path, "rb") as f:
        size = os.fstat(f.fileno()).st_size
        if size <= FULL_HASH_THRESHOLD:
            while n := f.readinto(view):
                md5.update(view[:n])
            return md5.hexdigest()
        window = view[:SAMPLE_WINDOW]
        n = f.readinto(window)
        md5.update(window[:n])
        f.seek(size - SAMPLE_WINDOW)
        n = f.readinto(window)
        md5.update(window[:n])
    return md5.hexdigest()


def scan_tree(source_dir: Path, pool: BufferPool) -> TreeScan:
    """Walk *source_dir* and fingerprint every regular file.

    Keys are source-relative paths with forward slashes. Raises ScanError on the
    first entry that cannot be read.
    """

    def _raise(exc: OSError) -> None:
        raise ScanError("Cannot read source directory", path=exc.filename) from exc

    scan = TreeScan()
    for root, dirs, files in os.walk(source_dir, onerror=_raise):
        dirs[:] = sorted(d for d in dirs if not is_excluded(d))
        visible = [name for name in files if not is_excluded(name)]
        root_path = Path(root)
        if not dirs and not visible and root_path != source_dir:
            scan.empty_dirs.append(root_path.relative_to(source_dir).as_posix())
        for filename in visible:
            full = root_path / filename
            if not full.is_file():
                continue
            rel = full.relative_to(source_dir).as_posix()
            try:
                mod_time = full.stat().st_mtime
                fingerprint = quick_fingerprint(full, pool)
            except OSError as exc:
                raise ScanError("Cannot fingerprint file", path=rel) from exc
            scan.files[rel] = FileState(mod_time=mod_time, fingerprint=fingerprint)
    return scan


def needs_archiving(current: FileState, previous: FileState | None) -> bool:
    """Decide whether a file changed since the last recorded run."""
    if previous is None:
        return True
    if current.mod_time <= previous.mod_time:
        return False
    if current.fingerprint and previous.fingerprint and current.fingerprint != previous.fingerprint:
        return True
    return current.mod_time - previous.mod_time > MTIME_TOLERANCE_SECONDS


def resolve_changes(
    source_dir: Path,
    ledger: Mapping[str, FileState],
    pool: BufferPool,
    *,
    force_full: bool = False,
) -> ChangeSet:
    """Build the change set for *source_dir* given the previous run's ledger."""
    scan = scan_tree(source_dir, pool)
    changes = ChangeSet(empty_dirs=scan.empty_dirs, snapshot=scan.files)
    for rel, state in scan.files.items():
        if force_full or needs_archiving(state, ledger.get(rel)):
            changes.changed[rel] = True

    deleted = [rel for rel in ledger if rel not in scan.files]
    changes.deleted = len(deleted)
    for rel in deleted:
        logger.debug("File no longer present in source tree: %s", rel)

    logger.info(
        "Resolved %d changed of %d files in %s (%d deleted since last run)",
        len(changes),
        len(scan.files),
        source_dir,
        changes.deleted,
    )
    return changes
