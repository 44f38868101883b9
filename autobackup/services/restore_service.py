"""Restore engine: rebuild a tree from the part files of one backup run."""

from __future__ import annotations

import glob
import logging
import os
import re
import shutil
import struct
import tempfile
import time
import zlib
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

import pyzipper

from autobackup.exceptions import RestoreError
from autobackup.services.archive_service import EXTENDED_TIMESTAMP_TAG, PART_TIMESTAMP_FORMAT
from autobackup.services.buffer_pool import copy_stream

if TYPE_CHECKING:
    from autobackup.services.buffer_pool import BufferPool

logger = logging.getLogger(__name__)

_PART_SUFFIX = re.compile(r"^_(\d{8}_\d{6})_part(\d+)\.[A-Za-z0-9]+$")


class RestoreStatus(StrEnum):
    RESTORED = "restored"
    SELECTION_REQUIRED = "selection_required"


@dataclass(frozen=True)
class PartFile:
    path: Path
    timestamp: str
    index: int


@dataclass
class BackupSnapshot:
    """All parts found for one run timestamp."""

    timestamp: str
    parts: list[PartFile] = field(default_factory=list)

    @property
    def part_count(self) -> int:
        return len(self.parts)

    @property
    def created_at(self) -> datetime:
        return datetime.strptime(self.timestamp, PART_TIMESTAMP_FORMAT)


@dataclass
class RestoreResult:
    status: RestoreStatus
    snapshots: list[BackupSnapshot] = field(default_factory=list)
    timestamp: str | None = None
    parts_restored: int = 0
    files_restored: int = 0


def parse_part_name(name: str, backup_id: str) -> PartFile | None:
    """Parse ``{backup_id}_{8 digits}_{6 digits}_part{N}.{ext}``; None if it does not match."""
    prefix = backup_id
    if not name.startswith(prefix):
        return None
    match = _PART_SUFFIX.match(name[len(prefix) :])
    if match is None:
        return None
    timestamp, index = match.group(1), int(match.group(2))
    if index < 1:
        return None
    try:
        datetime.strptime(timestamp, PART_TIMESTAMP_FORMAT)
    except ValueError:
        return None
    return PartFile(path=Path(name), timestamp=timestamp, index=index)


def discover_parts(archive_dir: Path, backup_id: str) -> list[BackupSnapshot]:
    """Group the part files of *backup_id* by run timestamp, newest first."""
    groups: dict[str, BackupSnapshot] = {}
    for candidate in sorted(archive_dir.glob(f"{glob.escape(backup_id)}_*")):
        if not candidate.is_file():
            continue
        part = parse_part_name(candidate.name, backup_id)
        if part is None:
            logger.warning("Skipping file with unrecognized part name: %s", candidate.name)
            continue
        part = PartFile(path=candidate, timestamp=part.timestamp, index=part.index)
        groups.setdefault(part.timestamp, BackupSnapshot(part.timestamp)).parts.append(part)
    snapshots = sorted(groups.values(), key=lambda s: s.timestamp, reverse=True)
    for snapshot in snapshots:
        snapshot.parts.sort(key=lambda p: p.index)
    return snapshots


def entry_mtime(info: pyzipper.ZipInfo) -> float:
    """Modification time from the extended timestamp field, else the DOS time."""
    extra = info.extra
    pos = 0
    while pos + 4 <= len(extra):
        tag, size = struct.unpack_from("<HH", extra, pos)
        if tag == EXTENDED_TIMESTAMP_TAG and size >= 5 and extra[pos + 4] & 1:
            return float(struct.unpack_from("<l", extra, pos + 5)[0])
        pos += 4 + size
    return time.mktime((*info.date_time, 0, 0, -1))


def _safe_relative(name: str) -> PurePosixPath:
    rel = PurePosixPath(name)
    escapes = rel.is_absolute() or ".." in rel.parts or "\\" in name
    if not rel.parts or escapes or ":" in rel.parts[0]:
        raise ValueError(f"Entry escapes the output directory: {name}")
    return rel


class RestoreEngine:
    """Extract the parts of one backup run into ``output_dir`` in part order."""

    def __init__(
        self,
        archive_dir: Path,
        output_dir: Path,
        backup_id: str,
        pool: BufferPool,
        *,
        password: str = "",
    ) -> None:
        self.archive_dir = archive_dir
        self.output_dir = output_dir
        self.backup_id = backup_id
        self.pool = pool
        self.password = password

    def list_snapshots(self) -> list[BackupSnapshot]:
        snapshots = discover_parts(self.archive_dir, self.backup_id)
        if not snapshots:
            raise RestoreError(
                "No backup parts found", backup_id=self.backup_id, archive_dir=str(self.archive_dir)
            )
        return snapshots

    def restore(self, timestamp: str | None = None) -> RestoreResult:
        """Restore the run identified by *timestamp*.

        Without a timestamp nothing is extracted: the available runs are logged
        and returned newest-first with ``SELECTION_REQUIRED``.
        """
        snapshots = self.list_snapshots()
        if timestamp is None:
            for snapshot in snapshots:
                logger.info(
                    "Backup %s at %s: %d part(s)",
                    self.backup_id,
                    snapshot.timestamp,
                    snapshot.part_count,
                )
            logger.info("Please specify a timestamp to restore")
            return RestoreResult(RestoreStatus.SELECTION_REQUIRED, snapshots=snapshots)

        selected = next((s for s in snapshots if s.timestamp == timestamp), None)
        if selected is None:
            raise RestoreError(
                "No backup with this timestamp", backup_id=self.backup_id, timestamp=timestamp
            )

        indices = [p.index for p in selected.parts]
        if indices != list(range(1, len(indices) + 1)):
            logger.warning("Part sequence of %s is not contiguous: %s", timestamp, indices)

        self.output_dir.mkdir(parents=True, exist_ok=True)
        files = 0
        for part in selected.parts:
            files += self._restore_part(part)
        logger.info(
            "Restored %d file(s) from %d part(s) of %s into %s",
            files,
            len(selected.parts),
            timestamp,
            self.output_dir,
        )
        return RestoreResult(
            RestoreStatus.RESTORED,
            snapshots=[selected],
            timestamp=timestamp,
            parts_restored=len(selected.parts),
            files_restored=files,
        )

    def _restore_part(self, part: PartFile) -> int:
        """Extract one part into a staging directory, then move it into place.

        Nothing reaches ``output_dir`` unless the whole part was extracted and
        none of its paths collide with an existing entry of the other kind.
        """
        staging = Path(tempfile.mkdtemp(prefix=".restore-", dir=self.output_dir))
        try:
            try:
                files = self._extract(part, staging)
                self._check_conflicts(part, staging)
                self._promote(staging)
            except RestoreError:
                raise
            except (OSError, ValueError, KeyError, pyzipper.BadZipFile, zlib.error) as exc:
                raise RestoreError("Failed to restore part", part=part.path.name) from exc
        finally:
            shutil.rmtree(staging, ignore_errors=True)
        logger.info("Restored part %s (%d files)", part.path.name, files)
        return files

    def _extract(self, part: PartFile, staging: Path) -> int:
        files = 0
        with pyzipper.AESZipFile(part.path) as zf:
            if self.password:
                zf.setpassword(self.password.encode())
            for info in zf.infolist():
                try:
                    rel = _safe_relative(info.filename)
                except ValueError as exc:
                    raise RestoreError(str(exc), part=part.path.name) from exc
                target = staging.joinpath(*rel.parts)
                if info.is_dir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                try:
                    with zf.open(info) as src, open(target, "wb") as dst:
                        copy_stream(src, dst, self.pool)
                except RuntimeError as exc:
                    raise RestoreError(
                        "Wrong or missing password", part=part.path.name, entry=info.filename
                    ) from exc
                mtime = entry_mtime(info)
                os.utime(target, (mtime, mtime))
                files += 1
        return files

    def _check_conflicts(self, part: PartFile, staging: Path) -> None:
        for root, dirs, names in os.walk(staging):
            rel_root = Path(root).relative_to(staging)
            for name in dirs:
                target = self.output_dir / rel_root / name
                if target.exists() and not target.is_dir():
                    raise RestoreError(
                        "A file is in the way of a restored directory",
                        part=part.path.name,
                        path=str(rel_root / name),
                    )
            for name in names:
                target = self.output_dir / rel_root / name
                if target.is_dir() and not target.is_symlink():
                    raise RestoreError(
                        "A directory is in the way of a restored file",
                        part=part.path.name,
                        path=str(rel_root / name),
                    )

    def _promote(self, staging: Path) -> None:
        for root, dirs, names in os.walk(staging):
            rel_root = Path(root).relative_to(staging)
            for name in dirs:
                (self.output_dir / rel_root / name).mkdir(parents=True, exist_ok=True)
            for name in names:
                os.replace(Path(root) / name, self.output_dir / rel_root / name)
