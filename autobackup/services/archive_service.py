"""Archive builder: pack a change set into size-bounded ZIP part files."""

from __future__ import annotations

import logging
import struct
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import IO, TYPE_CHECKING, Protocol

import pyzipper

from autobackup.exceptions import ArchiveError
from autobackup.services.buffer_pool import copy_stream

if TYPE_CHECKING:
    import os
    from collections.abc import Callable, Iterable

    from autobackup.services.buffer_pool import BufferPool

logger = logging.getLogger(__name__)

DEFAULT_PART_SIZE_LIMIT = 1024 * 1024 * 1024
DEFAULT_WORKERS = 4
PART_EXTENSION = "zip"
PART_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
STORED_EXTENSIONS = frozenset(
    {".jpg", ".jpeg", ".png", ".mp3", ".mp4", ".zip", ".rar", ".7z", ".gz"}
)

EXTENDED_TIMESTAMP_TAG = 0x5455
_EXTENDED_TIMESTAMP = struct.Struct("<HHBl")
_INT32_MAX = 2**31 - 1
_DOS_EPOCH = (1980, 1, 1, 0, 0, 0)


def part_file_name(backup_id: str, timestamp: datetime, index: int) -> str:
    """``{backup_id}_{yyyyMMdd_HHmmss}_part{index}.zip``"""
    return f"{backup_id}_{timestamp.strftime(PART_TIMESTAMP_FORMAT)}_part{index}.{PART_EXTENSION}"


def select_compression(name: str) -> int:
    """Already-compressed formats are stored, everything else is deflated."""
    if PurePosixPath(name).suffix.lower() in STORED_EXTENSIONS:
        return pyzipper.ZIP_STORED
    return pyzipper.ZIP_DEFLATED


def extended_timestamp(mtime: float) -> bytes:
    """Extra field 0x5455 holding the modification time in whole seconds."""
    seconds = max(-_INT32_MAX - 1, min(_INT32_MAX, int(mtime)))
    return _EXTENDED_TIMESTAMP.pack(EXTENDED_TIMESTAMP_TAG, 5, 1, seconds)


def _dos_date_time(mtime: float) -> tuple[int, int, int, int, int, int]:
    date_time = time.localtime(mtime)[:6]
    if date_time[0] < 1980:
        return _DOS_EPOCH
    if date_time[0] > 2107:
        return (2107, 12, 31, 23, 59, 58)
    return date_time  # type: ignore[return-value]


@dataclass
class PartArtifact:
    """A finalized part file."""

    index: int
    path: Path
    entries: int
    uncompressed_bytes: int
    uploaded: bool = False


class Uploader(Protocol):
    def upload_file(self, folder: str, local_path: Path) -> object: ...


class _PartSequence:
    """Mutable state of one build: the open part and the parts finished so far.

    Every method must be called with ``lock`` held.
    """

    def __init__(self, builder: ArchiveBuilder, timestamp: datetime) -> None:
        self.builder = builder
        self.timestamp = timestamp
        self.lock = threading.Lock()
        self.parts: list[PartArtifact] = []
        self.index = 0
        self.zf: pyzipper.AESZipFile | None = None
        self.path: Path | None = None
        self.part_bytes = 0
        self.part_entries = 0

    def _open_next(self) -> pyzipper.AESZipFile:
        self.index += 1
        self.path = self.builder.output_dir / part_file_name(
            self.builder.backup_id, self.timestamp, self.index
        )
        try:
            zf = pyzipper.AESZipFile(
                self.path, "w", compression=pyzipper.ZIP_DEFLATED, allowZip64=True
            )
        except OSError as exc:
            raise ArchiveError("Cannot create part file", part=self.path.name) from exc
        if self.builder.password:
            zf.setpassword(self.builder.password.encode())
            zf.setencryption(pyzipper.WZ_AES, nbits=256)
        self.zf = zf
        self.part_bytes = 0
        self.part_entries = 0
        logger.debug("Opened part %s", self.path.name)
        return zf

    def _writer_for(self, size: int) -> pyzipper.AESZipFile:
        if self.zf is None:
            return self._open_next()
        if self.part_bytes > 0 and self.part_bytes + size > self.builder.part_size_limit:
            self.finalize()
            return self._open_next()
        return self.zf

    def add_directory(self, rel: str) -> None:
        zf = self._writer_for(0)
        zinfo = zf.zipinfo_cls(rel.rstrip("/") + "/", _DOS_EPOCH)
        zinfo.external_attr = (0o40755 << 16) | 0x10
        zf.writestr(zinfo, b"")
        self.part_entries += 1

    def add_file(self, rel: str, src: IO[bytes], st: os.stat_result) -> None:
        zf = self._writer_for(st.st_size)
        # Entries must be the archive's own info class so WinZip AES fields can be attached.
        zinfo = zf.zipinfo_cls(rel, _dos_date_time(st.st_mtime))
        zinfo.external_attr = (st.st_mode & 0xFFFF) << 16
        zinfo.extra = extended_timestamp(st.st_mtime)
        zinfo.compress_type = select_compression(rel)
        zinfo.file_size = st.st_size
        try:
            with zf.open(zinfo, "w") as entry:
                copy_stream(src, entry, self.builder.pool)
        except (OSError, RuntimeError) as exc:
            raise ArchiveError(
                "Failed to archive file", path=rel, part=self.path.name if self.path else None
            ) from exc
        self.part_bytes += st.st_size
        self.part_entries += 1

    def finalize(self) -> None:
        """Close the open part and hand it to the uploader, if any."""
        if self.zf is None or self.path is None:
            return
        zf, path = self.zf, self.path
        self.zf = None
        try:
            zf.close()
        except OSError as exc:
            raise ArchiveError("Cannot finalize part file", part=path.name) from exc
        artifact = PartArtifact(self.index, path, self.part_entries, self.part_bytes)
        self.parts.append(artifact)
        logger.info(
            "Finalized part %s: %d entries, %d bytes",
            path.name,
            artifact.entries,
            artifact.uncompressed_bytes,
        )
        uploader = self.builder.uploader
        if uploader is not None:
            uploader.upload_file(self.builder.remote_folder, path)
            path.unlink()
            artifact.uploaded = True
            logger.info("Uploaded and removed local part %s", path.name)

    def abort(self) -> None:
        """Discard the part being written; finished parts are left alone."""
        if self.zf is None or self.path is None:
            return
        zf, path = self.zf, self.path
        self.zf = None
        try:
            zf.close()
        except (OSError, ValueError) as exc:
            logger.debug("Closing aborted part %s failed: %s", path.name, exc)
        path.unlink(missing_ok=True)
        logger.warning("Removed incomplete part %s", path.name)


class ArchiveBuilder:
    """Write changed files into ``{backup_id}_{timestamp}_part{N}.zip`` files.

    Files are never split: a new part is started when the next file would push a
    non-empty part over ``part_size_limit``. Stat and open run on a small worker
    pool; everything touching the part writer is serialized by one lock.
    """

    def __init__(
        self,
        output_dir: Path,
        backup_id: str,
        pool: BufferPool,
        *,
        password: str = "",
        part_size_limit: int = DEFAULT_PART_SIZE_LIMIT,
        workers: int = DEFAULT_WORKERS,
        uploader: Uploader | None = None,
        remote_folder: str = "",
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.output_dir = output_dir
        self.backup_id = backup_id
        self.pool = pool
        self.password = password
        self.part_size_limit = part_size_limit
        self.workers = workers
        self.uploader = uploader
        self.remote_folder = remote_folder
        self._clock = clock

    def build(
        self, source_dir: Path, paths: Iterable[str], directories: Iterable[str] = ()
    ) -> list[PartArtifact]:
        """Archive *paths* (and empty *directories*) from *source_dir*.

        On failure the part being written is removed and the error re-raised;
        parts finalized or uploaded before the failure are kept.
        """
        self.output_dir.mkdir(parents=True, exist_ok=True)
        sequence = _PartSequence(self, self._clock())
        try:
            with sequence.lock:
                for rel in directories:
                    sequence.add_directory(rel)
            with ThreadPoolExecutor(
                max_workers=self.workers, thread_name_prefix="archive"
            ) as executor:
                futures = [
                    executor.submit(self._archive_file, sequence, source_dir, rel) for rel in paths
                ]
                try:
                    for future in as_completed(futures):
                        future.result()
                except BaseException:
                    for future in futures:
                        future.cancel()
                    raise
            with sequence.lock:
                sequence.finalize()
        except BaseException:
            with sequence.lock:
                sequence.abort()
            raise
        logger.info("Archived %s into %d part(s)", self.backup_id, len(sequence.parts))
        return sequence.parts

    @staticmethod
    def _archive_file(sequence: _PartSequence, source_dir: Path, rel: str) -> None:
        full = source_dir / rel
        try:
            st = full.stat()
            src = open(full, "rb")  # noqa: SIM115
        except OSError as exc:
            raise ArchiveError("Cannot open source file", path=rel) from exc
        with src, sequence.lock:
            sequence.add_file(rel, src, st)
