"""Property-based tests for multi-part archive and change detection invariants."""

from __future__ import annotations

import os
import string
import tempfile
import zipfile
from datetime import datetime
from pathlib import Path

from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from autobackup.services.archive_service import ArchiveBuilder
from autobackup.services.buffer_pool import BufferPool
from autobackup.services.changeset_service import (
    MTIME_TOLERANCE_SECONDS,
    FileState,
    needs_archiving,
)

PROPERTY_SETTINGS = settings(
    max_examples=60,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow],
)

_NAME = st.text(alphabet=string.ascii_lowercase + string.digits, min_size=1, max_size=8)
_SIZES = st.dictionaries(
    keys=st.builds(lambda stem: f"{stem}.bin", _NAME),
    values=st.integers(min_value=0, max_value=300),
    min_size=1,
    max_size=12,
)
_FINGERPRINT = st.sampled_from(["", "aaaa", "bbbb"])
_MTIME = st.floats(min_value=0, max_value=2_000_000_000, allow_nan=False)


def _build_parts(
    sizes: dict[str, int], limit: int, workers: int
) -> list[tuple[int, int, dict[str, int]]]:
    with tempfile.TemporaryDirectory() as tmp:
        source = Path(tmp) / "photos"
        source.mkdir()
        for name, size in sizes.items():
            (source / name).write_bytes(b"x" * size)
        builder = ArchiveBuilder(
            Path(tmp) / "parts",
            "photos",
            BufferPool(buffer_size=4096, max_idle=2),
            part_size_limit=limit,
            workers=workers,
            clock=lambda: datetime(2024, 3, 1, 12, 30, 45),
        )
        result = []
        for part in builder.build(source, sorted(sizes)):
            with zipfile.ZipFile(part.path) as zf:
                contents = {info.filename: info.file_size for info in zf.infolist()}
            result.append((part.index, part.uncompressed_bytes, contents))
        assert sorted(os.listdir(Path(tmp) / "parts")) == sorted(
            f"photos_20240301_123045_part{index}.zip" for index, _, _ in result
        )
        return result


class TestPartSequenceProperties:
    @PROPERTY_SETTINGS
    @given(
        sizes=_SIZES,
        limit=st.integers(min_value=1, max_value=400),
        workers=st.integers(min_value=1, max_value=4),
    )
    def test_parts_cover_every_file_within_the_limit(
        self, sizes: dict[str, int], limit: int, workers: int
    ) -> None:
        parts = _build_parts(sizes, limit, workers)

        assert [index for index, _, _ in parts] == list(range(1, len(parts) + 1))
        archived: dict[str, int] = {}
        for _, total, contents in parts:
            assert contents
            assert archived.keys().isdisjoint(contents)
            archived.update(contents)
            assert total == sum(contents.values())
            if total > limit:
                assert sum(1 for size in contents.values() if size) == 1
        assert archived == sizes


class TestChangeDetectionProperties:
    @PROPERTY_SETTINGS
    @given(current=_MTIME, previous=_MTIME, fp_now=_FINGERPRINT, fp_then=_FINGERPRINT)
    def test_never_archives_unless_newer(
        self, current: float, previous: float, fp_now: str, fp_then: str
    ) -> None:
        decision = needs_archiving(FileState(current, fp_now), FileState(previous, fp_then))
        if current <= previous:
            assert decision is False
        elif current - previous > MTIME_TOLERANCE_SECONDS:
            assert decision is True

    @PROPERTY_SETTINGS
    @given(mtime=_MTIME, fingerprint=_FINGERPRINT)
    def test_unrecorded_files_are_always_archived(self, mtime: float, fingerprint: str) -> None:
        assert needs_archiving(FileState(mtime, fingerprint), None) is True

    @PROPERTY_SETTINGS
    @given(
        mtime=_MTIME,
        delta=st.floats(min_value=0.001, max_value=0.9),
        fingerprint=st.sampled_from(["aaaa", "bbbb"]),
    )
    def test_small_touch_with_same_fingerprint_is_ignored(
        self, mtime: float, delta: float, fingerprint: str
    ) -> None:
        previous = FileState(mtime, fingerprint)
        current = FileState(mtime + delta, fingerprint)
        if current.mod_time > previous.mod_time:
            assert needs_archiving(current, previous) is False
