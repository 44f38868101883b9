"""Tests for the resumable chunked upload pipeline."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import httpx
import pytest

from autobackup.exceptions import UploadError
from autobackup.services.upload_service import CHUNK_UNIT, UploadPipeline

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

UPLOAD_URL = "https://upload.example.test/session/abc"


class FakeDrive:
    """Minimal upload-session server driven by a per-PUT response script."""

    def __init__(self, total: int) -> None:
        self.total = total
        self.script: list[Callable[[httpx.Request], httpx.Response]] = []
        self.received = bytearray()
        self.session_requests: list[httpx.Request] = []
        self.put_ranges: list[str] = []
        self.session_status = 200

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            self.session_requests.append(request)
            if self.session_status != 200:
                return httpx.Response(self.session_status, text="quota exceeded")
            return httpx.Response(200, json={"uploadUrl": UPLOAD_URL})
        self.put_ranges.append(request.headers["Content-Range"])
        assert request.headers["Content-Length"] == str(len(request.content))
        if self.script:
            return self.script.pop(0)(request)
        return self.accept(request)

    def accept(self, request: httpx.Request) -> httpx.Response:
        start = int(request.headers["Content-Range"].split(" ")[1].split("-")[0])
        del self.received[start:]
        self.received.extend(request.content)
        if len(self.received) >= self.total:
            return httpx.Response(201, json={"id": "item-1", "size": self.total})
        return httpx.Response(202, json={"nextExpectedRanges": [f"{len(self.received)}-"]})


def _pipeline(drive: FakeDrive, sleeps: list[float], **kwargs: object) -> UploadPipeline:
    client = httpx.Client(transport=httpx.MockTransport(drive.handler))
    return UploadPipeline(
        lambda: "access-token",
        client=client,
        chunk_size=CHUNK_UNIT,
        sleep=sleeps.append,
        **kwargs,  # type: ignore[arg-type]
    )


@pytest.fixture
def part_file(tmp_path: Path) -> Path:
    path = tmp_path / "photos_20240301_123045_part1.zip"
    path.write_bytes(bytes(range(256)) * (CHUNK_UNIT * 2 // 256 + 10))
    return path


class TestUploadPipeline:
    def test_uploads_in_chunks(self, part_file: Path) -> None:
        total = part_file.stat().st_size
        drive = FakeDrive(total)
        sleeps: list[float] = []

        result = _pipeline(drive, sleeps).upload_file("backup", part_file)

        assert bytes(drive.received) == part_file.read_bytes()
        assert result.chunks_sent == 3
        assert result.item["id"] == "item-1"
        assert result.remote_path == "backup/photos_20240301_123045_part1.zip"
        assert drive.put_ranges[0] == f"bytes 0-{CHUNK_UNIT - 1}/{total}"
        assert sleeps == []

    def test_session_request_shape(self, part_file: Path) -> None:
        drive = FakeDrive(part_file.stat().st_size)
        _pipeline(drive, []).upload_file("backup/", part_file)

        request = drive.session_requests[0]
        assert request.headers["Authorization"] == "Bearer access-token"
        assert str(request.url) == (
            "https://graph.microsoft.com/v1.0/me/drive/root:/backup/"
            "photos_20240301_123045_part1.zip:/createUploadSession"
        )
        assert json.loads(request.content) == {
            "item": {"@microsoft.graph.conflictBehavior": "rename"}
        }

    def test_resumes_at_server_declared_offset(self, part_file: Path) -> None:
        total = part_file.stat().st_size
        drive = FakeDrive(total)
        ahead = CHUNK_UNIT + 100

        def skip_ahead(request: httpx.Request) -> httpx.Response:
            drive.received.extend(part_file.read_bytes()[:ahead])
            return httpx.Response(202, json={"nextExpectedRanges": [f"{ahead}-{total - 1}"]})

        drive.script = [skip_ahead]
        _pipeline(drive, []).upload_file("backup", part_file)

        assert drive.put_ranges[1].startswith(f"bytes {ahead}-")
        assert bytes(drive.received) == part_file.read_bytes()

    def test_transient_failures_are_retried(self, part_file: Path) -> None:
        drive = FakeDrive(part_file.stat().st_size)

        def flaky(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="busy")

        def broken_pipe(request: httpx.Request) -> httpx.Response:
            raise httpx.WriteError("connection reset")

        drive.script = [flaky, broken_pipe]
        sleeps: list[float] = []
        _pipeline(drive, sleeps, retry_delay=5.0).upload_file("backup", part_file)

        assert sleeps == [5.0, 5.0]
        assert drive.put_ranges[:3] == [drive.put_ranges[0]] * 3
        assert bytes(drive.received) == part_file.read_bytes()

    def test_gives_up_after_max_attempts(self, part_file: Path) -> None:
        drive = FakeDrive(part_file.stat().st_size)
        drive.script = [lambda r: httpx.Response(500, text="server error")] * 3
        sleeps: list[float] = []

        with pytest.raises(UploadError) as exc_info:
            _pipeline(drive, sleeps).upload_file("backup", part_file)

        assert exc_info.value.status_code == 500
        assert exc_info.value.offset == 0
        assert "server error" in str(exc_info.value)
        assert len(drive.put_ranges) == 3
        assert len(sleeps) == 2

    def test_same_offset_acknowledgement_counts_as_failure(self, part_file: Path) -> None:
        drive = FakeDrive(part_file.stat().st_size)
        stalled = lambda r: httpx.Response(202, json={"nextExpectedRanges": ["0-"]})  # noqa: E731
        drive.script = [stalled] * 3

        with pytest.raises(UploadError):
            _pipeline(drive, []).upload_file("backup", part_file)
        assert len(drive.put_ranges) == 3

    def test_session_failure_fails_fast(self, part_file: Path) -> None:
        drive = FakeDrive(part_file.stat().st_size)
        drive.session_status = 507

        with pytest.raises(UploadError) as exc_info:
            _pipeline(drive, []).upload_file("backup", part_file)

        assert exc_info.value.status_code == 507
        assert "quota exceeded" in str(exc_info.value)
        assert drive.put_ranges == []

    def test_empty_file_is_rejected(self, tmp_path: Path) -> None:
        empty = tmp_path / "empty.zip"
        empty.write_bytes(b"")
        with pytest.raises(UploadError, match="empty"):
            _pipeline(FakeDrive(0), []).upload_file("backup", empty)

    def test_chunk_size_must_be_multiple_of_unit(self) -> None:
        with pytest.raises(ValueError, match="multiple"):
            UploadPipeline(lambda: "t", chunk_size=CHUNK_UNIT + 1)
