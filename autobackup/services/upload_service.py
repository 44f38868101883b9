"""Resumable chunked upload of finished part files to OneDrive."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx

from autobackup.exceptions import UploadError

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

logger = logging.getLogger(__name__)

GRAPH_DRIVE_ROOT = "https://graph.microsoft.com/v1.0/me/drive/root:"
CHUNK_UNIT = 320 * 1024
DEFAULT_CHUNK_SIZE = 25 * CHUNK_UNIT
MAX_ATTEMPTS = 3
RETRY_DELAY_SECONDS = 5.0
HTTP_TIMEOUT = 120.0


@dataclass
class UploadResult:
    """Outcome of one successful part upload."""

    remote_path: str
    size: int
    chunks_sent: int
    item: dict[str, Any]


def _next_expected_start(resp: httpx.Response) -> int:
    """Parse the first ``nextExpectedRanges`` entry of a 202 response."""
    try:
        ranges = resp.json()["nextExpectedRanges"]
        return int(str(ranges[0]).split("-", 1)[0])
    except (ValueError, KeyError, IndexError, TypeError) as exc:
        raise UploadError(
            "Malformed upload progress response", status_code=resp.status_code, body=resp.text[:500]
        ) from exc


def _completed_item(resp: httpx.Response) -> dict[str, Any]:
    try:
        item = resp.json()
    except ValueError:
        return {}
    return item if isinstance(item, dict) else {}


class UploadPipeline:
    """Upload part files through a Graph upload session.

    Every call to :meth:`upload_file` opens a fresh session; nothing is resumed
    across calls. Within a session the server's ``nextExpectedRanges`` decides
    where the next chunk starts.
    """

    def __init__(
        self,
        token_provider: Callable[[], str],
        *,
        client: httpx.Client | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_attempts: int = MAX_ATTEMPTS,
        retry_delay: float = RETRY_DELAY_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if chunk_size <= 0 or chunk_size % CHUNK_UNIT:
            raise ValueError(f"chunk_size must be a positive multiple of {CHUNK_UNIT}")
        self._token_provider = token_provider
        self._owns_client = client is None
        self.client = client or httpx.Client(timeout=HTTP_TIMEOUT)
        self.chunk_size = chunk_size
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self._sleep = sleep

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def __enter__(self) -> UploadPipeline:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def create_session(self, remote_path: str) -> str:
        """Open an upload session and return its upload URL."""
        url = f"{GRAPH_DRIVE_ROOT}/{quote(remote_path)}:/createUploadSession"
        headers = {"Authorization": f"Bearer {self._token_provider()}"}
        body = {"item": {"@microsoft.graph.conflictBehavior": "rename"}}
        try:
            resp = self.client.post(url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise UploadError("Upload session request failed", path=remote_path) from exc
        if resp.status_code not in (200, 201):
            raise UploadError(
                "Upload session was not created",
                status_code=resp.status_code,
                path=remote_path,
                body=resp.text[:500],
            )
        try:
            return str(resp.json()["uploadUrl"])
        except (ValueError, KeyError) as exc:
            raise UploadError(
                "Upload session response has no uploadUrl", status_code=resp.status_code
            ) from exc

    def upload_file(self, folder: str, local_path: Path) -> UploadResult:
        """Upload *local_path* as ``{folder}/{file name}``."""
        size = local_path.stat().st_size
        if size == 0:
            raise UploadError("Refusing to upload an empty file", path=str(local_path))
        remote_path = f"{folder.strip('/')}/{local_path.name}"
        upload_url = self.create_session(remote_path)
        logger.info("Uploading %s (%d bytes) to %s", local_path.name, size, remote_path)

        offset = 0
        chunks = 0
        with open(local_path, "rb") as f:
            while True:
                f.seek(offset)
                data = f.read(min(self.chunk_size, size - offset))
                chunks += 1
                next_offset, item = self._send_chunk(upload_url, data, offset, size)
                if item is not None:
                    logger.info("Upload of %s complete after %d chunks", local_path.name, chunks)
                    return UploadResult(remote_path, size, chunks, item)
                if next_offset >= size:
                    raise UploadError(
                        "Server expects bytes beyond end of file", offset=next_offset, size=size
                    )
                offset = next_offset

    def _send_chunk(
        self, upload_url: str, data: bytes, start: int, total: int
    ) -> tuple[int, dict[str, Any] | None]:
        """PUT one chunk, retrying transient failures.

        Returns ``(next_offset, None)`` while the server expects more bytes and
        ``(total, item)`` once the transfer is complete.
        """
        end = start + len(data) - 1
        headers = {
            "Content-Range": f"bytes {start}-{end}/{total}",
            "Content-Length": str(len(data)),
        }
        status: int | None = None
        body = ""
        for attempt in range(1, self.max_attempts + 1):
            try:
                resp = self.client.put(upload_url, content=data, headers=headers)
            except httpx.HTTPError as exc:
                status, body = None, str(exc)
            else:
                status, body = resp.status_code, resp.text[:500]
                if status in (200, 201):
                    return total, _completed_item(resp)
                if status == 202:
                    next_start = _next_expected_start(resp)
                    if next_start != start:
                        return next_start, None
                    body = "server did not accept chunk"
            logger.warning(
                "Chunk %d-%d/%d failed (attempt %d/%d): status=%s %s",
                start,
                end,
                total,
                attempt,
                self.max_attempts,
                status,
                body,
            )
            if attempt < self.max_attempts:
                self._sleep(self.retry_delay)
        raise UploadError(
            f"Chunk upload failed after {self.max_attempts} attempts",
            status_code=status,
            offset=start,
            range=f"{start}-{end}/{total}",
            body=body,
        )
