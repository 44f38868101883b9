"""Reusable byte buffers for fingerprinting and archive copies."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import IO, TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator

DEFAULT_BUFFER_SIZE = 4 * 1024 * 1024
DEFAULT_MAX_IDLE = 8


class BufferPool:
    """Hand out fixed-size bytearrays and take them back for reuse.

    A checked-out buffer belongs to exactly one synchronous operation until the
    ``checkout()`` block exits; it is never shared between threads. At most
    ``max_idle`` buffers are retained, extras are dropped on return.
    """

    def __init__(
        self, buffer_size: int = DEFAULT_BUFFER_SIZE, max_idle: int = DEFAULT_MAX_IDLE
    ) -> None:
        if buffer_size <= 0:
            raise ValueError("buffer_size must be positive")
        self._buffer_size = buffer_size
        self._max_idle = max_idle
        self._idle: list[bytearray] = []
        self._lock = threading.Lock()
        self._allocated = 0

    @property
    def buffer_size(self) -> int:
        return self._buffer_size

    @property
    def allocated(self) -> int:
        """Number of buffers ever allocated by this pool."""
        return self._allocated

    @contextmanager
    def checkout(self) -> Iterator[bytearray]:
        """Borrow a buffer for the duration of the ``with`` block."""
        with self._lock:
            if self._idle:
                buf = self._idle.pop()
            else:
                buf = bytearray(self._buffer_size)
                self._allocated += 1
        try:
            yield buf
        finally:
            with self._lock:
                if len(self._idle) < self._max_idle:
                    self._idle.append(buf)


def copy_stream(src: IO[bytes], dst: IO[bytes], pool: BufferPool) -> int:
    """Copy *src* to *dst* through one pooled buffer. Returns bytes copied."""
    total = 0
    with pool.checkout() as buf, memoryview(buf) as view:
        while True:
            n = src.readinto(view)  # type: ignore[attr-defined]
            if not n:
                break
            dst.write(view[:n])
            total += n
    return total
