"""Reusable read buffers for the PTY pump."""

from __future__ import annotations

import threading

DEFAULT_BUFFER_SIZE = 32 * 1024


class BufferPool:
    """Thread-safe free list of fixed-size bytearrays.

    Shared by every session's read pump; ``max_free`` bounds how many idle
    buffers are retained.
    """

    def __init__(self, buffer_size: int = DEFAULT_BUFFER_SIZE, max_free: int = 16) -> None:
        if buffer_size <= 0:
            raise ValueError("buffer_size must be positive")
        self.buffer_size = buffer_size
        self.max_free = max_free
        self._free: list[bytearray] = []
        self._lock = threading.Lock()
        self.allocated = 0

    def acquire(self) -> bytearray:
        with self._lock:
            if self._free:
                return self._free.pop()
            self.allocated += 1
        return bytearray(self.buffer_size)

    def release(self, buf: bytearray) -> None:
        if len(buf) != self.buffer_size:
            return
        with self._lock:
            if len(self._free) < self.max_free:
                self._free.append(buf)

    @property
    def free_count(self) -> int:
        with self._lock:
            return len(self._free)
