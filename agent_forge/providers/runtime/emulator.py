"""Headless terminal emulator driven by the PTY byte stream."""

from __future__ import annotations

import queue
import threading

import pyte
from loguru import logger

_CLOSED = object()


class EmulatorClosed(Exception):
    """Raised by ``read_response`` once the emulator has been closed."""


class _RespondingScreen(pyte.HistoryScreen):
    """HistoryScreen that routes terminal replies (DSR, DA) to a queue."""

    def __init__(self, columns: int, lines: int, history: int, responses: queue.Queue) -> None:
        self._responses = responses
        super().__init__(columns, lines, history=history)

    def write_process_input(self, data: str) -> None:
        self._responses.put(data.encode("utf-8"))


class HeadlessTerminal:
    """pyte screen plus a channel for replies the child expects on its stdin.

    ``feed``, ``resize`` and ``render`` are serialized by one lock, so the
    read pump, the size jiggle and the UI may call them from any thread.
    """

    def __init__(self, cols: int = 80, rows: int = 24, history: int = 5000) -> None:
        self._lock = threading.Lock()
        self._responses: queue.Queue = queue.Queue()
        self._screen = _RespondingScreen(cols, rows, history, self._responses)
        self._screen.set_mode(pyte.modes.LNM)
        self._stream = pyte.ByteStream(self._screen)
        self._closed = False

    @property
    def size(self) -> tuple[int, int]:
        """Current (rows, cols)."""
        with self._lock:
            return self._screen.lines, self._screen.columns

    @property
    def closed(self) -> bool:
        return self._closed

    def feed(self, data: bytes) -> None:
        if not data or self._closed:
            return
        with self._lock:
            self._stream.feed(data)

    def resize(self, cols: int, rows: int) -> None:
        with self._lock:
            self._screen.resize(rows, cols)

    def render(self) -> str:
        """Return scrollback plus visible screen as plain text."""
        with self._lock:
            history = [self._history_line_to_text(line) for line in self._screen.history.top]
            display = [line.rstrip() for line in self._screen.display]
        lines = history + display
        while lines and not lines[-1]:
            lines.pop()
        return "\n".join(lines)

    def read_response(self, timeout: float | None = None) -> bytes | None:
        """Block until the emulator produces a reply for the child.

        Returns None on timeout. Raises EmulatorClosed after ``close()``.
        """
        try:
            item = self._responses.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            # Leave the marker for any other reader.
            self._responses.put(_CLOSED)
            raise EmulatorClosed("emulator closed")
        return item

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._responses.put(_CLOSED)
        logger.debug("[emulator] Closed")

    def _history_line_to_text(self, line: object) -> str:
        if isinstance(line, dict):
            cols = self._screen.columns
            return "".join(line[x].data if x in line else " " for x in range(cols)).rstrip()
        return str(line).rstrip()
