"""Per-session worker threads and their shared lifetime."""

from __future__ import annotations

import queue
import threading

from loguru import logger

from agent_forge.providers.runtime.backend import PTYBackend
from agent_forge.providers.runtime.buffers import BufferPool
from agent_forge.providers.runtime.emulator import EmulatorClosed, HeadlessTerminal

_STOP = object()


class SessionCancelled(EOFError):
    """Raised by a pending read when its session is being torn down."""


class PtyWriter:
    """The only thread that writes to a session's PTY.

    Keystrokes and emulator replies are queued here and written in order.
    """

    def __init__(self, backend: PTYBackend, cancel: threading.Event, name: str = "pty-writer") -> None:
        self._backend = backend
        self._cancel = cancel
        self._queue: queue.Queue = queue.Queue()
        self._closed = False
        self._thread = threading.Thread(target=self._run, daemon=True, name=name)

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        self._thread.start()

    def submit(self, data: bytes) -> bool:
        """Queue ``data`` for writing. Returns False once the writer is closed."""
        if self._closed or not data:
            return False
        self._queue.put(bytes(data))
        return True

    def close(self, timeout: float = 1.0) -> None:
        self._closed = True
        self._queue.put(_STOP)
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)

    def _run(self) -> None:
        while not self._cancel.is_set():
            try:
                item = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue
            if item is _STOP:
                break
            try:
                self._backend.write(item)
            except OSError as exc:
                logger.debug(f"[writer] PTY write failed, stopping: {exc}")
                break
        self._closed = True


def forward_responses(emulator: HeadlessTerminal, writer: PtyWriter, cancel: threading.Event) -> None:
    """Copy emulator replies to the PTY until closed, failed or cancelled."""
    while not cancel.is_set():
        try:
            data = emulator.read_response(timeout=0.25)
        except EmulatorClosed:
            break
        if data is None:
            continue
        if not writer.submit(data):
            break


class SessionRuntime:
    """Owns the workers of one running session.

    The cancellation event is shared by the read pump, the response forwarder
    and the writer; ``release`` sets it before closing any handle.
    """

    def __init__(
        self,
        instance_id: str,
        backend: PTYBackend,
        emulator: HeadlessTerminal,
        cols: int,
        rows: int,
    ) -> None:
        self.instance_id = instance_id
        self.backend = backend
        self.emulator = emulator
        self.cols = cols
        self.rows = rows
        self.cancel = threading.Event()
        self.lock = threading.Lock()
        # Held around each backend read so the descriptor is never closed mid-read.
        self._read_lock = threading.Lock()
        self.writer = PtyWriter(backend, self.cancel, name=f"pty-writer-{instance_id}")
        self._forwarder = threading.Thread(
            target=forward_responses,
            args=(emulator, self.writer, self.cancel),
            daemon=True,
            name=f"pty-responses-{instance_id}",
        )
        self.released = False

    def start(self) -> None:
        self.writer.start()
        self._forwarder.start()

    def send(self, data: bytes) -> bool:
        return self.writer.submit(data)

    def resize(self, cols: int, rows: int) -> None:
        """Resize PTY and emulator together."""
        if cols < 1 or rows < 1:
            raise ValueError(f"invalid terminal size {cols}x{rows}")
        with self.lock:
            if self.released:
                return
            try:
                self.backend.resize(cols, rows)
            except OSError as exc:
                logger.warning(f"[session] PTY resize failed for {self.instance_id}: {exc}")
            self.emulator.resize(cols, rows)
            self.cols = cols
            self.rows = rows

    def read(self, pool: BufferPool, poll_s: float) -> int:
        """Blocking read of one chunk into the emulator.

        Returns the byte count. Raises EOFError/OSError at end of stream and
        SessionCancelled when the runtime is released while waiting.
        """
        buf = pool.acquire()
        try:
            while True:
                with self._read_lock:
                    if self.cancel.is_set():
                        raise SessionCancelled(f"session {self.instance_id} cancelled")
                    n = self.backend.read_into(buf, poll_s)
                if n:
                    self.emulator.feed(bytes(buf[:n]))
                    return n
        finally:
            pool.release(buf)

    def release(self, kill_timeout: float) -> int | None:
        """Tear down workers and handles in order; returns the exit status."""
        with self.lock:
            if self.released:
                return None
            self.released = True
        self.cancel.set()
        self.emulator.close()
        self.writer.close()
        with self._read_lock:
            self.backend.close()
        status = self.backend.wait(kill_timeout)
        if status is None:
            logger.warning(f"[session] {self.instance_id} still alive after {kill_timeout}s, killing")
            self.backend.kill()
            status = self.backend.wait(1.0)
        if self._forwarder.is_alive():
            self._forwarder.join(timeout=1.0)
        logger.debug(f"[session] Released {self.instance_id} (exit status {status})")
        return status
