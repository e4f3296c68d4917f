"""PTY backends for running interactive CLI agents."""

from __future__ import annotations

import errno
import os
import select
import signal
import time
from typing import Mapping, Optional, Protocol, Sequence

from loguru import logger


class PTYBackend(Protocol):
    """Minimal PTY process contract used by the session engine.

    Reads and writes are raw bytes; the terminal emulator does decoding.
    """

    pid: Optional[int]

    def read_into(self, buf: bytearray, timeout: float) -> int:
        """Read into ``buf``; 0 means nothing arrived before ``timeout``.

        Raises EOFError (or OSError) once the PTY is closed or the child exits.
        """

    def write(self, data: bytes) -> None:
        """Write input bytes to the child."""

    def resize(self, cols: int, rows: int) -> None:
        """Apply OS-level terminal resize (delivers SIGWINCH)."""

    def get_size(self) -> tuple[int, int]:
        """Return the current (rows, cols)."""

    def terminate(self) -> None:
        """Ask the child to exit (SIGTERM)."""

    def kill(self) -> None:
        """Force the child to exit (SIGKILL)."""

    def is_alive(self) -> bool:
        """Return True while the child process runs."""

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        """Wait for exit; returns the exit status, or None on timeout."""

    def close(self) -> None:
        """Close the PTY descriptor."""


class UnixPexpectBackend:
    """PTY backend for Unix-like systems via pexpect."""

    def __init__(
        self,
        command: str,
        args: Sequence[str] = (),
        cols: int = 80,
        rows: int = 24,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        import pexpect

        self._pexpect = pexpect
        self._proc = pexpect.spawn(
            command,
            args=list(args),
            env=dict(env) if env is not None else None,
            cwd=cwd,
            echo=False,
            dimensions=(rows, cols),
        )
        self.pid: Optional[int] = self._proc.pid

    def read_into(self, buf: bytearray, timeout: float) -> int:
        fd = self._proc.child_fd
        if fd is None or fd < 0:
            raise EOFError("PTY is closed")
        ready, _, _ = select.select([fd], [], [], timeout)
        if not ready:
            return 0
        try:
            n = os.readv(fd, [buf])
        except OSError as exc:
            # Linux reports EIO on the master once the slave side is gone.
            if exc.errno == errno.EIO:
                raise EOFError("PTY closed by child") from exc
            raise
        if n == 0:
            raise EOFError("PTY reached EOF")
        return n

    def write(self, data: bytes) -> None:
        view = memoryview(data)
        while view:
            written = os.write(self._proc.child_fd, view)
            view = view[written:]

    def resize(self, cols: int, rows: int) -> None:
        self._proc.setwinsize(rows, cols)

    def get_size(self) -> tuple[int, int]:
        rows, cols = self._proc.getwinsize()
        return rows, cols

    def terminate(self) -> None:
        if self._proc.isalive():
            self._proc.kill(signal.SIGTERM)

    def kill(self) -> None:
        if self._proc.isalive():
            self._proc.kill(signal.SIGKILL)

    def is_alive(self) -> bool:
        try:
            return self._proc.isalive()
        except self._pexpect.ExceptionPexpect:
            return False

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        deadline = None if timeout is None else time.monotonic() + timeout
        while self.is_alive():
            if deadline is not None and time.monotonic() >= deadline:
                return None
            time.sleep(0.05)
        if self._proc.exitstatus is not None:
            return self._proc.exitstatus
        return self._proc.signalstatus

    def close(self) -> None:
        if self._proc.closed:
            return
        try:
            self._proc.close(force=True)
        except (self._pexpect.ExceptionPexpect, OSError) as exc:
            logger.warning(f"[pty] Close failed for pid {self.pid}: {exc}")


def build_backend(
    command: str,
    args: Sequence[str] = (),
    cols: int = 80,
    rows: int = 24,
    cwd: str | None = None,
    env: Mapping[str, str] | None = None,
) -> PTYBackend:
    """Build the PTY backend for the current platform.

    Raises:
        RuntimeError: no PTY support on this platform.
        pexpect.ExceptionPexpect / OSError: the child could not be spawned.
    """
    if os.name == "nt":
        raise RuntimeError("PTY sessions require a POSIX platform")
    backend = UnixPexpectBackend(command, args=args, cols=cols, rows=rows, cwd=cwd, env=env)
    logger.info(f"[pty] Started {command} (pid {backend.pid}) {cols}x{rows} in {cwd or os.getcwd()}")
    return backend
