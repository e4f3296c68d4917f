"""Scripted launcher and in-memory PTY for driving the supervisor in tests."""

from __future__ import annotations

import threading
from collections import deque
from typing import Optional

from agent_forge.config.catalog import ForgeCatalog
from agent_forge.providers.launcher import AgentExited, AgentLauncher, AgentStarted, LaunchConfig, LaunchResult
from agent_forge.providers.runtime.emulator import HeadlessTerminal

SIGTERM_STATUS = 143
SIGKILL_STATUS = 137


class FakePTYBackend:
    """A PTY whose output is scripted with ``feed_output`` and ``finish``.

    Every call that matters for ordering is appended to ``events`` as
    ``(kind, instance_id)``; the list may be shared with other fakes.
    """

    def __init__(
        self,
        instance_id: str = "fake",
        cols: int = 80,
        rows: int = 24,
        pid: int = 4242,
        ignore_sigterm: bool = False,
        events: list | None = None,
    ) -> None:
        self.instance_id = instance_id
        self.pid: Optional[int] = pid
        self.ignore_sigterm = ignore_sigterm
        self.events = events if events is not None else []
        self.writes: list[bytes] = []
        self.size_history: list[tuple[int, int]] = []
        self.exit_status: int | None = None
        self.closed = False
        self._size = (rows, cols)
        self._chunks: deque[bytes] = deque()
        self._eof = False
        self._cond = threading.Condition()
        self._exited = threading.Event()

    # -- scripting ---------------------------------------------------------

    def feed_output(self, data: bytes) -> None:
        with self._cond:
            self._chunks.append(bytes(data))
            self._cond.notify_all()

    def finish(self, status: int = 0) -> None:
        """End the output stream and mark the process exited."""
        self._set_exited(status)

    @property
    def written(self) -> bytes:
        return b"".join(self.writes)

    # -- PTYBackend --------------------------------------------------------

    def read_into(self, buf: bytearray, timeout: float) -> int:
        with self._cond:
            if not self._chunks and not self._eof:
                self._cond.wait(timeout)
            if self._chunks:
                chunk = self._chunks.popleft()
                n = min(len(chunk), len(buf))
                buf[:n] = chunk[:n]
                if n < len(chunk):
                    self._chunks.appendleft(chunk[n:])
                return n
            if self._eof:
                raise EOFError("fake PTY closed")
            return 0

    def write(self, data: bytes) -> None:
        if self.closed:
            raise OSError("fake PTY closed")
        self.writes.append(bytes(data))

    def resize(self, cols: int, rows: int) -> None:
        self._size = (rows, cols)
        self.size_history.append((rows, cols))

    def get_size(self) -> tuple[int, int]:
        return self._size

    def terminate(self) -> None:
        self.events.append(("terminate", self.instance_id))
        if not self.ignore_sigterm:
            self._set_exited(SIGTERM_STATUS)

    def kill(self) -> None:
        self.events.append(("kill", self.instance_id))
        self._set_exited(SIGKILL_STATUS)

    def is_alive(self) -> bool:
        return not self._exited.is_set()

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        self.events.append(("wait", self.instance_id))
        if not self._exited.wait(timeout):
            return None
        return self.exit_status

    def close(self) -> None:
        self.events.append(("close_pty", self.instance_id))
        self.closed = True
        with self._cond:
            self._eof = True
            self._cond.notify_all()

    def _set_exited(self, status: int) -> None:
        if self._exited.is_set():
            return
        self.exit_status = status
        self._exited.set()
        with self._cond:
            self._eof = True
            self._cond.notify_all()


class RecordingTerminal(HeadlessTerminal):
    """HeadlessTerminal that logs its close into a shared event list."""

    def __init__(self, instance_id: str, cols: int, rows: int, events: list) -> None:
        super().__init__(cols, rows)
        self.instance_id = instance_id
        self.events = events
        self.size_history: list[tuple[int, int]] = []

    def resize(self, cols: int, rows: int) -> None:
        super().resize(cols, rows)
        self.size_history.append((rows, cols))

    def close(self) -> None:
        if not self.closed:
            self.events.append(("close_emulator", self.instance_id))
        super().close()


class ScriptedLauncher(AgentLauncher):
    """Returns fake handles instead of spawning anything.

    ``failures`` maps instance ids to the error their launch reports. When
    ``hold`` is given, every launch blocks until it is set.
    """

    def __init__(
        self,
        failures: dict[str, BaseException] | None = None,
        ignore_sigterm: bool = False,
        worktrees: dict[str, tuple[str, str]] | None = None,
        hold: threading.Event | None = None,
    ) -> None:
        self.failures = dict(failures or {})
        self.ignore_sigterm = ignore_sigterm
        self.worktrees = dict(worktrees or {})
        self.hold = hold
        self.events: list = []
        self.launched: list[LaunchConfig] = []
        self.backends: dict[str, FakePTYBackend] = {}
        self.emulators: dict[str, RecordingTerminal] = {}

    def launch(self, catalog: ForgeCatalog, lc: LaunchConfig) -> LaunchResult:
        self.launched.append(lc)
        if self.hold is not None:
            self.hold.wait()
        if lc.id in self.failures:
            return AgentExited(id=lc.id, error=self.failures[lc.id])
        backend = FakePTYBackend(
            instance_id=lc.id,
            cols=lc.cols,
            rows=lc.rows,
            ignore_sigterm=self.ignore_sigterm,
            events=self.events,
        )
        emulator = RecordingTerminal(lc.id, lc.cols, lc.rows, self.events)
        self.backends[lc.id] = backend
        self.emulators[lc.id] = emulator
        worktree, branch = self.worktrees.get(lc.id, ("", ""))
        return AgentStarted(id=lc.id, backend=backend, emulator=emulator, worktree=worktree, branch=branch)
