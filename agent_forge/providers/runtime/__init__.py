"""PTY-level runtime for agent sessions."""

from .backend import PTYBackend, UnixPexpectBackend, build_backend
from .buffers import BufferPool
from .emulator import EmulatorClosed, HeadlessTerminal
from .session import PtyWriter, SessionCancelled, SessionRuntime, forward_responses

__all__ = [
    "BufferPool",
    "EmulatorClosed",
    "HeadlessTerminal",
    "PTYBackend",
    "PtyWriter",
    "SessionCancelled",
    "SessionRuntime",
    "UnixPexpectBackend",
    "build_backend",
    "forward_responses",
]
