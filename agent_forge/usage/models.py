"""Context-window usage data models."""

from __future__ import annotations

from dataclasses import dataclass

BYTES_PER_TOKEN = 4


@dataclass(frozen=True)
class ContextUsage:
    """How much of an agent's context window is spent.

    ``estimated`` is True when the figure comes from the raw byte count
    rather than the agent's own status line.
    """

    used: int = 0
    maximum: int = 0
    estimated: bool = True

    @property
    def remaining_fraction(self) -> float:
        """Fraction of the window left, clamped to [0, 1]."""
        if self.maximum <= 0:
            return 1.0
        return min(1.0, max(0.0, 1.0 - self.used / self.maximum))

    @property
    def used_percent(self) -> float:
        return (1.0 - self.remaining_fraction) * 100.0

    def format_status(self) -> str:
        """Short label such as ``12K/200K`` (``~`` prefix when estimated)."""
        prefix = "~" if self.estimated else ""
        return f"{prefix}{self.used // 1000}K/{self.maximum // 1000}K"
