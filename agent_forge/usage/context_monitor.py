"""Context-window accounting from rendered agent output."""

from __future__ import annotations

import re

from loguru import logger

from agent_forge.session.models import AgentInstance
from agent_forge.usage.models import BYTES_PER_TOKEN, ContextUsage
from agent_forge.utils.helpers import tail_text

# e.g. "45.2K/200K tokens"
CONTEXT_RE = re.compile(r"(\d+(?:\.\d+)?)\s*[Kk]\s*/\s*(\d+(?:\.\d+)?)\s*[Kk]\s*tokens")


def parse_context(text: str) -> tuple[int, int] | None:
    """Return (used, maximum) tokens from the first status match in ``text``."""
    match = CONTEXT_RE.search(text)
    if match is None:
        return None
    return int(float(match.group(1)) * 1000), int(float(match.group(2)) * 1000)


class ContextUsageMonitor:
    """Scans the screen every ``scan_every`` reads; never fails the session."""

    def __init__(self, scan_every: int = 50, tail_chars: int = 500, default_max: int = 200_000) -> None:
        if scan_every < 1:
            raise ValueError("scan_every must be >= 1")
        self.scan_every = scan_every
        self.tail_chars = tail_chars
        self.default_max = default_max

    def observe(self, inst: AgentInstance) -> bool:
        """Count one read; returns True when a scan updated the counters."""
        inst.output_reads += 1
        if inst.output_reads % self.scan_every:
            return False
        return self.scan(inst)

    def scan(self, inst: AgentInstance) -> bool:
        emulator = inst.emulator
        if emulator is None:
            return False
        try:
            screen = emulator.render()
        except Exception as exc:
            logger.debug(f"[context] Render failed for {inst.id}: {exc}")
            return False
        parsed = parse_context(tail_text(screen, self.tail_chars))
        if parsed is None:
            return False
        inst.context_tokens, inst.context_max = parsed
        logger.debug(f"[context] {inst.id}: {inst.context_tokens}/{inst.context_max} tokens")
        return True

    def usage(self, inst: AgentInstance) -> ContextUsage:
        if inst.context_tokens > 0:
            return ContextUsage(
                used=inst.context_tokens,
                maximum=inst.context_max or self.default_max,
                estimated=False,
            )
        return ContextUsage(
            used=inst.context_bytes // BYTES_PER_TOKEN,
            maximum=self.default_max,
            estimated=True,
        )
