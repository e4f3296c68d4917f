"""Utility functions for agent-forge."""

from agent_forge.utils.helpers import ensure_dir, setup_logging, tail_text

__all__ = ["ensure_dir", "setup_logging", "tail_text"]
