"""Small shared helpers."""

from __future__ import annotations

import sys
from pathlib import Path

from loguru import logger


def ensure_dir(path: Path) -> Path:
    """Create a directory (and parents) if missing and return it."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def setup_logging(verbose: bool = False) -> None:
    """Route loguru output to stderr at INFO, or DEBUG when verbose."""
    logger.remove()
    logger.add(
        sys.stderr,
        level="DEBUG" if verbose else "INFO",
        format="<green>{time:HH:mm:ss}</green> <level>{level: <7}</level> {message}",
    )


def tail_text(text: str, limit: int) -> str:
    """Return at most the last ``limit`` characters of ``text``."""
    if limit <= 0:
        return ""
    return text[-limit:] if len(text) > limit else text
