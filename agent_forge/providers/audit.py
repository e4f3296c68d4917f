"""Audit copies of the effective prompt sent to each agent."""

from __future__ import annotations

import threading
from datetime import datetime
from pathlib import Path
from typing import Sequence

from loguru import logger

from agent_forge.utils.helpers import ensure_dir

AUDIT_FILENAME = "effective_prompt.md"


def format_audit(agent_id: str, command: str, prompt: str, args: Sequence[str], launched_at: datetime) -> str:
    return (
        f"# Effective Prompt for {agent_id}\n\n"
        f"Launch time: {launched_at.isoformat()}\n\n"
        f"## CLI Args\n```\n{command} {' '.join(args)}\n```\n\n"
        f"## System Prompt\n\n{prompt}\n"
    )


def write_audit(
    sessions_dir: Path,
    agent_id: str,
    command: str,
    prompt: str,
    args: Sequence[str],
    launched_at: datetime | None = None,
) -> Path:
    """Write ``<sessions_dir>/<id>-<stamp>/effective_prompt.md`` and return its path."""
    launched_at = launched_at or datetime.now().astimezone()
    session_dir = ensure_dir(Path(sessions_dir) / f"{agent_id}-{launched_at.strftime('%Y%m%d-%H%M%S')}")
    path = session_dir / AUDIT_FILENAME
    path.write_text(format_audit(agent_id, command, prompt, args, launched_at), encoding="utf-8")
    return path


def save_audit_async(
    sessions_dir: Path,
    agent_id: str,
    command: str,
    prompt: str,
    args: Sequence[str],
) -> threading.Thread:
    """Write the audit record on a daemon thread; failures are only logged."""

    def worker() -> None:
        try:
            path = write_audit(sessions_dir, agent_id, command, prompt, list(args))
        except OSError as exc:
            logger.warning(f"[audit] Could not save prompt for {agent_id}: {exc}")
            return
        logger.debug(f"[audit] Saved {path}")

    thread = threading.Thread(target=worker, daemon=True, name=f"audit-{agent_id}")
    thread.start()
    return thread
