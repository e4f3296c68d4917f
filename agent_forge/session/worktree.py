"""Per-agent git worktree isolation.

Layout::

    <worktrees_root>/
      <party>/
        <agent-lowercase>/     # worktree checked out on forge/<party>/<agent-lowercase>

Git failures during disposal are logged and ignored so that ending a session
never blocks on repository state. A merge that conflicts, or that would sweep
up changes already staged in the project, is rolled back and the agent's
worktree and branch are kept.
"""

from __future__ import annotations

import os
import shutil
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from loguru import logger

BRANCH_PREFIX = "forge"


class IsolationError(RuntimeError):
    """Raised when a dedicated worktree cannot be provided."""


class Disposition(str, Enum):
    """What to do with an agent's worktree when its session ends."""

    MERGE = "merge"
    KEEP = "keep"
    DISCARD = "discard"


@dataclass(frozen=True)
class WorktreeBinding:
    """Filesystem path and branch bound to one (party, agent) pair."""

    path: Path
    branch: str


class WorkspaceIsolator:
    """Create, reuse and dispose of per-agent git worktrees."""

    def __init__(
        self,
        worktrees_root: Path,
        git_command: str = "git",
        timeout_s: float = 60.0,
    ) -> None:
        self.worktrees_root = Path(worktrees_root).expanduser()
        self.git_command = git_command
        self.timeout_s = timeout_s

    # ------------------------------------------------------------------ #
    # Naming                                                               #
    # ------------------------------------------------------------------ #

    def branch_name(self, party_name: str, agent_name: str) -> str:
        return f"{BRANCH_PREFIX}/{party_name}/{agent_name.lower()}"

    def worktree_path(self, party_name: str, agent_name: str) -> Path:
        return self.worktrees_root / party_name / agent_name.lower()

    def binding_for(self, party_name: str, agent_name: str) -> WorktreeBinding:
        return WorktreeBinding(
            path=self.worktree_path(party_name, agent_name),
            branch=self.branch_name(party_name, agent_name),
        )

    # ------------------------------------------------------------------ #
    # Setup                                                                #
    # ------------------------------------------------------------------ #

    def is_git_repo(self, path: str | Path) -> bool:
        """Return True if ``path`` is inside a git working tree."""
        result = self._git(path, "rev-parse", "--is-inside-work-tree")
        return result is not None and result.returncode == 0 and result.stdout.strip() == "true"

    def setup(self, party_name: str, agent_name: str, project_dir: str | Path) -> WorktreeBinding:
        """Create or reuse the worktree for one agent.

        Raises:
            IsolationError: project is not a git repository, or git refused
                to create the worktree.
        """
        project = _resolve_project_dir(project_dir)
        if not self.is_git_repo(project):
            raise IsolationError(f"{project} is not a git repository")

        binding = self.binding_for(party_name, agent_name)
        wt_path = binding.path

        if wt_path.exists():
            if self.is_git_repo(wt_path):
                self._note_reused_branch(binding)
                logger.debug(f"[worktree] Reusing {wt_path}")
                return binding
            logger.info(f"[worktree] Removing stale worktree at {wt_path}")
            self._git(project, "worktree", "remove", "--force", str(wt_path))
            shutil.rmtree(wt_path, ignore_errors=True)

        self._git(project, "worktree", "prune")
        wt_path.parent.mkdir(parents=True, exist_ok=True)

        attached = self._git(project, "worktree", "add", str(wt_path), binding.branch)
        if attached is None or attached.returncode != 0:
            created = self._git(project, "worktree", "add", "-b", binding.branch, str(wt_path))
            if created is None or created.returncode != 0:
                detail = (created.stderr.strip() if created is not None else "") or "git unavailable"
                raise IsolationError(f"git worktree add failed for {binding.branch}: {detail}")
            logger.info(f"[worktree] Created {wt_path} on new branch {binding.branch}")
        else:
            logger.info(f"[worktree] Attached {wt_path} to existing branch {binding.branch}")
        return binding

    # ------------------------------------------------------------------ #
    # Disposal                                                             #
    # ------------------------------------------------------------------ #

    def dispose(
        self,
        project_dir: str | Path,
        worktree: str | Path,
        branch: str,
        action: Disposition | str,
    ) -> bool:
        """Apply the end-of-session disposition for one worktree.

        Returns False when a merge could not be completed; the project is
        then restored and the worktree and branch are kept.
        """
        action = Disposition(action)
        if action is Disposition.KEEP:
            return True
        if not worktree or not branch:
            return True

        project = _resolve_project_dir(project_dir)
        if action is Disposition.MERGE and not self._merge(project, branch):
            logger.warning(f"[worktree] Could not merge {branch}; keeping {worktree}")
            return False
        self._git(project, "worktree", "remove", "--force", str(worktree))
        self._git(project, "branch", "-D", branch)
        logger.info(f"[worktree] {action.value} applied to {branch}")
        return True

    def cleanup_party(self, party_name: str, project_dir: str | Path) -> None:
        """Discard every worktree and branch belonging to a party."""
        party_dir = self.worktrees_root / party_name
        try:
            entries = sorted(p for p in party_dir.iterdir() if p.is_dir())
        except OSError:
            return
        for entry in entries:
            branch = f"{BRANCH_PREFIX}/{party_name}/{entry.name}"
            self.dispose(project_dir, entry, branch, Disposition.DISCARD)
        shutil.rmtree(party_dir, ignore_errors=True)

    # ------------------------------------------------------------------ #
    # Private                                                              #
    # ------------------------------------------------------------------ #

    def _merge(self, project: Path, branch: str) -> bool:
        """Squash ``branch`` into the project's current branch as one commit."""
        if not self._index_clean(project):
            logger.warning(f"[worktree] {project} has staged changes; not merging {branch}")
            return False
        merged = self._git(project, "merge", "--squash", branch)
        if merged is None or merged.returncode != 0:
            self._git(project, "reset", "--merge")
            return False
        if self._index_clean(project):
            # Branch carried no changes.
            return True
        committed = self._git(project, "commit", "--no-edit", "-m", f"Merge work from {branch}")
        if committed is None or committed.returncode != 0:
            self._git(project, "reset", "--merge")
            return False
        return True

    def _index_clean(self, project: Path) -> bool:
        result = self._git(project, "diff", "--cached", "--quiet")
        return result is not None and result.returncode == 0

    def _note_reused_branch(self, binding: WorktreeBinding) -> None:
        # Reuse only checks for a valid work tree; a repurposed directory on
        # another branch is reported, not corrected.
        head = self._git(binding.path, "rev-parse", "--abbrev-ref", "HEAD")
        if head is None or head.returncode != 0:
            return
        current = head.stdout.strip()
        if current and current != binding.branch:
            logger.warning(
                f"[worktree] {binding.path} is on {current!r}, expected {binding.branch!r}; reusing as-is"
            )

    def _git(self, cwd: str | Path, *args: str) -> subprocess.CompletedProcess[str] | None:
        cmd = [self.git_command, "-C", str(cwd), *args]
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="ignore",
                timeout=self.timeout_s,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.debug(f"[worktree] {' '.join(args)} failed: {exc}")
            return None
        if result.returncode != 0:
            logger.debug(f"[worktree] git {' '.join(args)} exited {result.returncode}: {result.stderr.strip()}")
        return result


def _resolve_project_dir(project_dir: str | Path) -> Path:
    value = str(project_dir or "").strip()
    if not value or value == ".":
        return Path(os.getcwd())
    return Path(value).expanduser()
