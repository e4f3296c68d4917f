"""Launching agent processes on a PTY, and the messages they produce."""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Mapping, Sequence, Union

import pexpect
from loguru import logger

from agent_forge.config.catalog import ForgeCatalog
from agent_forge.config.schema import Config
from agent_forge.providers.audit import save_audit_async
from agent_forge.providers.runtime.backend import PTYBackend, build_backend
from agent_forge.providers.runtime.emulator import HeadlessTerminal
from agent_forge.session.models import AgentInstance
from agent_forge.session.skill_composer import build_allowed_tools, compose_prompt
from agent_forge.session.worktree import IsolationError, WorkspaceIsolator

BackendFactory = Callable[..., PTYBackend]


@dataclass(frozen=True)
class LaunchConfig:
    """Everything needed to start one agent, detached from the live instance."""

    id: str
    agent_name: str
    class_name: str
    equipped: tuple[str, ...] = ()
    passives: tuple[str, ...] = ()
    model: str = ""
    directives: str = ""
    handoff_context: str = ""
    project_dir: str = ""
    party_name: str = ""
    cols: int = 80
    rows: int = 24


# --------------------------------------------------------------------------- #
# Supervisor inbox messages                                                     #
# --------------------------------------------------------------------------- #


@dataclass(frozen=True)
class AgentStarted:
    id: str
    backend: PTYBackend = field(repr=False)
    emulator: HeadlessTerminal = field(repr=False)
    worktree: str = ""
    branch: str = ""


@dataclass(frozen=True)
class AgentOutput:
    id: str
    bytes_read: int


@dataclass(frozen=True)
class AgentExited:
    id: str
    error: BaseException | None = None


@dataclass(frozen=True)
class ForceResize:
    id: str


LaunchResult = Union[AgentStarted, AgentExited]


def build_launch_args(prompt: str, allowed_tools: Sequence[str], model: str = "") -> list[str]:
    """CLI arguments for the agent binary."""
    args: list[str] = []
    if prompt:
        args += ["--append-system-prompt", prompt]
    if allowed_tools:
        args += ["--allowedTools", ",".join(allowed_tools)]
    if model:
        args += ["--model", model]
    return args


def build_launch_config(
    inst: AgentInstance,
    cols: int,
    rows: int,
    project_dir: str = "",
    party_name: str = "",
) -> LaunchConfig:
    """Snapshot an instance for launching. Consumes its one-shot handoff."""
    return LaunchConfig(
        id=inst.id,
        agent_name=inst.agent_name,
        class_name=inst.class_name,
        equipped=tuple(inst.equipped),
        passives=tuple(inst.passives),
        model=inst.model,
        directives=inst.directives,
        handoff_context=inst.consume_handoff(),
        project_dir=project_dir,
        party_name=party_name,
        cols=cols,
        rows=rows,
    )


class AgentLauncher(ABC):
    """Starts an agent and reports the outcome as a supervisor message."""

    @abstractmethod
    def launch(self, catalog: ForgeCatalog, lc: LaunchConfig) -> LaunchResult:
        """Blocking launch; never raises for spawn failures."""


class PtyLauncher(AgentLauncher):
    """Spawns the real agent binary on a PTY."""

    def __init__(
        self,
        settings: Config,
        isolator: WorkspaceIsolator | None = None,
        backend_factory: BackendFactory = build_backend,
        write_audit: bool = True,
    ) -> None:
        self.settings = settings
        self.isolator = isolator
        self.backend_factory = backend_factory
        self.write_audit = write_audit

    @property
    def command(self) -> str:
        return self.settings.agent.command

    def launch(self, catalog: ForgeCatalog, lc: LaunchConfig) -> LaunchResult:
        composed = compose_prompt(catalog, lc.class_name, list(lc.equipped), list(lc.passives), lc.directives)
        prompt = composed.prompt + lc.handoff_context
        args = build_launch_args(prompt, build_allowed_tools(catalog, lc.class_name), lc.model)

        workdir, worktree, branch = self._resolve_workdir(lc)
        env = self._build_env()

        emulator = HeadlessTerminal(lc.cols, lc.rows, history=self.settings.pty.history_lines)
        try:
            backend = self.backend_factory(
                self.command,
                args,
                cols=lc.cols,
                rows=lc.rows,
                cwd=workdir,
                env=env,
            )
        except (pexpect.ExceptionPexpect, OSError, RuntimeError) as exc:
            emulator.close()
            logger.error(f"[launcher] Failed to start {lc.agent_name} ({lc.id}): {exc}")
            return AgentExited(id=lc.id, error=exc)

        if self.write_audit:
            save_audit_async(self.settings.sessions_dir, lc.id, self.command, prompt, args)

        logger.info(
            f"[launcher] {lc.agent_name} ({lc.class_name}) started in {workdir}; "
            f"prompt ~{composed.total_tokens} tokens"
        )
        return AgentStarted(id=lc.id, backend=backend, emulator=emulator, worktree=worktree, branch=branch)

    def _resolve_workdir(self, lc: LaunchConfig) -> tuple[str, str, str]:
        fallback = lc.project_dir if lc.project_dir and lc.project_dir != "." else os.getcwd()
        if self.isolator is None or not lc.party_name:
            return fallback, "", ""
        try:
            binding = self.isolator.setup(lc.party_name, lc.agent_name, lc.project_dir)
        except IsolationError as exc:
            logger.info(f"[launcher] No worktree for {lc.agent_name}, using {fallback}: {exc}")
            return fallback, "", ""
        return str(binding.path), str(binding.path), binding.branch

    def _build_env(self) -> Mapping[str, str]:
        env = dict(os.environ)
        env["TERM"] = self.settings.agent.term
        return env
