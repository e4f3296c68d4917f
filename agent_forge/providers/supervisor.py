"""Message-driven owner of every running agent session.

All instance state changes happen in :meth:`SessionSupervisor._apply`, on the
event loop. Blocking work (launching, PTY reads, git, teardown) runs on worker
threads and reports back through the inbox:

    request_start -> [thread] launcher.launch -> AgentStarted | AgentExited
    AgentStarted  -> runtime workers + first read + size jiggle
    read          -> [thread] backend.read_into -> AgentOutput | AgentExited
    AgentOutput   -> counters, context scan, next read
    AgentExited   -> snapshot, clear handles, [thread] ordered release
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Coroutine, Iterable, Union

from loguru import logger

from agent_forge.config.catalog import ForgeCatalog
from agent_forge.config.schema import Config
from agent_forge.providers.launcher import (
    AgentExited,
    AgentLauncher,
    AgentOutput,
    AgentStarted,
    ForceResize,
    LaunchConfig,
    build_launch_config,
)
from agent_forge.providers.runtime.buffers import BufferPool
from agent_forge.providers.runtime.session import SessionCancelled, SessionRuntime
from agent_forge.session.models import AgentInstance, AgentStatus, Party, build_handoff
from agent_forge.session.worktree import Disposition, WorkspaceIsolator
from agent_forge.usage.context_monitor import ContextUsageMonitor
from agent_forge.usage.models import ContextUsage
from agent_forge.utils.helpers import tail_text

Message = Union[AgentStarted, AgentOutput, AgentExited, ForceResize]
OnInstance = Callable[[AgentInstance], None]
OnExited = Callable[[AgentInstance, Union[BaseException, None]], None]

_SHUTDOWN = object()


class SessionSupervisor:
    """Owns live sessions from launch until their handles are released."""

    def __init__(
        self,
        catalog: ForgeCatalog,
        launcher: AgentLauncher,
        settings: Config | None = None,
        isolator: WorkspaceIsolator | None = None,
        monitor: ContextUsageMonitor | None = None,
        pool: BufferPool | None = None,
    ) -> None:
        self.catalog = catalog
        self.launcher = launcher
        self.settings = settings or Config()
        self.isolator = isolator
        ctx = self.settings.context
        self.monitor = monitor or ContextUsageMonitor(ctx.scan_every, ctx.tail_chars, ctx.default_max)
        self.pool = pool or BufferPool(self.settings.pty.buffer_size)

        # Callbacks – set these before calling run().
        self.on_started: OnInstance | None = None
        self.on_output: OnInstance | None = None
        self.on_exited: OnExited | None = None

        self._inbox: asyncio.Queue = asyncio.Queue()
        self._instances: dict[str, AgentInstance] = {}
        self._tasks: set[asyncio.Task] = set()
        self._watchdogs: dict[str, asyncio.Task] = {}
        self._jiggles: dict[str, asyncio.Task] = {}
        self._releases: dict[str, asyncio.Task] = {}
        # Launches stopped while in flight; terminated as soon as they start.
        self._stop_on_start: set[str] = set()
        self._running = False

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Apply inbox messages one at a time until ``shutdown``."""
        self._running = True
        logger.debug("[supervisor] Started")
        while self._running:
            msg = await self._inbox.get()
            if msg is _SHUTDOWN:
                break
            self._apply(msg)
        logger.debug("[supervisor] Stopped")

    async def shutdown(self) -> None:
        """Stop the loop and tear down every live session."""
        self._running = False
        self._inbox.put_nowait(_SHUTDOWN)
        for task in [*self._watchdogs.values(), *self._jiggles.values()]:
            task.cancel()

        releases = []
        for inst in self._instances.values():
            runtime = inst.runtime
            if runtime is None:
                continue
            self._terminate(inst)
            inst.status = AgentStatus.EXITED
            inst.task = "Process exited"
            self._detach(inst)
            releases.append(asyncio.to_thread(runtime.release, self.settings.agent.kill_timeout_s))
        if releases:
            await asyncio.gather(*releases)

        pending = [task for task in self._tasks if task is not asyncio.current_task()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        await self._release_orphans()
        self._stop_on_start.clear()

    @property
    def instances(self) -> list[AgentInstance]:
        return list(self._instances.values())

    def register(self, *instances: AgentInstance) -> None:
        for inst in instances:
            self._instances[inst.id] = inst

    def register_party(self, party: Party) -> None:
        self.register(*party.instances())

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def request_start(
        self,
        inst: AgentInstance,
        *,
        party_name: str = "",
        project_dir: str = "",
        cols: int = 80,
        rows: int = 24,
    ) -> bool:
        """Launch ``inst`` in the background. Returns False if it cannot start now."""
        if not inst.can_launch():
            logger.info(f"[supervisor] Ignoring start for {inst.id}: status={inst.status.value} launching={inst.launching}")
            return False
        if cols < 1 or rows < 1:
            raise ValueError(f"invalid terminal size {cols}x{rows}")
        self.register(inst)
        inst.launching = True
        inst.status = AgentStatus.IDLE
        inst.task = "Starting..."
        lc = build_launch_config(inst, cols, rows, project_dir=project_dir, party_name=party_name)
        self._spawn(self._launch(lc), name=f"launch-{inst.id}")
        return True

    def send_input(self, inst: AgentInstance, data: bytes | str) -> bool:
        """Queue keystrokes for the session's PTY writer."""
        runtime = inst.runtime
        if runtime is None:
            return False
        if isinstance(data, str):
            data = data.encode("utf-8")
        return runtime.send(data)

    def resize(self, inst: AgentInstance, cols: int, rows: int) -> bool:
        runtime = inst.runtime
        if runtime is None:
            return False
        runtime.resize(cols, rows)
        return True

    def stop(self, inst: AgentInstance) -> bool:
        """Send SIGTERM and mark the instance exited; SIGKILL follows on timeout.

        Handles stay attached until the read pump observes EOF. A launch still
        in flight is terminated as soon as it reports in.
        """
        if inst.launching:
            self._stop_on_start.add(inst.id)
            inst.task = "Stopping..."
            logger.info(f"[supervisor] {inst.id} will be stopped once its launch completes")
            return True
        runtime = inst.runtime
        if not inst.is_running or runtime is None:
            return False
        inst.status = AgentStatus.EXITED
        inst.task = "Stopping..."
        self._terminate(inst)
        timeout = self.settings.agent.kill_timeout_s
        self._watchdogs[inst.id] = self._spawn(self._kill_after(runtime, timeout), name=f"watchdog-{inst.id}")
        logger.info(f"[supervisor] Stopping {inst.id}")
        return True

    def stop_all(self, parties: Iterable[Party] | None = None) -> int:
        """Stop every running or launching member. Returns how many were signalled."""
        if parties is None:
            members: Iterable[AgentInstance] = list(self._instances.values())
        else:
            members = [inst for party in parties for inst in party.instances()]
        return sum(1 for inst in members if self.stop(inst))

    def stage_loadout(
        self,
        inst: AgentInstance,
        equipped: list[str],
        passives: list[str] | None = None,
    ) -> bool:
        """Change the loadout now, or on exit if the instance is live.

        Returns True when applied immediately.
        """
        if inst.is_running or inst.has_live_handles:
            inst.pending_equipped = list(equipped)
            inst.pending_passives = list(passives) if passives is not None else None
            inst.has_pending = True
            logger.debug(f"[supervisor] Staged loadout for {inst.id}")
            return False
        inst.equipped = list(equipped)
        if passives is not None:
            inst.passives = list(passives)
        return True

    def handoff(self, source: AgentInstance, target: AgentInstance) -> bool:
        """Give ``target`` the final output of ``source`` for its next launch."""
        if not source.last_output or source is target:
            return False
        target.handoff_context = build_handoff(source)
        logger.info(f"[supervisor] Handoff {source.agent_name} -> {target.agent_name}")
        return True

    async def dispose_worktree(
        self,
        inst: AgentInstance,
        project_dir: str,
        action: Disposition | str,
    ) -> bool:
        """Apply merge/keep/discard to an exited instance's worktree.

        Returns False when nothing was applied, including a merge that was
        rolled back; the binding is then left in place.
        """
        action = Disposition(action)
        if self.isolator is None or not inst.worktree:
            return False
        if inst.has_live_handles:
            logger.warning(f"[supervisor] {inst.id} is still live; not disposing its worktree")
            return False
        applied = await asyncio.to_thread(self.isolator.dispose, project_dir, inst.worktree, inst.branch, action)
        if not applied:
            return False
        if action is not Disposition.KEEP:
            inst.worktree = ""
            inst.branch = ""
        return True

    async def delete_party(self, party: Party) -> None:
        """Stop every member, wait for their release, then discard the party's worktrees."""
        members = list(party.instances())
        stopped = self.stop_all([party])
        if stopped:
            logger.info(f"[supervisor] Stopped {stopped} member(s) of {party.name}")
        if not await self._wait_released(members):
            logger.warning(f"[supervisor] Members of {party.name} still live; cleaning up anyway")
        if self.isolator is not None:
            await asyncio.to_thread(self.isolator.cleanup_party, party.name, party.project)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def render_screen(self, inst: AgentInstance) -> str:
        emulator = inst.emulator
        if emulator is None:
            return inst.last_output
        return emulator.render()

    def context_usage(self, inst: AgentInstance) -> ContextUsage:
        return self.monitor.usage(inst)

    # ------------------------------------------------------------------
    # Message handling
    # ------------------------------------------------------------------

    def post(self, msg: Message) -> None:
        self._inbox.put_nowait(msg)

    def _apply(self, msg: Message) -> None:
        if isinstance(msg, AgentOutput):
            self._on_output(msg)
        elif isinstance(msg, AgentStarted):
            self._on_started(msg)
        elif isinstance(msg, AgentExited):
            self._on_exited(msg)
        elif isinstance(msg, ForceResize):
            self._on_force_resize(msg)
        else:
            logger.warning(f"[supervisor] Unknown message {msg!r}")

    def _on_started(self, msg: AgentStarted) -> None:
        rows, cols = msg.emulator.size
        runtime = SessionRuntime(msg.id, msg.backend, msg.emulator, cols, rows)
        inst = self._instances.get(msg.id)
        if inst is None or not inst.launching:
            logger.warning(f"[supervisor] Discarding handles for unexpected start of {msg.id}")
            self._spawn(asyncio.to_thread(runtime.release, self.settings.agent.kill_timeout_s))
            return

        inst.launching = False
        inst.backend = msg.backend
        inst.emulator = msg.emulator
        inst.runtime = runtime
        inst.worktree = msg.worktree
        inst.branch = msg.branch
        inst.status = AgentStatus.RUNNING
        inst.task = f"Running {self.settings.agent.command}..."
        inst.context_bytes = 0
        inst.context_tokens = 0
        inst.context_max = 0
        inst.output_reads = 0

        runtime.start()
        self._schedule_read(runtime)
        if inst.id in self._stop_on_start:
            self._stop_on_start.discard(inst.id)
            logger.info(f"[supervisor] {inst.agent_name} started after a stop request, stopping")
            self._notify(self.on_started, inst)
            self.stop(inst)
            return
        self._jiggles[inst.id] = self._spawn(self._jiggle(inst, runtime), name=f"jiggle-{inst.id}")
        logger.info(f"[supervisor] {inst.agent_name} running (pid {msg.backend.pid}) {cols}x{rows}")
        self._notify(self.on_started, inst)

    def _on_output(self, msg: AgentOutput) -> None:
        inst = self._instances.get(msg.id)
        if inst is None or inst.runtime is None:
            return
        if inst.status is AgentStatus.RUNNING:
            inst.context_bytes += msg.bytes_read
            inst.last_output_at = time.time()
            self.monitor.observe(inst)
            self._notify(self.on_output, inst)
        # Keep reading after an optimistic stop so EOF is still observed.
        self._schedule_read(inst.runtime)

    def _on_exited(self, msg: AgentExited) -> None:
        inst = self._instances.get(msg.id)
        if inst is None:
            return
        inst.launching = False
        self._stop_on_start.discard(inst.id)
        inst.status = AgentStatus.EXITED
        inst.task = "Process exited"
        inst.apply_pending()
        runtime = self._detach(inst)

        watchdog = self._watchdogs.pop(inst.id, None)
        if watchdog is not None:
            watchdog.cancel()
        if runtime is not None:
            self._releases[inst.id] = self._spawn(self._release(inst.id, runtime), name=f"release-{inst.id}")

        if msg.error is not None:
            logger.warning(f"[supervisor] {inst.agent_name} exited with error: {msg.error}")
        else:
            logger.info(f"[supervisor] {inst.agent_name} exited")
        self._notify(self.on_exited, inst, msg.error)

    def _on_force_resize(self, msg: ForceResize) -> None:
        inst = self._instances.get(msg.id)
        if inst is None or inst.runtime is None:
            return
        logger.debug(f"[supervisor] Forced redraw for {msg.id}")
        self._notify(self.on_output, inst)

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def _launch(self, lc: LaunchConfig) -> None:
        try:
            result = await asyncio.to_thread(self.launcher.launch, self.catalog, lc)
        except Exception as exc:
            logger.exception(f"[supervisor] Launcher failed for {lc.id}")
            result = AgentExited(id=lc.id, error=exc)
        self.post(result)

    def _schedule_read(self, runtime: SessionRuntime) -> None:
        self._spawn(self._read_once(runtime), name=f"read-{runtime.instance_id}")

    async def _read_once(self, runtime: SessionRuntime) -> None:
        try:
            n = await asyncio.to_thread(runtime.read, self.pool, self.settings.pty.read_poll_s)
        except SessionCancelled:
            return
        except EOFError:
            self._post_if_current(runtime, AgentExited(id=runtime.instance_id))
            return
        except OSError as exc:
            self._post_if_current(runtime, AgentExited(id=runtime.instance_id, error=exc))
            return
        self._post_if_current(runtime, AgentOutput(id=runtime.instance_id, bytes_read=n))

    def _post_if_current(self, runtime: SessionRuntime, msg: Message) -> None:
        inst = self._instances.get(runtime.instance_id)
        if inst is not None and inst.runtime is runtime:
            self.post(msg)

    async def _jiggle(self, inst: AgentInstance, runtime: SessionRuntime) -> None:
        """Shrink by one row and restore, so the child gets SIGWINCH and redraws."""
        pty = self.settings.pty
        try:
            await asyncio.sleep(pty.settle_delay_s)
            if runtime.released or inst.runtime is not runtime:
                return
            cols, rows = runtime.cols, runtime.rows
            if rows > 1:
                runtime.resize(cols, rows - 1)
                await asyncio.sleep(pty.jiggle_interval_s)
                if runtime.released:
                    return
                runtime.resize(cols, rows)
            self.post(ForceResize(id=inst.id))
        finally:
            if self._jiggles.get(inst.id) is asyncio.current_task():
                del self._jiggles[inst.id]

    async def _release(self, instance_id: str, runtime: SessionRuntime) -> None:
        try:
            await asyncio.to_thread(runtime.release, self.settings.agent.kill_timeout_s)
        finally:
            if self._releases.get(instance_id) is asyncio.current_task():
                del self._releases[instance_id]

    async def _wait_released(self, members: list[AgentInstance]) -> bool:
        """Wait until no member is launching, attached or being released."""
        loop = asyncio.get_running_loop()
        # SIGKILL fires after one kill timeout; release may wait one more.
        deadline = loop.time() + 2 * self.settings.agent.kill_timeout_s + 1.0
        while True:
            busy = [inst for inst in members if inst.launching or inst.has_live_handles]
            releasing = [self._releases[inst.id] for inst in members if inst.id in self._releases]
            if not busy and not releasing:
                return True
            if loop.time() >= deadline:
                return False
            if releasing and not busy:
                await asyncio.wait(releasing, timeout=deadline - loop.time())
            else:
                await asyncio.sleep(0.02)

    async def _kill_after(self, runtime: SessionRuntime, timeout: float) -> None:
        await asyncio.sleep(timeout)
        if runtime.released:
            return
        backend = runtime.backend
        if backend.is_alive():
            logger.warning(f"[supervisor] {runtime.instance_id} ignored SIGTERM for {timeout}s, killing")
            try:
                backend.kill()
            except OSError as exc:
                logger.warning(f"[supervisor] Kill failed for {runtime.instance_id}: {exc}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _detach(self, inst: AgentInstance) -> SessionRuntime | None:
        """Snapshot the screen and clear the live handles."""
        if inst.emulator is not None:
            screen = inst.emulator.render().replace("\r\n", "\n")
            inst.last_output = tail_text(screen, self.settings.pty.snapshot_chars)
        runtime = inst.runtime
        inst.backend = None
        inst.emulator = None
        inst.runtime = None
        return runtime

    def _terminate(self, inst: AgentInstance) -> None:
        backend = inst.backend
        if backend is None:
            return
        try:
            backend.terminate()
        except OSError as exc:
            logger.warning(f"[supervisor] SIGTERM failed for {inst.id}: {exc}")

    async def _release_orphans(self) -> None:
        # Launches that finished after shutdown never reach _apply.
        while not self._inbox.empty():
            msg = self._inbox.get_nowait()
            if isinstance(msg, AgentStarted):
                rows, cols = msg.emulator.size
                runtime = SessionRuntime(msg.id, msg.backend, msg.emulator, cols, rows)
                try:
                    msg.backend.terminate()
                except OSError as exc:
                    logger.warning(f"[supervisor] SIGTERM failed for orphan {msg.id}: {exc}")
                await asyncio.to_thread(runtime.release, self.settings.agent.kill_timeout_s)

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str | None = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _notify(self, callback: Callable[..., None] | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as exc:
            logger.warning(f"[supervisor] Callback error: {exc}")
