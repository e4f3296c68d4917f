"""Tests for the session supervisor, driven by the scripted launcher."""

import asyncio
import threading
from contextlib import asynccontextmanager
from unittest.mock import MagicMock

import pytest

from agent_forge.providers.fake import FakePTYBackend, ScriptedLauncher
from agent_forge.providers.launcher import AgentStarted
from agent_forge.providers.runtime.emulator import HeadlessTerminal
from agent_forge.providers.supervisor import SessionSupervisor
from agent_forge.session.models import AgentInstance, AgentStatus, Party
from agent_forge.session.worktree import Disposition


async def wait_until(predicate, timeout: float = 3.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def make_instance(name: str = "Builder", index: int = 0) -> AgentInstance:
    return AgentInstance(
        id=f"raid-{index}-{name}",
        agent_name=name,
        class_name="developer",
        equipped=["review"],
    )


def events_for(launcher: ScriptedLauncher, instance_id: str) -> list[str]:
    return [kind for kind, iid in launcher.events if iid == instance_id]


@asynccontextmanager
async def running(supervisor: SessionSupervisor):
    task = asyncio.create_task(supervisor.run())
    try:
        yield supervisor
    finally:
        await supervisor.shutdown()
        await asyncio.wait_for(task, timeout=3.0)


@pytest.fixture
def launcher():
    return ScriptedLauncher()


@pytest.fixture
def supervisor(catalog, settings, launcher):
    return SessionSupervisor(catalog, launcher, settings)


class TestStart:
    @pytest.mark.asyncio
    async def test_start_attaches_handles_and_jiggles(self, supervisor, launcher):
        inst = make_instance()
        redraws = []
        supervisor.on_output = redraws.append

        async with running(supervisor):
            assert supervisor.request_start(inst, party_name="raid", cols=100, rows=40)
            assert inst.launching
            assert inst.task == "Starting..."

            await wait_until(lambda: inst.status is AgentStatus.RUNNING)
            backend = launcher.backends[inst.id]
            emulator = launcher.emulators[inst.id]
            assert inst.backend is backend
            assert inst.emulator is emulator
            assert not inst.launching
            assert inst.task == "Running claude..."

            await wait_until(lambda: redraws)
            assert backend.size_history == [(39, 100), (40, 100)]
            assert emulator.size_history == [(39, 100), (40, 100)]
            assert emulator.size == (40, 100)

    @pytest.mark.asyncio
    async def test_rejects_start_while_launching_or_running(self, supervisor, launcher):
        inst = make_instance()
        async with running(supervisor):
            assert supervisor.request_start(inst)
            assert supervisor.request_start(inst) is False
            await wait_until(lambda: inst.is_running)
            assert supervisor.request_start(inst) is False
            assert len(launcher.launched) == 1

    @pytest.mark.asyncio
    async def test_launch_failure_reports_exit(self, catalog, settings):
        error = OSError("claude: not found")
        launcher = ScriptedLauncher(failures={"raid-0-Builder": error})
        supervisor = SessionSupervisor(catalog, launcher, settings)
        exits = []
        supervisor.on_exited = lambda inst, err: exits.append((inst.id, err))
        inst = make_instance()

        async with running(supervisor):
            supervisor.request_start(inst)
            await wait_until(lambda: exits)

        assert exits == [("raid-0-Builder", error)]
        assert inst.status is AgentStatus.EXITED
        assert not inst.launching
        assert not inst.has_live_handles
        assert inst.can_launch()

    @pytest.mark.asyncio
    async def test_handoff_is_consumed_by_next_launch(self, supervisor, launcher):
        source = make_instance("Scout", 1)
        source.last_output = "the bug is in parser.py"
        target = make_instance()

        assert supervisor.handoff(source, target)
        async with running(supervisor):
            supervisor.request_start(target)
            await wait_until(lambda: target.is_running)

        sent = launcher.launched[0].handoff_context
        assert sent.startswith("\n\n## Handoff from Scout (developer)\n")
        assert "the bug is in parser.py" in sent
        assert target.handoff_context == ""

    def test_handoff_needs_output(self, supervisor):
        assert supervisor.handoff(make_instance("Scout", 1), make_instance()) is False

    @pytest.mark.asyncio
    async def test_unexpected_start_is_released(self, supervisor, launcher):
        stray = FakePTYBackend("ghost", events=launcher.events)
        async with running(supervisor):
            supervisor.post(AgentStarted(id="ghost", backend=stray, emulator=HeadlessTerminal(80, 24)))
            await wait_until(lambda: ("close_pty", "ghost") in launcher.events)
        assert supervisor.instances == []


class TestOutput:
    @pytest.mark.asyncio
    async def test_output_is_counted_and_rendered(self, supervisor, launcher):
        inst = make_instance()
        async with running(supervisor):
            supervisor.request_start(inst)
            await wait_until(lambda: inst.is_running)

            launcher.backends[inst.id].feed_output(b"hello ")
            launcher.backends[inst.id].feed_output(b"world")
            await wait_until(lambda: inst.context_bytes == 11)

            assert inst.output_reads == 2
            assert inst.last_output_at > 0
            assert supervisor.render_screen(inst) == "hello world"
            usage = supervisor.context_usage(inst)
            assert usage.estimated and usage.used == 2

    @pytest.mark.asyncio
    async def test_context_scan(self, supervisor, launcher, settings):
        supervisor.monitor.scan_every = 2
        inst = make_instance()
        async with running(supervisor):
            supervisor.request_start(inst)
            await wait_until(lambda: inst.is_running)
            backend = launcher.backends[inst.id]
            backend.feed_output(b"ctx 12K/200K tokens")
            backend.feed_output(b"\r\n")
            await wait_until(lambda: inst.context_tokens == 12_000)
            assert inst.context_max == 200_000
            assert supervisor.context_usage(inst).estimated is False

    @pytest.mark.asyncio
    async def test_input_goes_through_writer(self, supervisor, launcher):
        inst = make_instance()
        async with running(supervisor):
            supervisor.request_start(inst)
            await wait_until(lambda: inst.is_running)
            assert supervisor.send_input(inst, "ls\r")
            assert supervisor.send_input(inst, b"\x03")
            await wait_until(lambda: launcher.backends[inst.id].writes == [b"ls\r", b"\x03"])

    def test_input_without_session(self, supervisor):
        assert supervisor.send_input(make_instance(), b"x") is False
        assert supervisor.resize(make_instance(), 80, 24) is False

    @pytest.mark.asyncio
    async def test_resize_applies_to_both_handles(self, supervisor, launcher):
        inst = make_instance()
        redraws = []
        supervisor.on_output = redraws.append
        async with running(supervisor):
            supervisor.request_start(inst, cols=80, rows=24)
            await wait_until(lambda: redraws)
            assert supervisor.resize(inst, 120, 50)
            assert supervisor.resize(inst, 120, 50)
            assert launcher.backends[inst.id].get_size() == (50, 120)
            assert launcher.emulators[inst.id].size == (50, 120)

    @pytest.mark.asyncio
    async def test_callback_errors_are_swallowed(self, supervisor, launcher):
        def boom(inst):
            raise RuntimeError("ui crashed")

        supervisor.on_started = boom
        inst = make_instance()
        async with running(supervisor):
            supervisor.request_start(inst)
            await wait_until(lambda: inst.is_running)
            launcher.backends[inst.id].feed_output(b"still alive")
            await wait_until(lambda: inst.context_bytes == 11)


class TestExit:
    @pytest.mark.asyncio
    async def test_exit_teardown_order(self, supervisor, launcher):
        inst = make_instance()
        exits = []
        supervisor.on_exited = lambda i, err: exits.append((i.id, err))

        async with running(supervisor):
            supervisor.request_start(inst)
            await wait_until(lambda: inst.is_running)
            backend = launcher.backends[inst.id]
            backend.feed_output(b"final\r\nwords")
            await wait_until(lambda: inst.context_bytes > 0)

            backend.finish(0)
            await wait_until(lambda: exits)
            assert inst.status is AgentStatus.EXITED
            assert inst.task == "Process exited"
            assert inst.backend is None and inst.emulator is None and inst.runtime is None
            assert inst.last_output == "final\nwords"

            await wait_until(lambda: "wait" in events_for(launcher, inst.id))
            assert events_for(launcher, inst.id) == ["close_emulator", "close_pty", "wait"]

        assert exits == [(inst.id, None)]

    @pytest.mark.asyncio
    async def test_snapshot_keeps_tail(self, supervisor, launcher, settings):
        settings.pty.snapshot_chars = 10
        inst = make_instance()
        async with running(supervisor):
            supervisor.request_start(inst)
            await wait_until(lambda: inst.is_running)
            backend = launcher.backends[inst.id]
            backend.feed_output(b"0123456789abcdefghij")
            await wait_until(lambda: inst.context_bytes == 20)
            backend.finish()
            await wait_until(lambda: inst.status is AgentStatus.EXITED and inst.runtime is None)
        assert inst.last_output == "abcdefghij"

    @pytest.mark.asyncio
    async def test_relaunch_after_exit(self, supervisor, launcher):
        inst = make_instance()
        async with running(supervisor):
            supervisor.request_start(inst)
            await wait_until(lambda: inst.is_running)
            launcher.backends[inst.id].finish()
            await wait_until(lambda: inst.can_launch())

            assert supervisor.request_start(inst)
            await wait_until(lambda: inst.is_running)
            assert len(launcher.launched) == 2
            assert inst.context_bytes == 0

    @pytest.mark.asyncio
    async def test_pending_loadout_applied_on_exit(self, supervisor, launcher):
        inst = make_instance()
        async with running(supervisor):
            supervisor.request_start(inst)
            await wait_until(lambda: inst.is_running)

            assert supervisor.stage_loadout(inst, ["docs", "perf"], ["sec"]) is False
            assert inst.equipped == ["review"]
            assert inst.has_pending

            launcher.backends[inst.id].finish()
            await wait_until(lambda: inst.status is AgentStatus.EXITED)

        assert inst.equipped == ["docs", "perf"]
        assert inst.passives == ["sec"]
        assert not inst.has_pending

    def test_loadout_applies_immediately_when_idle(self, supervisor):
        inst = make_instance()
        assert supervisor.stage_loadout(inst, ["docs"]) is True
        assert inst.equipped == ["docs"]
        assert not inst.has_pending


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_marks_exited_then_tears_down_on_eof(self, supervisor, launcher):
        inst = make_instance()
        exits = []
        supervisor.on_exited = lambda i, err: exits.append(i.id)
        async with running(supervisor):
            supervisor.request_start(inst)
            await wait_until(lambda: inst.is_running)

            assert supervisor.stop(inst)
            assert inst.status is AgentStatus.EXITED
            assert inst.task == "Stopping..."

            await wait_until(lambda: exits)
            assert inst.task == "Process exited"
            assert not inst.has_live_handles
            await wait_until(lambda: "wait" in events_for(launcher, inst.id))
            assert events_for(launcher, inst.id)[0] == "terminate"
            assert "kill" not in events_for(launcher, inst.id)

    @pytest.mark.asyncio
    async def test_stop_escalates_to_kill(self, catalog, settings):
        launcher = ScriptedLauncher(ignore_sigterm=True)
        supervisor = SessionSupervisor(catalog, launcher, settings)
        inst = make_instance()
        async with running(supervisor):
            supervisor.request_start(inst)
            await wait_until(lambda: inst.is_running)
            backend = launcher.backends[inst.id]

            supervisor.stop(inst)
            # Output after an optimistic stop is read but not counted.
            backend.feed_output(b"shutting down")
            await wait_until(lambda: "shutting down" in supervisor.render_screen(inst))
            assert inst.context_bytes == 0

            await wait_until(lambda: inst.runtime is None)
            await wait_until(lambda: "wait" in events_for(launcher, inst.id))
            assert events_for(launcher, inst.id)[:2] == ["terminate", "kill"]
            assert backend.exit_status == 137

    def test_stop_requires_running(self, supervisor):
        assert supervisor.stop(make_instance()) is False

    @pytest.mark.asyncio
    async def test_stop_all(self, supervisor, launcher):
        a, b = make_instance("A", 0), make_instance("B", 1)
        party = Party(name="raid", slots=[a, b])
        async with running(supervisor):
            supervisor.request_start(a)
            supervisor.request_start(b)
            await wait_until(lambda: a.is_running and b.is_running)
            assert supervisor.stop_all([party]) == 2
            await wait_until(lambda: not a.has_live_handles and not b.has_live_handles)

    @pytest.mark.asyncio
    async def test_shutdown_releases_live_sessions(self, supervisor, launcher):
        inst = make_instance()
        async with running(supervisor):
            supervisor.request_start(inst)
            await wait_until(lambda: inst.is_running)
        assert inst.status is AgentStatus.EXITED
        assert not inst.has_live_handles
        assert "close_pty" in events_for(launcher, inst.id)


class TestWorktrees:
    @pytest.mark.asyncio
    async def test_dispose_discard_clears_binding(self, catalog, settings):
        isolator = MagicMock()
        supervisor = SessionSupervisor(catalog, ScriptedLauncher(), settings, isolator=isolator)
        inst = make_instance()
        inst.status = AgentStatus.EXITED
        inst.worktree, inst.branch = "/wt/raid/builder", "forge/raid/builder"

        assert await supervisor.dispose_worktree(inst, "/project", "discard")

        isolator.dispose.assert_called_once_with(
            "/project", "/wt/raid/builder", "forge/raid/builder", Disposition.DISCARD
        )
        assert (inst.worktree, inst.branch) == ("", "")

    @pytest.mark.asyncio
    async def test_dispose_keep_retains_binding(self, catalog, settings):
        supervisor = SessionSupervisor(catalog, ScriptedLauncher(), settings, isolator=MagicMock())
        inst = make_instance()
        inst.worktree, inst.branch = "/wt", "forge/raid/builder"
        assert await supervisor.dispose_worktree(inst, "/project", Disposition.KEEP)
        assert inst.worktree == "/wt"

    @pytest.mark.asyncio
    async def test_dispose_without_worktree(self, catalog, settings):
        isolator = MagicMock()
        supervisor = SessionSupervisor(catalog, ScriptedLauncher(), settings, isolator=isolator)
        assert await supervisor.dispose_worktree(make_instance(), "/project", "merge") is False
        isolator.dispose.assert_not_called()

    @pytest.mark.asyncio
    async def test_delete_party_stops_members_and_cleans_up(self, catalog, settings):
        isolator = MagicMock()
        launcher = ScriptedLauncher()
        supervisor = SessionSupervisor(catalog, launcher, settings, isolator=isolator)
        inst = make_instance()
        party = Party(name="raid", project="/project", slots=[inst])

        async with running(supervisor):
            supervisor.request_start(inst, party_name="raid")
            await wait_until(lambda: inst.is_running)
            await supervisor.delete_party(party)
            assert inst.status is AgentStatus.EXITED
            assert "terminate" in events_for(launcher, inst.id)

        isolator.cleanup_party.assert_called_once_with("raid", "/project")

    @pytest.mark.asyncio
    async def test_delete_party_waits_for_inflight_launch(self, catalog, settings):
        hold = threading.Event()
        launcher = ScriptedLauncher(hold=hold)
        isolator = MagicMock()
        seen_at_cleanup = []
        isolator.cleanup_party.side_effect = lambda *args: seen_at_cleanup.append(
            (inst.launching, inst.has_live_handles, inst.status)
        )
        supervisor = SessionSupervisor(catalog, launcher, settings, isolator=isolator)
        inst = make_instance()
        party = Party(name="raid", project="/project", slots=[inst])

        async with running(supervisor):
            supervisor.request_start(inst, party_name="raid")
            deleting = asyncio.create_task(supervisor.delete_party(party))
            await asyncio.sleep(0.05)
            assert inst.launching
            isolator.cleanup_party.assert_not_called()

            hold.set()
            await asyncio.wait_for(deleting, timeout=3.0)

            assert seen_at_cleanup == [(False, False, AgentStatus.EXITED)]
            assert events_for(launcher, inst.id)[:2] == ["terminate", "close_emulator"]
            assert not supervisor._releases

    @pytest.mark.asyncio
    async def test_delete_party_waits_for_release(self, catalog, settings):
        launcher = ScriptedLauncher(ignore_sigterm=True)
        isolator = MagicMock()
        isolator.cleanup_party.side_effect = lambda *args: launcher.events.append(("cleanup", "raid"))
        supervisor = SessionSupervisor(catalog, launcher, settings, isolator=isolator)
        inst = make_instance()
        party = Party(name="raid", project="/project", slots=[inst])

        async with running(supervisor):
            supervisor.request_start(inst, party_name="raid")
            await wait_until(lambda: inst.is_running)
            await supervisor.delete_party(party)

        kinds = [kind for kind, _ in launcher.events]
        assert kinds.index("kill") < kinds.index("cleanup")
        assert kinds.index("wait") < kinds.index("cleanup")

    @pytest.mark.asyncio
    async def test_failed_merge_keeps_binding(self, catalog, settings):
        isolator = MagicMock()
        isolator.dispose.return_value = False
        supervisor = SessionSupervisor(catalog, ScriptedLauncher(), settings, isolator=isolator)
        inst = make_instance()
        inst.worktree, inst.branch = "/wt/raid/builder", "forge/raid/builder"

        assert await supervisor.dispose_worktree(inst, "/project", "merge") is False
        assert (inst.worktree, inst.branch) == ("/wt/raid/builder", "forge/raid/builder")


class TestStopWhileLaunching:
    @pytest.mark.asyncio
    async def test_stop_during_launch_terminates_on_start(self, catalog, settings):
        hold = threading.Event()
        launcher = ScriptedLauncher(hold=hold)
        supervisor = SessionSupervisor(catalog, launcher, settings)
        exits = []
        supervisor.on_exited = lambda i, err: exits.append(i.id)
        inst = make_instance()

        async with running(supervisor):
            supervisor.request_start(inst)
            assert supervisor.stop(inst)
            assert inst.task == "Stopping..."
            hold.set()
            await wait_until(lambda: exits)

        assert inst.status is AgentStatus.EXITED
        assert not inst.has_live_handles
        assert events_for(launcher, inst.id)[0] == "terminate"
        assert launcher.backends[inst.id].size_history == []


class TestShutdownOrphans:
    @pytest.mark.asyncio
    async def test_orphan_terminate_error_does_not_abort_shutdown(self, supervisor, launcher):
        class DeadBackend(FakePTYBackend):
            def terminate(self) -> None:
                raise OSError("no such process")

        orphan = DeadBackend("late", events=launcher.events)
        orphan.finish(0)
        # Arrives after the loop stopped, so only shutdown sees it.
        supervisor.post(AgentStarted(id="late", backend=orphan, emulator=HeadlessTerminal(80, 24)))

        await asyncio.wait_for(supervisor.shutdown(), timeout=3.0)

        assert ("close_pty", "late") in launcher.events
