"""Runtime state for party members and parties."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Iterator

from agent_forge.config.catalog import AgentProfile

if TYPE_CHECKING:
    from agent_forge.providers.runtime.backend import PTYBackend
    from agent_forge.providers.runtime.emulator import HeadlessTerminal
    from agent_forge.providers.runtime.session import SessionRuntime

MAX_PARTY_SLOTS = 8
IDLE_TASK = "Awaiting orders..."


class AgentStatus(str, Enum):
    """Lifecycle of one agent session."""

    IDLE = "idle"
    RUNNING = "running"
    EXITED = "exited"


@dataclass(eq=False)
class AgentInstance:
    """A party member, optionally attached to a live PTY session.

    The live handles (``backend``, ``emulator``, ``runtime``) are owned
    exclusively by this instance while it runs and are cleared on exit.
    """

    id: str
    agent_name: str
    class_name: str
    tint: tuple[int, int, int] = (128, 128, 128)
    directives: str = ""

    # Skill loadout
    equipped: list[str] = field(default_factory=list)
    passives: list[str] = field(default_factory=list)
    model: str = ""

    # Session state
    status: AgentStatus = AgentStatus.IDLE
    task: str = IDLE_TASK
    launching: bool = False
    backend: PTYBackend | None = None
    emulator: HeadlessTerminal | None = None
    runtime: SessionRuntime | None = field(default=None, repr=False)

    # Counters
    context_bytes: int = 0
    context_tokens: int = 0   # 0 -> fall back to byte estimate
    context_max: int = 0      # 0 -> use configured default
    output_reads: int = 0
    last_output_at: float = 0.0

    # Git worktree isolation
    worktree: str = ""
    branch: str = ""

    # Handoff
    last_output: str = ""
    handoff_context: str = ""

    # Loadout changes made while running, applied on exit
    pending_equipped: list[str] | None = None
    pending_passives: list[str] | None = None
    has_pending: bool = False

    @property
    def is_running(self) -> bool:
        return self.status is AgentStatus.RUNNING

    @property
    def has_live_handles(self) -> bool:
        return self.backend is not None or self.emulator is not None

    def can_launch(self) -> bool:
        """A new launch needs a settled, handle-free instance."""
        return (
            not self.launching
            and self.status in (AgentStatus.IDLE, AgentStatus.EXITED)
            and not self.has_live_handles
        )

    def consume_handoff(self) -> str:
        """Return and clear the one-shot handoff payload."""
        handoff = self.handoff_context
        self.handoff_context = ""
        return handoff

    def apply_pending(self) -> bool:
        """Apply a staged loadout. Returns True if anything changed."""
        if not self.has_pending:
            return False
        if self.pending_equipped is not None:
            self.equipped = list(self.pending_equipped)
        if self.pending_passives is not None:
            self.passives = list(self.pending_passives)
        self.pending_equipped = None
        self.pending_passives = None
        self.has_pending = False
        return True


def build_instance(
    profile: AgentProfile | None,
    agent_name: str,
    party_name: str,
    index: int,
    equipped: list[str] | None = None,
    passives: list[str] | None = None,
) -> AgentInstance:
    """Create an idle instance for one party slot or bench position."""
    if profile is None:
        return AgentInstance(
            id=f"{party_name}-{index}",
            agent_name=agent_name,
            class_name="coder",
        )
    return AgentInstance(
        id=f"{party_name}-{index}-{profile.name}",
        agent_name=profile.name,
        class_name=profile.class_name,
        tint=profile.tint,
        directives=profile.directives,
        equipped=list(equipped or profile.default_equipped),
        passives=list(passives or []),
    )


def build_handoff(source: AgentInstance) -> str:
    """Format ``source``'s final output as context for another agent."""
    return (
        f"\n\n## Handoff from {source.agent_name} ({source.class_name})\n"
        f"The following is the final output from {source.agent_name}'s session. "
        f"Use it as context:\n\n```\n{source.last_output}\n```"
    )


@dataclass(eq=False)
class Party:
    """A project workspace with fixed slots and a bench of off-duty agents."""

    name: str
    project: str = ""
    slots: list[AgentInstance | None] = field(default_factory=lambda: [None] * MAX_PARTY_SLOTS)
    bench: list[AgentInstance] = field(default_factory=list)

    def __post_init__(self) -> None:
        if len(self.slots) > MAX_PARTY_SLOTS:
            raise ValueError(f"A party holds at most {MAX_PARTY_SLOTS} slots")
        self.slots = list(self.slots) + [None] * (MAX_PARTY_SLOTS - len(self.slots))

    def instances(self) -> Iterator[AgentInstance]:
        """Yield every member, slots first, then bench."""
        for inst in self.slots:
            if inst is not None:
                yield inst
        yield from self.bench

    def find(self, instance_id: str) -> AgentInstance | None:
        for inst in self.instances():
            if inst.id == instance_id:
                return inst
        return None

    def running(self) -> list[AgentInstance]:
        return [inst for inst in self.instances() if inst.is_running]

    def swap(self, slot_index: int, bench_index: int) -> AgentInstance:
        """Exchange a slot occupant with a bench member.

        Returns the instance now occupying the slot. An empty slot simply
        takes the bench member, shrinking the bench.
        """
        if not 0 <= slot_index < MAX_PARTY_SLOTS:
            raise IndexError(f"slot index {slot_index} out of range")
        if not 0 <= bench_index < len(self.bench):
            raise IndexError(f"bench index {bench_index} out of range")
        incoming = self.bench[bench_index]
        outgoing = self.slots[slot_index]
        self.slots[slot_index] = incoming
        if outgoing is None:
            del self.bench[bench_index]
        else:
            self.bench[bench_index] = outgoing
        return incoming
