"""CLI commands for agent-forge."""

from __future__ import annotations

import asyncio
import signal
import time
from pathlib import Path
from typing import List, Optional

import typer
from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from agent_forge import __version__

app = typer.Typer(
    name="agent-forge",
    help="agent-forge - supervise parties of CLI coding agents",
    no_args_is_help=True,
)
worktree_app = typer.Typer(help="Manage per-agent git worktrees.", no_args_is_help=True)
app.add_typer(worktree_app, name="worktree")
console = Console()


def version_callback(value: bool) -> None:
    if value:
        console.print(f"agent-forge v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging."),
) -> None:
    """agent-forge entrypoint."""
    del version
    from agent_forge.utils.helpers import setup_logging

    setup_logging(verbose)


def _load_catalog(catalog: Optional[Path]):
    from agent_forge.config.catalog import default_catalog
    from agent_forge.config.loader import load_catalog

    if catalog is None:
        return default_catalog()
    try:
        return load_catalog(catalog)
    except (OSError, ValueError) as exc:
        console.print(f"[red]Cannot load catalog {escape(str(catalog))}: {escape(str(exc))}[/red]")
        raise typer.Exit(1)


@app.command()
def compose(
    class_name: str = typer.Option(..., "--class", "-c", help="Agent class, e.g. developer"),
    equip: Optional[List[str]] = typer.Option(None, "--equip", "-e", help="Skill ID to equip (repeatable)."),
    directives: str = typer.Option("", "--directives", help="Agent profile directives."),
    catalog: Optional[Path] = typer.Option(None, "--catalog", help="Catalog JSON file."),
) -> None:
    """Print the system prompt an agent of CLASS would launch with."""
    from agent_forge.session.skill_composer import build_allowed_tools, compose_prompt

    forge_catalog = _load_catalog(catalog)
    if forge_catalog.get_class(class_name) is None:
        choices = ", ".join(sorted(forge_catalog.classes))
        console.print(f"[red]Unknown class '{escape(class_name)}'. Expected one of: {escape(choices)}[/red]")
        raise typer.Exit(1)

    composed = compose_prompt(forge_catalog, class_name, list(equip or []), directives=directives)
    console.print(composed.prompt, markup=False, highlight=False)
    console.print()

    table = Table(title="Skill slots")
    table.add_column("Skill")
    table.add_column("Kind")
    table.add_column("Tokens", justify="right")
    for slot in composed.slots:
        table.add_row(slot.skill_id, "innate" if slot.is_innate else "equipped", str(slot.tokens))
    console.print(table)

    tools = build_allowed_tools(forge_catalog, class_name)
    console.print(f"Allowed tools: {escape(', '.join(tools)) if tools else '(unrestricted)'}")
    console.print(f"Total: [bold]{composed.total_tokens}[/bold] tokens")


def _parse_agent_spec(spec: str) -> tuple[str, str]:
    name, _, class_name = spec.partition(":")
    return name.strip(), class_name.strip()


def _build_party(forge_catalog, party_name: str, project: str, specs: list[str]):
    from agent_forge.config.catalog import AgentProfile
    from agent_forge.session.models import MAX_PARTY_SLOTS, Party, build_instance

    if len(specs) > MAX_PARTY_SLOTS:
        console.print(f"[red]A party holds at most {MAX_PARTY_SLOTS} agents[/red]")
        raise typer.Exit(1)

    profiles = forge_catalog.agent_map()
    party = Party(name=party_name, project=project)
    for index, spec in enumerate(specs):
        name, class_name = _parse_agent_spec(spec)
        profile = profiles.get(name)
        if class_name:
            base = profile.model_dump() if profile is not None else {"name": name}
            base["class_name"] = class_name
            profile = AgentProfile(**base)
        if profile is None:
            console.print(f"   [{index + 1}] {escape(name)}: agent not found, skipping")
            continue
        if forge_catalog.get_class(profile.class_name) is None:
            console.print(f"   [{index + 1}] {escape(name)}: unknown class '{escape(profile.class_name)}', skipping")
            continue
        party.slots[index] = build_instance(profile, profile.name, party_name, index)
    return party


async def _run_raid(settings, forge_catalog, party, project_dir: str, mission: str, cols: int, rows: int):
    from agent_forge.providers.launcher import PtyLauncher
    from agent_forge.providers.supervisor import SessionSupervisor
    from agent_forge.session.worktree import WorkspaceIsolator

    isolator = WorkspaceIsolator(settings.worktrees_dir)
    supervisor = SessionSupervisor(forge_catalog, PtyLauncher(settings, isolator), settings, isolator)
    members = list(party.instances())
    slot_of = {inst.id: party.slots.index(inst) + 1 for inst in members}
    started_at: dict[str, float] = {}
    remaining = {inst.id for inst in members}
    finished = asyncio.Event()
    aborted: list[str] = []

    def on_exited(inst, error) -> None:
        elapsed = time.monotonic() - started_at.get(inst.id, time.monotonic())
        idx = slot_of.get(inst.id, 0)
        if error is not None:
            console.print(f"   [{idx}] {escape(inst.agent_name)}: exited with error: {escape(str(error))} ({elapsed:.1f}s)")
        else:
            console.print(f"   [{idx}] {escape(inst.agent_name)}: completed ({elapsed:.1f}s)")
        remaining.discard(inst.id)
        if not remaining:
            finished.set()

    def abort(signame: str) -> None:
        if aborted:
            return
        aborted.append(signame)
        console.print(f"\nReceived {signame}, stopping agents...")
        supervisor.stop_all([party])

    supervisor.on_exited = on_exited
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, abort, sig.name)

    runner = asyncio.create_task(supervisor.run(), name="supervisor")
    try:
        for inst in members:
            if mission:
                inst.handoff_context += f"\n\n## Mission\n{mission}"
            started_at[inst.id] = time.monotonic()
            console.print(f"   [{slot_of[inst.id]}] {escape(inst.agent_name)}: starting...")
            supervisor.request_start(inst, party_name=party.name, project_dir=project_dir, cols=cols, rows=rows)
        if members:
            await finished.wait()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        await supervisor.shutdown()
        await runner
    return members, bool(aborted)


@app.command()
def raid(
    party_name: str = typer.Option(..., "--party", "-p", help="Party name (worktree namespace)."),
    agent: List[str] = typer.Option(..., "--agent", "-a", help="Agent as Name or Name:class (repeatable)."),
    project: str = typer.Option("", "--project", help="Project directory (defaults to cwd)."),
    mission: str = typer.Option("", "--mission", "-m", help="Mission text appended to every prompt."),
    catalog: Optional[Path] = typer.Option(None, "--catalog", help="Catalog JSON file."),
    cols: int = typer.Option(120, "--cols", help="Terminal width for each agent."),
    rows: int = typer.Option(40, "--rows", help="Terminal height for each agent."),
    tail: int = typer.Option(0, "--tail", help="Print the last N lines of each agent's screen."),
) -> None:
    """Run a whole party headlessly until every agent exits."""
    from agent_forge.config.loader import load_config

    settings = load_config()
    forge_catalog = _load_catalog(catalog)
    project_dir = str(Path(project).expanduser().resolve()) if project else str(Path.cwd())

    console.print(f"[bold]RAID MODE:[/bold] {escape(party_name)}")
    console.print(f"   Project: {escape(project_dir)}")
    if mission:
        console.print(f"   Mission: {escape(mission)}")
    console.print(f"   Agents: {len(agent)}\n")

    party = _build_party(forge_catalog, party_name, project_dir, agent)
    members, aborted = asyncio.run(_run_raid(settings, forge_catalog, party, project_dir, mission, cols, rows))

    if tail > 0:
        for inst in members:
            lines = inst.last_output.splitlines()[-tail:]
            console.rule(escape(inst.agent_name))
            console.print("\n".join(lines), markup=False, highlight=False)

    console.print("\nRAID ABORTED" if aborted else "\nRAID COMPLETE")
    logger.debug(f"[cli] Raid {party_name} finished with {len(members)} agent(s)")


@worktree_app.command("dispose")
def worktree_dispose(
    party_name: str = typer.Option(..., "--party", "-p"),
    agent_name: str = typer.Option(..., "--agent", "-a"),
    project: str = typer.Option("", "--project"),
    action: str = typer.Option("keep", "--action", help="merge | keep | discard"),
) -> None:
    """Merge, keep or discard one agent's worktree."""
    from agent_forge.config.loader import load_config
    from agent_forge.session.worktree import Disposition, WorkspaceIsolator

    try:
        disposition = Disposition(action.lower())
    except ValueError:
        console.print(f"[red]Unknown action '{escape(action)}'. Expected merge, keep or discard.[/red]")
        raise typer.Exit(1)

    isolator = WorkspaceIsolator(load_config().worktrees_dir)
    binding = isolator.binding_for(party_name, agent_name)
    if not binding.path.exists():
        console.print(f"[yellow]No worktree at {escape(str(binding.path))}[/yellow]")
        raise typer.Exit(1)
    if not isolator.dispose(project, binding.path, binding.branch, disposition):
        console.print(f"[yellow]Could not {disposition.value} {escape(binding.branch)}; worktree kept at {escape(str(binding.path))}[/yellow]")
        raise typer.Exit(1)
    console.print(f"[green]OK[/green] {disposition.value} applied to {escape(binding.branch)}")


@worktree_app.command("clean-party")
def worktree_clean_party(
    party_name: str = typer.Option(..., "--party", "-p"),
    project: str = typer.Option("", "--project"),
) -> None:
    """Discard every worktree and branch of a party."""
    from agent_forge.config.loader import load_config
    from agent_forge.session.worktree import WorkspaceIsolator

    isolator = WorkspaceIsolator(load_config().worktrees_dir)
    isolator.cleanup_party(party_name, project)
    console.print(f"[green]OK[/green] Cleaned worktrees for {escape(party_name)}")
