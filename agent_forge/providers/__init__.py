"""Launching and supervising agent processes."""

from agent_forge.providers.launcher import (
    AgentExited,
    AgentLauncher,
    AgentOutput,
    AgentStarted,
    ForceResize,
    LaunchConfig,
    PtyLauncher,
    build_launch_args,
    build_launch_config,
)
from agent_forge.providers.supervisor import SessionSupervisor

__all__ = [
    "AgentExited",
    "AgentLauncher",
    "AgentOutput",
    "AgentStarted",
    "ForceResize",
    "LaunchConfig",
    "PtyLauncher",
    "SessionSupervisor",
    "build_launch_args",
    "build_launch_config",
]
