"""Configuration schema for agent-forge."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings


class PathsConfig(BaseModel):
    """Where agent-forge keeps its state."""

    home: str = "~/.agent-forge"

    @property
    def home_path(self) -> Path:
        return Path(self.home).expanduser()


class AgentCommandConfig(BaseModel):
    """How the agent binary is invoked."""

    command: str = "claude"
    term: str = "xterm-256color"
    kill_timeout_s: float = 5.0


class PTYConfig(BaseModel):
    """PTY pump and terminal emulator tuning."""

    buffer_size: int = 32 * 1024
    settle_delay_s: float = 0.3
    jiggle_interval_s: float = 0.1
    read_poll_s: float = 0.25
    snapshot_chars: int = 2000
    history_lines: int = 5000


class ContextConfig(BaseModel):
    """Context-usage scanning of rendered agent output."""

    scan_every: int = 50
    tail_chars: int = 500
    default_max: int = 200_000


class Config(BaseSettings):
    """Root configuration for agent-forge."""

    paths: PathsConfig = Field(default_factory=PathsConfig)
    agent: AgentCommandConfig = Field(default_factory=AgentCommandConfig)
    pty: PTYConfig = Field(default_factory=PTYConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)

    @property
    def home_path(self) -> Path:
        """Get expanded agent-forge home directory."""
        return self.paths.home_path

    @property
    def sessions_dir(self) -> Path:
        """Directory holding per-launch audit records."""
        return self.home_path / "sessions"

    @property
    def worktrees_dir(self) -> Path:
        """Root of all per-party git worktrees."""
        return self.home_path / "worktrees"

    model_config = ConfigDict(
        env_prefix="AGENT_FORGE_",
        env_nested_delimiter="__",
        extra="ignore",
    )
