"""Shared fixtures."""

import shutil
import subprocess
import sys

import pytest
from loguru import logger

from agent_forge.config.catalog import AgentProfile, ClassConfig, ForgeCatalog, SkillEntry
from agent_forge.config.schema import Config


@pytest.fixture
def catalog() -> ForgeCatalog:
    """Small catalog with one class that has innate skills."""
    return ForgeCatalog(
        classes={
            "developer": ClassConfig(
                description="Implementation specialist",
                innate_skills=["tdd", "debugging"],
                tool_profile="full",
            ),
            "researcher": ClassConfig(description="Information gatherer", tool_profile="readonly"),
            "freeform": ClassConfig(description="No restrictions"),
        },
        tool_profiles={
            "full": ["Bash", "Read", "Write"],
            "readonly": ["Read", "Grep"],
        },
        skills=[
            SkillEntry(id="tdd", name="Test-Driven Development", content="Write the failing test first."),
            SkillEntry(id="debugging", name="Systematic Debugging", content="Reproduce then bisect."),
            SkillEntry(id="review", name="Code Review", content="Read every line of the diff."),
            SkillEntry(id="docs", content="Keep the README current."),
            SkillEntry(id="perf", name="Performance", content="Measure before optimizing anything."),
            SkillEntry(id="sec", name="Security", content="Validate all input."),
            SkillEntry(id="ops", name="Operations", content="Automate the deploy."),
            SkillEntry(id="data", name="Data", content="Check the schema."),
            SkillEntry(id="ux", name="UX", content="Ask the user."),
        ],
        agents=[
            AgentProfile(name="Builder", class_name="developer", directives="Ship small commits.",
                         default_equipped=["review"]),
            AgentProfile(name="Scout", class_name="researcher"),
        ],
    )


@pytest.fixture
def settings(tmp_path) -> Config:
    """Settings with fast timings and state under tmp_path."""
    return Config(
        paths={"home": str(tmp_path / "forge-home")},
        agent={"kill_timeout_s": 0.3},
        pty={"settle_delay_s": 0.05, "jiggle_interval_s": 0.02, "read_poll_s": 0.02},
    )


def _git(cwd, *args):
    subprocess.run(["git", "-C", str(cwd), *args], check=True, capture_output=True, text=True)


@pytest.fixture
def git_repo(tmp_path):
    """A git repository with one commit on main."""
    if shutil.which("git") is None:
        pytest.skip("git not installed")
    repo = tmp_path / "project"
    repo.mkdir()
    _git(repo, "init", "-b", "main")
    _git(repo, "config", "user.email", "forge@example.com")
    _git(repo, "config", "user.name", "Forge Tests")
    _git(repo, "config", "commit.gpgsign", "false")
    (repo / "README.md").write_text("hello\n", encoding="utf-8")
    _git(repo, "add", "README.md")
    _git(repo, "commit", "-m", "initial")
    return repo


@pytest.fixture(autouse=True)
def _restore_log_sink():
    """CLI tests re-point loguru at captured streams; put stderr back."""
    yield
    logger.remove()
    logger.add(sys.stderr, level="INFO")
