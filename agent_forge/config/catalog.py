"""Class, skill, and agent definitions consumed by the session engine.

The catalog is produced by an external loader (or :func:`default_catalog`)
and treated as read-only by everything downstream.
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class ClassConfig(BaseModel):
    """One agent class: role text, innate skills and tool profile."""

    description: str = ""
    innate_skills: list[str] = Field(default_factory=list)
    tool_profile: str = ""


class SkillEntry(BaseModel):
    """A named block of instructional content."""

    id: str
    name: str = ""
    description: str = ""
    content: str = ""

    @property
    def display_name(self) -> str:
        return self.name or self.id


class AgentProfile(BaseModel):
    """A reusable party member definition."""

    name: str
    class_name: str
    tint: tuple[int, int, int] = (128, 128, 128)
    directives: str = ""
    default_equipped: list[str] = Field(default_factory=list)


class ForgeCatalog(BaseModel):
    """Everything the composer and launcher need to know about classes."""

    classes: dict[str, ClassConfig] = Field(default_factory=dict)
    tool_profiles: dict[str, list[str]] = Field(default_factory=dict)
    skills: list[SkillEntry] = Field(default_factory=list)
    agents: list[AgentProfile] = Field(default_factory=list)

    def get_class(self, class_name: str) -> ClassConfig | None:
        return self.classes.get(class_name)

    def skill_map(self) -> dict[str, SkillEntry]:
        return {skill.id: skill for skill in self.skills}

    def skill_ids(self) -> list[str]:
        return [skill.id for skill in self.skills]

    def agent_map(self) -> dict[str, AgentProfile]:
        return {agent.name: agent for agent in self.agents}


def default_catalog() -> ForgeCatalog:
    """Return the stock classes, tool profiles and party members."""
    return ForgeCatalog(
        classes={
            "planner": ClassConfig(
                description="Strategic planner, breaks down complex tasks",
                innate_skills=["writing-plans", "brainstorming"],
                tool_profile="full",
            ),
            "developer": ClassConfig(
                description="Implementation specialist",
                innate_skills=["test-driven-development", "systematic-debugging"],
                tool_profile="full",
            ),
            "researcher": ClassConfig(
                description="Information gatherer",
                innate_skills=["super-research"],
                tool_profile="readonly",
            ),
            "tech writer": ClassConfig(
                description="Documentation specialist",
                innate_skills=["writing-skills"],
                tool_profile="docs_git",
            ),
            "security": ClassConfig(
                description="Security and vulnerability specialist",
                innate_skills=["verification-before-completion", "requesting-code-review"],
                tool_profile="full",
            ),
            "code reviewer": ClassConfig(
                description="Code quality and review specialist",
                innate_skills=["receiving-code-review", "sandi-metz-rules"],
                tool_profile="full",
            ),
            "qa engineer": ClassConfig(
                description="Testing and CI/CD specialist",
                innate_skills=["test-driven-development", "verification-before-completion"],
                tool_profile="full",
            ),
        },
        tool_profiles={
            "full": ["Bash", "Read", "Write", "Edit", "Glob", "Grep", "WebSearch", "WebFetch", "Task"],
            "readonly": ["Read", "Glob", "Grep", "WebSearch", "WebFetch"],
            "docs_git": ["Read", "Write", "Edit", "Glob", "Grep", "Bash"],
        },
        agents=[
            AgentProfile(name="Planner", class_name="planner", tint=(220, 185, 105)),
            AgentProfile(name="Builder", class_name="developer", tint=(110, 160, 240)),
            AgentProfile(name="Fixer", class_name="developer", tint=(190, 110, 220)),
            AgentProfile(name="Scout", class_name="researcher", tint=(105, 210, 150)),
            AgentProfile(name="Scribe", class_name="tech writer", tint=(180, 195, 210)),
            AgentProfile(name="Guard", class_name="security", tint=(210, 95, 85)),
            AgentProfile(name="Reviewer", class_name="code reviewer", tint=(80, 190, 185)),
            AgentProfile(name="Tester", class_name="qa engineer", tint=(165, 140, 100)),
        ],
    )
