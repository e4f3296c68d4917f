"""Skill loadouts and system-prompt composition.

Directory of concepts::

    class   -> role description, innate skills, tool profile
    skills  -> named content blocks (innate ones are always on)
    loadout -> up to MAX_EQUIP_SLOTS extra skills chosen per agent
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field

from agent_forge.config.catalog import ClassConfig, ForgeCatalog

MAX_EQUIP_SLOTS = 6
TOKENS_PER_WORD = 1.3


@dataclass(frozen=True)
class SkillSlot:
    """A skill occupying part of an agent's prompt budget."""

    skill_id: str
    is_innate: bool
    tokens: int


@dataclass(frozen=True)
class ComposedPrompt:
    """Result of composing class, directives and skills into one prompt."""

    prompt: str = ""
    slots: tuple[SkillSlot, ...] = field(default_factory=tuple)
    total_tokens: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.prompt


def estimate_tokens(text: str) -> int:
    """Rough token estimate: words * 1.3, rounded half up."""
    words = len(text.split())
    return math.floor(words * TOKENS_PER_WORD + 0.5)


def compose_prompt(
    catalog: ForgeCatalog,
    class_name: str,
    equipped: list[str],
    passives: list[str] | None = None,
    directives: str = "",
) -> ComposedPrompt:
    """Build the system prompt for one agent.

    Order is fixed: role header, agent directives, innate skills in class
    order, then equipped skills that are neither innate nor repeated.
    Passive skills are carried in the loadout but do not add prompt text.

    Returns an empty prompt when the class is unknown.
    """
    del passives
    class_cfg = catalog.get_class(class_name)
    if class_cfg is None:
        return ComposedPrompt()

    skills = catalog.skill_map()
    slots: list[SkillSlot] = []
    parts = [f"## Role: {_display_class(class_name)}\n{class_cfg.description}"]

    if directives:
        parts.append(f"## Agent Profile\n{directives}")

    for skill_id in class_cfg.innate_skills:
        skill = skills.get(skill_id)
        if skill is None:
            continue
        slots.append(SkillSlot(skill_id=skill_id, is_innate=True, tokens=estimate_tokens(skill.content)))
        parts.append(f"## Skill: {skill.display_name} (Innate)\n{skill.content}")

    seen: set[str] = set()
    for skill_id in equipped:
        if skill_id in seen or _is_innate(class_cfg, skill_id):
            continue
        seen.add(skill_id)
        skill = skills.get(skill_id)
        if skill is None:
            continue
        slots.append(SkillSlot(skill_id=skill_id, is_innate=False, tokens=estimate_tokens(skill.content)))
        parts.append(f"## Skill: {skill.display_name}\n{skill.content}")

    return ComposedPrompt(
        prompt="\n\n".join(parts),
        slots=tuple(slots),
        total_tokens=sum(slot.tokens for slot in slots),
    )


def build_allowed_tools(catalog: ForgeCatalog, class_name: str) -> list[str]:
    """Return the tool allow-list for a class (empty means unrestricted)."""
    class_cfg = catalog.get_class(class_name)
    if class_cfg is None or not class_cfg.tool_profile:
        return []
    return list(catalog.tool_profiles.get(class_cfg.tool_profile, []))


def can_equip(catalog: ForgeCatalog, class_name: str, equipped: list[str], skill_id: str) -> bool:
    """Check whether ``skill_id`` may be added to the loadout."""
    class_cfg = catalog.get_class(class_name)
    if class_cfg is None:
        return False
    if _is_innate(class_cfg, skill_id):
        return False
    if skill_id in equipped:
        return False
    return len(equipped) < MAX_EQUIP_SLOTS


def toggle_equip(catalog: ForgeCatalog, class_name: str, equipped: list[str], skill_id: str) -> list[str]:
    """Unequip ``skill_id`` if present, otherwise equip it when allowed.

    Always returns a new list; the input loadout is never mutated.
    """
    if skill_id in equipped:
        return [sid for sid in equipped if sid != skill_id]
    if can_equip(catalog, class_name, equipped, skill_id):
        return [*equipped, skill_id]
    return list(equipped)


def available_skills(catalog: ForgeCatalog, class_name: str, equipped: list[str]) -> list[str]:
    """Skills that are neither innate to the class nor already equipped."""
    class_cfg = catalog.get_class(class_name)
    result: list[str] = []
    for skill_id in catalog.skill_ids():
        if class_cfg is not None and _is_innate(class_cfg, skill_id):
            continue
        if skill_id in equipped:
            continue
        result.append(skill_id)
    return result


def _is_innate(class_cfg: ClassConfig, skill_id: str) -> bool:
    return skill_id in class_cfg.innate_skills


def _display_class(class_name: str) -> str:
    if not class_name:
        return class_name
    return class_name[:1].upper() + class_name[1:]
