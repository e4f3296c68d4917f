"""Load and save agent-forge configuration files."""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

from loguru import logger

from agent_forge.config.catalog import ForgeCatalog
from agent_forge.config.schema import Config

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def get_config_path() -> Path:
    """Default location of the settings file."""
    return Path.home() / ".agent-forge" / "config.json"


def load_config(config_path: Path | None = None) -> Config:
    """Load settings from disk, falling back to defaults.

    Environment variables (``AGENT_FORGE_*``) still apply on top of defaults
    when the file is missing or unreadable.
    """
    path = config_path or get_config_path()
    if not path.exists():
        return Config()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return Config(**convert_keys(data))
    except (OSError, json.JSONDecodeError, ValueError) as exc:
        logger.warning(f"[config] Failed to load {path}: {exc}; using defaults")
        return Config()


def save_config(config: Config, config_path: Path | None = None) -> None:
    """Write settings as camelCase JSON."""
    path = config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    data = convert_to_camel(config.model_dump())
    path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")


def load_catalog(catalog_path: Path) -> ForgeCatalog:
    """Load a class/skill/agent catalog from a JSON file.

    Raises:
        OSError: the file cannot be read.
        ValueError: the content is not a valid catalog.
    """
    data = json.loads(catalog_path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"Catalog {catalog_path} must contain a JSON object")
    # Class names and skill IDs are user data; only the top-level keys and
    # the per-entry field names are camelCase.
    normalized: dict[str, Any] = {}
    for key, value in data.items():
        normalized[camel_to_snake(key)] = value
    for name, cls in list((normalized.get("classes") or {}).items()):
        if isinstance(cls, dict):
            normalized["classes"][name] = {camel_to_snake(k): v for k, v in cls.items()}
    normalized["agents"] = [
        {camel_to_snake(k): v for k, v in agent.items()}
        for agent in normalized.get("agents") or []
        if isinstance(agent, dict)
    ]
    return ForgeCatalog.model_validate(normalized)


def convert_keys(data: Any) -> Any:
    """Recursively convert camelCase dict keys to snake_case."""
    if isinstance(data, dict):
        return {camel_to_snake(k): convert_keys(v) for k, v in data.items()}
    if isinstance(data, list):
        return [convert_keys(item) for item in data]
    return data


def convert_to_camel(data: Any) -> Any:
    """Recursively convert snake_case dict keys to camelCase."""
    if isinstance(data, dict):
        return {snake_to_camel(k): convert_to_camel(v) for k, v in data.items()}
    if isinstance(data, list):
        return [convert_to_camel(item) for item in data]
    return data


def camel_to_snake(name: str) -> str:
    return _CAMEL_RE.sub("_", name).lower()


def snake_to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(word.capitalize() for word in rest)
