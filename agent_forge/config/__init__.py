"""Configuration module for agent-forge."""

from agent_forge.config.catalog import AgentProfile, ClassConfig, ForgeCatalog, SkillEntry, default_catalog
from agent_forge.config.loader import get_config_path, load_catalog, load_config, save_config
from agent_forge.config.schema import Config

__all__ = [
    "AgentProfile",
    "ClassConfig",
    "Config",
    "ForgeCatalog",
    "SkillEntry",
    "default_catalog",
    "get_config_path",
    "load_catalog",
    "load_config",
    "save_config",
]
