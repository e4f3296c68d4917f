"""Context-window usage monitoring."""

from agent_forge.usage.context_monitor import CONTEXT_RE, ContextUsageMonitor, parse_context
from agent_forge.usage.models import ContextUsage

__all__ = ["CONTEXT_RE", "ContextUsage", "ContextUsageMonitor", "parse_context"]
