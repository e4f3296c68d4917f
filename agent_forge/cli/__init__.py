"""Command-line interface for agent-forge."""
