"""Entry point for ``python -m agent_forge``."""

from agent_forge.cli.commands import app

if __name__ == "__main__":
    app()
