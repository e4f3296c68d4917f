"""agent-forge - supervise parties of CLI coding agents behind one terminal."""

__version__ = "0.1.0"
