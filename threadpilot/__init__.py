"""threadpilot - drive a Claude Code subprocess per chat thread."""

__version__ = "0.1.0"
