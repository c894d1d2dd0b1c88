"""Autonomous coding loop for external AI agents."""

__version__ = "0.4.0"
