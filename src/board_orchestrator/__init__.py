"""Autonomous orchestration of external AI agent CLIs on a project board."""

__version__ = "0.4.0"
