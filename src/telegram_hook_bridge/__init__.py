"""Telegram bridge for Claude Code permission and question hooks."""

__version__ = "0.1.0"
