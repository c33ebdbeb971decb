"""Telegram message renderers."""
