"""Jellyfish: a Telegram front end for a coding agent."""

__version__ = "0.1.0"
