"""Leaderboard backend for the AR gesture shooter Telegram Mini App."""

__version__ = "1.0.0"
