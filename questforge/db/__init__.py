"""
Database package for questforge.

This package provides SQLite-based persistence for game sessions.
"""

from .manager import DatabaseManager

__all__ = ["DatabaseManager"]
