"""Infra layer utilities (storage)."""

from .storage import SQLiteManager

__all__ = ["SQLiteManager"]
