"""Bulk USPTO TSDR trademark harvester."""

__version__ = "0.1.0"
