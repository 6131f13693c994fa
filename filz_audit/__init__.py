"""Filz audit chain service."""

__version__ = "1.0.0"
