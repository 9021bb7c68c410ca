"""Catalog sync engine for the national open data portal."""

__version__ = "0.1.0"
