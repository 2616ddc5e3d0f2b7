"""Folio: research assistant companion for a local reference library."""

__version__ = "0.1.0"
