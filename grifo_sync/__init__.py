"""Grifo Sync - offline inspection sync engine for the Grifo field app."""

__version__ = "1.0.0"
