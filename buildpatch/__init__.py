"""Resumable, integrity-verified build installation and patching engine."""

__version__ = "0.4.0"
