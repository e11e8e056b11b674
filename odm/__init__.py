"""Segmented, resumable HTTP download manager with a shared speed limit and SQLite job state."""

__version__ = "0.1.0"

__all__ = ["__version__"]