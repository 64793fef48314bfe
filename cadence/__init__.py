"""Cadence — recurring task templates and automated control verification."""

__version__ = "0.1.0"
