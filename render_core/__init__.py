"""Rendering core for a non-linear video editor."""

__version__ = "0.1.0"
