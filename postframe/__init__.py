"""Signed, cached on-the-fly image transforms for site uploads."""

__version__ = "0.1.0"
