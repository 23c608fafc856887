"""Offline-first multi-device sync for family behavior tracking."""

__version__ = "0.1.0"
