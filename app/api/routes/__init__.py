"""Route modules for the API."""

from . import autosync

__all__ = ["autosync"]
