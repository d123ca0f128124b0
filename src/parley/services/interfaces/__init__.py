"""Service interfaces for Parley."""

from .chat_backend import IChatBackend, IPersistentChannel

__all__ = ["IChatBackend", "IPersistentChannel"]
