"""
Parley - dual-mode chat transport client.

This package keeps a chat session connected to its backend over a
persistent WebSocket channel, falls back to adaptive HTTP polling when the
channel keeps failing, and returns to the channel once it is reachable
again, exposing one ordered message stream to the UI either way.
"""

__version__ = "1.0.0"
__author__ = "Parley Development Team"
__email__ = "dev@parley.example.com"

# Core components
from .models import *
from .services import *

__all__ = [
    "models",
    "services",
    "lib",
    "cli"
]
