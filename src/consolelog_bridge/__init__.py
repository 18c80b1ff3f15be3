"""Package initialization for consolelog-bridge.

Re-exports the session entry point and its two collaborators so embedding
code can write ``from consolelog_bridge import ConsoleBridge``.
"""
from .bridge import ConsoleBridge
from .config import Settings, get_settings
from .connection import ConnectionManager
from .resolution import LocationResolver

__all__ = ["ConsoleBridge", "ConnectionManager", "LocationResolver", "Settings", "get_settings"]
