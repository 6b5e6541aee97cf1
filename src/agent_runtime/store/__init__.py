"""
Session persistence: the store interface plus memory and SQL backends.
"""

from .base import RuntimeRecord, SessionRecord, SessionStore, workspace_key
from .memory import MemorySessionStore
from .sql import SqlSessionStore

__all__ = [
    "RuntimeRecord",
    "SessionRecord",
    "SessionStore",
    "workspace_key",
    "MemorySessionStore",
    "SqlSessionStore",
]
