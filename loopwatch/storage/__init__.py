"""
loopwatch storage - message, loop and alert persistence.

    from loopwatch.storage import InMemoryLoopStore, SQLLoopStore

    store = SQLLoopStore.from_url("sqlite:///./loopwatch.db")
"""

from .base import LoopStore
from .database import Database, SQLLoopStore
from .memory import InMemoryLoopStore


def create_store(database_url: str = None) -> LoopStore:
    """In-memory store when no URL is given, SQL store otherwise."""
    if not database_url:
        return InMemoryLoopStore()
    return SQLLoopStore.from_url(database_url)


__all__ = [
    "LoopStore",
    "InMemoryLoopStore",
    "SQLLoopStore",
    "Database",
    "create_store",
]
