"""
Shared fixtures for loopwatch tests.
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

from loopwatch.models import Message, MessagePriority
from loopwatch.storage import Database, InMemoryLoopStore, SQLLoopStore

T0 = datetime(2026, 2, 6, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock for deterministic SLA timing."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def at(self, **kwargs) -> datetime:
        """Set the clock to T0 plus an offset."""
        self.now = T0 + timedelta(**kwargs)
        return self.now


def minutes(n: float) -> datetime:
    return T0 + timedelta(minutes=n)


def make_message(
    message_id: str,
    from_agent: str = "sam",
    to_agent: str = "leo",
    sent_at: datetime = T0,
    priority: MessagePriority = MessagePriority.NORMAL,
    content: str = "Please look at the deploy",
) -> Message:
    return Message(
        id=message_id,
        from_agent=from_agent,
        to_agent=to_agent,
        content=content,
        sent_at=sent_at,
        priority=priority,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(params=["memory", "sqlite"])
def store(request):
    if request.param == "memory":
        yield InMemoryLoopStore()
        return

    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    database = Database(f"sqlite:///{db_path}")
    database.create_tables()
    yield SQLLoopStore(database)

    database.engine.dispose()
    os.unlink(db_path)
