"""Store interface for messages, loops and alerts.

The tracker, dispatcher and reporter only talk to a :class:`LoopStore`, so
the engine is independent of the persistence technology behind it.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable, Optional

from ..models import Alert, AlertType, Loop, LoopStage, Message, MessageStatus


class LoopStore(ABC):
    """Append-only message log plus loop and alert state.

    Implementations must make :meth:`compare_and_set_loop` and
    :meth:`add_alert_if_absent` atomic. Lookups of unknown ids return
    ``None`` rather than raising.
    """

    # ==================== Messages ====================

    @abstractmethod
    def record_if_absent(self, message: Message) -> bool:
        """Persist ``message`` unless its id is already stored.

        Returns whether this call inserted it. An existing copy is never
        overwritten.
        """

    def record(self, message: Message) -> str:
        """Persist a new message and return its id."""
        self.record_if_absent(message)
        return message.id

    @abstractmethod
    def get(self, message_id: str) -> Optional[Message]:
        """Look up a message by id."""

    @abstractmethod
    def list_by_participants(
        self, agent_a: str, agent_b: str, limit: int = 50
    ) -> list[Message]:
        """Messages exchanged between two agents in either direction, newest first."""

    @abstractmethod
    def list_messages(
        self,
        to_agent: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[Message]:
        """Messages newest first, optionally filtered by recipient and send time."""

    @abstractmethod
    def advance_message_status(
        self, message_id: str, status: MessageStatus, at: datetime
    ) -> Optional[Message]:
        """Move a message forward to ``status``.

        Re-applying the current or an earlier status is a no-op. Returns the
        message after the call, or ``None`` if the id is unknown.
        """

    # ==================== Loops ====================

    @abstractmethod
    def add_loop(self, loop: Loop) -> Loop:
        """Persist a newly opened loop."""

    @abstractmethod
    def get_loop(self, loop_id: str) -> Optional[Loop]:
        """Look up a loop by id."""

    @abstractmethod
    def list_loops(
        self,
        stages: Optional[Iterable[LoopStage]] = None,
        to_agent: Optional[str] = None,
        started_since: Optional[datetime] = None,
    ) -> list[Loop]:
        """Loops ordered oldest first by ``started_at``."""

    def open_loops(self) -> list[Loop]:
        """All non-terminal loops, oldest first."""
        return self.list_loops(
            stages=[s for s in LoopStage if not s.is_terminal],
        )

    def open_loops_between(self, from_agent: str, to_agent: str) -> list[Loop]:
        """Non-terminal loops opened by ``from_agent`` toward ``to_agent``, oldest first."""
        return [
            loop
            for loop in self.open_loops()
            if loop.from_agent == from_agent and loop.to_agent == to_agent
        ]

    def find_loop_by_origin(self, message_id: str) -> Optional[Loop]:
        for loop in self.list_loops():
            if loop.origin_message_id == message_id:
                return loop
        return None

    def find_loop_by_reply(self, message_id: str) -> Optional[Loop]:
        """The loop that ``message_id`` answered, if any."""
        for loop in self.list_loops():
            if loop.reply_message_id == message_id:
                return loop
        return None

    @abstractmethod
    def compare_and_set_loop(
        self, loop_id: str, expected_stage: LoopStage, changes: dict[str, Any]
    ) -> Optional[Loop]:
        """Apply ``changes`` only if the loop is still in ``expected_stage``.

        Returns the updated loop, or ``None`` when the loop is unknown or
        its stage has moved on.
        """

    # ==================== Alerts ====================

    @abstractmethod
    def add_alert_if_absent(self, alert: Alert) -> tuple[Alert, bool]:
        """Insert ``alert`` unless one exists for the same loop and type.

        Returns the stored alert and whether it was created by this call.
        """

    @abstractmethod
    def list_alerts(
        self, resolved: Optional[bool] = None, loop_id: Optional[str] = None
    ) -> list[Alert]:
        """Alerts in creation order."""

    @abstractmethod
    def resolve_alerts(
        self,
        loop_id: str,
        at: datetime,
        alert_types: Optional[Iterable[AlertType]] = None,
    ) -> list[Alert]:
        """Mark open alerts of a loop resolved; returns the alerts changed."""
