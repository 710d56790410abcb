"""
loopwatch Engine - wires store, SLA policy, tracker, alerts and reporting.

Example:
    ```python
    from loopwatch import EngineConfig, LoopEngine

    engine = LoopEngine(EngineConfig.from_env())
    engine.ingest_message({"from": "sam", "to": "leo", "content": "Ship it", "sentAt": now})
    engine.ingest_event({"agent": "leo", "kind": "action", "timestamp": later})

    summary = engine.get_daily_summary()
    alerts = engine.get_unresolved(limit=10)
    ```
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Optional

from .alerts import AlertDispatcher, Notifier
from .config import EngineConfig
from .exceptions import InvalidTransitionError, NotFoundError
from .models import (
    AgentBreakdown,
    AgentStageTimes,
    Alert,
    DailySummary,
    InboxOverview,
    Loop,
    LoopEvent,
    Message,
    MessageStatus,
    utc_now,
)
from .policy import SLAPolicy
from .reporting import LoopReporter
from .storage import LoopStore, create_store
from .sweeper import LoopSweeper
from .tracker import LoopListener, LoopTracker
from .validation import (
    validate_event_payload,
    validate_message_payload,
    validate_positive_int,
)

logger = logging.getLogger("loopwatch.engine")


@dataclass
class IngestResult:
    """Outcome of ingesting one message."""

    message: Message
    loop: Optional[Loop] = None
    opened: bool = False
    rejected: bool = False
    duplicate: bool = False


class LoopEngine:
    """Entry point used by surrounding services."""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        store: Optional[LoopStore] = None,
        policy: Optional[SLAPolicy] = None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config or EngineConfig()
        self.store = store or create_store(self.config.database_url)
        self.policy = policy or self.config.load_policy()
        self._clock = clock

        self.dispatcher = AlertDispatcher(self.store, self.policy, notifier=notifier, clock=clock)
        self.tracker = LoopTracker(
            self.store,
            self.policy,
            dispatcher=self.dispatcher,
            clock=clock,
            system_agents=self.config.system_agents,
        )
        self.reporter = LoopReporter(
            self.store, reference_timezone=self.config.reference_timezone, clock=clock
        )
        self._sweeper: Optional[LoopSweeper] = None

    # ==================== Ingestion ====================

    def ingest_message(self, payload: dict[str, Any]) -> IngestResult:
        """
        Record a message and let it answer or open a loop.

        A message from B to A first counts as a reply to the oldest open
        A -> B loop. Otherwise, if it qualifies, it opens a new loop. A late
        reply is logged and dropped; it never opens a loop of its own.

        Re-sending a message id that was already ingested changes nothing
        and returns the loop that message opened or answered.

        Raises:
            ValidationError: Malformed payload.
        """
        fields = validate_message_payload(payload)
        message = Message(id=payload.get("id") or str(uuid.uuid4()), **fields)
        if not self.store.record_if_absent(message):
            logger.debug(f"Message {message.id} already ingested")
            loop = self.store.find_loop_by_origin(message.id) or self.store.find_loop_by_reply(
                message.id
            )
            return IngestResult(
                message=self.store.get(message.id) or message, loop=loop, duplicate=True
            )

        try:
            loop = self.tracker.apply_reply(message)
        except InvalidTransitionError as e:
            logger.warning(f"Dropped reply {message.id}: {e.message}")
            return IngestResult(message=message, rejected=True)

        if loop is not None:
            return IngestResult(message=message, loop=loop)

        if self.tracker.qualifies(message):
            return IngestResult(message=message, loop=self.tracker.open_loop(message), opened=True)
        return IngestResult(message=message)

    def ingest_event(self, payload: dict[str, Any]) -> Optional[Loop]:
        """
        Apply an action or report event.

        Returns the advanced loop, or ``None`` when the event matched no
        loop or was rejected; both cases are logged.

        Raises:
            ValidationError: Malformed payload.
        """
        event = LoopEvent(**validate_event_payload(payload))
        try:
            return self.tracker.apply_event(event)
        except NotFoundError as e:
            logger.warning(f"Dropped {event.kind.value} from {event.agent}: {e.message}")
        except InvalidTransitionError as e:
            logger.warning(f"Rejected {event.kind.value} from {event.agent}: {e.message}")
        return None

    def mark_delivered(self, message_id: str, at: Optional[datetime] = None) -> Optional[Message]:
        return self.store.advance_message_status(
            message_id, MessageStatus.DELIVERED, at or self._clock()
        )

    def mark_seen(self, message_id: str, at: Optional[datetime] = None) -> Optional[Message]:
        return self.store.advance_message_status(
            message_id, MessageStatus.SEEN, at or self._clock()
        )

    # ==================== Loops ====================

    def open_loop(self, message: Message) -> Loop:
        return self.tracker.open_loop(message)

    def advance(self, loop_id: str, event: LoopEvent) -> Loop:
        return self.tracker.advance(loop_id, event)

    def evaluate_timeouts(self, now: Optional[datetime] = None) -> list[Loop]:
        return self.tracker.evaluate_timeouts(now)

    def break_loop(self, loop_id: str, note: str = "", at: Optional[datetime] = None) -> Loop:
        return self.tracker.break_loop(loop_id, note, at)

    def escalate(self, loop_id: str, target: Optional[str] = None, note: str = "") -> Loop:
        return self.tracker.escalate(loop_id, target, note)

    def get_loop(self, loop_id: str) -> Optional[Loop]:
        return self.tracker.get_loop(loop_id)

    def get_message(self, message_id: str) -> Optional[Message]:
        return self.store.get(message_id)

    def conversation(self, agent_a: str, agent_b: str, limit: int = 50) -> list[Message]:
        validate_positive_int(limit, "limit")
        return self.store.list_by_participants(agent_a.lower(), agent_b.lower(), limit)

    def add_listener(self, listener: LoopListener) -> None:
        self.tracker.add_listener(listener)

    # ==================== Alerts & reporting ====================

    def resolve_alerts(self, loop_id: str) -> list[Alert]:
        """Acknowledge every open alert of a loop."""
        return self.dispatcher.on_resolve(loop_id)

    def get_daily_summary(self, day: Optional[date] = None) -> DailySummary:
        return self.reporter.get_daily_summary(day)

    def get_agent_breakdown(self, since_days: int = 7) -> list[AgentBreakdown]:
        validate_positive_int(since_days, "since_days")
        return self.reporter.get_agent_breakdown(since_days)

    def get_unresolved(self, limit: int = 10) -> list[Alert]:
        return self.reporter.get_unresolved(limit)

    def get_stage_times(self, since: Optional[datetime] = None) -> list[AgentStageTimes]:
        return self.reporter.get_stage_times(since)

    def get_inbox_overview(self, agent_name: str) -> InboxOverview:
        return self.reporter.get_inbox_overview(agent_name.lower())

    # ==================== Sweeper ====================

    def start(self) -> LoopSweeper:
        """Start the periodic timeout sweep."""
        if self._sweeper is None:
            self._sweeper = LoopSweeper(
                self.evaluate_timeouts, interval=self.config.sweep_interval_seconds
            )
        self._sweeper.start()
        return self._sweeper

    def stop(self) -> None:
        """Stop the sweeper, then deliver queued alerts and stop the notifier worker."""
        if self._sweeper is not None:
            self._sweeper.stop()
        self.dispatcher.close()

    def __enter__(self) -> "LoopEngine":
        self.start()
        return self

    def __exit__(self, *args: Any) -> None:
        self.stop()
