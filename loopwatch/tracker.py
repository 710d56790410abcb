"""
loopwatch Loop Tracker - the send -> reply -> action -> report state machine.

Stages only move forward:

    awaiting_reply -> awaiting_action -> awaiting_report -> completed
          \\                 \\                  \\
           +-----------------+------------------+--> broken

Every transition is committed with a compare-and-set on the loop's current
stage, so concurrent events and timeout sweeps can never apply two
transitions from the same stage. A loop is only ever broken once its stage
budget has strictly elapsed.
"""

import logging
import uuid
from typing import Callable, Iterable, Optional

from .alerts import AlertDispatcher
from .exceptions import InvalidTransitionError, NotFoundError, ValidationError
from .models import (
    STAGE_BREACHES,
    STAGE_EVENTS,
    AlertType,
    BrokenReason,
    EventKind,
    Loop,
    LoopEvent,
    LoopStage,
    Message,
    MessageStatus,
    alert_type_for,
    elapsed_ms,
    utc_now,
)
from .policy import SLAPolicy
from .storage import LoopStore
from .validation import normalize_agent

logger = logging.getLogger("loopwatch.tracker")

LoopListener = Callable[[Loop, Optional[LoopStage]], None]

DEFAULT_SYSTEM_AGENTS = ("system",)
DEFAULT_BROADCAST_TARGETS = ("all", "*", "everyone", "broadcast")

_NEXT_STAGE = {
    EventKind.REPLY: (LoopStage.AWAITING_ACTION, "replied_at"),
    EventKind.ACTION: (LoopStage.AWAITING_REPORT, "acted_at"),
    EventKind.REPORT: (LoopStage.COMPLETED, "reported_at"),
}


class LoopTracker:
    """
    Owns loop state: opens loops, advances them on follow-ups and breaks
    them when an SLA budget runs out.

    Example:
        ```python
        tracker = LoopTracker(store, SLAPolicy.default(), dispatcher)
        loop = tracker.open_loop(message)
        tracker.advance(loop.loop_id, LoopEvent("leo", EventKind.REPLY, now))
        broken = tracker.evaluate_timeouts()
        ```
    """

    def __init__(
        self,
        store: LoopStore,
        policy: SLAPolicy,
        dispatcher: Optional[AlertDispatcher] = None,
        clock: Callable = utc_now,
        system_agents: Iterable[str] = DEFAULT_SYSTEM_AGENTS,
        broadcast_targets: Iterable[str] = DEFAULT_BROADCAST_TARGETS,
    ):
        self._store = store
        self._policy = policy
        self._dispatcher = dispatcher or AlertDispatcher(store, policy, clock=clock)
        self._clock = clock
        self._system_agents = {a.lower() for a in system_agents}
        self._broadcast_targets = {t.lower() for t in broadcast_targets}
        self._listeners: list[LoopListener] = []

    @property
    def store(self) -> LoopStore:
        return self._store

    @property
    def policy(self) -> SLAPolicy:
        return self._policy

    @property
    def dispatcher(self) -> AlertDispatcher:
        return self._dispatcher

    def add_listener(self, listener: LoopListener) -> None:
        """Call ``listener(loop, previous_stage)`` after every committed change."""
        self._listeners.append(listener)

    def remove_listener(self, listener: LoopListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # ==================== Opening ====================

    def qualifies(self, message: Message) -> bool:
        """A loop opener is directed at one agent and not sent by a system agent."""
        if not message.from_agent or not message.to_agent:
            return False
        if message.from_agent in self._system_agents:
            return False
        if message.to_agent in self._broadcast_targets:
            return False
        return message.from_agent != message.to_agent

    def open_loop(self, message: Message) -> Loop:
        """
        Open a loop for a qualifying message.

        Opening the same message twice returns the existing loop.

        Raises:
            ValidationError: The message cannot open a loop.
        """
        if not self.qualifies(message):
            raise ValidationError(
                f"Message {message.id} from {message.from_agent!r} to "
                f"{message.to_agent!r} cannot open a loop",
                field="to",
                value=message.to_agent,
            )

        existing = self._store.find_loop_by_origin(message.id)
        if existing is not None:
            return existing

        self._store.record(message)
        loop = Loop(
            loop_id=str(uuid.uuid4()),
            from_agent=message.from_agent,
            to_agent=message.to_agent,
            origin_message_id=message.id,
            started_at=message.sent_at,
            priority=message.priority,
        )
        self._store.add_loop(loop)
        logger.info(
            f"Opened loop {loop.loop_id}: {loop.from_agent} -> {loop.to_agent} "
            f"(priority={loop.priority.value})"
        )
        self._emit(loop, None)
        return loop

    # ==================== Lookup ====================

    def get_loop(self, loop_id: str, now=None) -> Optional[Loop]:
        """
        Current state of a loop, breaking it first if its budget has run out.

        Returns ``None`` for unknown ids.
        """
        loop = self._store.get_loop(loop_id)
        if loop is None or loop.is_terminal:
            return loop
        now = now or self._clock()
        if self.is_overdue(loop, now):
            self._expire(loop, now)
            return self._store.get_loop(loop_id)
        return loop

    def deadline_ms(self, loop: Loop) -> Optional[int]:
        """Budget of the loop's current stage, or ``None`` when terminal."""
        if loop.is_terminal:
            return None
        return self._policy.budgets_for(loop.priority).for_stage(loop.current_stage)

    def is_overdue(self, loop: Loop, at) -> bool:
        budget = self.deadline_ms(loop)
        if budget is None:
            return False
        return elapsed_ms(loop.stage_entered_at, at) > budget

    # ==================== Advancing ====================

    def advance(self, loop_id: str, event: LoopEvent) -> Loop:
        """
        Apply a reply, action or report to a loop.

        Returns the loop after the event. If another writer moved the loop
        first, the event is dropped silently and the current loop returned.

        Raises:
            NotFoundError: Unknown loop id.
            InvalidTransitionError: The loop is terminal, the event is not
                the expected next stage, the event agent is not the
                accountable agent, or the stage budget already ran out.
        """
        loop = self._store.get_loop(loop_id)
        if loop is None:
            raise NotFoundError(f"Loop not found: {loop_id}", resource_id=loop_id)
        return self._apply(loop, event)

    def correlate(self, event: LoopEvent) -> Optional[Loop]:
        """
        Find the loop an event refers to.

        Uses ``loop_id``, then ``correlation_key`` (origin message id), then
        the oldest open loop the event's agent owes at the matching stage.
        Overdue candidates met on the way are broken and skipped.
        """
        if event.loop_id:
            return self._store.get_loop(event.loop_id)
        if event.correlation_key:
            return self._store.find_loop_by_origin(
                event.correlation_key
            ) or self._store.get_loop(event.correlation_key)

        stage = _stage_awaiting(event.kind)
        for candidate in self._store.list_loops(stages=[stage], to_agent=event.agent):
            if self.is_overdue(candidate, event.timestamp):
                self._expire(candidate, event.timestamp)
                continue
            return candidate
        return None

    def apply_event(self, event: LoopEvent) -> Loop:
        """
        Correlate an event and advance the loop it refers to.

        Raises:
            NotFoundError: No loop matches the event.
            InvalidTransitionError: See :meth:`advance`.
        """
        loop = self.correlate(event)
        if loop is None:
            raise NotFoundError(
                f"No open loop matches {event.kind.value} from {event.agent}",
                resource_id=event.loop_id or event.correlation_key,
            )
        return self._apply(loop, event)

    def apply_reply(self, message: Message) -> Optional[Loop]:
        """
        Treat ``message`` as a reply to the oldest open loop of the reverse pair.

        Returns the advanced loop, or ``None`` when the message answers no
        loop at all.

        Raises:
            InvalidTransitionError: The message answers a loop whose reply
                budget already ran out.
        """
        candidates = [
            loop
            for loop in self._store.open_loops_between(message.to_agent, message.from_agent)
            if loop.current_stage == LoopStage.AWAITING_REPLY
        ]

        late: Optional[Loop] = None
        for candidate in candidates:
            if self.is_overdue(candidate, message.sent_at):
                self._expire(candidate, message.sent_at)
                late = late or candidate
                continue
            event = LoopEvent(
                agent=message.from_agent,
                kind=EventKind.REPLY,
                timestamp=message.sent_at,
                loop_id=candidate.loop_id,
                message_id=message.id,
            )
            return self._apply(candidate, event)

        if late is None:
            late = self._unanswered_broken_loop(message)
        if late is not None:
            self._store.advance_message_status(
                late.origin_message_id, MessageStatus.REPLIED, message.sent_at
            )
            raise InvalidTransitionError(
                f"Reply {message.id} from {message.from_agent} arrived after loop "
                f"{late.loop_id} broke",
                loop_id=late.loop_id,
                stage=LoopStage.BROKEN.value,
                event_kind=EventKind.REPLY.value,
            )
        return None

    # ==================== Breaking ====================

    def evaluate_timeouts(self, now=None) -> list[Loop]:
        """
        Break every open loop whose current stage budget has elapsed.

        Returns only the loops broken by this call, so a second call on the
        same state returns an empty list.
        """
        now = now or self._clock()
        broken = []
        for loop in self._store.open_loops():
            if not self.is_overdue(loop, now):
                continue
            updated = self._expire(loop, now)
            if updated is not None:
                broken.append(updated)
        if broken:
            logger.info(f"Timeout sweep broke {len(broken)} loop(s)")
        return broken

    def break_loop(self, loop_id: str, note: str = "", at=None) -> Loop:
        """
        Mark a loop broken by hand and raise a ``loop_broken`` alert.

        Raises:
            NotFoundError: Unknown loop id.
            InvalidTransitionError: The loop is already terminal.
        """
        at = at or self._clock()
        severity = self._policy.severity_for(AlertType.LOOP_BROKEN)
        while True:
            loop = self._store.get_loop(loop_id)
            if loop is None:
                raise NotFoundError(f"Loop not found: {loop_id}", resource_id=loop_id)
            if loop.is_terminal:
                raise InvalidTransitionError(
                    f"Loop {loop_id} is already {loop.current_stage.value}",
                    loop_id=loop_id,
                    stage=loop.current_stage.value,
                )
            updated = self._store.compare_and_set_loop(
                loop_id,
                loop.current_stage,
                {
                    "current_stage": LoopStage.BROKEN,
                    "broken_at": at,
                    "broken_reason": BrokenReason.MANUAL,
                    "broken_note": note or None,
                    "escalated_to": self._policy.escalation_target_for(severity)
                    or loop.escalated_to,
                },
            )
            if updated is not None:
                break

        logger.info(f"Loop {loop_id} marked broken by hand: {note}")
        self._dispatcher.on_breach(updated, BrokenReason.MANUAL)
        self._emit(updated, loop.current_stage)
        return updated

    def escalate(self, loop_id: str, target: Optional[str] = None, note: str = "") -> Loop:
        """
        Hand an open loop to ``target`` and raise an ``escalated`` alert.

        The loop keeps its stage and budget. Without ``target`` the policy's
        target for the ``escalated`` alert severity is used.

        Raises:
            NotFoundError: Unknown loop id.
            InvalidTransitionError: The loop is already terminal.
            ValidationError: No target given and none configured.
        """
        if target is None or not target.strip():
            severity = self._policy.severity_for(AlertType.ESCALATED)
            target = self._policy.escalation_target_for(severity)
        if not target:
            raise ValidationError("No escalation target given or configured", field="target")
        target = normalize_agent(target)

        while True:
            loop = self._store.get_loop(loop_id)
            if loop is None:
                raise NotFoundError(f"Loop not found: {loop_id}", resource_id=loop_id)
            if loop.is_terminal:
                raise InvalidTransitionError(
                    f"Loop {loop_id} is already {loop.current_stage.value}",
                    loop_id=loop_id,
                    stage=loop.current_stage.value,
                )
            updated = self._store.compare_and_set_loop(
                loop_id, loop.current_stage, {"escalated_to": target}
            )
            if updated is not None:
                break

        logger.warning(
            f"Loop {loop_id} escalated to {target} "
            f"({loop.to_agent} owes {loop.from_agent}, {loop.current_stage.value}): {note}"
        )
        self._dispatcher.on_escalate(updated, target, note)
        self._emit(updated, loop.current_stage)
        return updated

    # ==================== Internals ====================

    def _apply(self, loop: Loop, event: LoopEvent) -> Loop:
        if loop.is_terminal:
            raise InvalidTransitionError(
                f"Loop {loop.loop_id} is already {loop.current_stage.value}",
                loop_id=loop.loop_id,
                stage=loop.current_stage.value,
                event_kind=event.kind.value,
            )

        expected = STAGE_EVENTS[loop.current_stage]
        if event.kind != expected:
            raise InvalidTransitionError(
                f"Loop {loop.loop_id} is {loop.current_stage.value}; "
                f"expected {expected.value}, got {event.kind.value}",
                loop_id=loop.loop_id,
                stage=loop.current_stage.value,
                event_kind=event.kind.value,
            )

        if event.agent != loop.to_agent:
            raise InvalidTransitionError(
                f"Only {loop.to_agent} can {event.kind.value} on loop {loop.loop_id}, "
                f"not {event.agent}",
                loop_id=loop.loop_id,
                stage=loop.current_stage.value,
                event_kind=event.kind.value,
            )

        if event.timestamp < loop.stage_entered_at:
            raise InvalidTransitionError(
                f"{event.kind.value} at {event.timestamp.isoformat()} precedes "
                f"{loop.current_stage.value} on loop {loop.loop_id}",
                loop_id=loop.loop_id,
                stage=loop.current_stage.value,
                event_kind=event.kind.value,
            )

        if self.is_overdue(loop, event.timestamp):
            self._expire(loop, event.timestamp)
            raise InvalidTransitionError(
                f"{event.kind.value} on loop {loop.loop_id} arrived after the "
                f"{loop.current_stage.value} budget ran out",
                loop_id=loop.loop_id,
                stage=LoopStage.BROKEN.value,
                event_kind=event.kind.value,
            )

        next_stage, stamp_field = _NEXT_STAGE[event.kind]
        changes = {"current_stage": next_stage, stamp_field: event.timestamp}
        if event.kind == EventKind.REPLY and event.message_id:
            changes["reply_message_id"] = event.message_id
        elif event.kind == EventKind.ACTION and event.reference:
            changes["action_ref"] = event.reference
        elif event.kind == EventKind.REPORT and event.detail:
            changes["final_report"] = event.detail

        updated = self._store.compare_and_set_loop(loop.loop_id, loop.current_stage, changes)
        if updated is None:
            logger.debug(
                f"Stale {event.kind.value} on loop {loop.loop_id} dropped; stage moved on"
            )
            current = self._store.get_loop(loop.loop_id)
            return current if current is not None else loop

        if event.kind == EventKind.REPLY:
            self._store.advance_message_status(
                loop.origin_message_id, MessageStatus.REPLIED, event.timestamp
            )

        self._dispatcher.on_resolve(loop.loop_id)
        if next_stage == LoopStage.COMPLETED:
            logger.info(
                f"Loop {loop.loop_id} completed in "
                f"{updated.completion_time_ms / 60000:.1f} min"
            )
        self._emit(updated, loop.current_stage)
        return updated

    def _expire(self, loop: Loop, at) -> Optional[Loop]:
        """Break an overdue loop. Returns ``None`` if another writer got there first."""
        reason = STAGE_BREACHES[loop.current_stage]
        severity = self._policy.severity_for(alert_type_for(reason))
        elapsed = elapsed_ms(loop.stage_entered_at, at)

        escalated_to = loop.escalated_to
        if elapsed > self._policy.escalation_threshold_for(severity):
            escalated_to = self._policy.escalation_target_for(severity) or escalated_to

        updated = self._store.compare_and_set_loop(
            loop.loop_id,
            loop.current_stage,
            {
                "current_stage": LoopStage.BROKEN,
                "broken_at": at,
                "broken_reason": reason,
                "escalated_to": escalated_to,
            },
        )
        if updated is None:
            return None

        logger.warning(
            f"Loop {loop.loop_id} broken: {reason.value} "
            f"({loop.to_agent} owes {loop.from_agent}, {elapsed / 60000:.1f} min in "
            f"{loop.current_stage.value})"
        )
        self._dispatcher.on_breach(updated, reason)
        self._emit(updated, loop.current_stage)
        return updated

    def _unanswered_broken_loop(self, message: Message) -> Optional[Loop]:
        """Oldest reply-overdue loop of the reverse pair whose message is still unanswered."""
        for loop in self._store.list_loops(stages=[LoopStage.BROKEN], to_agent=message.from_agent):
            if loop.from_agent != message.to_agent:
                continue
            if loop.broken_reason != BrokenReason.REPLY_OVERDUE:
                continue
            origin = self._store.get(loop.origin_message_id)
            if origin is not None and origin.status != MessageStatus.REPLIED:
                return loop
        return None

    def _emit(self, loop: Loop, previous: Optional[LoopStage]) -> None:
        for listener in list(self._listeners):
            try:
                listener(loop, previous)
            except Exception as e:
                logger.exception(f"Loop listener error: {e}")


def _stage_awaiting(kind: EventKind) -> LoopStage:
    for stage, expected in STAGE_EVENTS.items():
        if expected == kind:
            return stage
    raise ValueError(f"No stage awaits {kind.value}")
