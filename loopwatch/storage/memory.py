"""In-process store backed by dictionaries.

Every method takes a single lock for the duration of one dict operation,
and returns copies so callers never hold references into store state.
"""

import threading
from dataclasses import replace
from datetime import datetime
from typing import Any, Iterable, Optional

from ..models import Alert, AlertType, Loop, LoopStage, Message, MessageStatus
from .base import LoopStore


class InMemoryLoopStore(LoopStore):
    """Thread-safe dictionary store, the default for tests and single processes."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._messages: dict[str, Message] = {}
        self._loops: dict[str, Loop] = {}
        self._alerts: dict[str, Alert] = {}

    # ==================== Messages ====================

    def record_if_absent(self, message: Message) -> bool:
        with self._lock:
            if message.id in self._messages:
                return False
            self._messages[message.id] = replace(message)
        return True

    def get(self, message_id: str) -> Optional[Message]:
        with self._lock:
            message = self._messages.get(message_id)
            return replace(message) if message else None

    def list_by_participants(
        self, agent_a: str, agent_b: str, limit: int = 50
    ) -> list[Message]:
        pair = {(agent_a, agent_b), (agent_b, agent_a)}
        with self._lock:
            matches = [
                replace(m)
                for m in self._messages.values()
                if (m.from_agent, m.to_agent) in pair
            ]
        matches.sort(key=lambda m: m.sent_at, reverse=True)
        return matches[:limit]

    def list_messages(
        self,
        to_agent: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[Message]:
        with self._lock:
            matches = [
                replace(m)
                for m in self._messages.values()
                if (to_agent is None or m.to_agent == to_agent)
                and (since is None or m.sent_at >= since)
            ]
        matches.sort(key=lambda m: m.sent_at, reverse=True)
        return matches[:limit] if limit is not None else matches

    def advance_message_status(
        self, message_id: str, status: MessageStatus, at: datetime
    ) -> Optional[Message]:
        with self._lock:
            message = self._messages.get(message_id)
            if message is None:
                return None
            if status.rank > message.status.rank:
                message.status = status
                if status == MessageStatus.DELIVERED:
                    message.delivered_at = at
                elif status == MessageStatus.SEEN:
                    message.seen_at = at
                elif status == MessageStatus.REPLIED:
                    message.replied_at = at
            return replace(message)

    # ==================== Loops ====================

    def add_loop(self, loop: Loop) -> Loop:
        with self._lock:
            self._loops[loop.loop_id] = replace(loop)
        return loop

    def get_loop(self, loop_id: str) -> Optional[Loop]:
        with self._lock:
            loop = self._loops.get(loop_id)
            return replace(loop) if loop else None

    def list_loops(
        self,
        stages: Optional[Iterable[LoopStage]] = None,
        to_agent: Optional[str] = None,
        started_since: Optional[datetime] = None,
    ) -> list[Loop]:
        stage_set = set(stages) if stages is not None else None
        with self._lock:
            matches = [
                replace(loop)
                for loop in self._loops.values()
                if (stage_set is None or loop.current_stage in stage_set)
                and (to_agent is None or loop.to_agent == to_agent)
                and (started_since is None or loop.started_at >= started_since)
            ]
        matches.sort(key=lambda loop: loop.started_at)
        return matches

    def compare_and_set_loop(
        self, loop_id: str, expected_stage: LoopStage, changes: dict[str, Any]
    ) -> Optional[Loop]:
        with self._lock:
            loop = self._loops.get(loop_id)
            if loop is None or loop.current_stage != expected_stage:
                return None
            updated = replace(loop, **changes)
            self._loops[loop_id] = updated
            return replace(updated)

    # ==================== Alerts ====================

    def add_alert_if_absent(self, alert: Alert) -> tuple[Alert, bool]:
        with self._lock:
            for existing in self._alerts.values():
                if existing.loop_id == alert.loop_id and existing.alert_type == alert.alert_type:
                    return replace(existing), False
            self._alerts[alert.alert_id] = replace(alert)
            return replace(alert), True

    def list_alerts(
        self, resolved: Optional[bool] = None, loop_id: Optional[str] = None
    ) -> list[Alert]:
        with self._lock:
            return [
                replace(a)
                for a in self._alerts.values()
                if (resolved is None or a.resolved == resolved)
                and (loop_id is None or a.loop_id == loop_id)
            ]

    def resolve_alerts(
        self,
        loop_id: str,
        at: datetime,
        alert_types: Optional[Iterable[AlertType]] = None,
    ) -> list[Alert]:
        type_set = set(alert_types) if alert_types is not None else None
        changed = []
        with self._lock:
            for alert in self._alerts.values():
                if alert.loop_id != loop_id or alert.resolved:
                    continue
                if type_set is not None and alert.alert_type not in type_set:
                    continue
                alert.resolved = True
                alert.resolved_at = at
                changed.append(replace(alert))
        return changed
