"""
loopwatch - Data models for messages, loops, alerts and rollups.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional, Union


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC. Naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Union[datetime, str, int, float]) -> datetime:
    """
    Parse a timestamp from a datetime, an ISO-8601 string or epoch milliseconds.
    """
    if isinstance(value, datetime):
        return to_utc(value)
    if isinstance(value, bool):
        raise TypeError(f"Invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return to_utc(datetime.fromisoformat(text))
    raise TypeError(f"Invalid timestamp: {value!r}")


def elapsed_ms(start: datetime, end: datetime) -> float:
    """Milliseconds between two datetimes."""
    return (end - start).total_seconds() * 1000.0


def _opt_ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _opt_parse(value: Any) -> Optional[datetime]:
    return parse_timestamp(value) if value is not None else None


class MessagePriority(str, Enum):
    """Priority attached to an inter-agent message."""

    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class MessageStatus(str, Enum):
    """Delivery status of a message. Ordered; never downgraded."""

    PENDING = "pending"
    DELIVERED = "delivered"
    SEEN = "seen"
    REPLIED = "replied"

    @property
    def rank(self) -> int:
        return _MESSAGE_STATUS_ORDER.index(self)


_MESSAGE_STATUS_ORDER = [
    MessageStatus.PENDING,
    MessageStatus.DELIVERED,
    MessageStatus.SEEN,
    MessageStatus.REPLIED,
]


class LoopStage(str, Enum):
    """Stage of a send -> reply -> action -> report loop."""

    AWAITING_REPLY = "awaiting_reply"
    AWAITING_ACTION = "awaiting_action"
    AWAITING_REPORT = "awaiting_report"
    COMPLETED = "completed"
    BROKEN = "broken"

    @property
    def is_terminal(self) -> bool:
        return self in (LoopStage.COMPLETED, LoopStage.BROKEN)


class EventKind(str, Enum):
    """Kind of follow-up that advances a loop."""

    REPLY = "reply"
    ACTION = "action"
    REPORT = "report"


class BrokenReason(str, Enum):
    """Why a loop was marked broken."""

    REPLY_OVERDUE = "reply_overdue"
    ACTION_OVERDUE = "action_overdue"
    REPORT_OVERDUE = "report_overdue"
    MANUAL = "manual"


class AlertType(str, Enum):
    """Type of a loop alert."""

    REPLY_OVERDUE = "reply_overdue"
    ACTION_OVERDUE = "action_overdue"
    REPORT_OVERDUE = "report_overdue"
    LOOP_BROKEN = "loop_broken"
    ESCALATED = "escalated"


class AlertSeverity(str, Enum):
    """Severity of a loop alert."""

    WARNING = "warning"
    CRITICAL = "critical"


# Expected event and breach reason for each open stage.
STAGE_EVENTS = {
    LoopStage.AWAITING_REPLY: EventKind.REPLY,
    LoopStage.AWAITING_ACTION: EventKind.ACTION,
    LoopStage.AWAITING_REPORT: EventKind.REPORT,
}

STAGE_BREACHES = {
    LoopStage.AWAITING_REPLY: BrokenReason.REPLY_OVERDUE,
    LoopStage.AWAITING_ACTION: BrokenReason.ACTION_OVERDUE,
    LoopStage.AWAITING_REPORT: BrokenReason.REPORT_OVERDUE,
}

OVERDUE_ALERT_TYPES = (
    AlertType.REPLY_OVERDUE,
    AlertType.ACTION_OVERDUE,
    AlertType.REPORT_OVERDUE,
)


def alert_type_for(reason: BrokenReason) -> AlertType:
    """Map a broken reason to the alert type it raises."""
    if reason == BrokenReason.MANUAL:
        return AlertType.LOOP_BROKEN
    return AlertType(reason.value)


@dataclass
class Message:
    """
    One communication between two agents.

    Status only moves forward (pending -> delivered -> seen -> replied).
    """

    id: str
    from_agent: str
    to_agent: str
    content: str
    sent_at: datetime
    priority: MessagePriority = MessagePriority.NORMAL
    status: MessageStatus = MessageStatus.PENDING
    delivered_at: Optional[datetime] = None
    seen_at: Optional[datetime] = None
    replied_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "from_agent": self.from_agent,
            "to_agent": self.to_agent,
            "content": self.content,
            "priority": self.priority.value,
            "sent_at": self.sent_at.isoformat(),
            "status": self.status.value,
            "delivered_at": _opt_ts(self.delivered_at),
            "seen_at": _opt_ts(self.seen_at),
            "replied_at": _opt_ts(self.replied_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        return cls(
            id=data["id"],
            from_agent=data.get("from_agent") or data.get("fromAgent", ""),
            to_agent=data.get("to_agent") or data.get("toAgent", ""),
            content=data.get("content", ""),
            sent_at=parse_timestamp(data.get("sent_at") or data["sentAt"]),
            priority=MessagePriority(data.get("priority") or "normal"),
            status=MessageStatus(data.get("status") or "pending"),
            delivered_at=_opt_parse(data.get("delivered_at")),
            seen_at=_opt_parse(data.get("seen_at")),
            replied_at=_opt_parse(data.get("replied_at")),
        )


@dataclass
class Loop:
    """
    A derived send -> reply -> action -> report cycle between two agents.

    ``to_agent`` is the accountable party. Stages only move forward and
    ``completed``/``broken`` are terminal.
    """

    loop_id: str
    from_agent: str
    to_agent: str
    origin_message_id: str
    started_at: datetime
    priority: MessagePriority = MessagePriority.NORMAL
    current_stage: LoopStage = LoopStage.AWAITING_REPLY
    replied_at: Optional[datetime] = None
    acted_at: Optional[datetime] = None
    reported_at: Optional[datetime] = None
    broken_at: Optional[datetime] = None
    broken_reason: Optional[BrokenReason] = None
    broken_note: Optional[str] = None
    escalated_to: Optional[str] = None
    reply_message_id: Optional[str] = None
    action_ref: Optional[str] = None
    final_report: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.current_stage.is_terminal

    @property
    def stage_entered_at(self) -> datetime:
        """When the loop entered its current stage."""
        if self.current_stage == LoopStage.AWAITING_ACTION and self.replied_at:
            return self.replied_at
        if self.current_stage == LoopStage.AWAITING_REPORT and self.acted_at:
            return self.acted_at
        if self.current_stage == LoopStage.COMPLETED and self.reported_at:
            return self.reported_at
        if self.current_stage == LoopStage.BROKEN and self.broken_at:
            return self.broken_at
        return self.started_at

    @property
    def completion_time_ms(self) -> Optional[float]:
        if self.current_stage != LoopStage.COMPLETED or not self.reported_at:
            return None
        return elapsed_ms(self.started_at, self.reported_at)

    def to_dict(self) -> dict[str, Any]:
        return {
            "loop_id": self.loop_id,
            "from_agent": self.from_agent,
            "to_agent": self.to_agent,
            "origin_message_id": self.origin_message_id,
            "started_at": self.started_at.isoformat(),
            "priority": self.priority.value,
            "current_stage": self.current_stage.value,
            "replied_at": _opt_ts(self.replied_at),
            "acted_at": _opt_ts(self.acted_at),
            "reported_at": _opt_ts(self.reported_at),
            "broken_at": _opt_ts(self.broken_at),
            "broken_reason": self.broken_reason.value if self.broken_reason else None,
            "broken_note": self.broken_note,
            "escalated_to": self.escalated_to,
            "reply_message_id": self.reply_message_id,
            "action_ref": self.action_ref,
            "final_report": self.final_report,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Loop":
        return cls(
            loop_id=data["loop_id"],
            from_agent=data["from_agent"],
            to_agent=data["to_agent"],
            origin_message_id=data["origin_message_id"],
            started_at=parse_timestamp(data["started_at"]),
            priority=MessagePriority(data.get("priority") or "normal"),
            current_stage=LoopStage(data.get("current_stage") or "awaiting_reply"),
            replied_at=_opt_parse(data.get("replied_at")),
            acted_at=_opt_parse(data.get("acted_at")),
            reported_at=_opt_parse(data.get("reported_at")),
            broken_at=_opt_parse(data.get("broken_at")),
            broken_reason=(
                BrokenReason(data["broken_reason"]) if data.get("broken_reason") else None
            ),
            broken_note=data.get("broken_note"),
            escalated_to=data.get("escalated_to"),
            reply_message_id=data.get("reply_message_id"),
            action_ref=data.get("action_ref"),
            final_report=data.get("final_report"),
        )


@dataclass
class LoopEvent:
    """
    An action or report signal (or a reply) attributed to an agent.

    Correlates to a loop by ``loop_id``, else by ``correlation_key`` (the
    origin message id), else by the oldest open loop the agent owes.

    ``reference`` on an action points at the work done (a task id, commit or
    URL); ``detail`` on a report carries the report text.
    """

    agent: str
    kind: EventKind
    timestamp: datetime
    loop_id: Optional[str] = None
    correlation_key: Optional[str] = None
    message_id: Optional[str] = None
    detail: Optional[str] = None
    reference: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LoopEvent":
        return cls(
            agent=data["agent"],
            kind=EventKind(data["kind"]),
            timestamp=parse_timestamp(data["timestamp"]),
            loop_id=data.get("loop_id") or data.get("loopId"),
            correlation_key=data.get("correlation_key") or data.get("correlationKey"),
            message_id=data.get("message_id") or data.get("messageId"),
            detail=data.get("detail"),
            reference=data.get("reference"),
        )


@dataclass
class Alert:
    """
    Audit record of an SLA breach, a broken loop or a manual escalation.

    Only ``resolved``/``resolved_at`` ever change after creation.
    """

    alert_id: str
    loop_id: str
    alert_type: AlertType
    severity: AlertSeverity
    sent_at: datetime
    from_agent: str
    to_agent: str
    message_status_label: str
    created_at: datetime
    escalated_to: Optional[str] = None
    note: Optional[str] = None
    resolved: bool = False
    resolved_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "loop_id": self.loop_id,
            "alert_type": self.alert_type.value,
            "severity": self.severity.value,
            "sent_at": self.sent_at.isoformat(),
            "from_agent": self.from_agent,
            "to_agent": self.to_agent,
            "message_status_label": self.message_status_label,
            "created_at": self.created_at.isoformat(),
            "escalated_to": self.escalated_to,
            "note": self.note,
            "resolved": self.resolved,
            "resolved_at": _opt_ts(self.resolved_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Alert":
        return cls(
            alert_id=data["alert_id"],
            loop_id=data["loop_id"],
            alert_type=AlertType(data["alert_type"]),
            severity=AlertSeverity(data["severity"]),
            sent_at=parse_timestamp(data["sent_at"]),
            from_agent=data["from_agent"],
            to_agent=data["to_agent"],
            message_status_label=data.get("message_status_label", ""),
            created_at=parse_timestamp(data["created_at"]),
            escalated_to=data.get("escalated_to"),
            note=data.get("note"),
            resolved=data.get("resolved", False),
            resolved_at=_opt_parse(data.get("resolved_at")),
        )


@dataclass
class SLABudgets:
    """Time budgets for each open stage, in milliseconds."""

    reply_budget_ms: int
    action_budget_ms: int
    report_budget_ms: int

    def for_stage(self, stage: LoopStage) -> int:
        if stage == LoopStage.AWAITING_REPLY:
            return self.reply_budget_ms
        if stage == LoopStage.AWAITING_ACTION:
            return self.action_budget_ms
        if stage == LoopStage.AWAITING_REPORT:
            return self.report_budget_ms
        raise ValueError(f"Stage {stage.value} has no SLA budget")

    def to_dict(self) -> dict[str, Any]:
        return {
            "reply_budget_ms": self.reply_budget_ms,
            "action_budget_ms": self.action_budget_ms,
            "report_budget_ms": self.report_budget_ms,
        }


@dataclass
class DailySummary:
    """Loop counts for one calendar day in the reference timezone."""

    day: date
    total_active: int
    completed_today: int
    broken_today: int
    avg_completion_time_ms: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "day": self.day.isoformat(),
            "total_active": self.total_active,
            "completed_today": self.completed_today,
            "broken_today": self.broken_today,
            "avg_completion_time_ms": self.avg_completion_time_ms,
        }


@dataclass
class AgentBreakdown:
    """Per-agent accountability stats over a window of loops."""

    agent_name: str
    total: int = 0
    closed: int = 0
    broken: int = 0
    sla_breaches: int = 0
    completion_rate: int = 0
    avg_reply_time_ms: Optional[float] = None
    avg_action_time_ms: Optional[float] = None

    @property
    def in_progress(self) -> int:
        return self.total - self.closed - self.broken

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_name": self.agent_name,
            "total": self.total,
            "closed": self.closed,
            "broken": self.broken,
            "in_progress": self.in_progress,
            "sla_breaches": self.sla_breaches,
            "completion_rate": self.completion_rate,
            "avg_reply_time_ms": self.avg_reply_time_ms,
            "avg_action_time_ms": self.avg_action_time_ms,
        }


@dataclass
class AgentStageTimes:
    """Average time spent in each stage for one agent."""

    agent_name: str
    total: int = 0
    closed: int = 0
    broken: int = 0
    avg_seen_time_ms: Optional[float] = None
    avg_reply_time_ms: Optional[float] = None
    avg_action_time_ms: Optional[float] = None
    avg_report_time_ms: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_name": self.agent_name,
            "total": self.total,
            "closed": self.closed,
            "broken": self.broken,
            "avg_seen_time_ms": self.avg_seen_time_ms,
            "avg_reply_time_ms": self.avg_reply_time_ms,
            "avg_action_time_ms": self.avg_action_time_ms,
            "avg_report_time_ms": self.avg_report_time_ms,
        }


@dataclass
class InboxOverview:
    """Unseen and unreplied counts for messages addressed to an agent."""

    agent_name: str
    total_messages: int = 0
    unseen_count: int = 0
    unreplied_count: int = 0
    by_sender: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_name": self.agent_name,
            "total_messages": self.total_messages,
            "unseen_count": self.unseen_count,
            "unreplied_count": self.unreplied_count,
            "by_sender": dict(self.by_sender),
        }
