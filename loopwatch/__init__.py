"""
loopwatch - Loop accountability engine for fleets of autonomous agents.

Tracks send -> reply -> action -> report loops between agents, breaks loops
that miss their SLA budgets, raises alerts, and rolls up per-day and
per-agent accountability stats.
"""

from .alerts import AlertDispatcher, Notifier
from .config import EngineConfig, configure_logging
from .engine import IngestResult, LoopEngine
from .exceptions import (
    ConfigurationError,
    InvalidTransitionError,
    LoopWatchError,
    NotFoundError,
    ValidationError,
)
from .models import (
    AgentBreakdown,
    AgentStageTimes,
    Alert,
    AlertSeverity,
    AlertType,
    BrokenReason,
    DailySummary,
    EventKind,
    InboxOverview,
    Loop,
    LoopEvent,
    LoopStage,
    Message,
    MessagePriority,
    MessageStatus,
    SLABudgets,
)
from .notifiers import CallbackNotifier, LoggingNotifier, WebhookNotifier
from .policy import SLAPolicy, parse_duration_ms
from .reporting import LoopReporter
from .storage import InMemoryLoopStore, LoopStore, SQLLoopStore, create_store
from .sweeper import LoopSweeper
from .tracker import LoopTracker

__version__ = "0.1.0"
__all__ = [
    "LoopEngine",
    "IngestResult",
    "EngineConfig",
    "configure_logging",
    "LoopTracker",
    "LoopReporter",
    "LoopSweeper",
    "AlertDispatcher",
    "Notifier",
    "LoggingNotifier",
    "CallbackNotifier",
    "WebhookNotifier",
    "SLAPolicy",
    "SLABudgets",
    "parse_duration_ms",
    "LoopStore",
    "InMemoryLoopStore",
    "SQLLoopStore",
    "create_store",
    "Message",
    "MessagePriority",
    "MessageStatus",
    "Loop",
    "LoopStage",
    "LoopEvent",
    "EventKind",
    "BrokenReason",
    "Alert",
    "AlertType",
    "AlertSeverity",
    "DailySummary",
    "AgentBreakdown",
    "AgentStageTimes",
    "InboxOverview",
    "LoopWatchError",
    "NotFoundError",
    "InvalidTransitionError",
    "ConfigurationError",
    "ValidationError",
]
