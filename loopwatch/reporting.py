"""
loopwatch Reporting - rollups over loop and alert state.

All queries are read-only snapshots of the store. A rollup computed while a
transition is in flight may be off by one loop, which is acceptable for a
dashboard. Averages with no samples are ``None``, never zero.
"""

from collections import defaultdict
from datetime import date, datetime, time, timedelta
from typing import Callable, Iterable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .exceptions import ConfigurationError
from .models import (
    OVERDUE_ALERT_TYPES,
    AgentBreakdown,
    AgentStageTimes,
    Alert,
    DailySummary,
    InboxOverview,
    LoopStage,
    MessageStatus,
    elapsed_ms,
    utc_now,
)
from .storage import LoopStore


def _mean(values: Iterable[float]) -> Optional[float]:
    values = list(values)
    if not values:
        return None
    return sum(values) / len(values)


def completion_rate(closed: int, total: int) -> int:
    """Percent of loops closed, rounded half up; 0 when there are none."""
    if total <= 0:
        return 0
    return int(100 * closed / total + 0.5)


class LoopReporter:
    """
    Daily summary, per-agent breakdown and unresolved-alert queries.

    Day boundaries are taken in a fixed reference timezone.
    """

    def __init__(
        self,
        store: LoopStore,
        reference_timezone: str = "UTC",
        clock: Callable = utc_now,
    ):
        self._store = store
        try:
            self._tz = ZoneInfo(reference_timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise ConfigurationError(
                f"Unknown timezone: {reference_timezone!r}", field="reference_timezone"
            )
        self._clock = clock

    @property
    def timezone(self) -> ZoneInfo:
        return self._tz

    def day_bounds(self, day: date) -> tuple[datetime, datetime]:
        """``[start, end)`` of a calendar day in the reference timezone."""
        start = datetime.combine(day, time.min, tzinfo=self._tz)
        end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=self._tz)
        return start, end

    def get_daily_summary(self, day: Optional[date] = None) -> DailySummary:
        """
        Active, completed and broken loop counts for ``day``.

        ``total_active`` counts non-terminal loops at query time regardless
        of ``day``; completions and breaks are filtered by when they happened.
        """
        if day is None:
            day = self._clock().astimezone(self._tz).date()
        start, end = self.day_bounds(day)

        loops = self._store.list_loops()
        total_active = sum(1 for loop in loops if not loop.is_terminal)

        completed = [
            loop
            for loop in loops
            if loop.current_stage == LoopStage.COMPLETED
            and loop.reported_at is not None
            and start <= loop.reported_at < end
        ]
        broken = [
            loop
            for loop in loops
            if loop.current_stage == LoopStage.BROKEN
            and loop.broken_at is not None
            and start <= loop.broken_at < end
        ]

        return DailySummary(
            day=day,
            total_active=total_active,
            completed_today=len(completed),
            broken_today=len(broken),
            avg_completion_time_ms=_mean(loop.completion_time_ms for loop in completed),
        )

    def get_agent_breakdown(self, since_days: int = 7) -> list[AgentBreakdown]:
        """
        Accountability stats per ``to_agent`` over loops started in the window.

        Sorted by total descending, then agent name ascending.
        """
        since = self._clock() - timedelta(days=since_days)
        loops = self._store.list_loops(started_since=since)
        loop_ids = {loop.loop_id for loop in loops}

        breaches: dict[str, int] = defaultdict(int)
        for alert in self._store.list_alerts():
            if alert.loop_id in loop_ids and alert.alert_type in OVERDUE_ALERT_TYPES:
                breaches[alert.to_agent] += 1

        grouped = defaultdict(list)
        for loop in loops:
            grouped[loop.to_agent].append(loop)

        results = []
        for agent, agent_loops in grouped.items():
            closed = sum(1 for loop in agent_loops if loop.current_stage == LoopStage.COMPLETED)
            broken = sum(1 for loop in agent_loops if loop.current_stage == LoopStage.BROKEN)
            results.append(
                AgentBreakdown(
                    agent_name=agent,
                    total=len(agent_loops),
                    closed=closed,
                    broken=broken,
                    sla_breaches=breaches.get(agent, 0),
                    completion_rate=completion_rate(closed, len(agent_loops)),
                    avg_reply_time_ms=_mean(
                        elapsed_ms(loop.started_at, loop.replied_at)
                        for loop in agent_loops
                        if loop.replied_at
                    ),
                    avg_action_time_ms=_mean(
                        elapsed_ms(loop.replied_at, loop.acted_at)
                        for loop in agent_loops
                        if loop.replied_at and loop.acted_at
                    ),
                )
            )

        results.sort(key=lambda b: (-b.total, b.agent_name))
        return results

    def get_unresolved(self, limit: int = 10) -> list[Alert]:
        """Open alerts, newest ``sent_at`` first, at most ``limit``."""
        alerts = self._store.list_alerts(resolved=False)
        alerts.sort(key=lambda a: a.alert_id)
        alerts.sort(key=lambda a: (a.sent_at, a.created_at), reverse=True)
        return alerts[: max(limit, 0)]

    def get_stage_times(self, since: Optional[datetime] = None) -> list[AgentStageTimes]:
        """
        Average time per stage for each accountable agent.

        Defaults to loops started in the last hour. ``seen`` time comes from
        the origin message.
        """
        since = since or self._clock() - timedelta(hours=1)
        grouped = defaultdict(list)
        for loop in self._store.list_loops(started_since=since):
            grouped[loop.to_agent].append(loop)

        results = []
        for agent in sorted(grouped):
            agent_loops = grouped[agent]
            seen_times = []
            for loop in agent_loops:
                origin = self._store.get(loop.origin_message_id)
                if origin is not None and origin.seen_at is not None:
                    seen_times.append(elapsed_ms(origin.sent_at, origin.seen_at))

            results.append(
                AgentStageTimes(
                    agent_name=agent,
                    total=len(agent_loops),
                    closed=sum(
                        1 for loop in agent_loops if loop.current_stage == LoopStage.COMPLETED
                    ),
                    broken=sum(
                        1 for loop in agent_loops if loop.current_stage == LoopStage.BROKEN
                    ),
                    avg_seen_time_ms=_mean(seen_times),
                    avg_reply_time_ms=_mean(
                        elapsed_ms(loop.started_at, loop.replied_at)
                        for loop in agent_loops
                        if loop.replied_at
                    ),
                    avg_action_time_ms=_mean(
                        elapsed_ms(loop.replied_at, loop.acted_at)
                        for loop in agent_loops
                        if loop.replied_at and loop.acted_at
                    ),
                    avg_report_time_ms=_mean(
                        elapsed_ms(loop.acted_at, loop.reported_at)
                        for loop in agent_loops
                        if loop.acted_at and loop.reported_at
                    ),
                )
            )
        return results

    def get_inbox_overview(self, agent_name: str, limit: int = 100) -> InboxOverview:
        """Unseen and unreplied counts over the newest messages sent to an agent."""
        messages = self._store.list_messages(to_agent=agent_name, limit=limit)
        by_sender: dict[str, int] = defaultdict(int)
        for message in messages:
            by_sender[message.from_agent] += 1

        return InboxOverview(
            agent_name=agent_name,
            total_messages=len(messages),
            unseen_count=sum(1 for m in messages if m.status.rank < MessageStatus.SEEN.rank),
            unreplied_count=sum(
                1 for m in messages if m.status.rank < MessageStatus.REPLIED.rank
            ),
            by_sender=dict(by_sender),
        )
