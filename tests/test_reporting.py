"""
Tests for reporting rollups.
"""

from datetime import date, timedelta

import pytest
from conftest import T0, make_message, minutes

from loopwatch.alerts import AlertDispatcher
from loopwatch.exceptions import ConfigurationError
from loopwatch.models import EventKind, LoopEvent, MessageStatus
from loopwatch.policy import SLAPolicy
from loopwatch.reporting import LoopReporter, completion_rate
from loopwatch.tracker import LoopTracker

POLICY = SLAPolicy.from_dict(
    {"budgets": {"default": {"reply": "30m", "action": "2h", "report": "24h"}}}
)


@pytest.fixture
def tracker(store, clock):
    dispatcher = AlertDispatcher(store, POLICY, clock=clock)
    return LoopTracker(store, POLICY, dispatcher=dispatcher, clock=clock)


def _complete(tracker, message, reply, action, report):
    loop = tracker.open_loop(message)
    agent = message.to_agent
    tracker.advance(loop.loop_id, LoopEvent(agent, EventKind.REPLY, reply))
    tracker.advance(loop.loop_id, LoopEvent(agent, EventKind.ACTION, action))
    return tracker.advance(loop.loop_id, LoopEvent(agent, EventKind.REPORT, report))


class TestCompletionRate:
    """Tests for the completion percentage."""

    @pytest.mark.parametrize(
        "closed,total,expected",
        [(0, 0, 0), (1, 1, 100), (0, 4, 0), (1, 3, 33), (2, 3, 67), (1, 8, 13)],
    )
    def test_rounding(self, closed, total, expected):
        assert completion_rate(closed, total) == expected


class TestDailySummary:
    """Tests for get_daily_summary."""

    def test_summary(self, store, clock, tracker):
        _complete(tracker, make_message("m1"), minutes(10), minutes(20), minutes(25))
        tracker.open_loop(make_message("m2", to_agent="kai", sent_at=minutes(1)))
        tracker.open_loop(make_message("m3", to_agent="max", sent_at=minutes(40)))
        tracker.evaluate_timeouts(minutes(45))

        clock.at(minutes=50)
        summary = LoopReporter(store, clock=clock).get_daily_summary()

        assert summary.day == date(2026, 2, 6)
        assert summary.total_active == 1
        assert summary.completed_today == 1
        assert summary.broken_today == 1
        assert summary.avg_completion_time_ms == 25 * 60 * 1000

    def test_average_over_several_loops(self, store, clock, tracker):
        _complete(tracker, make_message("m1"), minutes(10), minutes(20), minutes(25))
        _complete(
            tracker,
            make_message("m2", to_agent="kai", sent_at=minutes(5)),
            minutes(10),
            minutes(20),
            minutes(40),
        )

        summary = LoopReporter(store, clock=clock).get_daily_summary(date(2026, 2, 6))
        assert summary.completed_today == 2
        assert summary.avg_completion_time_ms == 30 * 60 * 1000

    def test_empty_day_has_no_average(self, store, clock):
        summary = LoopReporter(store, clock=clock).get_daily_summary(date(2026, 2, 6))
        assert summary.total_active == 0
        assert summary.completed_today == 0
        assert summary.avg_completion_time_ms is None

    def test_day_bounds_follow_reference_timezone(self, store, clock, tracker):
        # 18:00 UTC is already the next day in UTC+7
        late = T0 + timedelta(hours=9)
        _complete(
            tracker,
            make_message("m1", sent_at=late - timedelta(minutes=30)),
            late - timedelta(minutes=20),
            late - timedelta(minutes=10),
            late,
        )

        reporter = LoopReporter(store, reference_timezone="Asia/Ho_Chi_Minh", clock=clock)
        assert reporter.get_daily_summary(date(2026, 2, 6)).completed_today == 0
        assert reporter.get_daily_summary(date(2026, 2, 7)).completed_today == 1

        utc = LoopReporter(store, clock=clock)
        assert utc.get_daily_summary(date(2026, 2, 6)).completed_today == 1

    def test_unknown_timezone(self, store):
        with pytest.raises(ConfigurationError):
            LoopReporter(store, reference_timezone="Mars/Olympus_Mons")


class TestAgentBreakdown:
    """Tests for get_agent_breakdown."""

    def test_breakdown(self, store, clock, tracker):
        _complete(tracker, make_message("m1"), minutes(10), minutes(20), minutes(25))
        tracker.open_loop(make_message("m2", sent_at=minutes(1)))
        tracker.open_loop(make_message("m3", sent_at=minutes(100)))
        _complete(
            tracker,
            make_message("m4", to_agent="kai"),
            minutes(4),
            minutes(14),
            minutes(15),
        )
        tracker.evaluate_timeouts(minutes(120))

        clock.at(hours=3)
        rows = LoopReporter(store, clock=clock).get_agent_breakdown(since_days=7)

        assert [r.agent_name for r in rows] == ["leo", "kai"]
        leo, kai = rows
        assert leo.total == 3
        assert leo.closed == 1
        assert leo.broken == 1
        assert leo.in_progress == 1
        assert leo.sla_breaches == 1
        assert leo.completion_rate == 33
        assert leo.avg_reply_time_ms == 10 * 60 * 1000
        assert leo.avg_action_time_ms == 10 * 60 * 1000

        assert kai.completion_rate == 100
        assert kai.sla_breaches == 0
        assert kai.avg_reply_time_ms == 4 * 60 * 1000

    def test_ties_sorted_by_name(self, store, clock, tracker):
        tracker.open_loop(make_message("m1", to_agent="zed"))
        tracker.open_loop(make_message("m2", to_agent="amy"))

        rows = LoopReporter(store, clock=clock).get_agent_breakdown()
        assert [r.agent_name for r in rows] == ["amy", "zed"]
        assert rows[0].avg_reply_time_ms is None

    def test_window_excludes_old_loops(self, store, clock, tracker):
        tracker.open_loop(make_message("old", sent_at=T0 - timedelta(days=8)))
        tracker.open_loop(make_message("new", to_agent="kai"))

        rows = LoopReporter(store, clock=clock).get_agent_breakdown(since_days=7)
        assert [r.agent_name for r in rows] == ["kai"]


class TestUnresolved:
    """Tests for get_unresolved."""

    def test_newest_first_with_limit(self, store, clock, tracker):
        for i, sent in enumerate([0, 5, 10]):
            tracker.open_loop(make_message(f"m{i}", to_agent=f"agent{i}", sent_at=minutes(sent)))
        tracker.evaluate_timeouts(minutes(60))

        reporter = LoopReporter(store, clock=clock)
        alerts = reporter.get_unresolved(limit=2)
        assert [a.to_agent for a in alerts] == ["agent2", "agent1"]
        assert len(reporter.get_unresolved(limit=10)) == 3
        assert reporter.get_unresolved(limit=0) == []

    def test_resolved_alerts_hidden(self, store, clock, tracker):
        loop = tracker.open_loop(make_message("m1"))
        tracker.evaluate_timeouts(minutes(60))
        tracker.dispatcher.on_resolve(loop.loop_id)

        assert LoopReporter(store, clock=clock).get_unresolved() == []


class TestStageTimes:
    """Tests for get_stage_times."""

    def test_stage_times(self, store, clock, tracker):
        _complete(tracker, make_message("m1"), minutes(10), minutes(20), minutes(25))
        tracker.open_loop(make_message("m2", sent_at=minutes(5)))
        store.advance_message_status("m2", MessageStatus.SEEN, minutes(7))

        clock.at(minutes=30)
        rows = LoopReporter(store, clock=clock).get_stage_times()

        assert len(rows) == 1
        leo = rows[0]
        assert leo.agent_name == "leo"
        assert leo.total == 2
        assert leo.closed == 1
        assert leo.avg_seen_time_ms == 2 * 60 * 1000
        assert leo.avg_reply_time_ms == 10 * 60 * 1000
        assert leo.avg_report_time_ms == 5 * 60 * 1000

    def test_default_window_is_last_hour(self, store, clock, tracker):
        tracker.open_loop(make_message("m1"))
        clock.at(hours=2)
        assert LoopReporter(store, clock=clock).get_stage_times() == []


class TestInboxOverview:
    """Tests for get_inbox_overview."""

    def test_counts(self, store, clock):
        store.record(make_message("m1", from_agent="sam"))
        store.record(make_message("m2", from_agent="sam", sent_at=minutes(1)))
        store.record(make_message("m3", from_agent="kai", sent_at=minutes(2)))
        store.advance_message_status("m1", MessageStatus.REPLIED, minutes(3))
        store.advance_message_status("m2", MessageStatus.SEEN, minutes(3))

        overview = LoopReporter(store, clock=clock).get_inbox_overview("leo")
        assert overview.total_messages == 3
        assert overview.unseen_count == 1
        assert overview.unreplied_count == 2
        assert overview.by_sender == {"sam": 2, "kai": 1}
