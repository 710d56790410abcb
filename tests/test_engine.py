"""
Tests for the loopwatch engine facade.
"""

import threading
import time

import pytest
from conftest import T0, minutes

from loopwatch import (
    CallbackNotifier,
    EngineConfig,
    LoopEngine,
    LoopStage,
    MessageStatus,
    SQLLoopStore,
    ValidationError,
)
from loopwatch.models import AlertType
from loopwatch.policy import SLAPolicy
from loopwatch.storage import InMemoryLoopStore

POLICY = SLAPolicy.from_dict(
    {"budgets": {"default": {"reply": "30m", "action": "2h", "report": "24h"}}}
)


def _message(at, sender="sam", recipient="leo", **extra):
    payload = {"from": sender, "to": recipient, "content": "Deploy v2 please", "sentAt": at}
    payload.update(extra)
    return payload


@pytest.fixture
def alerts():
    return []


@pytest.fixture
def engine(clock, alerts):
    engine = LoopEngine(
        store=InMemoryLoopStore(),
        policy=POLICY,
        notifier=CallbackNotifier(alerts.append),
        clock=clock,
    )
    yield engine
    engine.stop()


class TestIngestMessage:
    """Tests for message ingestion."""

    def test_message_opens_loop(self, engine):
        result = engine.ingest_message(_message("2026-02-06T09:00:00Z", id="m1"))

        assert result.opened
        assert result.message.id == "m1"
        assert result.loop.current_stage == LoopStage.AWAITING_REPLY
        assert result.loop.started_at == T0
        assert engine.get_message("m1") is not None

    def test_generated_message_id(self, engine):
        result = engine.ingest_message(_message("2026-02-06T09:00:00Z"))
        assert result.message.id
        assert result.loop.origin_message_id == result.message.id

    def test_reply_advances_loop(self, engine):
        opened = engine.ingest_message(_message("2026-02-06T09:00:00Z", id="m1")).loop
        result = engine.ingest_message(
            {"fromAgent": "Leo", "toAgent": "Sam", "content": "on it", "sentAt": "2026-02-06T09:10:00Z"}
        )

        assert not result.opened
        assert result.loop.loop_id == opened.loop_id
        assert result.loop.current_stage == LoopStage.AWAITING_ACTION
        assert engine.get_message("m1").status == MessageStatus.REPLIED

    def test_late_reply_rejected(self, engine, alerts):
        loop = engine.ingest_message(_message("2026-02-06T09:00:00Z", id="m1")).loop

        broken = engine.evaluate_timeouts(minutes(31))
        assert [b.loop_id for b in broken] == [loop.loop_id]
        engine.dispatcher.flush()
        assert [a.alert_type for a in alerts] == [AlertType.REPLY_OVERDUE]

        result = engine.ingest_message(_message("2026-02-06T09:45:00Z", "leo", "sam"))
        assert result.rejected
        assert result.loop is None
        assert engine.get_loop(loop.loop_id).current_stage == LoopStage.BROKEN
        assert engine.get_loop(loop.loop_id).broken_reason.value == "reply_overdue"

    def test_resent_reply_does_not_advance_next_loop(self, engine):
        first = engine.ingest_message(_message("2026-02-06T09:00:00Z", id="m1")).loop
        second = engine.ingest_message(_message("2026-02-06T09:01:00Z", id="m2")).loop
        reply = _message("2026-02-06T09:05:00Z", "leo", "sam", id="r1")

        answered = engine.ingest_message(reply)
        again = engine.ingest_message(reply)

        assert answered.loop.loop_id == first.loop_id
        assert again.duplicate
        assert again.loop.loop_id == first.loop_id
        assert engine.get_loop(first.loop_id).current_stage == LoopStage.AWAITING_ACTION
        assert engine.get_loop(second.loop_id).current_stage == LoopStage.AWAITING_REPLY

    def test_resent_opener_returns_existing_loop(self, engine):
        opened = engine.ingest_message(_message("2026-02-06T09:00:00Z", id="m1"))
        again = engine.ingest_message(_message("2026-02-06T09:00:00Z", id="m1"))

        assert opened.opened
        assert not again.opened
        assert again.duplicate
        assert again.loop.loop_id == opened.loop.loop_id
        assert len(engine.store.list_loops()) == 1

    def test_system_and_broadcast_messages_open_nothing(self, engine):
        assert engine.ingest_message(_message("2026-02-06T09:00:00Z", "system", "leo")).loop is None
        assert engine.ingest_message(_message("2026-02-06T09:00:00Z", "sam", "all")).loop is None
        assert engine.store.list_loops() == []

    def test_malformed_payload(self, engine):
        with pytest.raises(ValidationError):
            engine.ingest_message({"from": "sam", "content": "no recipient"})

    def test_delivery_and_seen(self, engine):
        engine.ingest_message(_message("2026-02-06T09:00:00Z", id="m1"))
        engine.mark_delivered("m1", minutes(1))
        seen = engine.mark_seen("m1", minutes(2))
        assert seen.status == MessageStatus.SEEN
        assert seen.delivered_at == minutes(1)
        assert seen.seen_at == minutes(2)
        assert engine.mark_seen("missing") is None

    def test_conversation(self, engine):
        engine.ingest_message(_message("2026-02-06T09:00:00Z", id="m1"))
        engine.ingest_message(_message("2026-02-06T09:05:00Z", "leo", "sam", id="m2"))
        assert [m.id for m in engine.conversation("Sam", "Leo")] == ["m2", "m1"]
        with pytest.raises(ValidationError):
            engine.conversation("sam", "leo", limit=0)


class TestIngestEvent:
    """Tests for action and report events."""

    def test_full_loop_through_events(self, engine, clock):
        loop = engine.ingest_message(_message("2026-02-06T09:00:00Z", id="m1")).loop
        engine.ingest_message(_message("2026-02-06T09:10:00Z", "leo", "sam"))

        acted = engine.ingest_event(
            {
                "agent": "leo",
                "kind": "action",
                "timestamp": "2026-02-06T09:20:00Z",
                "linkedTaskId": "PR-42",
            }
        )
        assert acted.current_stage == LoopStage.AWAITING_REPORT

        done = engine.ingest_event(
            {
                "agent": "leo",
                "kind": "report",
                "timestamp": "2026-02-06T09:25:00Z",
                "loopId": loop.loop_id,
                "finalReport": "Deployed and smoke-tested",
            }
        )
        assert done.current_stage == LoopStage.COMPLETED
        assert done.action_ref == "PR-42"
        assert done.final_report == "Deployed and smoke-tested"

        clock.at(minutes=30)
        summary = engine.get_daily_summary()
        assert summary.completed_today == 1
        assert summary.avg_completion_time_ms == 25 * 60 * 1000

    def test_unmatched_event_dropped(self, engine):
        assert (
            engine.ingest_event({"agent": "leo", "kind": "action", "timestamp": "2026-02-06T09:20:00Z"})
            is None
        )

    def test_rejected_event_dropped(self, engine):
        loop = engine.ingest_message(_message("2026-02-06T09:00:00Z", id="m1")).loop
        result = engine.ingest_event(
            {"agent": "leo", "kind": "report", "timestamp": "2026-02-06T09:20:00Z", "loopId": loop.loop_id}
        )
        assert result is None
        assert engine.get_loop(loop.loop_id).current_stage == LoopStage.AWAITING_REPLY


class TestManagement:
    """Tests for manual breaks, alerts and rollups through the engine."""

    def test_break_and_resolve(self, engine, alerts):
        loop = engine.ingest_message(_message("2026-02-06T09:00:00Z", id="m1")).loop
        engine.break_loop(loop.loop_id, "cancelled by sam")
        engine.dispatcher.flush()

        assert [a.alert_type for a in alerts] == [AlertType.LOOP_BROKEN]
        assert len(engine.get_unresolved()) == 1
        assert len(engine.resolve_alerts(loop.loop_id)) == 1
        assert engine.get_unresolved() == []

    def test_escalate_open_loop(self, engine, alerts):
        loop = engine.ingest_message(_message("2026-02-06T09:00:00Z", id="m1")).loop
        escalated = engine.escalate(loop.loop_id, "max", "leo is unresponsive")
        engine.dispatcher.flush()

        assert escalated.current_stage == LoopStage.AWAITING_REPLY
        assert escalated.escalated_to == "max"
        assert [(a.alert_type, a.escalated_to) for a in alerts] == [
            (AlertType.ESCALATED, "max")
        ]

    def test_slow_notifier_does_not_delay_timeouts(self, clock):
        release = threading.Event()
        received = []

        def slow(alert):
            release.wait(timeout=5.0)
            received.append(alert)

        engine = LoopEngine(
            store=InMemoryLoopStore(),
            policy=POLICY,
            notifier=CallbackNotifier(slow),
            clock=clock,
        )
        for i, recipient in enumerate(["leo", "kai", "max"]):
            engine.ingest_message(_message(f"2026-02-06T09:0{i}:00Z", "sam", recipient))

        started = time.monotonic()
        broken = engine.evaluate_timeouts(minutes(40))
        assert time.monotonic() - started < 0.5
        assert len(broken) == 3

        release.set()
        engine.stop()
        assert len(received) == 3

    def test_breakdown_and_inbox(self, engine):
        engine.ingest_message(_message("2026-02-06T09:00:00Z", id="m1"))
        engine.ingest_message(_message("2026-02-06T09:01:00Z", "kai", "leo", id="m2"))

        rows = engine.get_agent_breakdown()
        assert [(r.agent_name, r.total) for r in rows] == [("leo", 2)]

        overview = engine.get_inbox_overview("LEO")
        assert overview.total_messages == 2
        assert overview.by_sender == {"sam": 1, "kai": 1}

        with pytest.raises(ValidationError):
            engine.get_agent_breakdown(since_days=0)

    def test_listener(self, engine):
        stages = []
        engine.add_listener(lambda loop, prev: stages.append(loop.current_stage))
        engine.ingest_message(_message("2026-02-06T09:00:00Z", id="m1"))
        assert stages == [LoopStage.AWAITING_REPLY]


class TestEngineSetup:
    """Tests for building an engine from configuration."""

    def test_sql_store_from_config(self, clock):
        engine = LoopEngine(EngineConfig(database_url="sqlite://"), policy=POLICY, clock=clock)
        assert isinstance(engine.store, SQLLoopStore)

        loop = engine.ingest_message(_message("2026-02-06T09:00:00Z", id="m1")).loop
        assert engine.get_loop(loop.loop_id).loop_id == loop.loop_id

    def test_sweeper_lifecycle(self, clock):
        swept = threading.Event()
        engine = LoopEngine(
            EngineConfig(sweep_interval_seconds=0.01),
            store=InMemoryLoopStore(),
            policy=POLICY,
            clock=clock,
        )
        engine.add_listener(lambda loop, prev: swept.set() if loop.is_terminal else None)
        engine.ingest_message(_message("2026-02-06T09:00:00Z", id="m1"))
        clock.at(minutes=31)

        with engine:
            assert swept.wait(timeout=2.0)

        assert engine.store.open_loops() == []
