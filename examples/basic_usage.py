#!/usr/bin/env python3
"""
loopwatch - Basic Usage Example

Walks one loop through every stage, lets a second loop miss its reply
budget, and prints the rollups.

Prerequisites:
    pip install loopwatch

Usage:
    export LOOPWATCH_POLICY_PATH=examples/sla_policy.yaml
    python basic_usage.py
"""

from datetime import datetime, timedelta, timezone

from loopwatch import (
    EngineConfig,
    LoggingNotifier,
    LoopEngine,
    configure_logging,
)


def main():
    config = EngineConfig.from_env()
    configure_logging(config.log_level)

    engine = LoopEngine(config, notifier=LoggingNotifier())
    t0 = datetime.now(timezone.utc) - timedelta(hours=1)

    def at(minutes):
        return (t0 + timedelta(minutes=minutes)).isoformat()

    # 1. Sam asks Leo for a deploy and Leo closes the loop
    print("1. Running an on-time loop...")
    opened = engine.ingest_message(
        {"from": "sam", "to": "leo", "content": "Deploy v2 to staging", "sentAt": at(0)}
    )
    engine.ingest_message({"from": "leo", "to": "sam", "content": "On it", "sentAt": at(10)})
    engine.ingest_event(
        {"agent": "leo", "kind": "action", "timestamp": at(20), "reference": "PR-42"}
    )
    done = engine.ingest_event(
        {
            "agent": "leo",
            "kind": "report",
            "timestamp": at(25),
            "loopId": opened.loop.loop_id,
            "detail": "Staging is green",
        }
    )
    print(f"   Loop {done.loop_id}: {done.current_stage.value}")

    # 2. Sam asks Kai and never hears back
    print("\n2. Running an overdue loop...")
    engine.ingest_message(
        {"from": "sam", "to": "kai", "content": "Rotate the API keys", "sentAt": at(5)}
    )
    # A fresh request to Max goes straight to the CEO
    waiting = engine.ingest_message(
        {"from": "sam", "to": "max", "content": "Review the Q3 budget", "sentAt": at(58)}
    )
    engine.escalate(waiting.loop.loop_id, "ceo", "needed before the board call")
    for loop in engine.evaluate_timeouts():
        print(f"   Loop {loop.loop_id} broken: {loop.broken_reason.value}")

    # 3. Rollups
    print("\n3. Reports...")
    summary = engine.get_daily_summary()
    print(f"   Today: {summary.to_dict()}")
    for row in engine.get_agent_breakdown():
        print(f"   {row.agent_name}: {row.closed}/{row.total} closed ({row.completion_rate}%)")
    for alert in engine.get_unresolved(limit=10):
        print(f"   Open alert: {alert.alert_type.value} on {alert.to_agent}")

    # Deliver queued alert notifications before exiting
    engine.stop()


if __name__ == "__main__":
    main()
