"""
loopwatch SLA Policy - per-priority stage budgets and escalation rules.

A policy is immutable once built and is injected into the tracker and the
alert dispatcher, so budgets change through configuration, not code.

Example YAML:

    budgets:
      default: {reply: 15m, action: 2h, report: 24h}
      urgent: {reply: 5m}
    escalation:
      thresholds: {warning: 30m, critical: 2h}
      targets: {warning: max, critical: ceo}
    severities:
      reply_overdue: warning
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional, Union

import yaml

from .exceptions import ConfigurationError
from .models import AlertSeverity, AlertType, MessagePriority, SLABudgets

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS

DEFAULT_BUDGETS = SLABudgets(
    reply_budget_ms=15 * MINUTE_MS,
    action_budget_ms=2 * HOUR_MS,
    report_budget_ms=24 * HOUR_MS,
)

DEFAULT_ESCALATION_THRESHOLDS = {
    AlertSeverity.WARNING: 30 * MINUTE_MS,
    AlertSeverity.CRITICAL: 2 * HOUR_MS,
}

DEFAULT_ESCALATION_TARGETS = {
    AlertSeverity.WARNING: "max",
    AlertSeverity.CRITICAL: "ceo",
}

DEFAULT_SEVERITIES = {
    AlertType.REPLY_OVERDUE: AlertSeverity.WARNING,
    AlertType.ACTION_OVERDUE: AlertSeverity.CRITICAL,
    AlertType.REPORT_OVERDUE: AlertSeverity.CRITICAL,
    AlertType.LOOP_BROKEN: AlertSeverity.CRITICAL,
    AlertType.ESCALATED: AlertSeverity.CRITICAL,
}

_BUDGET_KEYS = {
    "reply": "reply_budget_ms",
    "action": "action_budget_ms",
    "report": "report_budget_ms",
}

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h|d)?\s*$", re.IGNORECASE)
_UNIT_MS = {"ms": 1, "s": 1000, "m": MINUTE_MS, "h": HOUR_MS, "d": 24 * HOUR_MS}


def parse_duration_ms(value: Any, field_name: str) -> int:
    """
    Parse a duration into positive integer milliseconds.

    Accepts integers (milliseconds) or strings such as ``"30s"``, ``"15m"``,
    ``"2h"`` or ``"1d"``. A bare numeric string is milliseconds.
    """
    if value is None:
        raise ConfigurationError(f"{field_name} is required", field=field_name)

    if isinstance(value, bool):
        raise ConfigurationError(f"{field_name} must be a duration", field=field_name)

    if isinstance(value, (int, float)):
        ms = int(value)
    elif isinstance(value, str):
        match = _DURATION_RE.match(value)
        if not match:
            raise ConfigurationError(
                f"{field_name}: cannot parse duration {value!r}", field=field_name
            )
        amount, unit = match.groups()
        ms = int(float(amount) * _UNIT_MS[(unit or "ms").lower()])
    else:
        raise ConfigurationError(f"{field_name} must be a duration", field=field_name)

    if ms <= 0:
        raise ConfigurationError(f"{field_name} must be positive, got {value!r}", field=field_name)
    return ms


def _parse_budgets(data: Any, base: Optional[SLABudgets], path: str) -> SLABudgets:
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"{path} must be a mapping", field=path)

    unknown = set(data) - set(_BUDGET_KEYS) - set(_BUDGET_KEYS.values())
    if unknown:
        raise ConfigurationError(
            f"{path}: unknown budget keys {sorted(unknown)}", field=path
        )

    values = base.to_dict() if base else {}
    for short, attr in _BUDGET_KEYS.items():
        raw = data.get(short, data.get(attr))
        if raw is None:
            if base is None:
                raise ConfigurationError(f"{path}.{short} is required", field=f"{path}.{short}")
            continue
        values[attr] = parse_duration_ms(raw, f"{path}.{short}")
    return SLABudgets(**values)


@dataclass(frozen=True)
class SLAPolicy:
    """Stage budgets per priority plus escalation rules."""

    default_budgets: SLABudgets = field(default_factory=lambda: DEFAULT_BUDGETS)
    priority_budgets: Mapping[MessagePriority, SLABudgets] = field(default_factory=dict)
    escalation_thresholds: Mapping[AlertSeverity, int] = field(
        default_factory=lambda: dict(DEFAULT_ESCALATION_THRESHOLDS)
    )
    escalation_targets: Mapping[AlertSeverity, str] = field(
        default_factory=lambda: dict(DEFAULT_ESCALATION_TARGETS)
    )
    severities: Mapping[AlertType, AlertSeverity] = field(
        default_factory=lambda: dict(DEFAULT_SEVERITIES)
    )

    def __post_init__(self) -> None:
        budgets = [self.default_budgets, *self.priority_budgets.values()]
        for item in budgets:
            for name, value in item.to_dict().items():
                if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                    raise ConfigurationError(
                        f"{name} must be a positive integer, got {value!r}", field=name
                    )
        for severity in AlertSeverity:
            value = self.escalation_thresholds.get(severity)
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise ConfigurationError(
                    f"escalation threshold for {severity.value} must be a positive integer",
                    field=f"escalation.thresholds.{severity.value}",
                )

    def budgets_for(self, priority: MessagePriority) -> SLABudgets:
        """Stage budgets for a message priority."""
        return self.priority_budgets.get(priority, self.default_budgets)

    def escalation_threshold_for(self, severity: AlertSeverity) -> int:
        """Elapsed milliseconds in a stage after which a breach is escalated."""
        return self.escalation_thresholds[severity]

    def severity_for(self, alert_type: AlertType) -> AlertSeverity:
        return self.severities.get(alert_type, AlertSeverity.CRITICAL)

    def escalation_target_for(self, severity: AlertSeverity) -> Optional[str]:
        return self.escalation_targets.get(severity)

    @classmethod
    def default(cls) -> "SLAPolicy":
        return cls()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SLAPolicy":
        """
        Build a policy from parsed configuration.

        Raises:
            ConfigurationError: Any budget or threshold is missing or invalid.
        """
        if data is None:
            return cls()
        if not isinstance(data, Mapping):
            raise ConfigurationError("SLA policy must be a mapping")

        budgets_block = _mapping(data.get("budgets"), "budgets")

        default_budgets = DEFAULT_BUDGETS
        if "default" in budgets_block:
            default_budgets = _parse_budgets(budgets_block["default"], None, "budgets.default")

        priority_budgets: dict[MessagePriority, SLABudgets] = {}
        for key, block in budgets_block.items():
            if key == "default":
                continue
            try:
                priority = MessagePriority(str(key).lower())
            except ValueError:
                raise ConfigurationError(
                    f"budgets.{key}: unknown priority", field=f"budgets.{key}"
                )
            priority_budgets[priority] = _parse_budgets(
                block, default_budgets, f"budgets.{key}"
            )

        escalation = _mapping(data.get("escalation"), "escalation")
        thresholds = dict(DEFAULT_ESCALATION_THRESHOLDS)
        for key, raw in _mapping(escalation.get("thresholds"), "escalation.thresholds").items():
            severity = _severity(key, "escalation.thresholds")
            thresholds[severity] = parse_duration_ms(raw, f"escalation.thresholds.{key}")

        targets = dict(DEFAULT_ESCALATION_TARGETS)
        for key, target in _mapping(escalation.get("targets"), "escalation.targets").items():
            severity = _severity(key, "escalation.targets")
            if target:
                targets[severity] = str(target).strip().lower()
            else:
                # An empty target turns escalation off for that severity.
                targets.pop(severity, None)

        severities = dict(DEFAULT_SEVERITIES)
        for key, raw in _mapping(data.get("severities"), "severities").items():
            try:
                alert_type = AlertType(key)
            except ValueError:
                raise ConfigurationError(
                    f"severities.{key}: unknown alert type", field=f"severities.{key}"
                )
            severities[alert_type] = _severity(raw, f"severities.{key}")

        return cls(
            default_budgets=default_budgets,
            priority_budgets=priority_budgets,
            escalation_thresholds=thresholds,
            escalation_targets=targets,
            severities=severities,
        )

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "SLAPolicy":
        """
        Load a policy from a YAML file.

        Raises:
            ConfigurationError: File missing, invalid YAML, or invalid values.
        """
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"SLA policy file not found: {path}", field="policy_path")

        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}", field="policy_path")

        if data is None:
            return cls()
        return cls.from_dict(data)


def _mapping(value: Any, path: str) -> Mapping[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigurationError(f"{path} must be a mapping", field=path)
    return value


def _severity(value: Any, path: str) -> AlertSeverity:
    try:
        return AlertSeverity(str(value).lower())
    except ValueError:
        raise ConfigurationError(f"{path}: unknown severity {value!r}", field=path)
