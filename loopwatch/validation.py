"""
loopwatch - Input validation helpers.

Checks raw ingestion payloads before they reach the store or the tracker.
Payload keys may be snake_case or the camelCase used by dashboard producers.
"""

from typing import Any, Optional

from .exceptions import ValidationError
from .models import EventKind, MessagePriority, parse_timestamp


def validate_required(value: Any, field_name: str) -> None:
    """Validate that a required field is not None or empty."""
    if value is None:
        raise ValidationError(f"{field_name} is required", field=field_name)
    if isinstance(value, str) and not value.strip():
        raise ValidationError(f"{field_name} cannot be empty", field=field_name, value=value)


def validate_string_length(
    value: str,
    field_name: str,
    min_length: Optional[int] = None,
    max_length: Optional[int] = None,
) -> None:
    """Validate string length constraints."""
    if value is None:
        return

    if min_length is not None and len(value) < min_length:
        raise ValidationError(
            f"{field_name} must be at least {min_length} characters",
            field=field_name,
            value=value,
        )

    if max_length is not None and len(value) > max_length:
        raise ValidationError(
            f"{field_name} must be at most {max_length} characters",
            field=field_name,
            value=value,
        )


def validate_positive_int(value: int, field_name: str) -> None:
    """Validate that a number is a positive integer."""
    if value is None:
        return

    if not isinstance(value, int) or isinstance(value, bool):
        raise ValidationError(f"{field_name} must be an integer", field=field_name, value=value)

    if value <= 0:
        raise ValidationError(f"{field_name} must be positive", field=field_name, value=value)


def validate_agent_id(value: str, field_name: str = "agent") -> None:
    """Validate an agent name."""
    validate_required(value, field_name)

    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string", field=field_name, value=value)

    validate_string_length(value.strip(), field_name, max_length=255)


def normalize_agent(value: str) -> str:
    """Agent names are compared case-insensitively."""
    return value.strip().lower()


def _first(payload: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if payload.get(key) is not None:
            return payload[key]
    return None


def _optional_text(payload: dict[str, Any], *keys: str) -> Optional[str]:
    value = _first(payload, *keys)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{keys[0]} must be a string", field=keys[0], value=value)
    return value.strip() or None


def _timestamp(value: Any, field_name: str):
    validate_required(value, field_name)
    try:
        return parse_timestamp(value)
    except (TypeError, ValueError):
        raise ValidationError(
            f"{field_name} must be an ISO-8601 string or epoch milliseconds",
            field=field_name,
            value=value,
        )


def validate_message_payload(payload: dict[str, Any]) -> dict[str, Any]:
    """
    Validate a message ingestion payload.

    Accepts ``{from, to, content, priority?, sentAt}`` and returns normalized
    keyword arguments for :class:`loopwatch.models.Message`.
    """
    if not isinstance(payload, dict):
        raise ValidationError("message payload must be a dictionary", value=payload)

    from_agent = _first(payload, "from", "from_agent", "fromAgent")
    to_agent = _first(payload, "to", "to_agent", "toAgent")
    validate_agent_id(from_agent, "from")
    validate_agent_id(to_agent, "to")

    content = payload.get("content", "")
    if not isinstance(content, str):
        raise ValidationError("content must be a string", field="content", value=content)

    priority = payload.get("priority") or MessagePriority.NORMAL.value
    try:
        priority = MessagePriority(str(priority).lower())
    except ValueError:
        raise ValidationError(
            f"priority must be one of: {', '.join(p.value for p in MessagePriority)}",
            field="priority",
            value=priority,
        )

    return {
        "from_agent": normalize_agent(from_agent),
        "to_agent": normalize_agent(to_agent),
        "content": content,
        "priority": priority,
        "sent_at": _timestamp(_first(payload, "sentAt", "sent_at"), "sentAt"),
    }


def validate_event_payload(payload: dict[str, Any]) -> dict[str, Any]:
    """
    Validate an action/report event payload.

    Accepts ``{agent, loopId|correlationKey, kind, timestamp}``. Neither
    reference is required; without one the event is matched to the oldest
    open loop the agent owes.

    An action may carry ``reference`` (alias ``linkedTaskId``) and a report
    may carry ``detail`` (alias ``finalReport``).
    """
    if not isinstance(payload, dict):
        raise ValidationError("event payload must be a dictionary", value=payload)

    agent = payload.get("agent")
    validate_agent_id(agent, "agent")

    kind = payload.get("kind")
    validate_required(kind, "kind")
    try:
        kind = EventKind(str(kind).lower())
    except ValueError:
        raise ValidationError(
            f"kind must be one of: {', '.join(k.value for k in EventKind)}",
            field="kind",
            value=kind,
        )

    return {
        "agent": normalize_agent(agent),
        "kind": kind,
        "timestamp": _timestamp(payload.get("timestamp"), "timestamp"),
        "loop_id": _first(payload, "loopId", "loop_id"),
        "correlation_key": _first(payload, "correlationKey", "correlation_key"),
        "message_id": _first(payload, "messageId", "message_id"),
        "detail": _optional_text(payload, "detail", "finalReport", "final_report"),
        "reference": _optional_text(payload, "reference", "linkedTaskId", "linked_task_id"),
    }
