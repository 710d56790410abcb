"""
loopwatch - Custom exceptions for error handling.
"""

from typing import Any, Optional


class LoopWatchError(Exception):
    """Base exception for all loopwatch errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(LoopWatchError):
    """Raised when a loop or message id is unknown to the store."""

    def __init__(self, message: str, resource_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.resource_id = resource_id


class InvalidTransitionError(LoopWatchError):
    """Raised when an event does not match the loop's current stage."""

    def __init__(
        self,
        message: str,
        loop_id: Optional[str] = None,
        stage: Optional[str] = None,
        event_kind: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.loop_id = loop_id
        self.stage = stage
        self.event_kind = event_kind


class ConfigurationError(LoopWatchError):
    """Raised when an SLA budget or engine setting is missing or invalid."""

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class ValidationError(LoopWatchError):
    """Raised when an ingestion payload is malformed."""

    def __init__(self, message: str, field: Optional[str] = None, value: Any = None) -> None:
        super().__init__(message)
        self.field = field
        self.value = value
