"""
Engine configuration for loopwatch.

Settings are read once at startup; changing them requires a restart.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Optional

from .exceptions import ConfigurationError
from .policy import SLAPolicy


@dataclass
class EngineConfig:
    """Configuration for a :class:`loopwatch.engine.LoopEngine`."""

    # None keeps everything in memory.
    database_url: Optional[str] = None

    policy_path: Optional[str] = None

    reference_timezone: str = "UTC"

    sweep_interval_seconds: float = 60.0

    system_agents: set = field(default_factory=lambda: {"system"})

    log_level: str = "info"

    def __post_init__(self):
        if self.sweep_interval_seconds <= 0:
            raise ConfigurationError(
                "sweep_interval_seconds must be positive", field="sweep_interval_seconds"
            )
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise ConfigurationError(
                f"Unknown log level: {self.log_level!r}", field="log_level"
            )

    def load_policy(self) -> SLAPolicy:
        """The configured SLA policy, or the defaults when no file is set."""
        if self.policy_path:
            return SLAPolicy.from_yaml(self.policy_path)
        return SLAPolicy.default()

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Create configuration from environment variables."""
        interval = os.environ.get("LOOPWATCH_SWEEP_INTERVAL", "60")
        try:
            sweep_interval = float(interval)
        except ValueError:
            raise ConfigurationError(
                f"LOOPWATCH_SWEEP_INTERVAL must be a number, got {interval!r}",
                field="sweep_interval_seconds",
            )

        system_agents = os.environ.get("LOOPWATCH_SYSTEM_AGENTS")
        return cls(
            database_url=os.environ.get("LOOPWATCH_DATABASE_URL") or None,
            policy_path=os.environ.get("LOOPWATCH_POLICY_PATH") or None,
            reference_timezone=os.environ.get("LOOPWATCH_TIMEZONE", "UTC"),
            sweep_interval_seconds=sweep_interval,
            system_agents=(
                {a.strip().lower() for a in system_agents.split(",") if a.strip()}
                if system_agents
                else {"system"}
            ),
            log_level=os.environ.get("LOOPWATCH_LOG_LEVEL", "info"),
        )


def configure_logging(level: str = "info") -> None:
    """Attach a stream handler to the ``loopwatch`` logger at ``level``."""
    logger = logging.getLogger("loopwatch")
    logger.setLevel(level.upper())
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        logger.addHandler(handler)
