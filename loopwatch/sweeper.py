"""
loopwatch Sweeper - periodic timeout evaluation on a background thread.
"""

import logging
import threading
from typing import Any, Callable, Optional

logger = logging.getLogger("loopwatch.sweeper")


class LoopSweeper:
    """
    Calls ``sweep()`` every ``interval`` seconds until stopped.

    Usage:
        ```python
        with LoopSweeper(engine.evaluate_timeouts, interval=60):
            serve_forever()
        ```
    """

    def __init__(
        self,
        sweep: Callable[[], Any],
        interval: float = 60.0,
        error_callback: Optional[Callable[[Exception], None]] = None,
    ):
        self.sweep = sweep
        self.interval = interval
        self.error_callback = error_callback
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start sweeping in a daemon thread."""
        if self.running:
            return

        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="loopwatch-sweeper", daemon=True)
        self._thread.start()
        logger.info(f"Sweeper started (interval={self.interval}s)")

    def run_once(self) -> Any:
        """Run a single sweep; failures are logged, never raised."""
        try:
            return self.sweep()
        except Exception as e:
            logger.exception(f"Timeout sweep failed: {e}")
            if self.error_callback:
                self.error_callback(e)
            return None

    def _run(self) -> None:
        while not self._stop.is_set():
            self.run_once()
            self._stop.wait(self.interval)

    def stop(self) -> None:
        """Stop sweeping and wait for the thread to exit."""
        self._stop.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5.0)
        self._thread = None

    def __enter__(self) -> "LoopSweeper":
        self.start()
        return self

    def __exit__(self, *args: Any) -> None:
        self.stop()
