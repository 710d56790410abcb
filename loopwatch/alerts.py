"""
loopwatch Alert Dispatcher - turns SLA breaches into alert records.

Alerts are an audit trail: they are created once per loop and alert type,
later only marked resolved, and never deleted. Delivery to people or chat
channels goes through an injected :class:`Notifier`, called from a daemon
worker thread so a slow notifier never holds up loop processing.
"""

import logging
import queue
import threading
import uuid
from typing import Callable, Iterable, Optional, Protocol

from .models import (
    Alert,
    AlertType,
    BrokenReason,
    Loop,
    alert_type_for,
    utc_now,
)
from .policy import SLAPolicy
from .storage import LoopStore

logger = logging.getLogger("loopwatch.alerts")

DEFAULT_QUEUE_SIZE = 1000

_STOP = object()


class Notifier(Protocol):
    """Receives each newly created alert. Fire-and-forget."""

    def notify(self, alert: Alert) -> None: ...


class AlertDispatcher:
    """
    Creates, resolves and lists loop alerts.

    Example:
        ```python
        dispatcher = AlertDispatcher(store, SLAPolicy.default(), notifier=LoggingNotifier())
        alert = dispatcher.on_breach(loop, BrokenReason.REPLY_OVERDUE)
        dispatcher.on_resolve(loop.loop_id)
        dispatcher.close()
        ```

    New alerts wait in a bounded queue for the notifier; when the queue is
    full the notification is dropped and logged. The alert itself is
    always stored.
    """

    def __init__(
        self,
        store: LoopStore,
        policy: SLAPolicy,
        notifier: Optional[Notifier] = None,
        clock: Callable = utc_now,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ):
        self._store = store
        self._policy = policy
        self._notifier = notifier
        self._clock = clock
        self._queue: queue.Queue = queue.Queue(maxsize=queue_size)
        self._worker: Optional[threading.Thread] = None
        self._worker_lock = threading.Lock()

    @property
    def notifier(self) -> Optional[Notifier]:
        return self._notifier

    def on_breach(self, loop: Loop, reason: BrokenReason) -> Optional[Alert]:
        """
        Record an alert for a breached or broken loop.

        Idempotent per ``(loop_id, reason)``: a repeat breach returns the
        alert already on file and does not notify again. Never raises; a
        store failure is logged and ``None`` is returned.
        """
        return self._raise(loop, alert_type_for(reason), loop.escalated_to)

    def on_escalate(self, loop: Loop, target: str, note: Optional[str] = None) -> Optional[Alert]:
        """Record an ``escalated`` alert naming ``target``.

        Same guarantees as :meth:`on_breach`.
        """
        return self._raise(loop, AlertType.ESCALATED, target, note)

    def on_resolve(
        self, loop_id: str, alert_types: Optional[Iterable[AlertType]] = None
    ) -> list[Alert]:
        """Mark open alerts of a loop resolved (all, or only ``alert_types``)."""
        resolved = self._store.resolve_alerts(loop_id, self._clock(), alert_types)
        if resolved:
            logger.info(f"Resolved {len(resolved)} alert(s) for loop {loop_id}")
        return resolved

    def list_alerts(self, resolved: Optional[bool] = None) -> list[Alert]:
        return self._store.list_alerts(resolved=resolved)

    # ==================== Notification worker ====================

    def flush(self) -> None:
        """Block until every queued alert has been handed to the notifier."""
        self._queue.join()

    def close(self, timeout: float = 5.0) -> None:
        """Deliver what is queued, then stop the worker thread.

        A later alert starts a new worker.
        """
        with self._worker_lock:
            worker, self._worker = self._worker, None
            if worker is None or not worker.is_alive():
                return
            try:
                self._queue.put(_STOP, timeout=timeout)
            except queue.Full:
                logger.warning("Notifier queue still full; worker not stopped")
                return
        worker.join(timeout=timeout)
        if worker.is_alive():
            logger.warning(f"Notifier worker still busy after {timeout}s; leaving it running")

    def _raise(
        self,
        loop: Loop,
        alert_type: AlertType,
        escalated_to: Optional[str],
        note: Optional[str] = None,
    ) -> Optional[Alert]:
        try:
            severity = self._policy.severity_for(alert_type)
            message = self._store.get(loop.origin_message_id)

            alert = Alert(
                alert_id=str(uuid.uuid4()),
                loop_id=loop.loop_id,
                alert_type=alert_type,
                severity=severity,
                sent_at=message.sent_at if message else loop.started_at,
                from_agent=loop.from_agent,
                to_agent=loop.to_agent,
                message_status_label=message.status.value if message else "unknown",
                created_at=self._clock(),
                escalated_to=escalated_to,
                note=note or None,
            )
            stored, created = self._store.add_alert_if_absent(alert)
        except Exception as e:
            logger.exception(
                f"Failed to record {alert_type.value} alert for loop {loop.loop_id}: {e}"
            )
            return None

        if created:
            logger.info(
                "Alert %s raised for loop %s (%s -> %s, severity=%s, escalated_to=%s)",
                stored.alert_type.value,
                stored.loop_id,
                stored.from_agent,
                stored.to_agent,
                stored.severity.value,
                stored.escalated_to,
            )
            self._enqueue(stored)
        return stored

    def _enqueue(self, alert: Alert) -> None:
        if self._notifier is None:
            return
        self._ensure_worker()
        try:
            self._queue.put_nowait(alert)
        except queue.Full:
            logger.warning(f"Notifier queue full; alert {alert.alert_id} not sent")

    def _ensure_worker(self) -> None:
        with self._worker_lock:
            if self._worker is not None and self._worker.is_alive():
                return
            self._worker = threading.Thread(
                target=self._drain, name="loopwatch-notifier", daemon=True
            )
            self._worker.start()

    def _drain(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._notify(item)
            finally:
                self._queue.task_done()

    def _notify(self, alert: Alert) -> None:
        try:
            self._notifier.notify(alert)
        except Exception as e:
            logger.exception(f"Notifier failed for alert {alert.alert_id}: {e}")
