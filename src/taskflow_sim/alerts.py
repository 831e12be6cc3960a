"""In-process alert bus with history and duplicate suppression.

Alerts are discrete, immutable notifications produced at task transition
points (and by the store's system-level checks).  The bus keeps an
append-only history until it is explicitly cleared and fans every accepted
alert out to the current subscribers.

Duplicate suppression: an alert whose ``(severity, summary, detail)`` key
matches the immediately preceding accepted alert, and that arrives within
``dedup_window_ms`` of it, is dropped entirely (no delivery, no history).
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from loguru import logger

from .clock import Clock, SystemClock, now_ms
from .config import DEFAULT_DEDUP_WINDOW_MS


class AlertSeverity(str, Enum):
    SUCCESS = "success"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


@dataclass(frozen=True)
class AlertEvent:
    severity: AlertSeverity
    summary: str
    detail: Optional[str] = None
    task_id: Optional[str] = None
    ts: float = 0.0  # epoch ms

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.severity.value, self.summary, self.detail or "")


AlertListener = Callable[[AlertEvent], None]

_LOG_LEVELS = {
    AlertSeverity.SUCCESS: "SUCCESS",
    AlertSeverity.INFO: "INFO",
    AlertSeverity.WARN: "WARNING",
    AlertSeverity.ERROR: "ERROR",
}


class AlertBus:
    """Publish alerts to subscribers and keep an ordered history.

    Usage::

        bus = AlertBus(clock)
        unsubscribe = bus.subscribe(print)
        bus.warn("Task A blocked", "Exceeded 40ms", task_id="a")
    """

    def __init__(self, clock: Optional[Clock] = None, *, dedup_window_ms: float = DEFAULT_DEDUP_WINDOW_MS) -> None:
        self._clock = clock or SystemClock()
        self._dedup_window_ms = dedup_window_ms
        self._history: list[AlertEvent] = []
        self._listeners: list[AlertListener] = []
        self._last_ts = 0.0
        self._lock = threading.RLock()

    # -- publishing ---------------------------------------------------------

    def emit(
        self,
        severity: AlertSeverity,
        summary: str,
        detail: Optional[str] = None,
        task_id: Optional[str] = None,
        *,
        suppress_duplicates: bool = True,
    ) -> Optional[AlertEvent]:
        """Stamp and publish an alert.

        Returns the accepted event, or ``None`` when it was suppressed as a
        near duplicate of the previous one.
        """
        with self._lock:
            # Timestamps never go backwards, even if the wall clock does.
            ts = max(now_ms(self._clock), self._last_ts)
            event = AlertEvent(
                severity=AlertSeverity(severity),
                summary=summary,
                detail=detail,
                task_id=task_id,
                ts=ts,
            )
            if suppress_duplicates and self._is_duplicate(event):
                logger.debug("Suppressed duplicate alert {} {!r}", event.severity.value, summary)
                return None
            self._last_ts = ts
            self._history.append(event)
            listeners = list(self._listeners)

        logger.log(_LOG_LEVELS[event.severity], "[alert] {}{}", summary, f" ({detail})" if detail else "")
        for listener in listeners:
            self._safe_invoke(listener, event)
        return event

    def success(self, summary: str, detail: Optional[str] = None, task_id: Optional[str] = None) -> Optional[AlertEvent]:
        return self.emit(AlertSeverity.SUCCESS, summary, detail, task_id)

    def info(self, summary: str, detail: Optional[str] = None, task_id: Optional[str] = None) -> Optional[AlertEvent]:
        return self.emit(AlertSeverity.INFO, summary, detail, task_id)

    def warn(self, summary: str, detail: Optional[str] = None, task_id: Optional[str] = None) -> Optional[AlertEvent]:
        return self.emit(AlertSeverity.WARN, summary, detail, task_id)

    def error(self, summary: str, detail: Optional[str] = None, task_id: Optional[str] = None) -> Optional[AlertEvent]:
        return self.emit(AlertSeverity.ERROR, summary, detail, task_id)

    # -- subscriptions ------------------------------------------------------

    def subscribe(self, listener: AlertListener) -> Callable[[], None]:
        """Register a live listener; returns a callable that unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._listeners)

    # -- history ------------------------------------------------------------

    def history(self) -> list[AlertEvent]:
        with self._lock:
            return list(self._history)

    def clear_history(self) -> None:
        with self._lock:
            self._history.clear()

    # -- internals ----------------------------------------------------------

    def _is_duplicate(self, event: AlertEvent) -> bool:
        if not self._history:
            return False
        last = self._history[-1]
        return last.key == event.key and event.ts - last.ts < self._dedup_window_ms

    @staticmethod
    def _safe_invoke(listener: AlertListener, event: AlertEvent) -> None:
        try:
            listener(event)
        except Exception:
            logger.exception("Alert listener {} failed for {!r}", listener, event.summary)
