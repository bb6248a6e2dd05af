"""
Timer-driven scheduling for scans, retries and workflow delays.

A delay or a retry backoff is a scheduled continuation on its own timer
thread, so one suspended execution never holds up another.
"""
import threading
from typing import Any, Callable, Optional, Protocol, Set

import structlog

logger = structlog.get_logger(__name__)


class ScheduledCall:
    """Handle returned by the scheduler. cancel() is safe to call more than once."""

    def __init__(self, name: Optional[str] = None):
        self.name = name
        self.cancelled = False
        self._timer: Optional[threading.Timer] = None

    def cancel(self) -> None:
        self.cancelled = True
        if self._timer is not None:
            self._timer.cancel()


class Scheduler(Protocol):
    def call_later(self, delay: float, fn: Callable[..., Any], *args: Any) -> ScheduledCall: ...

    def every(self, interval: float, fn: Callable[[], Any], name: str) -> ScheduledCall: ...

    def shutdown(self) -> None: ...


class ThreadingScheduler:
    """Scheduler backed by daemon threading.Timer instances."""

    def __init__(self):
        self._lock = threading.Lock()
        self._pending: Set[threading.Timer] = set()
        self._stopped = False

    def call_later(self, delay: float, fn: Callable[..., Any], *args: Any) -> ScheduledCall:
        handle = ScheduledCall(getattr(fn, "__name__", None))
        self._arm(handle, max(delay, 0.0), lambda: fn(*args))
        return handle

    def every(self, interval: float, fn: Callable[[], Any], name: str) -> ScheduledCall:
        """Run fn every `interval` seconds until the handle is cancelled."""
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        handle = ScheduledCall(name)

        def tick() -> None:
            try:
                fn()
            finally:
                if not handle.cancelled:
                    self._arm(handle, interval, tick)

        self._arm(handle, interval, tick)
        logger.info("periodic_job_registered", job=name, interval_seconds=interval)
        return handle

    def shutdown(self) -> None:
        with self._lock:
            self._stopped = True
            timers = list(self._pending)
            self._pending.clear()
        for timer in timers:
            timer.cancel()

    def _arm(self, handle: ScheduledCall, delay: float, body: Callable[[], Any]) -> None:
        def run() -> None:
            with self._lock:
                self._pending.discard(timer)
            if handle.cancelled:
                return
            try:
                body()
            except Exception:
                logger.exception("scheduled_call_failed", job=handle.name)

        timer = threading.Timer(delay, run)
        timer.daemon = True
        with self._lock:
            if self._stopped:
                return
            self._pending.add(timer)
        handle._timer = timer
        timer.start()
