"""
Periodic monitor sweep.

Runs ``AnomalyMonitor.monitor_tick`` on a daemon thread every ``interval``
seconds (one tick immediately on start). ``stop()`` cancels the loop
without waiting out the interval. Ticks are single-flight inside the
monitor, so a manual tick racing the scheduled one is skipped, not doubled.

Usage:
    scheduler = MonitorScheduler(monitor, interval=settings.monitor_interval)
    scheduler.start()
    ...
    scheduler.stop()
"""

import logging
import threading
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 300.0


class MonitorScheduler:

    def __init__(self, monitor, interval: float = DEFAULT_INTERVAL_SECONDS, ledger=None):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.monitor = monitor
        self.interval = interval
        self.ledger = ledger
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        """Start the background loop. Returns False if it is already running."""
        if self.running:
            return False
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="secnet-monitor", daemon=True)
        self._thread.start()
        return True

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        self._thread = None

    def run_once(self):
        """One sweep: persist overdue expiries (when a ledger is attached), then analyze profiles."""
        if self.ledger is not None:
            self.ledger.expire_overdue()
        return self.monitor.monitor_tick()

    def _run_loop(self) -> None:
        logger.info(f"Anomaly monitor started (interval: {self.interval}s)")
        try:
            while not self._stop_event.is_set():
                try:
                    self.run_once()
                except Exception:
                    logger.exception("Monitor sweep failed")
                self._stop_event.wait(timeout=self.interval)
        finally:
            logger.info("Anomaly monitor stopped")
