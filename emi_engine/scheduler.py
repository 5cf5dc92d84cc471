"""
Periodic overdue sweeper

Runs the accrual engine on a background daemon thread. A failed sweep is
logged and the next tick retries; sweeps are idempotent, so an interrupted
run is simply finished by the following one.
"""

import threading
from typing import Optional

from .accrual import OverdueAccrualEngine
from .logging_config import get_logger


logger = get_logger("emi_engine.scheduler")


class OverdueSweeper:
    """Background trigger for OverdueAccrualEngine.process_overdues"""

    def __init__(self, accrual_engine: OverdueAccrualEngine, interval_seconds: float = 3600.0):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.accrual_engine = accrual_engine
        self.interval_seconds = interval_seconds
        self.runs = 0
        self.failures = 0
        self.last_processed: Optional[int] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> Optional[int]:
        """Run one sweep, returning the processed count or None on failure"""
        self.runs += 1
        try:
            self.last_processed = self.accrual_engine.process_overdues()
            return self.last_processed
        except Exception:
            self.failures += 1
            logger.exception("Overdue sweep failed, retrying on next tick")
            return None

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            self.run_once()
            self._stop_event.wait(self.interval_seconds)

    def start(self) -> None:
        """Start sweeping; the first sweep runs immediately"""
        if self.is_running():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="overdue-sweeper")
        self._thread.daemon = True
        self._thread.start()
        logger.info(f"Overdue sweeper started, interval {self.interval_seconds}s")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop sweeping and wait for the current run to finish"""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
            logger.info("Overdue sweeper stopped")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until stopped (or timeout); True if stopped"""
        return self._stop_event.wait(timeout)

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
