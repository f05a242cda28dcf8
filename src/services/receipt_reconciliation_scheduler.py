from __future__ import annotations

import logging
import threading

from src.config import settings
from src.notifications.reconciler import ReceiptReconciler
from src.utils.time import Clock, SystemClock

logger = logging.getLogger(__name__)


class ReceiptReconciliationScheduler:
    def __init__(
        self,
        reconciler: ReceiptReconciler,
        interval_minutes: int | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.reconciler = reconciler
        minutes = settings.receipt_check_interval_minutes if interval_minutes is None else interval_minutes
        self.interval_seconds = max(60, minutes * 60)
        self.clock = clock or SystemClock()
        self._next_run = self.clock.monotonic() + self.interval_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._start_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self) -> None:
        if not settings.receipt_scheduler_enabled:
            return
        with self._start_lock:
            if self.running:
                return
            self._stop_event.clear()
            self._next_run = self.clock.monotonic()
            self._thread = threading.Thread(
                target=self._run_loop,
                name="push-receipt-reconciliation",
                daemon=True,
            )
            self._thread.start()
        logger.info("Push receipt reconciliation started", extra={"interval_seconds": self.interval_seconds})

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5)

    def run_due(self) -> bool:
        if self.clock.monotonic() < self._next_run:
            return False
        self._next_run = self.clock.monotonic() + self.interval_seconds
        self._run_once()
        return True

    def _seconds_until_due(self) -> float:
        return max(0.0, self._next_run - self.clock.monotonic())

    def _run_loop(self) -> None:
        while not self._stop_event.wait(self._seconds_until_due()):
            self.run_due()

    def _run_once(self) -> None:
        try:
            self.reconciler.run_once()
        except Exception as exc:
            logger.exception("Push receipt reconciliation failed", extra={"error": str(exc)})
