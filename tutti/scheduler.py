from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from tutti.config_manager import ConfigManager
from tutti.sync_engine import SyncEngine

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Drives full and diff syncs from one background thread.

    Full syncs run at startup, every ``full_sync_interval_seconds`` and on
    ``trigger_manual``; diff syncs run every ``diff_interval_seconds``.
    Intervals are re-read from config on every tick.
    """

    def __init__(
        self,
        sync_engine: SyncEngine,
        config_manager: ConfigManager,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self.monotonic = monotonic
        self._worker: Optional[threading.Thread] = None
        self._stopping = threading.Event()
        self._wakeup = threading.Event()
        self._last_full = 0.0
        self._last_diff = 0.0

    @property
    def running(self) -> bool:
        return bool(self._worker and self._worker.is_alive())

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._worker = threading.Thread(target=self._run, name="tutti-scheduler", daemon=True)
        self._worker.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stopping.set()
        self._wakeup.set()
        if self._worker:
            self._worker.join(timeout=timeout)
            self._worker = None

    def trigger_manual(self) -> None:
        self._wakeup.set()

    def seconds_until_due(self) -> float:
        sync_config = self.config_manager.load().sync
        next_full = self._last_full + sync_config.full_sync_interval_seconds
        next_diff = self._last_diff + sync_config.diff_interval_seconds
        return max(1.0, min(next_full, next_diff) - self.monotonic())

    def tick(self, manual: bool = False) -> list[str]:
        """Run whatever is due now and return the job names that ran."""
        sync_config = self.config_manager.load().sync
        now = self.monotonic()
        ran: list[str] = []
        if manual or now >= self._last_full + sync_config.full_sync_interval_seconds:
            outcome = self.sync_engine.sync_all(trigger="manual" if manual else "scheduled")
            logger.info("full sync: %s succeeded, %s failed", outcome.succeeded, outcome.failed)
            self._last_full = now
            ran.append("full")
        if now >= self._last_diff + sync_config.diff_interval_seconds:
            result = self.sync_engine.scheduled_diff_sync()
            logger.debug("diff sync ran=%s reason=%s", result.ran, result.reason)
            self._last_diff = now
            ran.append("diff")
        return ran

    def _run(self) -> None:
        self.sync_engine.sync_all(trigger="startup")
        self._last_full = self._last_diff = self.monotonic()
        while not self._stopping.is_set():
            manual = self._wakeup.wait(timeout=self.seconds_until_due())
            self._wakeup.clear()
            if self._stopping.is_set():
                break
            try:
                self.tick(manual=manual)
            except Exception:
                logger.exception("scheduled sync crashed; retrying on the next tick")
