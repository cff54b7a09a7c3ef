from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Optional

from calmirror.config_manager import ConfigManager
from calmirror.sync_engine import SyncEngine


logger = logging.getLogger(__name__)


@dataclass
class PendingRequests:
    reset: bool = False
    sweep: bool = False
    batch: bool = False


class SyncScheduler:
    """Periodic trigger for the engine.

    All passes and progress resets run on this one thread, so they never
    overlap. Requests from other threads only set flags and wake the loop.
    """

    def __init__(self, sync_engine: SyncEngine, config_manager: ConfigManager) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._pending_lock = threading.Lock()
        self._pending = PendingRequests()

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="calmirror-sync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._wake_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def _request(self, name: str) -> None:
        with self._pending_lock:
            setattr(self._pending, name, True)
        self._wake_event.set()

    def trigger_batch(self) -> None:
        self._request("batch")

    def trigger_full_sweep(self) -> None:
        self._request("sweep")

    def trigger_reset(self) -> None:
        self._request("reset")

    def _take_requests(self) -> PendingRequests:
        with self._pending_lock:
            pending, self._pending = self._pending, PendingRequests()
        return pending

    def run_pending(self, timed_out: bool) -> None:
        pending = self._take_requests()
        # The reset goes first so a batch queued with it starts from the start date.
        if pending.reset:
            self.sync_engine.reset_progress()
        if pending.sweep:
            result = self.sync_engine.run_full_sweep(trigger="manual")
            logger.info("Full sweep finished: %s", result.message)
        if pending.batch:
            result = self.sync_engine.run_batch(trigger="manual")
            logger.info("Manual batch finished: %s", result.message)
        elif timed_out:
            result = self.sync_engine.run_batch(trigger="scheduled")
            logger.info("Scheduled batch finished: %s", result.message)

    def _loop(self) -> None:
        # One batch at startup so progress starts moving without waiting an interval.
        self.sync_engine.run_batch(trigger="startup")

        while not self._stop_event.is_set():
            config = self.config_manager.load()
            interval_seconds = max(30, int(config.sync.interval_seconds))
            woken = self._wake_event.wait(timeout=interval_seconds)
            self._wake_event.clear()
            if self._stop_event.is_set():
                break
            self.run_pending(timed_out=not woken)
