from __future__ import annotations

import asyncio
import logging
import threading
from typing import Optional

from homesync.config_manager import ConfigManager
from homesync.engine import CalendarEngine

logger = logging.getLogger(__name__)


class SyncScheduler:
    def __init__(self, engine: CalendarEngine, config_manager: ConfigManager) -> None:
        self.engine = engine
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="homesync-sync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def run_once(self, trigger: str) -> None:
        try:
            results = asyncio.run(self.engine.sync_due_sources(trigger=trigger))
        except Exception:
            # A broken tick must not kill the scheduler thread.
            logger.exception("Scheduled sync tick failed (trigger=%s)", trigger)
            return
        failed = sum(1 for result in results if result.status != "success")
        logger.info("Sync tick %s: %d sources synced, %d failed", trigger, len(results), failed)

    def _loop(self) -> None:
        # Run one sync at startup so sources are fresh quickly.
        self.run_once(trigger="startup")

        while not self._stop_event.is_set():
            config = self.config_manager.load()
            interval_seconds = max(30, int(config.sync.interval_seconds))
            manual = self._manual_trigger_event.wait(timeout=interval_seconds)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            self.run_once(trigger="manual" if manual else "scheduled")
