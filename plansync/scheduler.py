from __future__ import annotations

import logging
import threading
from typing import Optional

from plansync.config_manager import ConfigManager
from plansync.models import SyncResult
from plansync.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

_RECORDED_STATUSES = {"success", "skipped"}


class SyncScheduler:
    """Watches today's daily note and the calendar, and syncs when either side moved.

    Every ``interval_seconds`` the note's modification time is compared with the one
    left behind by the last sync, then the calendar is polled for changes. Manual
    triggers may name a document and are served before the next poll.
    """

    def __init__(self, sync_engine: SyncEngine, config_manager: ConfigManager) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()
        self._pending_lock = threading.Lock()
        self._pending_paths: list[Optional[str]] = []
        self._synced_mtimes: dict[str, float] = {}

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="plansync-scheduler", daemon=True)
        self._thread.start()
        logger.info("Sync scheduler started")

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_manual(self, path: Optional[str] = None) -> None:
        with self._pending_lock:
            if path not in self._pending_paths:
                self._pending_paths.append(path)
        self._manual_trigger_event.set()

    def drain_manual(self) -> list[SyncResult]:
        with self._pending_lock:
            paths, self._pending_paths = self._pending_paths, []
        return [self._run(path, "manual") for path in paths]

    def tick(self) -> Optional[SyncResult]:
        """Sync today's note if it was edited since the last sync or its day's events changed."""
        relative, mtime = self.sync_engine.document_state()
        if not relative or mtime is None:
            return None
        if self._synced_mtimes.get(relative) != mtime:
            return self._run(relative, "note-changed")
        if self.sync_engine.check_for_calendar_changes():
            return self._run(relative, "calendar-changed")
        return None

    def _run(self, path: Optional[str], trigger: str) -> SyncResult:
        result = self.sync_engine.run_once(path=path, trigger=trigger)
        if result.status in _RECORDED_STATUSES:
            # Our own write bumps the mtime; remember it so it does not count as an edit.
            relative, mtime = self.sync_engine.document_state(path)
            if relative and mtime is not None:
                self._synced_mtimes[relative] = mtime
        else:
            logger.info("Sync %s ended with status %s", trigger, result.status)
        return result

    def _loop(self) -> None:
        self._run(None, "startup")

        while not self._stop_event.is_set():
            config = self.config_manager.load()
            interval_seconds = max(30, int(config.sync.interval_seconds))
            manual = self._manual_trigger_event.wait(timeout=interval_seconds)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            try:
                if manual:
                    self.drain_manual()
                else:
                    self.tick()
            except Exception:
                logger.exception("Scheduled sync check failed")
