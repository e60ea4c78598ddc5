"""Drift detection between the storage tree and the index.

sync_on_focus() compares every indexable file (path + mtime) with the
file_index table.  Any new, newer or vanished file triggers a full rebuild;
no targeted patching is attempted.  Media files are not tracked.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from memorylane.errors import MemoryLaneError, StorageNotConfiguredError
from memorylane.paths import (
    CANVAS_FILE,
    EVENT_FILE,
    YEAR_FILE,
    is_markdown_file,
    is_special_file,
    is_year_folder,
)
from memorylane.storage import join

if TYPE_CHECKING:
    from memorylane.db import IndexStore
    from memorylane.indexer import Indexer
    from memorylane.storage import FileStorage

logger = logging.getLogger("memorylane.sync")

DEBOUNCE_MS = 500
AUTO_SYNC_THRESHOLD_MS = 300_000


@dataclass
class SyncResult:
    added: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.modified or self.deleted)


class SyncService:
    """Detects external edits and rebuilds the index when the tree has drifted."""

    def __init__(
        self,
        storage: FileStorage,
        store: IndexStore,
        indexer: Indexer,
        debounce_ms: int = DEBOUNCE_MS,
    ) -> None:
        self.storage = storage
        self.store = store
        self.indexer = indexer
        self.debounce_ms = debounce_ms
        self._last_sync: float | None = None   # time.monotonic(), process lifetime only
        self._timer: threading.Timer | None = None
        self._pending: list[Future[SyncResult]] = []
        self._timer_lock = threading.Lock()
        self._sync_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Scan
    # ------------------------------------------------------------------

    def _current_files(self) -> dict[str, int]:
        """path -> mtime_ms for every _year.md, _event.md, _canvas.json and item markdown."""
        files: dict[str, int] = {}

        def add(path: str) -> None:
            stats = self.storage.stat(path)
            if stats is not None:
                files[path] = stats.mtime_ms

        for year in self.storage.list_directories():
            if not is_year_folder(year):
                continue
            add(join(year, YEAR_FILE))
            for name in self.storage.list_directories(year):
                if name.startswith("."):
                    continue
                folder = join(year, name)
                for entry in self.storage.list_entries(folder):
                    if entry.is_dir:
                        continue
                    if entry.name in (EVENT_FILE, CANVAS_FILE):
                        add(entry.path)
                    elif is_markdown_file(entry.name) and not is_special_file(entry.name):
                        add(entry.path)
        return files

    def detect_changes(self) -> SyncResult:
        """Compare the tree against file_index without touching the index."""
        result = SyncResult()
        current = self._current_files()
        indexed = {e.path: e for e in self.store.get_all_file_entries()}

        for path, mtime_ms in current.items():
            entry = indexed.get(path)
            if entry is None:
                result.added.append(path)
            elif mtime_ms > entry.mtime_ms:
                result.modified.append(path)
        result.deleted.extend(path for path in indexed if path not in current)
        return result

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def sync_on_focus(self) -> SyncResult:
        """Rebuild the index if any indexable file was added, changed or removed."""
        if self.storage.root is None:
            raise StorageNotConfiguredError

        with self._sync_lock:
            result = SyncResult()
            try:
                result = self.detect_changes()
                if result.has_changes:
                    logger.info(
                        "sync: %d added, %d modified, %d deleted; rebuilding",
                        len(result.added), len(result.modified), len(result.deleted),
                    )
                    rebuilt = self.indexer.rebuild_full_index()
                    result.errors.extend(f"{e.path}: {e.error}" for e in rebuilt.errors)
                else:
                    logger.info("sync: no changes")
            except (OSError, MemoryLaneError) as exc:
                logger.exception("sync failed")
                result.errors.append(str(exc))
            self._last_sync = time.monotonic()
        return result

    def force_full_rebuild(self) -> SyncResult:
        """Rebuild unconditionally; the result lists nothing as changed."""
        if self.storage.root is None:
            raise StorageNotConfiguredError
        with self._sync_lock:
            result = SyncResult()
            rebuilt = self.indexer.rebuild_full_index()
            result.errors.extend(f"{e.path}: {e.error}" for e in rebuilt.errors)
            self._last_sync = time.monotonic()
        logger.info("sync: forced full rebuild")
        return result

    def debounced_sync(self) -> Future[SyncResult]:
        """Schedule sync_on_focus after a quiet period; every call inside it shares one run."""
        future: Future[SyncResult] = Future()
        with self._timer_lock:
            self._pending.append(future)
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.debounce_ms / 1000, self._fire)
            self._timer.daemon = True
            self._timer.start()
        return future

    def _fire(self) -> None:
        with self._timer_lock:
            waiting, self._pending = self._pending, []
            self._timer = None
        try:
            result = self.sync_on_focus()
        except Exception as exc:
            logger.exception("debounced sync failed")
            for future in waiting:
                future.set_exception(exc)
            return
        for future in waiting:
            future.set_result(result)

    def cancel(self) -> None:
        """Drop a scheduled debounced sync; its futures are cancelled."""
        with self._timer_lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            waiting, self._pending = self._pending, []
        for future in waiting:
            future.cancel()

    # ------------------------------------------------------------------
    # Timing
    # ------------------------------------------------------------------

    def time_since_last_sync_ms(self) -> int:
        """Milliseconds since the last sync in this process, or -1 if none ran."""
        if self._last_sync is None:
            return -1
        return int((time.monotonic() - self._last_sync) * 1000)

    def should_auto_sync(self, threshold_ms: int = AUTO_SYNC_THRESHOLD_MS) -> bool:
        elapsed = self.time_since_last_sync_ms()
        return elapsed < 0 or elapsed >= threshold_ms
