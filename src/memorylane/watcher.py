"""Watcher: turns file-system activity under the storage root into index syncs.

    memorylane watch

On IN_CLOSE_WRITE / IN_MOVED_TO / IN_DELETE / IN_CREATE anywhere below the root:
    - schedules a debounced sync (bursts coalesce into one full check)

Also runs a periodic sync_on_focus() whenever should_auto_sync() allows, as
a safety net for missed inotify events.

Falls back to pure polling if inotify is unavailable (macOS, Docker).
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from memorylane.errors import MemoryLaneError
from memorylane.paths import is_year_folder

if TYPE_CHECKING:
    from pathlib import Path

    from memorylane.library import Library

logger = logging.getLogger("memorylane.watcher")

_INOTIFY_TIMEOUT_MS = 5000


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

def _relevant(name: str) -> bool:
    """Dot-files, tmp files and the index snapshot never trigger a sync."""
    return bool(name) and not name.startswith(".") and not name.endswith(".tmp")


def _periodic_sync(library: Library) -> None:
    if not library.sync.should_auto_sync(library.cfg.sync.auto_sync_threshold_ms):
        return
    try:
        result = library.sync.sync_on_focus()
        if result.has_changes:
            logger.info("periodic sync: index rebuilt")
    except MemoryLaneError:
        logger.exception("periodic sync failed")


# ---------------------------------------------------------------------------
# inotify watcher
# ---------------------------------------------------------------------------

def _watch_tree(inotify: object, root: Path, mask: int, watched: dict[int, Path]) -> None:
    """Add watches for root, its year folders and their event folders."""
    wd = inotify.add_watch(str(root), mask)  # type: ignore[attr-defined]
    watched[wd] = root
    for year in root.iterdir():
        if not year.is_dir() or not is_year_folder(year.name):
            continue
        for directory in (year, *(d for d in year.iterdir() if d.is_dir() and not d.name.startswith("."))):
            try:
                wd = inotify.add_watch(str(directory), mask)  # type: ignore[attr-defined]
                watched[wd] = directory
            except OSError:
                logger.debug("cannot watch %s", directory)


def watch_inotify(library: Library) -> None:
    """Watch using inotify_simple (Linux). Blocks forever."""
    import inotify_simple  # type: ignore[import]

    root = library.storage.require_root()
    inotify = inotify_simple.INotify()
    flags = inotify_simple.flags  # type: ignore[attr-defined]
    mask = flags.CLOSE_WRITE | flags.MOVED_TO | flags.MOVED_FROM | flags.CREATE | flags.DELETE

    watched: dict[int, Path] = {}
    _watch_tree(inotify, root, mask, watched)
    logger.info("inotify watching %s (%d directories)", root, len(watched))

    while True:
        triggered = False
        for event in inotify.read(timeout=_INOTIFY_TIMEOUT_MS):
            directory = watched.get(event.wd)
            if directory is None or not _relevant(event.name):
                continue
            changed = directory / event.name
            if event.mask & flags.CREATE and changed.is_dir():
                try:
                    new_wd = inotify.add_watch(str(changed), mask)
                    watched[new_wd] = changed
                except OSError:
                    logger.debug("cannot watch %s", changed)
            if changed.name == library.cfg.index_file:
                continue
            triggered = True

        if triggered:
            library.sync.debounced_sync()
        _periodic_sync(library)


# ---------------------------------------------------------------------------
# Polling fallback
# ---------------------------------------------------------------------------

def watch_poll(library: Library, interval: float | None = None) -> None:
    """Polling fallback for macOS/Docker: a full drift check every interval seconds."""
    interval = interval if interval is not None else library.cfg.sync.poll_interval
    logger.info("polling %s interval=%.1fs", library.storage.root, interval)
    while True:
        try:
            library.sync.sync_on_focus()
        except MemoryLaneError:
            logger.exception("poll sync failed")
        time.sleep(interval)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def run(library: Library) -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(message)s")
    library.storage.require_root()
    logger.info("startup: checking for changes")
    library.sync.sync_on_focus()
    try:
        watch_inotify(library)
    except ImportError:
        logger.warning("inotify_simple not available, falling back to polling")
        watch_poll(library)
