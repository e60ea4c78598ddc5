"""Library: one storage root wired to its index, writer, indexer and sync service."""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import TYPE_CHECKING

from memorylane.db import IndexStore
from memorylane.indexer import Indexer
from memorylane.storage import FileStorage
from memorylane.sync import SyncService
from memorylane.writer import Writer

if TYPE_CHECKING:
    from memorylane.config import LibraryConfig
    from memorylane.indexer import IndexResult

logger = logging.getLogger("memorylane.library")


class Library:
    """Owns the components for one storage root. Build with Library.open(cfg)."""

    def __init__(self, cfg: LibraryConfig, storage: FileStorage, store: IndexStore) -> None:
        self.cfg = cfg
        self.storage = storage
        self.store = store
        self.indexer = Indexer(storage, store)
        self.writer = Writer(storage, store)
        self.sync = SyncService(storage, store, self.indexer, debounce_ms=cfg.sync.debounce_ms)
        self.startup_result: IndexResult | None = None

    @classmethod
    def open(cls, cfg: LibraryConfig) -> Library:
        """Load the index snapshot, rebuilding from the folders when it is missing or outdated."""
        storage = FileStorage(cfg.root, cfg.index_file)
        if cfg.root is None:
            # Unconfigured: every file-touching call raises StorageNotConfiguredError
            return cls(cfg, storage, IndexStore())

        blob = storage.read_index_blob()
        store: IndexStore | None = None
        if blob:
            try:
                store = IndexStore.from_blob(blob, persist=storage.write_index_blob)
            except sqlite3.DatabaseError:
                logger.warning("index snapshot %s is unreadable; rebuilding", cfg.index_path)
        library = cls(cfg, storage, store or IndexStore(persist=storage.write_index_blob))

        if store is None or library.indexer.needs_full_rebuild():
            library.startup_result = library.indexer.rebuild_full_index()
        if library.store.get_meta("categories") is None:
            library.set_categories(cfg.categories)
        return library

    def close(self) -> None:
        self.sync.cancel()
        self.store.close()

    def __enter__(self) -> Library:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Categories
    # ------------------------------------------------------------------

    def get_categories(self) -> list[str]:
        raw = self.store.get_meta("categories")
        if raw is None:
            return list(self.cfg.categories)
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("ignoring malformed categories in index meta")
            return list(self.cfg.categories)
        return [str(c) for c in value] if isinstance(value, list) else list(self.cfg.categories)

    def set_categories(self, categories: list[str]) -> None:
        self.store.set_meta("categories", json.dumps(categories))
        self.store.flush()
