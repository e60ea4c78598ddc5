"""Photo journal store: markdown folders as source of truth, SQLite as derived index.

Layout:
    <root>/
        memorylane.toml
        index.db                    # exported SQLite snapshot (fully reconstructable)
        2024/
            _year.md                # optional; the folder name is enough
            2024-03-15 Verjaardag/
                _event.md           # frontmatter: id, type, startAt, title, ...
                _canvas.json        # {"version": 1, "items": [{"itemSlug": ..., "x": ...}]}
                taart.md            # item: frontmatter + body
                taart.jpg           # media, paired with taart.md by stem

Writes go to the files first, then the index, then the snapshot.  Edits made
outside the app are picked up by SyncService, which rebuilds the whole index
whenever a tracked file was added, changed or removed.
"""

from memorylane.config import LibraryConfig, init_config, load_config
from memorylane.db import IndexStore
from memorylane.library import Library
from memorylane.models import CanvasItem, Event, Item, Location

__all__ = [
    "CanvasItem",
    "Event",
    "IndexStore",
    "Item",
    "Library",
    "LibraryConfig",
    "Location",
    "init_config",
    "load_config",
]
