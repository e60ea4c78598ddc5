"""IndexStore: the SQLite index over the storage tree.

The index is a pure derived cache.  It lives in an in-memory connection,
is exported as a byte blob after each logical write (``flush``) and can be
thrown away and rebuilt from the folders at any time.

    store = IndexStore(persist=storage.write_index_blob)
    store.upsert_event(event)
    store.flush()

    store = IndexStore.from_blob(storage.read_index_blob(), persist=...)
"""

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import threading
from typing import TYPE_CHECKING, Any

from memorylane.errors import RebuildInProgressError
from memorylane.models import CanvasItem, Event, FileIndexEntry, Item, Location, TimelineEntry

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

logger = logging.getLogger("memorylane.db")

INDEX_VERSION = "2"

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS events (
        id TEXT PRIMARY KEY,
        type TEXT NOT NULL CHECK(type IN ('year', 'period', 'event', 'item')),
        title TEXT,
        description TEXT,
        featured_photo_id TEXT,
        featured_photo_slug TEXT,
        featured_photo_data TEXT,
        location_lat REAL,
        location_lng REAL,
        location_label TEXT,
        start_at TEXT NOT NULL,
        end_at TEXT,
        parent_id TEXT,
        cover_media_id TEXT,
        tags TEXT,              -- JSON array
        file_path TEXT,
        folder_path TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS items (
        id TEXT PRIMARY KEY,
        event_id TEXT NOT NULL,
        item_type TEXT NOT NULL CHECK(item_type IN ('text', 'photo', 'video', 'link', 'audio')),
        content TEXT NOT NULL,
        caption TEXT,
        happened_at TEXT,
        place_lat REAL,
        place_lng REAL,
        place_label TEXT,
        people TEXT,            -- JSON array
        tags TEXT,              -- JSON array
        category TEXT,
        url TEXT,
        body_text TEXT,
        slug TEXT,
        file_path TEXT,
        media_path TEXT
    );

    CREATE TABLE IF NOT EXISTS canvas_items (
        event_id TEXT NOT NULL,
        item_id TEXT NOT NULL,
        item_slug TEXT,
        x REAL NOT NULL DEFAULT 0,
        y REAL NOT NULL DEFAULT 0,
        scale REAL NOT NULL DEFAULT 1,
        rotation REAL NOT NULL DEFAULT 0,
        z_index INTEGER NOT NULL DEFAULT 0,
        text_scale REAL,
        PRIMARY KEY (event_id, item_id)
    );

    -- Drift detection for the sync service; media files are not tracked
    CREATE TABLE IF NOT EXISTS file_index (
        path TEXT PRIMARY KEY,
        type TEXT NOT NULL CHECK(type IN ('event', 'item', 'canvas', 'year')),
        mtime_ms INTEGER NOT NULL,
        size INTEGER NOT NULL,
        hash TEXT,
        last_indexed_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS meta (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    );
"""

# Created after _ADDED_COLUMNS so old snapshots have the indexed columns
_INDEXES = """
    CREATE INDEX IF NOT EXISTS idx_events_parent ON events(parent_id);
    CREATE INDEX IF NOT EXISTS idx_events_start ON events(start_at);
    CREATE INDEX IF NOT EXISTS idx_events_folder ON events(folder_path);
    CREATE INDEX IF NOT EXISTS idx_items_event ON items(event_id);
    CREATE INDEX IF NOT EXISTS idx_items_slug ON items(slug);
    CREATE INDEX IF NOT EXISTS idx_canvas_event ON canvas_items(event_id);
"""

# Columns added after the first snapshots were written; old blobs gain them on load.
_ADDED_COLUMNS: dict[str, list[tuple[str, str]]] = {
    "events": [
        ("description", "TEXT"),
        ("featured_photo_id", "TEXT"),
        ("featured_photo_slug", "TEXT"),
        ("featured_photo_data", "TEXT"),
        ("location_lat", "REAL"),
        ("location_lng", "REAL"),
        ("location_label", "TEXT"),
        ("tags", "TEXT"),
        ("file_path", "TEXT"),
        ("folder_path", "TEXT"),
    ],
    "items": [
        ("people", "TEXT"),
        ("tags", "TEXT"),
        ("category", "TEXT"),
        ("url", "TEXT"),
        ("body_text", "TEXT"),
        ("slug", "TEXT"),
        ("file_path", "TEXT"),
        ("media_path", "TEXT"),
    ],
    "canvas_items": [
        ("text_scale", "REAL"),
        ("item_slug", "TEXT"),
    ],
}

_EVENT_COLUMNS = (
    "id, type, title, description, featured_photo_id, featured_photo_slug, "
    "featured_photo_data, location_lat, location_lng, location_label, start_at, "
    "end_at, parent_id, cover_media_id, tags, file_path, folder_path, created_at, updated_at"
)
_ITEM_COLUMNS = (
    "id, event_id, item_type, content, caption, happened_at, place_lat, place_lng, "
    "place_label, people, tags, category, url, body_text, slug, file_path, media_path"
)
_CANVAS_COLUMNS = "event_id, item_id, item_slug, x, y, scale, rotation, z_index, text_scale"


def _json_list(value: str | None) -> list[str] | None:
    if not value:
        return None
    try:
        data = json.loads(value)
    except json.JSONDecodeError:
        return None
    return [str(v) for v in data] if isinstance(data, list) else None


def _dump_list(value: list[str] | None) -> str | None:
    return json.dumps(value) if value is not None else None


def _location(lat: float | None, lng: float | None, label: str | None) -> Location | None:
    if lat is None or lng is None:
        return None
    return Location(lat=lat, lng=lng, label=label)


def _row_to_event(row: sqlite3.Row) -> Event:
    return Event(
        id=row["id"],
        type=row["type"],
        title=row["title"],
        description=row["description"],
        featured_photo_id=row["featured_photo_id"],
        featured_photo_slug=row["featured_photo_slug"],
        featured_photo_data=row["featured_photo_data"],
        location=_location(row["location_lat"], row["location_lng"], row["location_label"]),
        start_at=row["start_at"],
        end_at=row["end_at"],
        parent_id=row["parent_id"],
        cover_media_id=row["cover_media_id"],
        tags=_json_list(row["tags"]),
        file_path=row["file_path"],
        folder_path=row["folder_path"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_item(row: sqlite3.Row) -> Item:
    return Item(
        id=row["id"],
        event_id=row["event_id"],
        item_type=row["item_type"],
        content=row["content"],
        caption=row["caption"],
        happened_at=row["happened_at"],
        place=_location(row["place_lat"], row["place_lng"], row["place_label"]),
        people=_json_list(row["people"]),
        tags=_json_list(row["tags"]),
        category=row["category"],
        url=row["url"],
        body_text=row["body_text"],
        slug=row["slug"],
        file_path=row["file_path"],
        media_path=row["media_path"],
    )


def _row_to_canvas(row: sqlite3.Row) -> CanvasItem:
    return CanvasItem(
        event_id=row["event_id"],
        item_id=row["item_id"],
        item_slug=row["item_slug"],
        x=row["x"],
        y=row["y"],
        scale=row["scale"],
        rotation=row["rotation"],
        z_index=row["z_index"],
        text_scale=row["text_scale"],
    )


def _new_connection() -> sqlite3.Connection:
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


class IndexStore:
    """Owned handle to the index database. Pass it in; there is no module-level instance."""

    def __init__(
        self,
        conn: sqlite3.Connection | None = None,
        persist: Callable[[bytes], None] | None = None,
    ) -> None:
        self.conn = conn or _new_connection()
        self.conn.row_factory = sqlite3.Row
        self.persist = persist
        self.lock = threading.RLock()
        self.durable = True
        self._rebuild_owner: int | None = None
        self.upgrade_schema()

    @classmethod
    def from_blob(cls, data: bytes, persist: Callable[[bytes], None] | None = None) -> IndexStore:
        """Load an exported snapshot. Raises sqlite3.DatabaseError if the blob is not a database."""
        conn = _new_connection()
        conn.deserialize(data)
        # Touch the schema so a garbage blob fails here rather than on first query
        conn.execute("SELECT count(*) FROM sqlite_master").fetchone()
        return cls(conn, persist)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def upgrade_schema(self) -> None:
        """Create missing tables and add missing columns. Idempotent; run on every load."""
        with self.lock:
            self.conn.executescript(_SCHEMA)
            for table, columns in _ADDED_COLUMNS.items():
                existing = {r["name"] for r in self.conn.execute(f"PRAGMA table_info({table})")}
                for name, decl in columns:
                    if name not in existing:
                        with contextlib.suppress(sqlite3.OperationalError):
                            self.conn.execute(f"ALTER TABLE {table} ADD COLUMN {name} {decl}")
            self.conn.executescript(_INDEXES)
            self.conn.commit()

    def create_fresh_database(self) -> None:
        """Swap in an empty database with the current schema."""
        with self.lock:
            old = self.conn
            self.conn = _new_connection()
            self.upgrade_schema()
            old.close()

    def clear_index(self) -> None:
        """Delete all events, items, placements and file bookkeeping (meta is kept)."""
        with self.lock, self.conn:
            self.conn.execute("DELETE FROM canvas_items")
            self.conn.execute("DELETE FROM items")
            self.conn.execute("DELETE FROM events")
            self.conn.execute("DELETE FROM file_index")

    def close(self) -> None:
        with self.lock:
            self.conn.close()

    def export(self) -> bytes:
        with self.lock:
            return self.conn.serialize()

    def flush(self) -> bool:
        """Export and hand the snapshot to persist. Returns False when persisting failed.

        A failed flush is logged and leaves the in-memory index authoritative
        (``durable`` becomes False until a later flush succeeds).
        """
        if self.persist is None:
            return True
        try:
            self.persist(self.export())
        except (OSError, sqlite3.Error):
            logger.exception("failed to persist index snapshot; continuing in memory")
            self.durable = False
            return False
        self.durable = True
        return True

    @contextlib.contextmanager
    def rebuilding(self) -> Iterator[IndexStore]:
        """Hold the store exclusively for a full rebuild; writers on other threads are rejected."""
        with self.lock:
            self._rebuild_owner = threading.get_ident()
            try:
                yield self
            finally:
                self._rebuild_owner = None

    @property
    def is_rebuilding(self) -> bool:
        return self._rebuild_owner is not None

    def ensure_writable(self) -> None:
        owner = self._rebuild_owner
        if owner is not None and owner != threading.get_ident():
            raise RebuildInProgressError

    # ------------------------------------------------------------------
    # Meta
    # ------------------------------------------------------------------

    def get_meta(self, key: str) -> str | None:
        with self.lock:
            row = self.conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_meta(self, key: str, value: str) -> None:
        with self.lock, self.conn:
            self.conn.execute("INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)", (key, value))

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def upsert_event(self, event: Event) -> None:
        loc = event.location
        with self.lock, self.conn:
            self.conn.execute(
                f"INSERT OR REPLACE INTO events ({_EVENT_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    event.id, event.type, event.title, event.description,
                    event.featured_photo_id, event.featured_photo_slug, event.featured_photo_data,
                    loc.lat if loc else None, loc.lng if loc else None, loc.label if loc else None,
                    event.start_at, event.end_at, event.parent_id, event.cover_media_id,
                    _dump_list(event.tags), event.file_path, event.folder_path,
                    event.created_at, event.updated_at,
                ),
            )

    def get_event(self, event_id: str) -> Event | None:
        with self.lock:
            row = self.conn.execute(
                f"SELECT {_EVENT_COLUMNS} FROM events WHERE id = ?", (event_id,)
            ).fetchone()
        return _row_to_event(row) if row else None

    def get_event_by_folder(self, folder_path: str) -> Event | None:
        with self.lock:
            row = self.conn.execute(
                f"SELECT {_EVENT_COLUMNS} FROM events WHERE folder_path = ?", (folder_path,)
            ).fetchone()
        return _row_to_event(row) if row else None

    def get_all_events(self) -> list[Event]:
        with self.lock:
            rows = self.conn.execute(
                f"SELECT {_EVENT_COLUMNS} FROM events ORDER BY start_at, id"
            ).fetchall()
        return [_row_to_event(r) for r in rows]

    def get_events_by_type(self, event_type: str) -> list[Event]:
        with self.lock:
            rows = self.conn.execute(
                f"SELECT {_EVENT_COLUMNS} FROM events WHERE type = ? ORDER BY start_at, id",
                (event_type,),
            ).fetchall()
        return [_row_to_event(r) for r in rows]

    def get_child_events(self, parent_id: str) -> list[Event]:
        with self.lock:
            rows = self.conn.execute(
                f"SELECT {_EVENT_COLUMNS} FROM events WHERE parent_id = ? ORDER BY start_at, id",
                (parent_id,),
            ).fetchall()
        return [_row_to_event(r) for r in rows]

    def get_year_for_date(self, date_str: str) -> Event | None:
        """The year event whose folder (or title) is the year of date_str."""
        year = date_str.split("-")[0]
        with self.lock:
            row = self.conn.execute(
                f"SELECT {_EVENT_COLUMNS} FROM events "
                "WHERE type = 'year' AND (folder_path = ? OR title = ?) "
                "ORDER BY folder_path IS NULL LIMIT 1",
                (year, year),
            ).fetchone()
        return _row_to_event(row) if row else None

    def delete_event(self, event_id: str) -> None:
        """Delete an event together with its items and canvas placements."""
        with self.lock, self.conn:
            self.conn.execute("DELETE FROM canvas_items WHERE event_id = ?", (event_id,))
            self.conn.execute("DELETE FROM items WHERE event_id = ?", (event_id,))
            self.conn.execute("DELETE FROM events WHERE id = ?", (event_id,))

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    def upsert_item(self, item: Item) -> None:
        place = item.place
        with self.lock, self.conn:
            self.conn.execute(
                f"INSERT OR REPLACE INTO items ({_ITEM_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    item.id, item.event_id, item.item_type, item.content, item.caption,
                    item.happened_at,
                    place.lat if place else None, place.lng if place else None,
                    place.label if place else None,
                    _dump_list(item.people), _dump_list(item.tags), item.category,
                    item.url, item.body_text, item.slug, item.file_path, item.media_path,
                ),
            )

    def get_item(self, item_id: str) -> Item | None:
        with self.lock:
            row = self.conn.execute(
                f"SELECT {_ITEM_COLUMNS} FROM items WHERE id = ?", (item_id,)
            ).fetchone()
        return _row_to_item(row) if row else None

    def get_items_by_event(self, event_id: str) -> list[Item]:
        with self.lock:
            rows = self.conn.execute(
                f"SELECT {_ITEM_COLUMNS} FROM items WHERE event_id = ? "
                "ORDER BY happened_at, slug, id",
                (event_id,),
            ).fetchall()
        return [_row_to_item(r) for r in rows]

    def get_item_by_slug(self, event_id: str, slug: str) -> Item | None:
        with self.lock:
            row = self.conn.execute(
                f"SELECT {_ITEM_COLUMNS} FROM items WHERE event_id = ? AND slug = ?",
                (event_id, slug),
            ).fetchone()
        return _row_to_item(row) if row else None

    def get_all_items(self) -> list[Item]:
        with self.lock:
            rows = self.conn.execute(f"SELECT {_ITEM_COLUMNS} FROM items ORDER BY id").fetchall()
        return [_row_to_item(r) for r in rows]

    def delete_item(self, item_id: str) -> None:
        with self.lock, self.conn:
            self.conn.execute("DELETE FROM canvas_items WHERE item_id = ?", (item_id,))
            self.conn.execute("DELETE FROM items WHERE id = ?", (item_id,))

    # ------------------------------------------------------------------
    # Canvas
    # ------------------------------------------------------------------

    def upsert_canvas_item(self, ci: CanvasItem) -> None:
        with self.lock, self.conn:
            self.conn.execute(
                f"INSERT OR REPLACE INTO canvas_items ({_CANVAS_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    ci.event_id, ci.item_id, ci.item_slug, ci.x, ci.y, ci.scale,
                    ci.rotation, ci.z_index, ci.text_scale,
                ),
            )

    def get_canvas_items(self, event_id: str) -> list[CanvasItem]:
        with self.lock:
            rows = self.conn.execute(
                f"SELECT {_CANVAS_COLUMNS} FROM canvas_items WHERE event_id = ? "
                "ORDER BY z_index, item_id",
                (event_id,),
            ).fetchall()
        return [_row_to_canvas(r) for r in rows]

    def get_canvas_item(self, event_id: str, item_id: str) -> CanvasItem | None:
        with self.lock:
            row = self.conn.execute(
                f"SELECT {_CANVAS_COLUMNS} FROM canvas_items WHERE event_id = ? AND item_id = ?",
                (event_id, item_id),
            ).fetchone()
        return _row_to_canvas(row) if row else None

    def delete_canvas_item(self, event_id: str, item_id: str) -> None:
        with self.lock, self.conn:
            self.conn.execute(
                "DELETE FROM canvas_items WHERE event_id = ? AND item_id = ?", (event_id, item_id)
            )

    # ------------------------------------------------------------------
    # File index
    # ------------------------------------------------------------------

    def upsert_file_entry(self, entry: FileIndexEntry) -> None:
        with self.lock, self.conn:
            self.conn.execute(
                "INSERT OR REPLACE INTO file_index "
                "(path, type, mtime_ms, size, hash, last_indexed_at) VALUES (?, ?, ?, ?, ?, ?)",
                (entry.path, entry.type, entry.mtime_ms, entry.size, entry.hash,
                 entry.last_indexed_at),
            )

    def get_file_entry(self, path: str) -> FileIndexEntry | None:
        with self.lock:
            row = self.conn.execute(
                "SELECT path, type, mtime_ms, size, hash, last_indexed_at "
                "FROM file_index WHERE path = ?",
                (path,),
            ).fetchone()
        return FileIndexEntry(**dict(row)) if row else None

    def get_all_file_entries(self) -> list[FileIndexEntry]:
        with self.lock:
            rows = self.conn.execute(
                "SELECT path, type, mtime_ms, size, hash, last_indexed_at FROM file_index "
                "ORDER BY path"
            ).fetchall()
        return [FileIndexEntry(**dict(r)) for r in rows]

    def delete_file_entry(self, path: str) -> None:
        with self.lock, self.conn:
            self.conn.execute("DELETE FROM file_index WHERE path = ?", (path,))

    def delete_file_entries_under(self, folder_path: str) -> None:
        """Forget every tracked file inside folder_path (after the folder was removed)."""
        pattern = folder_path.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        with self.lock, self.conn:
            self.conn.execute(
                "DELETE FROM file_index WHERE path LIKE ? ESCAPE '\\'", (f"{pattern}/%",)
            )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_timeline(self, year_id: str) -> list[TimelineEntry]:
        """Items of every event in a year, timestamped by happened_at or the event start."""
        with self.lock:
            rows = self.conn.execute(
                """
                SELECT i.id AS item_id, i.event_id, i.item_type, i.content, i.caption,
                       COALESCE(i.happened_at, e.start_at) AS resolved_timestamp,
                       e.title AS event_title, e.description AS event_description,
                       e.location_label AS event_location,
                       COALESCE(e.featured_photo_data, fp.content) AS featured_photo
                FROM items i
                INNER JOIN events e ON i.event_id = e.id
                LEFT JOIN items fp ON e.featured_photo_id = fp.id
                WHERE e.parent_id = ?
                ORDER BY resolved_timestamp, i.id
                """,
                (year_id,),
            ).fetchall()
        return [
            TimelineEntry(
                item_id=r["item_id"],
                event_id=r["event_id"],
                item_type=r["item_type"],
                content=r["content"],
                timestamp=r["resolved_timestamp"],
                caption=r["caption"],
                event_title=r["event_title"],
                event_description=r["event_description"],
                event_location=r["event_location"],
                featured_photo=r["featured_photo"],
            )
            for r in rows
        ]

    def counts(self) -> dict[str, int]:
        out: dict[str, int] = {}
        with self.lock:
            for table in ("events", "items", "canvas_items", "file_index"):
                out[table] = self.conn.execute(f"SELECT count(*) FROM {table}").fetchone()[0]
            out["years"] = self.conn.execute(
                "SELECT count(*) FROM events WHERE type = 'year'"
            ).fetchone()[0]
        return out

    def table_rows(self, table: str) -> list[dict[str, Any]]:
        """All rows of one table as dicts, in primary-key order."""
        order = {"canvas_items": "event_id, item_id", "file_index": "path", "meta": "key"}
        with self.lock:
            rows = self.conn.execute(
                f"SELECT * FROM {table} ORDER BY {order.get(table, 'id')}"
            ).fetchall()
        return [dict(r) for r in rows]
