"""Rebuild the index from the storage tree.

The index is a pure derived cache: every rebuild starts from an empty
database and walks the tree in a fixed order.

    years (ascending)
      -> _year.md (or a year synthesised from the folder name)
      -> event folders (directory-listing order, dot-folders skipped)
           -> _event.md (or inferred from the folder name)
           -> <slug>.md items, paired with same-stem media files
           -> _canvas.json placements, resolved by slug

Ids and timestamps missing from frontmatter are derived from the file path and
modification time, so rebuilding an unchanged tree yields identical rows.
"""

from __future__ import annotations

import hashlib
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from memorylane.db import INDEX_VERSION
from memorylane.frontmatter import (
    Malformed,
    decode_event,
    decode_item,
    parse_canvas_json,
    parse_frontmatter,
)
from memorylane.models import CanvasItem, Event, FileIndexEntry, Item
from memorylane.paths import (
    CANVAS_FILE,
    EVENT_FILE,
    YEAR_FILE,
    infer_event_from_folder_name,
    is_markdown_file,
    is_media_file,
    is_special_file,
    is_year_folder,
    item_type_for_media,
    now_iso,
    parse_date,
    slug_from_filename,
    to_iso,
)
from memorylane.storage import join

if TYPE_CHECKING:
    from memorylane.db import IndexStore
    from memorylane.frontmatter import EventFrontmatter, ItemFrontmatter
    from memorylane.storage import DirectoryEntry, FileStorage

logger = logging.getLogger("memorylane.indexer")

# Per-file failures that are recorded and skipped rather than aborting the scan
INDEX_ERRORS = (OSError, ValueError, sqlite3.Error)


@dataclass
class IndexIssue:
    path: str
    error: str


@dataclass
class IndexResult:
    years_indexed: int = 0
    events_indexed: int = 0
    items_indexed: int = 0
    canvas_items_indexed: int = 0
    errors: list[IndexIssue] = field(default_factory=list)
    warnings: list[IndexIssue] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def stable_id(path: str) -> str:
    """Deterministic UUID for a file or folder that carries no id of its own."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"memorylane:{path}"))


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8", errors="replace")).hexdigest()[:16]


def mtime_iso(mtime_ms: int) -> str:
    return to_iso(datetime.fromtimestamp(mtime_ms / 1000, UTC))


class Indexer:
    """Full-tree scan that reconstructs the IndexStore from files."""

    def __init__(self, storage: FileStorage, store: IndexStore) -> None:
        self.storage = storage
        self.store = store

    def needs_full_rebuild(self) -> bool:
        return self.store.get_meta("index_version") != INDEX_VERSION

    def rebuild_full_index(self) -> IndexResult:
        """Discard the index and rebuild it from the tree. Partial failures land in .errors."""
        self.storage.require_root()
        result = IndexResult()
        logger.info("full index rebuild started")

        with self.store.rebuilding():
            categories = self.store.get_meta("categories")
            self.store.create_fresh_database()
            self.store.clear_index()
            if categories is not None:
                self.store.set_meta("categories", categories)

            years = sorted(n for n in self.storage.list_directories() if is_year_folder(n))
            for year in years:
                try:
                    year_event = self._index_year(year, result)
                except INDEX_ERRORS as exc:
                    logger.exception("failed to index year folder: %s", year)
                    result.errors.append(IndexIssue(year, str(exc)))
                    continue
                result.years_indexed += 1

                for name in self.storage.list_directories(year):
                    if name.startswith("."):
                        continue
                    folder = join(year, name)
                    try:
                        self._index_event_folder(folder, year_event, result)
                    except INDEX_ERRORS as exc:
                        logger.exception("failed to index event folder: %s", folder)
                        result.errors.append(IndexIssue(folder, str(exc)))
                        continue
                    result.events_indexed += 1

            self.store.set_meta("last_full_index", now_iso())
            self.store.set_meta("index_version", INDEX_VERSION)

        self.store.flush()
        logger.info(
            "full index rebuild done: %d years, %d events, %d items, %d placements, %d errors",
            result.years_indexed, result.events_indexed, result.items_indexed,
            result.canvas_items_indexed, len(result.errors),
        )
        return result

    # ------------------------------------------------------------------
    # Years
    # ------------------------------------------------------------------

    def _index_year(self, year: str, result: IndexResult) -> Event:
        path = join(year, YEAR_FILE)
        text = self._read_descriptor(path, result)

        if text is None:
            stats = self.storage.stat(year)
            ts = mtime_iso(stats.mtime_ms) if stats else now_iso()
            event = Event(
                id=stable_id(year),
                type="year",
                title=year,
                start_at=f"{year}-01-01",
                end_at=f"{year}-12-31",
                folder_path=year,
                created_at=ts,
                updated_at=ts,
            )
            self.store.upsert_event(event)
            logger.debug("year synthesised: %s", year)
            return event

        fm = self._decode_event_file(path, text, result)
        ts = self._track(path, "year", text)
        event = Event(
            id=fm.id or stable_id(year),
            type="year",
            title=fm.title or year,
            description=fm.description,
            start_at=fm.start_at or f"{year}-01-01",
            end_at=fm.end_at or f"{year}-12-31",
            location=fm.location,
            tags=fm.tags,
            file_path=path,
            folder_path=year,
            created_at=fm.created_at or ts,
            updated_at=fm.updated_at or ts,
        )
        self.store.upsert_event(event)
        logger.debug("year indexed: %s", year)
        return event

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _index_event_folder(self, folder: str, year_event: Event, result: IndexResult) -> None:
        year, _, name = folder.partition("/")
        inferred = infer_event_from_folder_name(name)
        default_start = parse_date(inferred.start_at) or f"{year}-01-01T00:00:00.000Z"
        path = join(folder, EVENT_FILE)
        text = self._read_descriptor(path, result)

        if text is None:
            stats = self.storage.stat(folder)
            ts = mtime_iso(stats.mtime_ms) if stats else now_iso()
            event = Event(
                id=stable_id(folder),
                type=inferred.type,
                title=inferred.title,
                start_at=default_start,
                parent_id=year_event.id,
                folder_path=folder,
                created_at=ts,
                updated_at=ts,
            )
        else:
            fm = self._decode_event_file(path, text, result)
            ts = self._track(path, "event", text)
            event_type = fm.type or "event"
            if event_type == "year":
                result.warnings.append(IndexIssue(path, "type: year is only valid in _year.md; indexed as event"))
                event_type = "event"
            event = Event(
                id=fm.id or stable_id(folder),
                type=event_type,
                title=fm.title if fm.title is not None else inferred.title,
                description=fm.description,
                start_at=parse_date(fm.start_at) or default_start,
                end_at=parse_date(fm.end_at),
                location=fm.location,
                featured_photo_slug=fm.featured_photo,
                tags=fm.tags,
                parent_id=year_event.id,
                file_path=path,
                folder_path=folder,
                created_at=fm.created_at or ts,
                updated_at=fm.updated_at or ts,
            )
        self.store.upsert_event(event)

        entries = self.storage.list_entries(folder)
        media = {
            slug_from_filename(e.name).lower(): e.name
            for e in entries
            if not e.is_dir and is_media_file(e.name)
        }
        item_files = [
            e for e in entries
            if not e.is_dir and is_markdown_file(e.name) and not is_special_file(e.name)
        ]

        count = 0
        for entry in item_files:
            try:
                if self._index_item(entry, folder, event, media, result):
                    count += 1
            except INDEX_ERRORS as exc:
                logger.exception("failed to index item: %s", entry.path)
                result.errors.append(IndexIssue(entry.path, str(exc)))
        result.items_indexed += count

        if event.featured_photo_slug:
            featured = self.store.get_item_by_slug(event.id, event.featured_photo_slug)
            if featured is not None:
                event.featured_photo_id = featured.id
                self.store.upsert_event(event)

        canvas_path = join(folder, CANVAS_FILE)
        try:
            canvas_text = self.storage.read_text(canvas_path)
            if canvas_text is not None:
                self._index_canvas(canvas_path, canvas_text, event, result)
        except INDEX_ERRORS as exc:
            logger.exception("failed to index canvas: %s", canvas_path)
            result.errors.append(IndexIssue(canvas_path, str(exc)))

        logger.debug("event indexed: %s (%d items)", folder, count)

    def _read_descriptor(self, path: str, result: IndexResult) -> str | None:
        """Text of a _year.md / _event.md; an unreadable one counts as missing."""
        try:
            return self.storage.read_text(path)
        except OSError as exc:
            logger.exception("failed to read descriptor: %s", path)
            result.errors.append(IndexIssue(path, str(exc)))
            return None

    def _decode_event_file(self, path: str, text: str, result: IndexResult) -> EventFrontmatter:
        decoded = decode_event(parse_frontmatter(text))
        if isinstance(decoded, Malformed):
            result.warnings.append(IndexIssue(path, decoded.reason))
            return decoded.partial  # type: ignore[return-value]
        return decoded

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    def _index_item(
        self,
        entry: DirectoryEntry,
        folder: str,
        event: Event,
        media: dict[str, str],
        result: IndexResult,
    ) -> bool:
        text = self.storage.read_text(entry.path)
        if text is None:
            return False
        parsed = parse_frontmatter(text)
        decoded = decode_item(parsed)
        fm: ItemFrontmatter
        if isinstance(decoded, Malformed):
            result.warnings.append(IndexIssue(entry.path, decoded.reason))
            fm = decoded.partial  # type: ignore[assignment]
        else:
            fm = decoded

        slug = slug_from_filename(entry.name)
        media_name = fm.media or media.get(slug.lower())
        item_type = fm.type or (item_type_for_media(media_name) if media_name else None) or "text"

        content = ""
        media_path: str | None = None
        body = parsed.body.strip()
        if item_type == "text":
            content = body
        elif item_type == "link":
            content = fm.url or ""
        elif media_name:
            media_path = media_name
            content = f"file:{join(folder, media_name)}"

        self._track(entry.path, "item", text)
        item = Item(
            id=fm.id or stable_id(entry.path),
            event_id=event.id,
            item_type=item_type,
            content=content,
            caption=fm.caption,
            happened_at=parse_date(fm.happened_at),
            place=fm.place,
            people=fm.people,
            tags=fm.tags,
            category=fm.category,
            url=fm.url,
            body_text=body or None,
            slug=slug,
            file_path=entry.path,
            media_path=media_path,
        )
        self.store.upsert_item(item)
        logger.debug("item indexed: %s (%s)", entry.path, item_type)
        return True

    # ------------------------------------------------------------------
    # Canvas
    # ------------------------------------------------------------------

    def _index_canvas(self, path: str, text: str, event: Event, result: IndexResult) -> None:
        self._track(path, "canvas", text)
        layout = parse_canvas_json(text)
        if layout is None:
            result.warnings.append(IndexIssue(path, "unparseable canvas layout"))
            return
        dropped = 0
        for entry in layout.items:
            item = self.store.get_item_by_slug(event.id, entry.item_slug)
            if item is None:
                dropped += 1
                continue
            self.store.upsert_canvas_item(
                CanvasItem(
                    event_id=event.id,
                    item_id=item.id,
                    item_slug=entry.item_slug,
                    x=entry.x,
                    y=entry.y,
                    scale=entry.scale,
                    rotation=entry.rotation,
                    z_index=entry.z_index,
                    text_scale=entry.text_scale,
                )
            )
            result.canvas_items_indexed += 1
        if dropped:
            logger.debug("canvas %s: dropped %d placements with no matching item", path, dropped)

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _track(self, path: str, kind: str, text: str) -> str:
        return track_file(self.storage, self.store, path, kind, text)


def track_file(
    storage: FileStorage,
    store: IndexStore,
    path: str,
    kind: str,
    text: str | None = None,
) -> str:
    """Record path in file_index; returns its mtime as an ISO timestamp."""
    stats = storage.stat(path)
    if stats is None:
        store.delete_file_entry(path)
        return now_iso()
    store.upsert_file_entry(
        FileIndexEntry(
            path=path,
            type=kind,
            mtime_ms=stats.mtime_ms,
            size=stats.size,
            hash=content_hash(text) if text is not None else None,
            last_indexed_at=now_iso(),
        )
    )
    return mtime_iso(stats.mtime_ms)
