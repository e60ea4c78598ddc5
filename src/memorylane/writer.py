"""Write-through mutations: files first, then the index, then a flush.

Every operation follows the same order:

    1. merge the affected frontmatter + body
    2. write the file(s)
    3. update the index rows
    4. flush the index snapshot

A crash between 2 and 3 leaves the tree self-consistent; the next full
rebuild repairs the index.  Writers are rejected while a rebuild holds the
store (RebuildInProgressError).
"""

from __future__ import annotations

import dataclasses
import enum
import logging
import time
import uuid
from typing import TYPE_CHECKING, Any

from memorylane.errors import (
    EventNotFoundError,
    InvalidUpdateError,
    ItemNotFoundError,
    ItemRenameError,
)
from memorylane.frontmatter import (
    CanvasEntry,
    CanvasLayout,
    EventFrontmatter,
    ItemFrontmatter,
    Malformed,
    ParsedMarkdown,
    decode_event,
    decode_item,
    generate_canvas_json,
    generate_event_markdown,
    generate_item_markdown,
    parse_canvas_json,
    parse_frontmatter,
)
from memorylane.indexer import track_file
from memorylane.models import EVENT_TYPES, ITEM_TYPES, MEDIA_ITEM_TYPES, Event, Item
from memorylane.paths import (
    CANVAS_FILE,
    YEAR_FILE,
    extension_from_data_url,
    generate_event_folder_name,
    generate_slug,
    generate_unique_slug,
    is_markdown_file,
    is_media_file,
    is_year_folder,
    media_extension,
    now_iso,
    parse_date,
    slug_from_filename,
)
from memorylane.storage import join, name_of, parent_of

if TYPE_CHECKING:
    from memorylane.db import IndexStore
    from memorylane.models import CanvasItem, Location
    from memorylane.storage import FileStorage

logger = logging.getLogger("memorylane.writer")

_EVENT_FIELDS = {
    "type", "title", "description", "start_at", "end_at", "location", "tags", "featured_photo",
}
_ITEM_FIELDS = {"content", "caption", "happened_at", "place", "people", "tags", "category"}


class RenameState(enum.Enum):
    """Progress of a caption-driven slug rename."""

    PENDING = "pending"
    RENAMING_MARKDOWN = "renaming-markdown"
    RENAMING_MEDIA = "renaming-media"
    REWRITING_REFERENCE = "rewriting-reference"
    DONE = "done"


def _decoded_event(text: str | None) -> tuple[EventFrontmatter, str]:
    parsed = parse_frontmatter(text) if text is not None else ParsedMarkdown({}, "")
    decoded = decode_event(parsed)
    fm = decoded.partial if isinstance(decoded, Malformed) else decoded
    return fm, parsed.body  # type: ignore[return-value]


def _decoded_item(text: str | None) -> tuple[ItemFrontmatter, str]:
    parsed = parse_frontmatter(text) if text is not None else ParsedMarkdown({}, "")
    decoded = decode_item(parsed)
    fm = decoded.partial if isinstance(decoded, Malformed) else decoded
    return fm, parsed.body  # type: ignore[return-value]


def _check_fields(updates: dict[str, Any], allowed: set[str], what: str) -> None:
    unknown = sorted(set(updates) - allowed)
    if unknown:
        msg = f"cannot update {what} field(s): {', '.join(unknown)}"
        raise InvalidUpdateError(msg)


class Writer:
    """Create / update / delete years, events, items and canvas placements."""

    def __init__(self, storage: FileStorage, store: IndexStore) -> None:
        self.storage = storage
        self.store = store

    def _guard(self) -> None:
        self.storage.require_root()
        self.store.ensure_writable()

    def _track(self, path: str, kind: str, text: str | None = None) -> None:
        track_file(self.storage, self.store, path, kind, text)

    def _write(self, path: str, text: str, kind: str) -> None:
        self.storage.write_text(path, text)
        self._track(path, kind, text)

    def _file_event(self, event_id: str) -> Event:
        event = self.store.get_event(event_id)
        if event is None or not event.folder_path:
            raise EventNotFoundError(event_id)
        return event

    # ------------------------------------------------------------------
    # Years
    # ------------------------------------------------------------------

    def create_year(self, date_str: str) -> Event:
        """Return the year covering date_str, creating ``YYYY/_year.md`` if there is none."""
        self._guard()
        existing = self.store.get_year_for_date(date_str)
        if existing is not None:
            return existing

        year = date_str.split("-")[0]
        if not is_year_folder(year):
            msg = f"Invalid date for year: {date_str!r}"
            raise ValueError(msg)

        now = now_iso()
        path = join(year, YEAR_FILE)
        self.storage.ensure_directory(year)
        text = self.storage.read_text(path)
        if text is not None:
            # Descriptor exists on disk but was not indexed yet; adopt it as-is
            fm, _ = _decoded_event(text)
            fm.id = fm.id or str(uuid.uuid4())
        else:
            fm = EventFrontmatter(
                id=str(uuid.uuid4()),
                type="year",
                title=year,
                start_at=f"{year}-01-01",
                end_at=f"{year}-12-31",
                created_at=now,
                updated_at=now,
            )
            text = generate_event_markdown(fm)
            self.storage.write_text(path, text)

        event = Event(
            id=fm.id,
            type="year",
            title=fm.title or year,
            description=fm.description,
            start_at=fm.start_at or f"{year}-01-01",
            end_at=fm.end_at or f"{year}-12-31",
            tags=fm.tags,
            file_path=path,
            folder_path=year,
            created_at=fm.created_at or now,
            updated_at=fm.updated_at or now,
        )
        self.store.upsert_event(event)
        self._track(path, "year", text)
        self.store.flush()
        logger.info("year created: %s", year)
        return event

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def create_event(
        self,
        title: str,
        start_at: str,
        *,
        type: str = "event",  # noqa: A002
        description: str | None = None,
        end_at: str | None = None,
        location: Location | None = None,
        parent_id: str | None = None,
        tags: list[str] | None = None,
    ) -> Event:
        """Create ``YYYY/<folder>/_event.md`` and index it."""
        self._guard()
        if type not in EVENT_TYPES or type == "year":
            msg = f"Invalid event type: {type!r}"
            raise ValueError(msg)
        folder_name = generate_event_folder_name(title, start_at, end_at)

        if parent_id is None:
            parent = self.create_year(start_at)
        else:
            parent = self.store.get_event(parent_id)
            if parent is None or parent.type != "year":
                raise EventNotFoundError(parent_id)
        year = parent.folder_path or start_at[:4]

        folder = join(year, folder_name)
        n = 2
        while self.storage.exists(folder):
            folder = join(year, f"{folder_name} ({n})")
            n += 1
        self.storage.ensure_directory(folder)

        now = now_iso()
        fm = EventFrontmatter(
            id=str(uuid.uuid4()),
            type=type,
            start_at=start_at,
            title=title,
            description=description,
            end_at=end_at,
            location=location,
            tags=tags,
            created_at=now,
            updated_at=now,
        )
        path = join(folder, "_event.md")
        self.storage.write_text(path, generate_event_markdown(fm, description))

        event = Event(
            id=fm.id,
            type=type,
            title=title,
            description=description,
            start_at=parse_date(start_at) or start_at,
            end_at=parse_date(end_at),
            location=location,
            parent_id=parent.id,
            tags=tags,
            file_path=path,
            folder_path=folder,
            created_at=now,
            updated_at=now,
        )
        self.store.upsert_event(event)
        self._track(path, "event", self.storage.read_text(path))
        self.store.flush()
        logger.info("event created: %s at %s", title, folder)
        return event

    def update_event(self, event_id: str, **updates: Any) -> Event:
        """Merge the given fields into the descriptor; a field passed as None is cleared.

        The event folder is never renamed.
        """
        self._guard()
        _check_fields(updates, _EVENT_FIELDS, "event")
        for required in ("type", "start_at"):
            if required in updates and not updates[required]:
                msg = f"{required} cannot be cleared"
                raise InvalidUpdateError(msg)
        event = self._file_event(event_id)
        if "type" in updates and (updates["type"] == "year") != (event.type == "year"):
            msg = "cannot convert between year and non-year events"
            raise InvalidUpdateError(msg)
        if "type" in updates and updates["type"] not in EVENT_TYPES:
            msg = f"Invalid event type: {updates['type']!r}"
            raise InvalidUpdateError(msg)

        path = event.file_path or join(event.folder_path or "", event.descriptor_name)
        fm, body = _decoded_event(self.storage.read_text(path))
        now = now_iso()

        for key, value in updates.items():
            setattr(fm, key, value)
        fm.id = event.id
        fm.type = fm.type or event.type
        fm.start_at = fm.start_at or event.start_at
        fm.created_at = fm.created_at or event.created_at
        fm.updated_at = now
        if "featured_photo" not in updates and fm.featured_photo is None:
            fm.featured_photo = event.featured_photo_slug

        text = generate_event_markdown(fm, fm.description or body)
        self.storage.write_text(path, text)

        changes: dict[str, Any] = {
            key: value for key, value in updates.items() if key in ("type", "title", "description", "location", "tags")
        }
        if "start_at" in updates:
            changes["start_at"] = parse_date(updates["start_at"]) or updates["start_at"]
        if "end_at" in updates:
            changes["end_at"] = parse_date(updates["end_at"])
        if "featured_photo" in updates:
            slug = updates["featured_photo"]
            featured = self.store.get_item_by_slug(event.id, slug) if slug else None
            changes["featured_photo_slug"] = slug
            changes["featured_photo_id"] = featured.id if featured else None
        updated = dataclasses.replace(event, **changes, file_path=path, updated_at=now)

        self.store.upsert_event(updated)
        self._track(path, "year" if event.type == "year" else "event", text)
        self.store.flush()
        logger.info("event updated: %s", updated.title)
        return updated

    def delete_event(self, event_id: str) -> None:
        """Remove the event folder recursively, then its rows, items and placements."""
        self._guard()
        event = self._file_event(event_id)
        folder = event.folder_path or ""

        self.storage.delete_directory(folder)

        if event.type == "year":
            for child in self.store.get_child_events(event.id):
                self.store.delete_event(child.id)
        self.store.delete_event(event.id)
        self.store.delete_file_entries_under(folder)
        self.store.flush()
        logger.info("event deleted: %s (%s)", event.title, folder)

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    def _free_slug(self, folder: str, base: str, item_id: str, current: str | None = None) -> str:
        """generate_slug(base), or the id-suffixed variant when its markdown or media name is taken."""
        slug = generate_slug(base)
        if current is not None and slug.lower() == current.lower():
            return current
        taken = {
            slug_from_filename(e.name).lower()
            for e in self.storage.list_entries(folder)
            if not e.is_dir and (is_markdown_file(e.name) or is_media_file(e.name))
        }
        if slug.lower() in taken:
            return generate_unique_slug(base, item_id)
        return slug

    def create_item(
        self,
        event_id: str,
        item_type: str,
        content: str,
        *,
        caption: str | None = None,
        happened_at: str | None = None,
        place: Location | None = None,
        people: list[str] | None = None,
        tags: list[str] | None = None,
        category: str | None = None,
        original_filename: str | None = None,
    ) -> Item:
        """Write ``<slug>.md`` (and ``<slug>.<ext>`` for inline media) and index the item."""
        self._guard()
        if item_type not in ITEM_TYPES:
            msg = f"Invalid item type: {item_type!r}"
            raise ValueError(msg)
        event = self._file_event(event_id)
        folder = event.folder_path or ""

        item_id = str(uuid.uuid4())
        now = now_iso()
        slug = self._free_slug(folder, caption or f"{item_type}-{int(time.time() * 1000)}", item_id)

        media_path: str | None = None
        if item_type in MEDIA_ITEM_TYPES and content.startswith("data:"):
            if original_filename and is_media_file(original_filename):
                ext = media_extension(original_filename)
            else:
                ext = extension_from_data_url(content)
            media_path = f"{slug}.{ext}"
            self.storage.write_data_url(join(folder, media_path), content)
            content = f"file:{join(folder, media_path)}"
        elif item_type in MEDIA_ITEM_TYPES and content.startswith("file:"):
            ref = content.removeprefix("file:")
            if parent_of(ref) == folder:
                media_path = name_of(ref)
        elif item_type == "text":
            content = content.strip()

        url = content if item_type == "link" else None
        body = content if item_type == "text" else caption
        fm = ItemFrontmatter(
            id=item_id,
            type=item_type,
            media=media_path,
            url=url,
            caption=caption,
            happened_at=happened_at,
            place=place,
            people=people,
            tags=tags,
            category=category,
            created_at=now,
            updated_at=now,
        )
        path = join(folder, f"{slug}.md")
        text = generate_item_markdown(fm, body)
        self._write(path, text, "item")

        item = Item(
            id=item_id,
            event_id=event.id,
            item_type=item_type,
            content=content,
            caption=caption,
            happened_at=parse_date(happened_at),
            place=place,
            people=people,
            tags=tags,
            category=category,
            url=url,
            body_text=body.strip() if body and body.strip() else None,
            slug=slug,
            file_path=path,
            media_path=media_path,
        )
        self.store.upsert_item(item)
        self.store.flush()
        logger.info("item created: %s in %s", slug, folder)
        return item

    def update_item(self, item_id: str, **updates: Any) -> Item:
        """Merge the given fields into the item; a field passed as None is cleared.

        A caption whose slug differs from the current one renames ``<slug>.md``
        and its media file.  If that fails part-way ItemRenameError is raised
        and the index is left untouched.
        """
        self._guard()
        _check_fields(updates, _ITEM_FIELDS, "item")
        item = self.store.get_item(item_id)
        if item is None or not item.file_path:
            raise ItemNotFoundError(item_id)
        event = self._file_event(item.event_id)
        folder = event.folder_path or ""

        fm, body = _decoded_item(self.storage.read_text(item.file_path))
        now = now_iso()
        old_slug = item.slug or slug_from_filename(name_of(item.file_path))
        new_slug = old_slug

        caption = updates.get("caption")
        if "caption" in updates and caption and caption != item.caption:
            candidate = self._free_slug(folder, caption, item.id, current=old_slug)
            if candidate != old_slug:
                new_slug = candidate

        content = item.content
        media_path = item.media_path
        url = item.url
        if "content" in updates:
            new_content = updates["content"] or ""
            if item.item_type == "text":
                body = new_content.strip()
                content = body
            elif item.item_type == "link":
                url = new_content
                content = new_content
            elif new_content.startswith("data:"):
                ext = extension_from_data_url(new_content)
                replacement = f"{old_slug}.{ext}"
                self.storage.write_data_url(join(folder, replacement), new_content)
                if media_path and media_path != replacement:
                    self.storage.delete_file(join(folder, media_path))
                media_path = replacement
                content = f"file:{join(folder, media_path)}"
            elif new_content.startswith("file:"):
                ref = new_content.removeprefix("file:")
                media_path = name_of(ref) if parent_of(ref) == folder else None
                content = new_content
            else:
                msg = f"{item.item_type} content must be a data: or file: URI"
                raise InvalidUpdateError(msg)

        for key in ("caption", "happened_at", "place", "people", "tags", "category"):
            if key in updates:
                setattr(fm, key, updates[key])
        if item.item_type != "text" and "caption" in updates:
            body = (caption or "").strip()
        fm.id = item.id
        fm.type = item.item_type
        fm.url = url
        fm.created_at = fm.created_at or now
        fm.updated_at = now

        old_path = item.file_path
        new_path = join(folder, f"{new_slug}.md")
        if new_slug != old_slug:
            media_path, content = self._rename_item_files(
                item, folder, old_path, new_path, media_path, old_slug, new_slug, fm, body,
            )
        else:
            fm.media = media_path
            self._write(new_path, generate_item_markdown(fm, body), "item")

        updated = dataclasses.replace(
            item,
            content=content,
            caption=fm.caption,
            happened_at=parse_date(fm.happened_at) if "happened_at" in updates else item.happened_at,
            place=fm.place,
            people=fm.people,
            tags=fm.tags,
            category=fm.category,
            url=url,
            body_text=body or None,
            slug=new_slug,
            file_path=new_path,
            media_path=media_path,
        )
        self.store.upsert_item(updated)

        if new_slug != old_slug:
            self.store.delete_file_entry(old_path)
            placement = self.store.get_canvas_item(event.id, item.id)
            if placement is not None:
                self.store.upsert_canvas_item(dataclasses.replace(placement, item_slug=new_slug))
            self._rename_in_canvas(folder, old_slug, new_slug)

        self.store.flush()
        logger.info("item updated: %s", new_slug)
        return updated

    def _rename_item_files(
        self,
        item: Item,
        folder: str,
        old_path: str,
        new_path: str,
        media_path: str | None,
        old_slug: str,
        new_slug: str,
        fm: ItemFrontmatter,
        body: str,
    ) -> tuple[str | None, str]:
        """Move ``<old>.md`` and ``<old>.<ext>`` to the new slug and rewrite the markdown.

        Returns the new media filename and content reference.
        """
        state = RenameState.PENDING
        content = item.content
        try:
            renamed = f"{new_slug}.{media_extension(media_path)}" if media_path else None
            for target in (new_path, join(folder, renamed) if renamed else None):
                if target and self.storage.exists(target):
                    msg = f"rename target exists: {target}"
                    raise FileExistsError(msg)

            state = RenameState.RENAMING_MARKDOWN
            self.storage.rename(old_path, new_path)

            if media_path and renamed:
                state = RenameState.RENAMING_MEDIA
                self.storage.rename(join(folder, media_path), join(folder, renamed))
                media_path = renamed
                content = f"file:{join(folder, media_path)}"

            state = RenameState.REWRITING_REFERENCE
            fm.media = media_path
            self._write(new_path, generate_item_markdown(fm, body), "item")
            state = RenameState.DONE
        except OSError as exc:
            logger.error("rename %s -> %s failed while %s", old_slug, new_slug, state.value)
            raise ItemRenameError(item.id, state, old_slug, new_slug, exc) from exc
        logger.info("item renamed: %s -> %s in %s", old_slug, new_slug, folder)
        return media_path, content

    def delete_item(self, item_id: str) -> None:
        """Delete ``<slug>.md``, its media file and its canvas placement."""
        self._guard()
        item = self.store.get_item(item_id)
        if item is None:
            raise ItemNotFoundError(item_id)
        event = self.store.get_event(item.event_id)
        if event is None or not event.folder_path:
            self.store.delete_item(item_id)
            self.store.flush()
            return
        folder = event.folder_path

        md_path = item.file_path or (join(folder, f"{item.slug}.md") if item.slug else None)
        if md_path:
            self.storage.delete_file(md_path)
        if item.media_path:
            self.storage.delete_file(join(folder, item.media_path))
        self._remove_from_canvas(folder, item.slug or item.id)

        self.store.delete_item(item_id)
        if md_path:
            self.store.delete_file_entry(md_path)
        self.store.flush()
        logger.info("item deleted: %s", item.slug or item.id)

    # ------------------------------------------------------------------
    # Canvas
    # ------------------------------------------------------------------

    def _read_canvas(self, folder: str) -> CanvasLayout | None:
        text = self.storage.read_text(join(folder, CANVAS_FILE))
        if text is None:
            return None
        layout = parse_canvas_json(text)
        if layout is None:
            logger.warning("ignoring unparseable %s in %s", CANVAS_FILE, folder)
        return layout

    def _write_canvas(self, folder: str, layout: CanvasLayout) -> None:
        layout.updated_at = now_iso()
        self._write(join(folder, CANVAS_FILE), generate_canvas_json(layout), "canvas")

    def _remove_from_canvas(self, folder: str, slug: str) -> None:
        layout = self._read_canvas(folder)
        if layout is None:
            return
        kept = [e for e in layout.items if e.item_slug != slug]
        if len(kept) != len(layout.items):
            layout.items = kept
            self._write_canvas(folder, layout)

    def _rename_in_canvas(self, folder: str, old_slug: str, new_slug: str) -> None:
        layout = self._read_canvas(folder)
        if layout is None:
            return
        touched = False
        for entry in layout.items:
            if entry.item_slug == old_slug:
                entry.item_slug = new_slug
                touched = True
        if touched:
            self._write_canvas(folder, layout)

    def save_canvas_layout(self, event_id: str) -> None:
        """Serialise the event's indexed placements to _canvas.json, keeping its viewport."""
        self._guard()
        event = self.store.get_event(event_id)
        if event is None or not event.folder_path:
            return
        existing = self._read_canvas(event.folder_path)
        layout = CanvasLayout(
            items=[CanvasEntry.from_canvas_item(ci) for ci in self.store.get_canvas_items(event_id)],
            viewport=existing.viewport if existing else None,
        )
        self._write_canvas(event.folder_path, layout)
        self.store.flush()
        logger.info("canvas layout saved for event: %s", event.title)

    def update_canvas_item(self, placement: CanvasItem) -> CanvasItem:
        """Place (or move) one item on its event's canvas."""
        self._guard()
        event = self._file_event(placement.event_id)
        item = self.store.get_item(placement.item_id)
        if item is None or item.event_id != event.id:
            raise ItemNotFoundError(placement.item_id)
        placement = dataclasses.replace(placement, item_slug=item.slug or item.id)

        folder = event.folder_path or ""
        layout = self._read_canvas(folder) or CanvasLayout()
        entry = CanvasEntry.from_canvas_item(placement)
        layout.items = [e for e in layout.items if e.item_slug != entry.item_slug] + [entry]
        self._write_canvas(folder, layout)

        self.store.upsert_canvas_item(placement)
        self.store.flush()
        return placement

    def set_canvas_viewport(self, event_id: str, center_x: float, center_y: float, zoom: float) -> None:
        self._guard()
        event = self._file_event(event_id)
        folder = event.folder_path or ""
        layout = self._read_canvas(folder) or CanvasLayout()
        layout.viewport = {"centerX": center_x, "centerY": center_y, "zoom": zoom}
        self._write_canvas(folder, layout)
        self.store.flush()
