"""One-shot migration of a legacy index (v1, rows only) into the folder tree (v2).

A v1 index holds events and items with inline ``data:`` media and no
folder_path.  Migration writes, per legacy row:

    year event   -> YYYY/_year.md
    event        -> YYYY/<YYYY-MM-DD Title>/_event.md
    item         -> <slug>.md (+ <slug>.<ext> for inline media)
    placements   -> _canvas.json

Ids are carried over so links between rows survive; the index is then rebuilt
from the new files.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from memorylane.frontmatter import (
    CanvasEntry,
    CanvasLayout,
    EventFrontmatter,
    ItemFrontmatter,
    generate_canvas_json,
    generate_event_markdown,
    generate_item_markdown,
)
from memorylane.models import MEDIA_ITEM_TYPES
from memorylane.paths import (
    CANVAS_FILE,
    EVENT_FILE,
    YEAR_FILE,
    extension_from_data_url,
    generate_event_folder_name,
    generate_slug,
    generate_unique_slug,
    now_iso,
)
from memorylane.storage import join, name_of

if TYPE_CHECKING:
    from collections.abc import Callable

    from memorylane.db import IndexStore
    from memorylane.models import Event, Item
    from memorylane.storage import FileStorage

logger = logging.getLogger("memorylane.migration")


@dataclass
class MigrationIssue:
    kind: str       # year | event | item
    id: str
    error: str


@dataclass
class MigrationResult:
    years_created: int = 0
    events_created: int = 0
    items_migrated: int = 0
    media_files_written: int = 0
    errors: list[MigrationIssue] = field(default_factory=list)


@dataclass
class MigrationProgress:
    current: int
    total: int
    status: str
    phase: str      # years | events | items | canvas | complete


def needs_migration(legacy: IndexStore) -> bool:
    """True when the index has events and none of them lives in a folder yet."""
    events = legacy.get_all_events()
    return bool(events) and not any(e.folder_path for e in events)


def _year_name(event: Event, legacy: IndexStore) -> str:
    if event.type == "year":
        return (event.title or event.start_at)[:4]
    parent = legacy.get_event(event.parent_id) if event.parent_id else None
    if parent is not None and parent.title:
        return parent.title[:4]
    return event.start_at[:4]


def migrate_to_files(
    legacy: IndexStore,
    storage: FileStorage,
    on_progress: Callable[[MigrationProgress], None] | None = None,
) -> MigrationResult:
    """Write every legacy row out as files. Per-row failures land in result.errors."""
    storage.require_root()
    result = MigrationResult()

    def report(current: int, total: int, status: str, phase: str) -> None:
        if on_progress is not None:
            on_progress(MigrationProgress(current, total, status, phase))

    events = legacy.get_all_events()
    years = [e for e in events if e.type == "year"]
    children = [e for e in events if e.type != "year"]
    total_items = len(legacy.get_all_items())
    items_done = 0

    for i, year in enumerate(years, 1):
        name = _year_name(year, legacy)
        report(i, len(years), f"Creating year folder {name}", "years")
        try:
            _migrate_year(year, name, storage)
        except (OSError, ValueError) as exc:
            logger.exception("failed to migrate year: %s", year.id)
            result.errors.append(MigrationIssue("year", year.id, str(exc)))
            continue
        result.years_created += 1

    for i, event in enumerate(children, 1):
        report(i, len(children), f"Migrating event: {event.title or 'Unnamed'}", "events")
        try:
            folder = _migrate_event(event, _year_name(event, legacy), storage)
        except (OSError, ValueError) as exc:
            logger.exception("failed to migrate event: %s", event.id)
            result.errors.append(MigrationIssue("event", event.id, str(exc)))
            continue
        result.events_created += 1

        placements = {ci.item_id: ci for ci in legacy.get_canvas_items(event.id)}
        layout = CanvasLayout(updated_at=now_iso())
        for item in legacy.get_items_by_event(event.id):
            items_done += 1
            report(items_done, total_items, f"Migrating: {item.caption or item.id[:8]}", "items")
            try:
                slug = _migrate_item(item, folder, storage, result)
            except (OSError, ValueError) as exc:
                logger.exception("failed to migrate item: %s", item.id)
                result.errors.append(MigrationIssue("item", item.id, str(exc)))
                continue
            result.items_migrated += 1
            ci = placements.get(item.id)
            if ci is not None:
                layout.items.append(
                    CanvasEntry(
                        item_slug=slug,
                        x=ci.x,
                        y=ci.y,
                        scale=ci.scale,
                        rotation=ci.rotation,
                        z_index=ci.z_index,
                        text_scale=ci.text_scale,
                    )
                )

        if layout.items:
            report(1, 1, f"Writing canvas for {folder}", "canvas")
            storage.write_text(join(folder, CANVAS_FILE), generate_canvas_json(layout))

    report(1, 1, "Migration complete", "complete")
    logger.info(
        "migration done: %d years, %d events, %d items, %d media files, %d errors",
        result.years_created, result.events_created, result.items_migrated,
        result.media_files_written, len(result.errors),
    )
    return result


def _migrate_year(year: Event, name: str, storage: FileStorage) -> None:
    storage.ensure_directory(name)
    path = join(name, YEAR_FILE)
    if storage.exists(path):
        return
    fm = EventFrontmatter(
        id=year.id,
        type="year",
        title=name,
        start_at=f"{name}-01-01",
        end_at=f"{name}-12-31",
        description=year.description,
        tags=year.tags,
        created_at=year.created_at or None,
        updated_at=year.updated_at or None,
    )
    storage.write_text(path, generate_event_markdown(fm, year.description))


def _migrate_event(event: Event, year: str, storage: FileStorage) -> str:
    folder_name = generate_event_folder_name(event.title or "Unnamed Event", event.start_at, event.end_at)
    folder = join(year, folder_name)
    n = 2
    while storage.exists(folder):
        folder = join(year, f"{folder_name} ({n})")
        n += 1
    storage.ensure_directory(folder)

    fm = EventFrontmatter(
        id=event.id,
        type=event.type,
        start_at=event.start_at,
        title=event.title,
        description=event.description,
        end_at=event.end_at,
        location=event.location,
        tags=event.tags,
        created_at=event.created_at or None,
        updated_at=event.updated_at or None,
    )
    storage.write_text(join(folder, EVENT_FILE), generate_event_markdown(fm, event.description))
    return folder


def _migrate_item(item: Item, folder: str, storage: FileStorage, result: MigrationResult) -> str:
    slug = generate_slug(item.caption or item.id)
    if storage.exists(join(folder, f"{slug}.md")):
        slug = generate_unique_slug(item.caption or item.id, item.id)

    media: str | None = None
    if item.item_type in MEDIA_ITEM_TYPES and item.content:
        if item.content.startswith("data:"):
            media = f"{slug}.{extension_from_data_url(item.content)}"
            storage.write_data_url(join(folder, media), item.content)
            result.media_files_written += 1
            logger.debug("migrated media: %s", join(folder, media))
        elif item.content.startswith("file:"):
            media = name_of(item.content.removeprefix("file:"))

    now = now_iso()
    fm = ItemFrontmatter(
        id=item.id,
        type=item.item_type,
        media=media,
        url=item.content if item.item_type == "link" else None,
        caption=item.caption,
        happened_at=item.happened_at,
        place=item.place,
        people=item.people,
        tags=item.tags,
        category=item.category,
        created_at=now,
        updated_at=now,
    )
    body = item.content if item.item_type == "text" else item.caption
    storage.write_text(join(folder, f"{slug}.md"), generate_item_markdown(fm, body))
    return slug
