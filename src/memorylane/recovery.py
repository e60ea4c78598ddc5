"""Repair passes over hand-edited trees.

recover_from_media() gives every stray media file the markdown it needs:

    YYYY/photo.jpg               -> YYYY/YYYY-MM-DD photo/{_event.md, photo.md, _canvas.json}
    YYYY/<folder>/ (no _event.md) -> _event.md inferred from the folder name
    YYYY/<folder>/IMG_1.jpg      -> IMG_1.md placed on the canvas grid

cleanup_duplicate_markdown() removes the extra item files that several
markdown files claiming the same slug leave behind.
"""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from memorylane.exif import ExifData, read_exif
from memorylane.frontmatter import (
    CanvasEntry,
    CanvasLayout,
    EventFrontmatter,
    ItemFrontmatter,
    generate_canvas_json,
    generate_event_markdown,
    generate_item_markdown,
    parse_canvas_json,
    parse_frontmatter,
)
from memorylane.paths import (
    CANVAS_FILE,
    EVENT_FILE,
    generate_event_folder_name,
    generate_slug,
    generate_unique_slug,
    infer_event_from_folder_name,
    is_markdown_file,
    is_media_file,
    is_special_file,
    is_year_folder,
    item_type_for_media,
    now_iso,
    slug_from_filename,
    to_iso,
)
from memorylane.storage import join

if TYPE_CHECKING:
    from memorylane.indexer import Indexer
    from memorylane.storage import DirectoryEntry, FileStorage

logger = logging.getLogger("memorylane.recovery")

# Canvas grid for synthesised placements
CARD_WIDTH = 200
CARD_HEIGHT = 150
GRID_GAP = 24
CARDS_PER_ROW = 5

_AUTO_SUFFIX_RE = re.compile(r"_[a-f0-9]{8}$", re.IGNORECASE)


@dataclass
class RecoveryResult:
    events_created: int = 0
    items_created: int = 0
    loose_media_moved: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.events_created or self.items_created or self.loose_media_moved)


@dataclass
class CleanupResult:
    duplicates_removed: int = 0
    canvas_updated: int = 0
    removed: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def grid_position(index: int) -> tuple[float, float]:
    """Canvas (x, y) of the index-th synthesised card: rows of five, centred on x=0."""
    row, col = divmod(index, CARDS_PER_ROW)
    x = col * (CARD_WIDTH + GRID_GAP) - (CARDS_PER_ROW * (CARD_WIDTH + GRID_GAP)) / 2 + CARD_WIDTH / 2
    y = row * (CARD_HEIGHT + GRID_GAP)
    return float(x), float(y)


def caption_from_filename(filename: str) -> str:
    return slug_from_filename(filename).replace("-", " ").replace("_", " ")


def _exif_for(storage: FileStorage, path: str, item_type: str) -> ExifData:
    if item_type != "photo":
        return ExifData()
    return read_exif(storage.abspath(path))


# ---------------------------------------------------------------------------
# Recovery
# ---------------------------------------------------------------------------

def recover_from_media(storage: FileStorage, indexer: Indexer | None = None) -> RecoveryResult:
    """Write missing _event.md and item markdown for media found in the tree.

    Rebuilds the index through indexer afterwards when anything was created.
    """
    storage.require_root()
    result = RecoveryResult()
    logger.info("recovery started")

    for year in sorted(n for n in storage.list_directories() if is_year_folder(n)):
        for entry in storage.list_entries(year):
            if entry.is_dir or not is_media_file(entry.name):
                continue
            try:
                _event_for_loose_media(storage, year, entry.name)
            except (OSError, ValueError) as exc:
                logger.exception("failed to create event for loose media: %s", entry.path)
                result.errors.append(f"{entry.path}: {exc}")
                continue
            result.loose_media_moved += 1

        for name in storage.list_directories(year):
            if name.startswith("."):
                continue
            folder = join(year, name)
            try:
                if _ensure_event_file(storage, year, name):
                    result.events_created += 1
                result.items_created += _recover_orphan_media(storage, folder)
            except (OSError, ValueError) as exc:
                logger.exception("recovery failed for %s", folder)
                result.errors.append(f"{folder}: {exc}")

    logger.info(
        "recovery done: %d events, %d items, %d loose media, %d errors",
        result.events_created, result.items_created, result.loose_media_moved, len(result.errors),
    )
    if result.changed and indexer is not None:
        indexer.rebuild_full_index()
    return result


def _ensure_event_file(storage: FileStorage, year: str, name: str) -> bool:
    path = join(year, name, EVENT_FILE)
    if storage.exists(path):
        return False
    inferred = infer_event_from_folder_name(name)
    now = now_iso()
    fm = EventFrontmatter(
        id=str(uuid.uuid4()),
        type="event",
        title=inferred.title or name,
        start_at=inferred.start_at or f"{year}-01-01",
        created_at=now,
        updated_at=now,
    )
    storage.write_text(path, generate_event_markdown(fm))
    logger.info("created %s", path)
    return True


def _referenced_media(storage: FileStorage, md_files: list[DirectoryEntry]) -> set[str]:
    """Lowercased media names claimed by the folder's markdown, by stem or by ``media:``."""
    claimed: set[str] = set()
    for md in md_files:
        claimed.add(slug_from_filename(md.name).lower())
        text = storage.read_text(md.path)
        if text is None:
            continue
        media = parse_frontmatter(text).frontmatter.get("media")
        if isinstance(media, str) and media:
            claimed.add(slug_from_filename(media).lower())
    return claimed


def _recover_orphan_media(storage: FileStorage, folder: str) -> int:
    entries = storage.list_entries(folder)
    md_files = [
        e for e in entries if not e.is_dir and is_markdown_file(e.name) and not is_special_file(e.name)
    ]
    claimed = _referenced_media(storage, md_files)
    orphans = [
        e for e in entries
        if not e.is_dir and is_media_file(e.name) and slug_from_filename(e.name).lower() not in claimed
    ]
    if not orphans:
        return 0

    canvas_path = join(folder, CANVAS_FILE)
    canvas_text = storage.read_text(canvas_path)
    layout = (parse_canvas_json(canvas_text) if canvas_text else None) or CanvasLayout()
    taken = {slug_from_filename(md.name).lower() for md in md_files}

    created = 0
    for media in orphans:
        item_type = item_type_for_media(media.name)
        if item_type is None:
            continue
        item_id = str(uuid.uuid4())
        slug = generate_slug(slug_from_filename(media.name))
        if slug.lower() in taken:
            slug = generate_unique_slug(slug_from_filename(media.name), item_id)
        taken.add(slug.lower())

        exif = _exif_for(storage, media.path, item_type)
        now = now_iso()
        fm = ItemFrontmatter(
            id=item_id,
            type=item_type,
            media=media.name,
            caption=caption_from_filename(media.name),
            happened_at=exif.date_taken,
            place=exif.location,
            exif=exif.to_dict() or None,
            created_at=now,
            updated_at=now,
        )
        storage.write_text(join(folder, f"{slug}.md"), generate_item_markdown(fm))

        x, y = grid_position(created)
        layout.items.append(CanvasEntry(item_slug=slug, x=x, y=y, z_index=created))
        created += 1
        logger.info("created markdown for orphan media: %s -> %s.md", media.path, slug)

    layout.updated_at = now_iso()
    storage.write_text(canvas_path, generate_canvas_json(layout))
    return created


def _event_for_loose_media(storage: FileStorage, year: str, filename: str) -> str:
    """Move YYYY/<filename> into a new event folder of its own; returns the folder."""
    item_type = item_type_for_media(filename)
    if item_type is None:
        msg = f"unknown media type: {filename}"
        raise ValueError(msg)

    source = join(year, filename)
    exif = _exif_for(storage, source, item_type)
    when = exif.date_taken
    if when is None:
        stats = storage.stat(source)
        taken_at = datetime.fromtimestamp(stats.mtime_ms / 1000, UTC) if stats else datetime.now(UTC)
        when = to_iso(taken_at)

    caption = caption_from_filename(filename)
    folder_name = generate_event_folder_name(caption, when)
    folder = join(year, folder_name)
    n = 2
    while storage.exists(folder):
        folder = join(year, f"{folder_name} ({n})")
        n += 1
    storage.ensure_directory(folder)
    storage.rename(source, join(folder, filename))

    now = now_iso()
    slug = generate_slug(slug_from_filename(filename))
    storage.write_text(
        join(folder, EVENT_FILE),
        generate_event_markdown(
            EventFrontmatter(
                id=str(uuid.uuid4()),
                type="event",
                title=caption,
                start_at=when[:10],
                created_at=now,
                updated_at=now,
            )
        ),
    )
    storage.write_text(
        join(folder, f"{slug}.md"),
        generate_item_markdown(
            ItemFrontmatter(
                id=str(uuid.uuid4()),
                type=item_type,
                media=filename,
                caption=caption,
                happened_at=when,
                place=exif.location,
                exif=exif.to_dict() or None,
                created_at=now,
                updated_at=now,
            )
        ),
    )
    storage.write_text(
        join(folder, CANVAS_FILE),
        generate_canvas_json(CanvasLayout(items=[CanvasEntry(item_slug=slug)], updated_at=now)),
    )
    logger.info("created event for loose media: %s -> %s", source, folder)
    return folder


# ---------------------------------------------------------------------------
# Duplicate cleanup
# ---------------------------------------------------------------------------

def cleanup_duplicate_markdown(storage: FileStorage, *, dry_run: bool = False) -> CleanupResult:
    """Delete item markdown whose slug duplicates another one in the same folder.

    Of a case-insensitive group the file named after the folder's media file
    is kept, else the first by name.  Files ending in a legacy ``_xxxxxxxx``
    suffix are dropped when the unsuffixed slug exists.  Canvas entries of
    removed slugs go too.
    """
    storage.require_root()
    result = CleanupResult()

    for year in sorted(n for n in storage.list_directories() if is_year_folder(n)):
        for name in storage.list_directories(year):
            if name.startswith("."):
                continue
            folder = join(year, name)
            try:
                _cleanup_folder(storage, folder, result, dry_run=dry_run)
            except OSError as exc:
                logger.exception("cleanup failed for %s", folder)
                result.errors.append(f"{folder}: {exc}")

    logger.info(
        "cleanup done%s: %d duplicates, %d canvases updated",
        " (dry run)" if dry_run else "", result.duplicates_removed, result.canvas_updated,
    )
    return result


def _cleanup_folder(storage: FileStorage, folder: str, result: CleanupResult, *, dry_run: bool) -> None:
    entries = storage.list_entries(folder)
    media = {
        slug_from_filename(e.name).lower(): e.name
        for e in entries
        if not e.is_dir and is_media_file(e.name)
    }
    md_names = [
        e.name for e in entries
        if not e.is_dir and is_markdown_file(e.name) and not is_special_file(e.name)
    ]
    by_slug: dict[str, list[str]] = {}
    for md in md_names:
        by_slug.setdefault(slug_from_filename(md).lower(), []).append(md)

    doomed: list[str] = []
    for slug, names in by_slug.items():
        if len(names) < 2:
            continue
        media_name = media.get(slug)
        expected = f"{slug_from_filename(media_name)}.md" if media_name else None
        keep = next((n for n in names if expected and n == expected), None)
        keep = keep or next((n for n in names if expected and n.lower() == expected.lower()), names[0])
        doomed.extend(n for n in names if n != keep)

    for md in md_names:
        stem = slug_from_filename(md)
        base = _AUTO_SUFFIX_RE.sub("", stem)
        if base != stem and base.lower() in by_slug and md not in doomed:
            doomed.append(md)

    if not doomed:
        return

    for md in doomed:
        path = join(folder, md)
        result.removed.append(path)
        if dry_run:
            logger.info("would delete duplicate: %s", path)
            continue
        storage.delete_file(path)
        result.duplicates_removed += 1
        logger.info("deleted duplicate: %s", path)

    if dry_run:
        return
    canvas_path = join(folder, CANVAS_FILE)
    canvas_text = storage.read_text(canvas_path)
    layout = parse_canvas_json(canvas_text) if canvas_text else None
    if layout is None:
        return
    gone = {slug_from_filename(md).lower() for md in doomed}
    kept_slugs = {slug_from_filename(md).lower() for md in md_names if md not in doomed}
    gone -= kept_slugs
    before = len(layout.items)
    layout.items = [e for e in layout.items if e.item_slug.lower() not in gone]
    if len(layout.items) < before:
        layout.updated_at = now_iso()
        storage.write_text(canvas_path, generate_canvas_json(layout))
        result.canvas_updated += 1
