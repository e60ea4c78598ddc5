"""memorylane CLI — photo journal kept as folders of markdown, indexed in SQLite.

Commands:
    memorylane init [NAME]            create memorylane.toml and build the index
    memorylane reindex                rebuild the index from the folders
    memorylane sync                   rebuild only if files changed since the last index
    memorylane recover                write missing markdown for stray media
    memorylane cleanup [--dry-run]    remove duplicate item markdown
    memorylane migrate LEGACY_DB      write a legacy (v1) index out as folders
    memorylane status                 index stats
    memorylane watch                  keep the index in sync with the folders
    memorylane years                  list years
    memorylane event add|update|delete|list
    memorylane item add|update|delete|list
    memorylane canvas move EVENT_ID ITEM_ID
    memorylane categories [--set NAME ...]
"""

from __future__ import annotations

import base64
import logging
import mimetypes
from pathlib import Path
from typing import Any

import click

from memorylane.config import init_config, load_config
from memorylane.db import IndexStore
from memorylane.errors import MemoryLaneError
from memorylane.library import Library
from memorylane.migration import migrate_to_files, needs_migration
from memorylane.models import EVENT_TYPES, ITEM_TYPES, CanvasItem, Location
from memorylane.recovery import cleanup_duplicate_markdown, recover_from_media

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

root_option = click.option(
    "--root",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Storage root (default: $MEMORYLANE_ROOT or the nearest memorylane.toml)",
)


def _open(root: Path | None) -> Library:
    cfg = load_config(root)
    cfg.require_root()
    return Library.open(cfg)


def _location(lat: float | None, lng: float | None, label: str | None) -> Location | None:
    if lat is None or lng is None:
        if label is not None:
            msg = "--label needs --lat and --lng"
            raise click.UsageError(msg)
        return None
    return Location(lat=lat, lng=lng, label=label)


def _data_url(path: Path) -> str:
    mime = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    return f"data:{mime};base64,{base64.b64encode(path.read_bytes()).decode('ascii')}"


def _print_index_result(result: Any) -> None:
    click.echo(
        f"Indexed {result.years_indexed} years, {result.events_indexed} events, "
        f"{result.items_indexed} items, {result.canvas_items_indexed} placements"
    )
    for issue in result.warnings:
        click.echo(f"  warning: {issue.path}: {issue.error}", err=True)
    for issue in result.errors:
        click.echo(f"  error: {issue.path}: {issue.error}", err=True)


class _Group(click.Group):
    """Root group: library errors become click errors instead of tracebacks."""

    def invoke(self, ctx: click.Context) -> Any:
        try:
            return super().invoke(ctx)
        except MemoryLaneError as exc:
            raise click.ClickException(str(exc)) from exc


# ---------------------------------------------------------------------------
# Root group
# ---------------------------------------------------------------------------


@click.group(cls=_Group)
@click.version_option(package_name="memorylane")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
def cli(verbose: bool) -> None:
    """memorylane — a photo journal kept as plain folders."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(message)s",
    )


# ---------------------------------------------------------------------------
# memorylane init / reindex / sync
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("name", required=False)
@click.option("--root", type=click.Path(file_okay=False, path_type=Path), default=".", show_default=True,
              help="Storage root")
def init(name: str | None, root: Path) -> None:
    """Create memorylane.toml in the storage root and index what is already there."""
    root_path = root.resolve()
    try:
        config_path = init_config(root_path, name=name)
        click.echo(f"Created {config_path}")
    except FileExistsError:
        click.echo("memorylane.toml already exists — skipping init")

    with Library.open(load_config(root_path)) as library:
        counts = library.store.counts()
    click.echo(f"Storage root : {root_path}")
    click.echo(f"Indexed {counts['years']} years, {counts['events']} events, {counts['items']} items")


@cli.command()
@root_option
def reindex(root: Path | None) -> None:
    """Discard the index and rebuild it from the folders."""
    with _open(root) as library:
        result = library.indexer.rebuild_full_index()
    _print_index_result(result)


@cli.command()
@root_option
def sync(root: Path | None) -> None:
    """Rebuild the index if any markdown or canvas file changed."""
    with _open(root) as library:
        result = library.sync.sync_on_focus()
    if not result.has_changes:
        click.echo("No changes")
    else:
        click.echo(
            f"{len(result.added)} added, {len(result.modified)} modified, "
            f"{len(result.deleted)} deleted; index rebuilt"
        )
    for err in result.errors:
        click.echo(f"  error: {err}", err=True)


# ---------------------------------------------------------------------------
# memorylane recover / cleanup / migrate
# ---------------------------------------------------------------------------


@cli.command()
@root_option
def recover(root: Path | None) -> None:
    """Create missing _event.md and item markdown for media files."""
    with _open(root) as library:
        result = recover_from_media(library.storage, library.indexer)
    click.echo(
        f"Created {result.events_created} events, {result.items_created} items; "
        f"moved {result.loose_media_moved} loose media files"
    )
    for err in result.errors:
        click.echo(f"  error: {err}", err=True)


@cli.command()
@root_option
@click.option("--dry-run", is_flag=True, help="Only list what would be deleted")
def cleanup(root: Path | None, dry_run: bool) -> None:
    """Delete duplicate item markdown and their canvas entries."""
    with _open(root) as library:
        result = cleanup_duplicate_markdown(library.storage, dry_run=dry_run)
        if result.duplicates_removed:
            library.indexer.rebuild_full_index()
    for path in result.removed:
        click.echo(f"{'would delete' if dry_run else 'deleted'}: {path}")
    if not dry_run:
        click.echo(f"Removed {result.duplicates_removed} duplicates, updated {result.canvas_updated} canvases")
    for err in result.errors:
        click.echo(f"  error: {err}", err=True)


@cli.command()
@click.argument("legacy_db", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@root_option
def migrate(legacy_db: Path, root: Path | None) -> None:
    """Write a legacy index database out as year/event folders."""
    legacy = IndexStore.from_blob(legacy_db.read_bytes())
    try:
        if not needs_migration(legacy):
            click.echo("Nothing to migrate")
            return
        with _open(root) as library:

            def progress(p: Any) -> None:
                click.echo(f"[{p.phase}] {p.current}/{p.total} {p.status}")

            result = migrate_to_files(legacy, library.storage, on_progress=progress)
            library.indexer.rebuild_full_index()
    finally:
        legacy.close()
    click.echo(
        f"Migrated {result.years_created} years, {result.events_created} events, "
        f"{result.items_migrated} items ({result.media_files_written} media files)"
    )
    for issue in result.errors:
        click.echo(f"  error: {issue.kind} {issue.id}: {issue.error}", err=True)


# ---------------------------------------------------------------------------
# memorylane status / years / watch
# ---------------------------------------------------------------------------


@cli.command()
@root_option
def status(root: Path | None) -> None:
    """Show library and index stats."""
    from rich.console import Console
    from rich.table import Table

    with _open(root) as library:
        counts = library.store.counts()
        cfg = library.cfg
        table = Table(title=f"memorylane — {cfg.name}", show_header=True, header_style="bold")
        table.add_column("Metric", style="dim", no_wrap=True)
        table.add_column("Value", justify="right")
        table.add_row("Root", str(cfg.root))
        table.add_row("Index", str(cfg.index_path) if cfg.index_path.exists() else "[red]missing[/red]")
        table.add_row("Index version", library.store.get_meta("index_version") or "-")
        table.add_row("Last full index", library.store.get_meta("last_full_index") or "-")
        table.add_row("Durable", "yes" if library.store.durable else "[yellow]no[/yellow]")
        table.add_row("", "")
        for key in ("years", "events", "items", "canvas_items", "file_index"):
            table.add_row(key.replace("_", " ").capitalize(), str(counts[key]))
        pending = library.sync.detect_changes()
        table.add_row("", "")
        table.add_row(
            "Pending changes",
            f"[yellow]{len(pending.added) + len(pending.modified) + len(pending.deleted)}[/yellow]"
            if pending.has_changes else "0",
        )
    Console().print(table)


@cli.command()
@root_option
def years(root: Path | None) -> None:
    """List years with their event counts."""
    from rich.console import Console
    from rich.table import Table

    with _open(root) as library:
        table = Table(show_header=True, header_style="bold")
        table.add_column("Year")
        table.add_column("Events", justify="right")
        table.add_column("Id", style="dim")
        for year in sorted(library.store.get_events_by_type("year"), key=lambda e: e.start_at):
            table.add_row(year.title or year.start_at[:4], str(len(library.store.get_child_events(year.id))), year.id)
    Console().print(table)


@cli.command()
@root_option
def watch(root: Path | None) -> None:
    """Watch the folders and keep the index in sync (blocks)."""
    from memorylane.watcher import run

    with _open(root) as library:
        run(library)


# ---------------------------------------------------------------------------
# memorylane event
# ---------------------------------------------------------------------------


@cli.group()
def event() -> None:
    """Create, edit and list events."""


@event.command("add")
@click.argument("title")
@click.option("--date", "start_at", required=True, help="Start date (YYYY-MM-DD or ISO)")
@click.option("--end", "end_at", default=None, help="End date")
@click.option("--type", "event_type", type=click.Choice([t for t in EVENT_TYPES if t != "year"]),
              default="event", show_default=True)
@click.option("--description", default=None)
@click.option("--tag", "tags", multiple=True)
@click.option("--lat", type=float, default=None)
@click.option("--lng", type=float, default=None)
@click.option("--label", default=None, help="Location label")
@root_option
def event_add(
    title: str,
    start_at: str,
    end_at: str | None,
    event_type: str,
    description: str | None,
    tags: tuple[str, ...],
    lat: float | None,
    lng: float | None,
    label: str | None,
    root: Path | None,
) -> None:
    """Create an event folder with its _event.md."""
    with _open(root) as library:
        try:
            ev = library.writer.create_event(
                title,
                start_at,
                type=event_type,
                description=description,
                end_at=end_at,
                location=_location(lat, lng, label),
                tags=list(tags) or None,
            )
        except ValueError as exc:
            raise click.BadParameter(str(exc)) from exc
    click.echo(f"{ev.id}  {ev.folder_path}")


@event.command("update")
@click.argument("event_id")
@click.option("--title", default=None)
@click.option("--date", "start_at", default=None)
@click.option("--end", "end_at", default=None)
@click.option("--description", default=None)
@click.option("--tag", "tags", multiple=True)
@click.option("--featured", default=None, help="Slug of the item to feature")
@root_option
def event_update(
    event_id: str,
    title: str | None,
    start_at: str | None,
    end_at: str | None,
    description: str | None,
    tags: tuple[str, ...],
    featured: str | None,
    root: Path | None,
) -> None:
    """Edit an event's _event.md (the folder keeps its name)."""
    updates: dict[str, Any] = {
        k: v
        for k, v in {
            "title": title,
            "start_at": start_at,
            "end_at": end_at,
            "description": description,
            "featured_photo": featured,
        }.items()
        if v is not None
    }
    if tags:
        updates["tags"] = list(tags)
    if not updates:
        click.echo("Nothing to update")
        return
    with _open(root) as library:
        ev = library.writer.update_event(event_id, **updates)
    click.echo(f"Updated {ev.folder_path}")


@event.command("delete")
@click.argument("event_id")
@click.confirmation_option(prompt="Delete the event folder and everything in it?")
@root_option
def event_delete(event_id: str, root: Path | None) -> None:
    """Delete an event folder (recursively)."""
    with _open(root) as library:
        library.writer.delete_event(event_id)
    click.echo(f"Deleted {event_id}")


@event.command("list")
@click.option("--year", default=None, help="Only events of this year")
@root_option
def event_list(year: str | None, root: Path | None) -> None:
    """List events."""
    with _open(root) as library:
        events = [e for e in library.store.get_all_events() if e.type != "year"]
        if year is not None:
            events = [e for e in events if e.folder_path and e.folder_path.split("/")[0] == year]
        for ev in sorted(events, key=lambda e: e.start_at):
            n = len(library.store.get_items_by_event(ev.id))
            click.echo(f"{ev.start_at[:10]}  {ev.title or '-'}  ({n} items)  {ev.id}")


# ---------------------------------------------------------------------------
# memorylane item
# ---------------------------------------------------------------------------


@cli.group()
def item() -> None:
    """Create, edit and list items."""


@item.command("add")
@click.argument("event_id")
@click.argument("item_type", type=click.Choice(ITEM_TYPES))
@click.argument("content", required=False, default="")
@click.option("--file", "media_file", type=click.Path(exists=True, dir_okay=False, path_type=Path),
              default=None, help="Media file to copy in")
@click.option("--caption", default=None)
@click.option("--happened", "happened_at", default=None)
@click.option("--person", "people", multiple=True)
@click.option("--tag", "tags", multiple=True)
@click.option("--category", default=None)
@root_option
def item_add(
    event_id: str,
    item_type: str,
    content: str,
    media_file: Path | None,
    caption: str | None,
    happened_at: str | None,
    people: tuple[str, ...],
    tags: tuple[str, ...],
    category: str | None,
    root: Path | None,
) -> None:
    """Add an item (text, link or media) to an event."""
    original_filename = None
    if media_file is not None:
        content = _data_url(media_file)
        original_filename = media_file.name
    if not content:
        msg = "CONTENT or --file is required"
        raise click.UsageError(msg)
    with _open(root) as library:
        created = library.writer.create_item(
            event_id,
            item_type,
            content,
            caption=caption,
            happened_at=happened_at,
            people=list(people) or None,
            tags=list(tags) or None,
            category=category,
            original_filename=original_filename,
        )
    click.echo(f"{created.id}  {created.file_path}")


@item.command("update")
@click.argument("item_id")
@click.option("--content", default=None)
@click.option("--caption", default=None)
@click.option("--happened", "happened_at", default=None)
@click.option("--category", default=None)
@click.option("--tag", "tags", multiple=True)
@root_option
def item_update(
    item_id: str,
    content: str | None,
    caption: str | None,
    happened_at: str | None,
    category: str | None,
    tags: tuple[str, ...],
    root: Path | None,
) -> None:
    """Edit an item; a new caption renames its files."""
    updates: dict[str, Any] = {
        k: v
        for k, v in {"content": content, "caption": caption, "happened_at": happened_at, "category": category}.items()
        if v is not None
    }
    if tags:
        updates["tags"] = list(tags)
    if not updates:
        click.echo("Nothing to update")
        return
    with _open(root) as library:
        updated = library.writer.update_item(item_id, **updates)
    click.echo(f"Updated {updated.file_path}")


@item.command("delete")
@click.argument("item_id")
@root_option
def item_delete(item_id: str, root: Path | None) -> None:
    """Delete an item's markdown and media."""
    with _open(root) as library:
        library.writer.delete_item(item_id)
    click.echo(f"Deleted {item_id}")


@item.command("list")
@click.argument("event_id")
@root_option
def item_list(event_id: str, root: Path | None) -> None:
    """List the items of an event."""
    with _open(root) as library:
        for it in library.store.get_items_by_event(event_id):
            click.echo(f"{it.item_type:<6} {it.slug or '-'}  {it.caption or ''}  {it.id}")


# ---------------------------------------------------------------------------
# memorylane canvas / categories
# ---------------------------------------------------------------------------


@cli.group()
def canvas() -> None:
    """Arrange items on an event's canvas."""


@canvas.command("move")
@click.argument("event_id")
@click.argument("item_id")
@click.option("--x", type=float, default=0.0, show_default=True)
@click.option("--y", type=float, default=0.0, show_default=True)
@click.option("--scale", type=float, default=1.0, show_default=True)
@click.option("--rotation", type=float, default=0.0, show_default=True)
@click.option("--z", "z_index", type=int, default=0, show_default=True)
@root_option
def canvas_move(
    event_id: str,
    item_id: str,
    x: float,
    y: float,
    scale: float,
    rotation: float,
    z_index: int,
    root: Path | None,
) -> None:
    """Place an item on its event's canvas."""
    with _open(root) as library:
        placed = library.writer.update_canvas_item(
            CanvasItem(event_id=event_id, item_id=item_id, x=x, y=y, scale=scale, rotation=rotation, z_index=z_index)
        )
    click.echo(f"Placed {placed.item_slug} at ({placed.x:g}, {placed.y:g})")


@cli.command()
@click.option("--set", "new", multiple=True, help="Replace the category list")
@root_option
def categories(new: tuple[str, ...], root: Path | None) -> None:
    """Show or replace the category list."""
    with _open(root) as library:
        if new:
            library.set_categories(list(new))
        for name in library.get_categories():
            click.echo(name)
