from __future__ import annotations

from pathlib import Path

from conftest import write

from memorylane.db import INDEX_VERSION, IndexStore
from memorylane.indexer import Indexer, stable_id
from memorylane.storage import FileStorage

EVENT = "2024/2024-03-15 Verjaardag"


def test_rebuild_indexes_tree(sample_tree: Path, store: IndexStore, indexer: Indexer) -> None:
    result = indexer.rebuild_full_index()

    assert result.ok
    assert (result.years_indexed, result.events_indexed, result.items_indexed) == (1, 2, 3)
    assert result.canvas_items_indexed == 1

    ev = store.get_event("ev-1")
    assert ev is not None
    assert ev.parent_id == "year-2024"
    assert ev.start_at == "2024-03-15T00:00:00.000Z"
    assert ev.description is None
    assert ev.folder_path == EVENT
    assert ev.file_path == f"{EVENT}/_event.md"

    photo = store.get_item("item-1")
    assert photo is not None
    assert photo.content == f"file:{EVENT}/taart.jpg"
    assert photo.media_path == "taart.jpg"
    assert photo.slug == "taart"

    note = store.get_item("item-2")
    assert note is not None
    assert note.item_type == "text"
    assert note.content == "Hello world"
    assert note.body_text == "Hello world"
    assert note.file_path == f"{EVENT}/my-note.md"

    assert store.get_meta("index_version") == INDEX_VERSION
    assert store.get_meta("last_full_index")


def test_canvas_resolves_slugs_and_drops_dangling(sample_tree: Path, store: IndexStore, indexer: Indexer) -> None:
    indexer.rebuild_full_index()
    placements = store.get_canvas_items("ev-1")
    assert len(placements) == 1
    p = placements[0]
    assert (p.item_id, p.item_slug, p.x, p.y, p.scale, p.rotation, p.z_index) == ("item-1", "taart", 10, 20, 1.5, 5, 2)


def test_featured_photo_slug_resolved_to_id(sample_tree: Path, store: IndexStore, indexer: Indexer) -> None:
    indexer.rebuild_full_index()
    ev = store.get_event("ev-1")
    assert ev is not None
    assert ev.featured_photo_slug == "taart"
    assert ev.featured_photo_id == "item-1"


def test_folder_without_event_file_is_inferred(sample_tree: Path, store: IndexStore, indexer: Indexer) -> None:
    indexer.rebuild_full_index()
    ev = store.get_event_by_folder("2024/Random Folder")
    assert ev is not None
    assert ev.id == stable_id("2024/Random Folder")
    assert ev.title == "Random Folder"
    assert ev.start_at == "2024-01-01T00:00:00.000Z"
    assert ev.file_path is None

    [note] = store.get_items_by_event(ev.id)
    assert note.item_type == "text"
    assert note.content == "Just text, no frontmatter"


def test_malformed_frontmatter_becomes_warning(sample_tree: Path, indexer: Indexer) -> None:
    result = indexer.rebuild_full_index()
    assert [w.path for w in result.warnings] == ["2024/Random Folder/note.md"]
    assert result.ok


def test_rebuild_is_idempotent(sample_tree: Path, store: IndexStore, indexer: Indexer) -> None:
    indexer.rebuild_full_index()
    first = {t: store.table_rows(t) for t in ("events", "items", "canvas_items")}
    indexer.rebuild_full_index()
    second = {t: store.table_rows(t) for t in ("events", "items", "canvas_items")}
    assert first == second


def test_year_without_descriptor_is_synthesised(root: Path, store: IndexStore, indexer: Indexer) -> None:
    write(root, "2023/2023-05-01 Koningsdag/_event.md", "---\nid: k\ntype: event\nstartAt: 2023-04-27\n---\n")
    indexer.rebuild_full_index()
    year = store.get_year_for_date("2023-04-27")
    assert year is not None
    assert year.id == stable_id("2023")
    assert year.file_path is None
    ev = store.get_event("k")
    assert ev is not None
    assert ev.parent_id == year.id
    assert ev.title == "Koningsdag"


def test_non_year_and_dot_folders_ignored(root: Path, store: IndexStore, indexer: Indexer) -> None:
    write(root, "inbox/x.md", "---\nid: x\ntype: text\n---\n")
    write(root, "2024/.trash/_event.md", "---\nid: t\ntype: event\nstartAt: 2024-01-01\n---\n")
    result = indexer.rebuild_full_index()
    assert result.events_indexed == 0
    assert store.get_event("t") is None


def test_media_paired_by_stem_case_insensitively(root: Path, store: IndexStore, indexer: Indexer) -> None:
    write(root, "2024/2024-01-02 Sneeuw/sneeuw.md", "---\nid: s\ntype: photo\n---\n")
    (root / "2024/2024-01-02 Sneeuw/Sneeuw.JPG").write_bytes(b"jpg")
    indexer.rebuild_full_index()
    item = store.get_item("s")
    assert item is not None
    assert item.media_path == "Sneeuw.JPG"
    assert item.content == "file:2024/2024-01-02 Sneeuw/Sneeuw.JPG"


def test_categories_survive_rebuild(sample_tree: Path, store: IndexStore, indexer: Indexer) -> None:
    store.set_meta("categories", '["werk"]')
    indexer.rebuild_full_index()
    assert store.get_meta("categories") == '["werk"]'


def test_rebuild_tracks_files_not_media(sample_tree: Path, store: IndexStore, indexer: Indexer) -> None:
    indexer.rebuild_full_index()
    tracked = {e.path: e.type for e in store.get_all_file_entries()}
    assert tracked == {
        "2024/_year.md": "year",
        f"{EVENT}/_event.md": "event",
        f"{EVENT}/_canvas.json": "canvas",
        f"{EVENT}/taart.md": "item",
        f"{EVENT}/my-note.md": "item",
        "2024/Random Folder/note.md": "item",
    }


def test_rebuild_persists_snapshot(sample_tree: Path, storage: FileStorage, indexer: Indexer) -> None:
    indexer.rebuild_full_index()
    blob = storage.read_index_blob()
    assert blob is not None
    assert IndexStore.from_blob(blob).get_event("ev-1") is not None


def test_needs_full_rebuild(store: IndexStore, indexer: Indexer) -> None:
    assert indexer.needs_full_rebuild()
    store.set_meta("index_version", "1")
    assert indexer.needs_full_rebuild()
    store.set_meta("index_version", INDEX_VERSION)
    assert not indexer.needs_full_rebuild()


def test_undecodable_year_descriptor_keeps_folder(sample_tree: Path, store: IndexStore, indexer: Indexer) -> None:
    (sample_tree / "2024/_year.md").write_bytes(
        b"---\nid: year-2024\ntype: year\ntitle: Caf\xe9\nstartAt: 2024-01-01\n---\n"
    )
    result = indexer.rebuild_full_index()

    assert result.ok
    assert (result.years_indexed, result.events_indexed, result.items_indexed) == (1, 2, 3)
    year = store.get_event("year-2024")
    assert year is not None
    assert year.title == "Caf\ufffd"
    assert store.get_file_entry("2024/_year.md") is not None


def test_undecodable_event_descriptor_keeps_items(sample_tree: Path, store: IndexStore, indexer: Indexer) -> None:
    (sample_tree / EVENT / "_event.md").write_bytes(
        b"---\nid: ev-1\ntype: event\ntitle: Verjaardag \xe9\xe9n\nstartAt: 2024-03-15\n---\n"
    )
    indexer.rebuild_full_index()
    assert store.get_event("ev-1") is not None
    assert store.get_item("item-1") is not None
    assert store.get_item("item-2") is not None


def test_unreadable_canvas_is_an_error_not_a_lost_folder(
    sample_tree: Path, store: IndexStore, indexer: Indexer
) -> None:
    (sample_tree / EVENT / "_canvas.json").unlink()
    (sample_tree / EVENT / "_canvas.json").mkdir()
    result = indexer.rebuild_full_index()
    assert [e.path for e in result.errors] == [f"{EVENT}/_canvas.json"]
    assert result.events_indexed == 2
    assert store.get_item("item-1") is not None
    assert store.get_canvas_items("ev-1") == []


def test_year_type_in_event_folder_is_demoted(sample_tree: Path, store: IndexStore, indexer: Indexer) -> None:
    write(sample_tree, "2024/2024-05-01 Meivakantie/_event.md", "---\nid: mei\ntype: year\nstartAt: 2024-05-01\n---\n")
    result = indexer.rebuild_full_index()

    assert [e.id for e in store.get_events_by_type("year")] == ["year-2024"]
    mei = store.get_event("mei")
    assert mei is not None
    assert mei.type == "event"
    assert "2024/2024-05-01 Meivakantie/_event.md" in [w.path for w in result.warnings]
    year = store.get_year_for_date("2024-05-01")
    assert year is not None
    assert year.id == "year-2024"
