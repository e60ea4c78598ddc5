from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest
from conftest import JPEG_DATA_URL, PNG_DATA_URL

from memorylane.db import IndexStore
from memorylane.errors import (
    EventNotFoundError,
    InvalidUpdateError,
    ItemNotFoundError,
    ItemRenameError,
    RebuildInProgressError,
    StorageNotConfiguredError,
)
from memorylane.frontmatter import decode_item, parse_frontmatter
from memorylane.indexer import Indexer
from memorylane.models import CanvasItem, Event, Location
from memorylane.storage import FileStorage
from memorylane.writer import RenameState, Writer

FOLDER = "2024/2024-03-15 Verjaardag"


@pytest.fixture
def event(writer: Writer) -> Event:
    return writer.create_event("Verjaardag", "2024-03-15", description="Feest", location=Location(52.0, 4.3))


def test_create_event_writes_descriptor(root: Path, store: IndexStore, event: Event) -> None:
    assert event.folder_path == FOLDER
    assert event.start_at == "2024-03-15T00:00:00.000Z"
    text = (root / FOLDER / "_event.md").read_text()
    assert "title: Verjaardag" in text
    assert "startAt: 2024-03-15" in text
    assert text.rstrip().endswith("Feest")
    assert (root / "2024" / "_year.md").exists()
    year = store.get_year_for_date("2024-03-15")
    assert year is not None
    assert event.parent_id == year.id
    assert store.get_file_entry(f"{FOLDER}/_event.md") is not None


def test_create_event_twice_gets_distinct_folders(writer: Writer, event: Event) -> None:
    again = writer.create_event("Verjaardag", "2024-03-15")
    assert again.folder_path == f"{FOLDER} (2)"


def test_create_event_reuses_year(writer: Writer, store: IndexStore, event: Event) -> None:
    writer.create_event("Pasen", "2024-03-31")
    assert store.counts()["years"] == 1


def test_create_event_unknown_parent(writer: Writer) -> None:
    with pytest.raises(EventNotFoundError):
        writer.create_event("x", "2024-01-01", parent_id="nope")


def test_write_through_text_item(root: Path, writer: Writer, store: IndexStore, event: Event) -> None:
    item = writer.create_item(event.id, "text", "  Hello world  ", caption="My Note")
    assert item.slug == "my-note"
    assert item.file_path == f"{FOLDER}/my-note.md"
    md = (root / FOLDER / "my-note.md").read_text()
    decoded = decode_item(parse_frontmatter(md))
    assert decoded.id == item.id
    assert parse_frontmatter(md).body == "Hello world"
    assert store.get_item(item.id) == item


def test_writer_output_matches_rebuild(writer: Writer, store: IndexStore, indexer: Indexer, event: Event) -> None:
    note = writer.create_item(event.id, "text", "Hello", caption="My Note", tags=["a"], people=["oma"])
    photo = writer.create_item(event.id, "photo", PNG_DATA_URL, caption="Taart", happened_at="2024-03-15T15:00:00Z")
    link = writer.create_item(event.id, "link", "https://example.org", caption="Site")
    before = {t: store.table_rows(t) for t in ("events", "items")}

    indexer.rebuild_full_index()

    assert {t: store.table_rows(t) for t in ("events", "items")} == before
    assert store.get_item(note.id) == note
    assert store.get_item(photo.id) == photo
    assert store.get_item(link.id) == link
    assert store.get_event(event.id) == event


def test_media_item_writes_file(root: Path, writer: Writer, event: Event) -> None:
    item = writer.create_item(event.id, "photo", JPEG_DATA_URL, caption="Old Title")
    assert item.media_path == "old-title.jpg"
    assert item.content == f"file:{FOLDER}/old-title.jpg"
    assert (root / FOLDER / "old-title.jpg").read_bytes().startswith(b"\xff\xd8")


def test_media_extension_from_original_filename(writer: Writer, event: Event) -> None:
    item = writer.create_item(event.id, "photo", JPEG_DATA_URL, caption="Scan", original_filename="scan.HEIC")
    assert item.media_path == "scan.heic"


def test_slug_collision_gets_id_suffix(writer: Writer, event: Event) -> None:
    first = writer.create_item(event.id, "text", "a", caption="Zee")
    second = writer.create_item(event.id, "text", "b", caption="Zee")
    assert first.slug == "zee"
    assert second.slug == f"zee-{second.id[:8]}"


def test_rename_on_caption_change(root: Path, writer: Writer, store: IndexStore, indexer: Indexer, event: Event) -> None:
    item = writer.create_item(event.id, "photo", JPEG_DATA_URL, caption="Old Title")
    writer.update_canvas_item(CanvasItem(event_id=event.id, item_id=item.id, x=5, y=6))

    updated = writer.update_item(item.id, caption="New Title")

    folder = root / FOLDER
    assert not (folder / "old-title.md").exists()
    assert not (folder / "old-title.jpg").exists()
    assert (folder / "new-title.md").exists()
    assert (folder / "new-title.jpg").exists()
    assert updated.slug == "new-title"
    assert updated.media_path == "new-title.jpg"
    assert updated.content == f"file:{FOLDER}/new-title.jpg"
    assert decode_item(parse_frontmatter((folder / "new-title.md").read_text())).media == "new-title.jpg"

    canvas = json.loads((folder / "_canvas.json").read_text())
    assert [e["itemSlug"] for e in canvas["items"]] == ["new-title"]
    placement = store.get_canvas_item(event.id, item.id)
    assert placement is not None
    assert placement.item_slug == "new-title"
    assert store.get_file_entry(f"{FOLDER}/old-title.md") is None

    indexer.rebuild_full_index()
    assert store.get_item(item.id) == updated
    rebuilt = store.get_canvas_item(event.id, item.id)
    assert rebuilt is not None
    assert (rebuilt.x, rebuilt.y) == (5, 6)


def test_caption_change_with_same_slug_does_not_rename(root: Path, writer: Writer, event: Event) -> None:
    item = writer.create_item(event.id, "text", "x", caption="Zee")
    updated = writer.update_item(item.id, caption="ZEE!")
    assert updated.slug == "zee"
    assert updated.caption == "ZEE!"
    assert (root / FOLDER / "zee.md").exists()


def test_rename_failure_leaves_index_untouched(
    writer: Writer, storage: FileStorage, store: IndexStore, event: Event, monkeypatch: pytest.MonkeyPatch
) -> None:
    item = writer.create_item(event.id, "photo", JPEG_DATA_URL, caption="Old Title")
    real_rename = storage.rename
    calls: list[str] = []

    def flaky(src: str, dst: str) -> None:
        calls.append(src)
        if src.endswith(".jpg"):
            msg = "device busy"
            raise OSError(msg)
        real_rename(src, dst)

    monkeypatch.setattr(storage, "rename", flaky)
    with pytest.raises(ItemRenameError) as info:
        writer.update_item(item.id, caption="New Title")

    assert info.value.state is RenameState.RENAMING_MEDIA
    assert info.value.item_id == item.id
    assert store.get_item(item.id) == item


def test_update_text_content(root: Path, writer: Writer, store: IndexStore, event: Event) -> None:
    item = writer.create_item(event.id, "text", "oud", caption="Notitie")
    updated = writer.update_item(item.id, content="nieuw", category="werk")
    assert updated.content == "nieuw"
    assert updated.category == "werk"
    assert parse_frontmatter((root / FOLDER / "notitie.md").read_text()).body == "nieuw"
    assert store.get_item(item.id) == updated


def test_update_media_content_replaces_file(root: Path, writer: Writer, event: Event) -> None:
    item = writer.create_item(event.id, "photo", JPEG_DATA_URL, caption="Foto")
    updated = writer.update_item(item.id, content=PNG_DATA_URL)
    assert updated.media_path == "foto.png"
    assert (root / FOLDER / "foto.png").exists()
    assert not (root / FOLDER / "foto.jpg").exists()


def test_update_item_rejects_unknown_fields(writer: Writer, event: Event) -> None:
    item = writer.create_item(event.id, "text", "x")
    with pytest.raises(InvalidUpdateError):
        writer.update_item(item.id, slug="hack")


def test_delete_item(root: Path, writer: Writer, store: IndexStore, event: Event) -> None:
    keep = writer.create_item(event.id, "text", "blijft", caption="Blijft")
    item = writer.create_item(event.id, "photo", JPEG_DATA_URL, caption="Weg")
    writer.update_canvas_item(CanvasItem(event_id=event.id, item_id=keep.id))
    writer.update_canvas_item(CanvasItem(event_id=event.id, item_id=item.id))

    writer.delete_item(item.id)

    assert not (root / FOLDER / "weg.md").exists()
    assert not (root / FOLDER / "weg.jpg").exists()
    assert store.get_item(item.id) is None
    assert store.get_canvas_item(event.id, item.id) is None
    canvas = json.loads((root / FOLDER / "_canvas.json").read_text())
    assert [e["itemSlug"] for e in canvas["items"]] == ["blijft"]
    with pytest.raises(ItemNotFoundError):
        writer.delete_item(item.id)


def test_update_event_keeps_folder(root: Path, writer: Writer, store: IndexStore, indexer: Indexer, event: Event) -> None:
    updated = writer.update_event(event.id, title="Verjaardag oma", tags=["familie"])
    assert updated.folder_path == FOLDER
    assert "title: Verjaardag oma" in (root / FOLDER / "_event.md").read_text()
    indexer.rebuild_full_index()
    rebuilt = store.get_event(event.id)
    assert rebuilt is not None
    assert rebuilt.title == "Verjaardag oma"
    assert rebuilt.tags == ["familie"]


def test_update_event_featured_photo(writer: Writer, event: Event) -> None:
    photo = writer.create_item(event.id, "photo", JPEG_DATA_URL, caption="Taart")
    updated = writer.update_event(event.id, featured_photo="taart")
    assert updated.featured_photo_slug == "taart"
    assert updated.featured_photo_id == photo.id


def test_update_event_invalid(writer: Writer, event: Event) -> None:
    with pytest.raises(InvalidUpdateError):
        writer.update_event(event.id, folder_path="elsewhere")
    with pytest.raises(InvalidUpdateError):
        writer.update_event(event.id, start_at=None)
    with pytest.raises(InvalidUpdateError):
        writer.update_event(event.id, type="year")


def test_delete_event(root: Path, writer: Writer, store: IndexStore, event: Event) -> None:
    item = writer.create_item(event.id, "text", "x", caption="Iets")
    writer.delete_event(event.id)
    assert not (root / FOLDER).exists()
    assert store.get_event(event.id) is None
    assert store.get_item(item.id) is None
    assert [e.path for e in store.get_all_file_entries()] == ["2024/_year.md"]


def test_canvas_viewport_preserved(root: Path, writer: Writer, event: Event) -> None:
    item = writer.create_item(event.id, "text", "x")
    writer.set_canvas_viewport(event.id, 1.0, 2.0, 0.5)
    writer.update_canvas_item(CanvasItem(event_id=event.id, item_id=item.id, x=3))
    writer.save_canvas_layout(event.id)
    canvas = json.loads((root / FOLDER / "_canvas.json").read_text())
    assert canvas["viewport"] == {"centerX": 1.0, "centerY": 2.0, "zoom": 0.5}
    assert canvas["items"][0]["x"] == 3


def test_unconfigured_storage_raises() -> None:
    writer = Writer(FileStorage(None), IndexStore())
    with pytest.raises(StorageNotConfiguredError):
        writer.create_event("x", "2024-01-01")


def test_writes_rejected_while_rebuilding(writer: Writer, store: IndexStore) -> None:
    holding = threading.Event()
    release = threading.Event()

    def rebuild() -> None:
        with store.rebuilding():
            holding.set()
            release.wait(5)

    t = threading.Thread(target=rebuild)
    t.start()
    try:
        assert holding.wait(5)
        with pytest.raises(RebuildInProgressError):
            writer.create_event("x", "2024-01-01")
    finally:
        release.set()
        t.join()


def test_rename_avoids_stray_media_with_new_name(root: Path, writer: Writer, event: Event) -> None:
    item = writer.create_item(event.id, "photo", JPEG_DATA_URL, caption="Old Title")
    (root / FOLDER / "new-title.jpg").write_bytes(b"someone else's photo")

    updated = writer.update_item(item.id, caption="New Title")

    assert updated.slug == f"new-title-{item.id[:8]}"
    assert updated.media_path == f"new-title-{item.id[:8]}.jpg"
    assert (root / FOLDER / "new-title.jpg").read_bytes() == b"someone else's photo"
    assert not (root / FOLDER / "old-title.md").exists()


def test_rename_checks_targets_before_moving(
    root: Path, writer: Writer, store: IndexStore, event: Event, monkeypatch: pytest.MonkeyPatch
) -> None:
    item = writer.create_item(event.id, "photo", JPEG_DATA_URL, caption="Old Title")
    (root / FOLDER / "new-title.jpg").write_bytes(b"stray")
    monkeypatch.setattr(writer, "_free_slug", lambda *_a, **_kw: "new-title")

    with pytest.raises(ItemRenameError) as info:
        writer.update_item(item.id, caption="New Title")

    assert info.value.state is RenameState.PENDING
    assert (root / FOLDER / "old-title.md").exists()
    assert (root / FOLDER / "old-title.jpg").exists()
    assert store.get_item(item.id) == item


def test_update_media_content_with_file_reference(root: Path, writer: Writer, store: IndexStore, event: Event) -> None:
    item = writer.create_item(event.id, "photo", JPEG_DATA_URL, caption="Foto")
    (root / FOLDER / "scan.png").write_bytes(b"png")

    updated = writer.update_item(item.id, content=f"file:{FOLDER}/scan.png")

    assert updated.media_path == "scan.png"
    assert updated.content == f"file:{FOLDER}/scan.png"
    assert decode_item(parse_frontmatter((root / FOLDER / "foto.md").read_text())).media == "scan.png"
    assert store.get_item(item.id) == updated


def test_update_media_content_rejects_plain_text(writer: Writer, event: Event) -> None:
    item = writer.create_item(event.id, "photo", JPEG_DATA_URL, caption="Foto")
    with pytest.raises(InvalidUpdateError):
        writer.update_item(item.id, content="just words")
