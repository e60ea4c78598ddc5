from __future__ import annotations

import sqlite3
import threading

import pytest

from memorylane.db import IndexStore
from memorylane.errors import RebuildInProgressError
from memorylane.models import CanvasItem, Event, FileIndexEntry, Item, Location


def _year(store: IndexStore, year: str = "2024") -> Event:
    ev = Event(
        id=f"year-{year}",
        type="year",
        title=year,
        start_at=f"{year}-01-01",
        end_at=f"{year}-12-31",
        folder_path=year,
        created_at="t",
        updated_at="t",
    )
    store.upsert_event(ev)
    return ev


def _event(store: IndexStore, parent: Event, **kw: object) -> Event:
    ev = Event(
        id=str(kw.get("id", "ev-1")),
        type="event",
        title="Verjaardag",
        start_at="2024-03-15T00:00:00.000Z",
        parent_id=parent.id,
        folder_path="2024/2024-03-15 Verjaardag",
        location=Location(52.0, 4.0, "Delft"),
        tags=["familie"],
        created_at="t",
        updated_at="t",
    )
    store.upsert_event(ev)
    return ev


def test_event_roundtrip() -> None:
    store = IndexStore()
    ev = _event(store, _year(store))
    assert store.get_event(ev.id) == ev
    assert store.get_event_by_folder("2024/2024-03-15 Verjaardag") == ev
    assert store.get_event("missing") is None


def test_item_roundtrip_and_slug_lookup() -> None:
    store = IndexStore()
    ev = _event(store, _year(store))
    item = Item(
        id="i1",
        event_id=ev.id,
        item_type="photo",
        content="file:2024/x/taart.jpg",
        caption="Taart",
        people=["oma"],
        category="familie",
        slug="taart",
        media_path="taart.jpg",
    )
    store.upsert_item(item)
    assert store.get_item("i1") == item
    assert store.get_item_by_slug(ev.id, "taart") == item
    assert store.get_items_by_event(ev.id) == [item]


def test_year_for_date() -> None:
    store = IndexStore()
    year = _year(store)
    assert store.get_year_for_date("2024-06-01") == year
    assert store.get_year_for_date("2023-06-01") is None


def test_delete_event_cascades() -> None:
    store = IndexStore()
    ev = _event(store, _year(store))
    store.upsert_item(Item(id="i1", event_id=ev.id, item_type="text", content="x", slug="x"))
    store.upsert_canvas_item(CanvasItem(event_id=ev.id, item_id="i1", item_slug="x"))
    store.delete_event(ev.id)
    assert store.get_item("i1") is None
    assert store.get_canvas_items(ev.id) == []


def test_canvas_items_ordered_by_z() -> None:
    store = IndexStore()
    store.upsert_canvas_item(CanvasItem(event_id="e", item_id="a", z_index=3))
    store.upsert_canvas_item(CanvasItem(event_id="e", item_id="b", z_index=1))
    assert [c.item_id for c in store.get_canvas_items("e")] == ["b", "a"]


def test_file_entries_under_folder() -> None:
    store = IndexStore()
    for path in ("2024/a_b/x.md", "2024/a_b/_event.md", "2024/aXb/y.md"):
        store.upsert_file_entry(FileIndexEntry(path=path, type="item", mtime_ms=1, size=1, last_indexed_at="t"))
    store.delete_file_entries_under("2024/a_b")
    assert [e.path for e in store.get_all_file_entries()] == ["2024/aXb/y.md"]


def test_timeline_falls_back_to_event_start() -> None:
    store = IndexStore()
    year = _year(store)
    ev = _event(store, year)
    store.upsert_item(Item(id="i1", event_id=ev.id, item_type="text", content="a"))
    store.upsert_item(
        Item(id="i2", event_id=ev.id, item_type="text", content="b", happened_at="2024-03-14T09:00:00.000Z")
    )
    timeline = store.get_timeline(year.id)
    assert [(t.item_id, t.timestamp) for t in timeline] == [
        ("i2", "2024-03-14T09:00:00.000Z"),
        ("i1", "2024-03-15T00:00:00.000Z"),
    ]
    assert timeline[0].event_location == "Delft"


def test_blob_roundtrip() -> None:
    store = IndexStore()
    ev = _event(store, _year(store))
    store.set_meta("index_version", "2")
    loaded = IndexStore.from_blob(store.export())
    assert loaded.get_event(ev.id) == ev
    assert loaded.get_meta("index_version") == "2"


def test_garbage_blob_raises() -> None:
    with pytest.raises(sqlite3.DatabaseError):
        IndexStore.from_blob(b"definitely not sqlite" * 100)


def test_upgrade_adds_missing_columns() -> None:
    conn = sqlite3.connect(":memory:")
    conn.execute(
        "CREATE TABLE events (id TEXT PRIMARY KEY, type TEXT NOT NULL, title TEXT, "
        "start_at TEXT NOT NULL, end_at TEXT, parent_id TEXT, cover_media_id TEXT, "
        "created_at TEXT NOT NULL, updated_at TEXT NOT NULL)"
    )
    conn.execute("INSERT INTO events VALUES ('e', 'event', 'Oud', '2020-01-01', NULL, NULL, NULL, 't', 't')")
    conn.commit()
    store = IndexStore.from_blob(conn.serialize())
    ev = store.get_event("e")
    assert ev is not None
    assert ev.title == "Oud"
    assert ev.folder_path is None
    store.upgrade_schema()  # idempotent


def test_clear_index_keeps_meta() -> None:
    store = IndexStore()
    _event(store, _year(store))
    store.set_meta("categories", '["werk"]')
    store.clear_index()
    assert store.counts()["events"] == 0
    assert store.get_meta("categories") == '["werk"]'


def test_flush_failure_marks_not_durable() -> None:
    def broken(_data: bytes) -> None:
        raise OSError("disk full")

    store = IndexStore(persist=broken)
    assert store.flush() is False
    assert store.durable is False


def test_flush_hands_snapshot_to_persist() -> None:
    saved: list[bytes] = []
    store = IndexStore(persist=saved.append)
    store.set_meta("k", "v")
    assert store.flush() is True
    assert IndexStore.from_blob(saved[-1]).get_meta("k") == "v"


def test_writes_rejected_during_rebuild_on_other_thread() -> None:
    store = IndexStore()
    errors: list[BaseException] = []

    def other() -> None:
        try:
            store.ensure_writable()
        except RebuildInProgressError as exc:
            errors.append(exc)

    with store.rebuilding():
        assert store.is_rebuilding
        store.ensure_writable()  # the rebuilding thread itself may write
        t = threading.Thread(target=other)
        t.start()
        t.join()
    assert len(errors) == 1
    assert not store.is_rebuilding
    store.ensure_writable()
