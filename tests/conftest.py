from __future__ import annotations

import base64
import os
from pathlib import Path

import pytest

from memorylane.config import init_config, load_config
from memorylane.db import IndexStore
from memorylane.indexer import Indexer
from memorylane.library import Library
from memorylane.storage import FileStorage
from memorylane.sync import SyncService
from memorylane.writer import Writer

# 1x1 transparent PNG
PNG_DATA_URL = (
    "data:image/png;base64,"
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)
JPEG_DATA_URL = "data:image/jpeg;base64," + base64.b64encode(b"\xff\xd8\xff\xe0fake-jpeg").decode()


def write(root: Path, rel: str, text: str) -> Path:
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def touch_later(path: Path, seconds: float = 10.0) -> None:
    """Push path's mtime into the future so drift detection cannot miss it."""
    st = path.stat()
    os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns + int(seconds * 1e9)))


@pytest.fixture
def root(tmp_path: Path) -> Path:
    r = tmp_path / "library"
    r.mkdir()
    return r


@pytest.fixture
def storage(root: Path) -> FileStorage:
    return FileStorage(root)


@pytest.fixture
def store(storage: FileStorage) -> IndexStore:
    s = IndexStore(persist=storage.write_index_blob)
    yield s
    s.close()


@pytest.fixture
def indexer(storage: FileStorage, store: IndexStore) -> Indexer:
    return Indexer(storage, store)


@pytest.fixture
def writer(storage: FileStorage, store: IndexStore) -> Writer:
    return Writer(storage, store)


@pytest.fixture
def sync_service(storage: FileStorage, store: IndexStore, indexer: Indexer) -> SyncService:
    service = SyncService(storage, store, indexer, debounce_ms=50)
    yield service
    service.cancel()


@pytest.fixture
def library(root: Path) -> Library:
    init_config(root, name="test")
    lib = Library.open(load_config(root))
    yield lib
    lib.close()


@pytest.fixture
def sample_tree(root: Path) -> Path:
    """A hand-written tree: one year, two events, a photo with a canvas placement."""
    write(root, "2024/_year.md", "---\nid: year-2024\ntype: year\ntitle: \"2024\"\nstartAt: 2024-01-01\n---\n")
    write(
        root,
        "2024/2024-03-15 Verjaardag/_event.md",
        "---\nid: ev-1\ntype: event\ntitle: Verjaardag\nstartAt: 2024-03-15\n"
        "featuredPhoto: taart\ncreatedAt: 2024-03-15T10:00:00.000Z\nupdatedAt: 2024-03-15T10:00:00.000Z\n---\n\n"
        "Feest bij oma\n",
    )
    write(
        root,
        "2024/2024-03-15 Verjaardag/taart.md",
        "---\nid: item-1\ntype: photo\nmedia: taart.jpg\ncaption: Taart\n---\n\nTaart\n",
    )
    (root / "2024/2024-03-15 Verjaardag/taart.jpg").write_bytes(b"\xff\xd8\xff\xe0fake")
    write(
        root,
        "2024/2024-03-15 Verjaardag/my-note.md",
        "---\nid: item-2\ntype: text\n---\n\nHello world\n",
    )
    write(
        root,
        "2024/2024-03-15 Verjaardag/_canvas.json",
        '{"version": 1, "items": [{"itemSlug": "taart", "x": 10, "y": 20, "scale": 1.5, '
        '"rotation": 5, "zIndex": 2}, {"itemSlug": "ghost", "x": 0, "y": 0}]}',
    )
    write(root, "2024/Random Folder/note.md", "Just text, no frontmatter\n")
    return root
