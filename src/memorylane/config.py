"""LibraryConfig: storage-root-local config for a memorylane library.

Default layout (all relative to the storage root):

    memorylane.toml       # library config
    index.db              # exported index snapshot (disposable, rebuildable)
    2024/                 # year folder
        _year.md
        2024-03-15 Verjaardag/
            _event.md
            _canvas.json
            taart.md
            taart.jpg

memorylane.toml example:

    [library]
    name = "family"
    # index_file = "index.db"   # default

    [sync]
    debounce_ms = 500
    auto_sync_threshold_ms = 300000
    poll_interval = 30.0

    [categories]
    default = ["persoonlijk", "werk", "familie", "creatief", "vakantie"]
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from memorylane.errors import StorageNotConfiguredError

_CONFIG_FILENAME = "memorylane.toml"
_ROOT_ENV = "MEMORYLANE_ROOT"
_DEFAULT_INDEX_FILE = "index.db"
_DEFAULT_CATEGORIES = ["persoonlijk", "werk", "familie", "creatief", "vakantie"]


@dataclass
class SyncConfig:
    debounce_ms: int = 500                  # quiet period before a coalesced sync runs
    auto_sync_threshold_ms: int = 300_000   # periodic background sync gate
    poll_interval: float = 30.0             # seconds, watcher polling fallback


@dataclass
class LibraryConfig:
    """Resolved configuration for a memorylane library."""

    root: Path | None                       # storage root; None = not configured
    name: str = ""
    index_file: str = _DEFAULT_INDEX_FILE
    sync: SyncConfig = field(default_factory=SyncConfig)
    categories: list[str] = field(default_factory=lambda: list(_DEFAULT_CATEGORIES))

    @property
    def index_path(self) -> Path:
        return self.require_root() / self.index_file

    @property
    def config_path(self) -> Path:
        return self.require_root() / _CONFIG_FILENAME

    def require_root(self) -> Path:
        if self.root is None:
            raise StorageNotConfiguredError
        return self.root


def load_config(root: Path | str | None = None) -> LibraryConfig:
    """Load memorylane.toml from root, $MEMORYLANE_ROOT, or by searching upward from cwd.

    Returns a config with ``root=None`` when no storage root can be found.
    """
    if root is not None:
        root_path: Path | None = Path(root)
    elif os.environ.get(_ROOT_ENV):
        root_path = Path(os.environ[_ROOT_ENV])
    else:
        root_path = _find_root(Path.cwd())

    if root_path is None:
        return LibraryConfig(root=None)

    raw: dict[str, Any] = {}
    config_path = root_path / _CONFIG_FILENAME
    if config_path.exists():
        with config_path.open("rb") as f:
            raw = tomllib.load(f)

    lib_section = raw.get("library", {})
    sync_section = raw.get("sync", {})
    cat_section = raw.get("categories", {})

    return LibraryConfig(
        root=root_path,
        name=lib_section.get("name", root_path.name),
        index_file=lib_section.get("index_file", _DEFAULT_INDEX_FILE),
        sync=SyncConfig(
            debounce_ms=int(sync_section.get("debounce_ms", 500)),
            auto_sync_threshold_ms=int(sync_section.get("auto_sync_threshold_ms", 300_000)),
            poll_interval=float(sync_section.get("poll_interval", 30.0)),
        ),
        categories=[str(c) for c in cat_section.get("default", _DEFAULT_CATEGORIES)],
    )


def _find_root(start: Path) -> Path | None:
    """Walk upward from start looking for memorylane.toml."""
    for directory in (start, *start.parents):
        if (directory / _CONFIG_FILENAME).exists():
            return directory
    return None


def init_config(root: Path, name: str | None = None) -> Path:
    """Write a default memorylane.toml at root. Raises if already exists."""
    config_path = root / _CONFIG_FILENAME
    if config_path.exists():
        msg = f"memorylane.toml already exists at {config_path}"
        raise FileExistsError(msg)

    library_name = name or root.name
    content = f"""\
[library]
name = "{library_name}"
# index_file = "index.db"   # default; disposable, rebuilt from the folders

[sync]
# debounce_ms = 500               # quiet period for coalescing file events
# auto_sync_threshold_ms = 300000 # periodic background sync
# poll_interval = 30.0            # seconds, when inotify is unavailable

# [categories]
# default = ["persoonlijk", "werk", "familie", "creatief", "vakantie"]
"""
    root.mkdir(parents=True, exist_ok=True)
    config_path.write_text(content)
    return config_path
