"""FileStorage: filesystem primitives rooted at the library's storage folder.

All paths handed in and out are root-relative POSIX strings, the same strings
stored in ``events.file_path``, ``events.folder_path`` and ``file_index.path``:

    storage = FileStorage("/data/memories")
    storage.write_text("2024/2024-03-15 Verjaardag/_event.md", text)
    storage.stat("2024/2024-03-15 Verjaardag/_event.md")
    # FileStats(path='2024/...', mtime_ms=1710495600000, size=214)
"""

from __future__ import annotations

import base64
import logging
import shutil
import urllib.parse
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from memorylane.errors import StorageNotConfiguredError

logger = logging.getLogger("memorylane.storage")


@dataclass
class DirectoryEntry:
    name: str
    kind: str       # file | directory
    path: str       # root-relative

    @property
    def is_dir(self) -> bool:
        return self.kind == "directory"


@dataclass
class FileStats:
    path: str
    mtime_ms: int
    size: int


def join(*parts: str) -> str:
    """Join root-relative path segments, ignoring empty ones."""
    return str(PurePosixPath(*[p for p in parts if p]))


def parent_of(path: str) -> str:
    parent = str(PurePosixPath(path).parent)
    return "" if parent == "." else parent


def name_of(path: str) -> str:
    return PurePosixPath(path).name


def decode_data_url(data_url: str) -> bytes:
    """Payload of a ``data:`` URI (base64 or percent-encoded)."""
    header, sep, payload = data_url.partition(",")
    if not header.startswith("data:") or not sep:
        msg = "not a data: URI"
        raise ValueError(msg)
    if header.endswith(";base64"):
        return base64.b64decode(payload)
    return urllib.parse.unquote_to_bytes(payload)


class FileStorage:
    """Filesystem access for one storage root."""

    def __init__(self, root: Path | str | None, index_file: str = "index.db") -> None:
        self.root = Path(root) if root is not None else None
        self.index_file = index_file

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def require_root(self) -> Path:
        if self.root is None:
            raise StorageNotConfiguredError
        return self.root

    def abspath(self, path: str) -> Path:
        root = self.require_root()
        target = root / path if path else root
        if path and ".." in PurePosixPath(path).parts:
            msg = f"path escapes storage root: {path}"
            raise ValueError(msg)
        return target

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def exists(self, path: str) -> bool:
        return self.abspath(path).exists()

    def list_entries(self, path: str = "") -> list[DirectoryEntry]:
        """Entries of a directory sorted by name; empty when it does not exist."""
        directory = self.abspath(path)
        if not directory.is_dir():
            return []
        return [
            DirectoryEntry(
                name=p.name,
                kind="directory" if p.is_dir() else "file",
                path=join(path, p.name),
            )
            for p in sorted(directory.iterdir(), key=lambda p: p.name)
        ]

    def list_directories(self, path: str = "") -> list[str]:
        return [e.name for e in self.list_entries(path) if e.is_dir]

    def read_text(self, path: str) -> str | None:
        """File contents, or None when the file does not exist.

        Bytes that are not valid UTF-8 are replaced with U+FFFD.
        """
        try:
            data = self.abspath(path).read_bytes()
        except FileNotFoundError:
            return None
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError:
            logger.warning("%s is not valid UTF-8; undecodable bytes replaced", path)
            return data.decode("utf-8", errors="replace")

    def read_bytes(self, path: str) -> bytes:
        return self.abspath(path).read_bytes()

    def stat(self, path: str) -> FileStats | None:
        try:
            st = self.abspath(path).stat()
        except FileNotFoundError:
            return None
        return FileStats(path=path, mtime_ms=st.st_mtime_ns // 1_000_000, size=st.st_size)

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def ensure_directory(self, path: str) -> None:
        self.abspath(path).mkdir(parents=True, exist_ok=True)

    def write_bytes(self, path: str, data: bytes) -> None:
        """Atomically replace path with data (tmp file + rename)."""
        target = self.abspath(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(f".{target.name}.tmp")
        tmp.write_bytes(data)
        tmp.replace(target)

    def write_text(self, path: str, text: str) -> None:
        self.write_bytes(path, text.encode("utf-8"))

    def write_data_url(self, path: str, data_url: str) -> int:
        """Decode a data: URI into path. Returns the number of bytes written."""
        data = decode_data_url(data_url)
        self.write_bytes(path, data)
        return len(data)

    def rename(self, src: str, dst: str) -> None:
        """Move src to dst; refuses to overwrite a different existing file."""
        source, target = self.abspath(src), self.abspath(dst)
        if target.exists() and not _same_file(source, target):
            msg = f"rename target exists: {dst}"
            raise FileExistsError(msg)
        target.parent.mkdir(parents=True, exist_ok=True)
        source.rename(target)

    def copy(self, src: str, dst: str) -> None:
        target = self.abspath(dst)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(self.abspath(src), target)

    def delete_file(self, path: str) -> None:
        self.abspath(path).unlink(missing_ok=True)

    def delete_directory(self, path: str) -> None:
        if not path:
            msg = "refusing to delete the storage root"
            raise ValueError(msg)
        directory = self.abspath(path)
        if directory.exists():
            shutil.rmtree(directory)

    # ------------------------------------------------------------------
    # Index snapshot
    # ------------------------------------------------------------------

    def read_index_blob(self) -> bytes | None:
        try:
            return self.read_bytes(self.index_file)
        except FileNotFoundError:
            return None

    def write_index_blob(self, data: bytes) -> None:
        self.write_bytes(self.index_file, data)


def _same_file(a: Path, b: Path) -> bool:
    try:
        return a.samefile(b)
    except OSError:
        return False
