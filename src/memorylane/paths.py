"""Folder-name and filename conventions: slugs, event folder names, date strings.

Everything here is pure; nothing touches the filesystem.

    generate_slug("Strand Selfie!")                      -> "strand-selfie"
    generate_event_folder_name("Verjaardag", "2024-03-15") -> "2024-03-15 Verjaardag"
    infer_event_from_folder_name("2024-03 Vakantie")     -> InferredEvent(title="Vakantie", start_at="2024-03-01")
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from datetime import UTC, datetime

YEAR_FILE = "_year.md"
EVENT_FILE = "_event.md"
CANVAS_FILE = "_canvas.json"

_PHOTO_EXTENSIONS = ("jpg", "jpeg", "png", "gif", "webp", "heic", "heif", "avif")
_VIDEO_EXTENSIONS = ("mp4", "mov", "avi", "mkv", "webm")
_AUDIO_EXTENSIONS = ("mp3", "m4a", "wav", "ogg", "flac")
MEDIA_EXTENSIONS = {
    **dict.fromkeys(_PHOTO_EXTENSIONS, "photo"),
    **dict.fromkeys(_VIDEO_EXTENSIONS, "video"),
    **dict.fromkeys(_AUDIO_EXTENSIONS, "audio"),
}

_YEAR_RE = re.compile(r"^\d{4}$")
_DATE_ONLY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_FOLDER_RE = re.compile(r"^(\d{4})-(\d{2})(?:-(\d{2}))?\s+(.+)$")
_UNSAFE_CHARS_RE = re.compile(r'[<>:"/\\|?*]')
_DATA_URL_RE = re.compile(r"^data:(image|video|audio)/([\w.+-]+);")

# MIME subtypes whose conventional extension differs from the subtype
_MIME_EXTENSIONS = {
    "jpeg": "jpg",
    "quicktime": "mov",
    "mpeg": "mp3",
    "x-m4a": "m4a",
    "mp4a-latm": "m4a",
    "x-wav": "wav",
    "svg+xml": "svg",
}


@dataclass
class InferredEvent:
    """What a folder name alone says about its event."""

    title: str
    start_at: str | None = None     # YYYY-MM-DD, None when the name carries no date
    type: str = "event"


# ---------------------------------------------------------------------------
# Slugs
# ---------------------------------------------------------------------------

def generate_slug(text: str | None, max_length: int = 50) -> str:
    """Filename-safe slug: lowercase ascii letters, digits and single hyphens.

    Returns "untitled" when nothing survives.
    """
    if not text:
        return "untitled"
    s = unicodedata.normalize("NFD", text.lower())
    s = "".join(ch for ch in s if not unicodedata.combining(ch))
    s = re.sub(r"[^a-z0-9\s-]", "", s)
    s = re.sub(r"\s+", "-", s)
    s = re.sub(r"-+", "-", s)
    s = s.strip("-")
    return s[:max_length] or "untitled"


def generate_unique_slug(text: str | None, item_id: str, max_length: int = 50) -> str:
    """Slug with the first 8 characters of item_id appended (``<slug>-<id8>``)."""
    base = generate_slug(text, max_length - 9)
    return f"{base}-{item_id[:8]}"


def slug_from_filename(filename: str) -> str:
    """``strand-selfie.md`` -> ``strand-selfie``."""
    stem, dot, _ext = filename.rpartition(".")
    return stem if dot else filename


# ---------------------------------------------------------------------------
# Folder names
# ---------------------------------------------------------------------------

def sanitize_folder_name(name: str) -> str:
    """Replace characters that are invalid in folder names, collapse spaces, cap length."""
    s = _UNSAFE_CHARS_RE.sub("_", name)
    s = re.sub(r"\s+", " ", s).strip()
    return s[:100] or "unnamed"


def generate_event_folder_name(title: str, start_at: str, end_at: str | None = None) -> str:
    """``YYYY-MM-DD Title`` for single-day events, ``YYYY-MM Title`` for multi-day ones."""
    start = to_datetime(start_at)
    if start is None:
        msg = f"Invalid start date: {start_at!r}"
        raise ValueError(msg)
    safe_title = sanitize_folder_name(title)
    if end_at:
        end = to_datetime(end_at)
        if end is not None and end.date() != start.date():
            return f"{start:%Y-%m} {safe_title}"
    return f"{start:%Y-%m-%d} {safe_title}"


def infer_event_from_folder_name(name: str) -> InferredEvent:
    """Reverse of generate_event_folder_name; falls back to the bare name as title."""
    m = _FOLDER_RE.match(name)
    if not m:
        return InferredEvent(title=name)
    year, month, day, title = m.groups()
    return InferredEvent(title=title, start_at=f"{year}-{month}-{day or '01'}")


def is_year_folder(name: str) -> bool:
    return bool(_YEAR_RE.match(name))


# ---------------------------------------------------------------------------
# File kinds
# ---------------------------------------------------------------------------

def _extension(filename: str) -> str:
    _stem, dot, ext = filename.rpartition(".")
    return ext.lower() if dot else ""


def is_media_file(filename: str) -> bool:
    return _extension(filename) in MEDIA_EXTENSIONS


def item_type_for_media(filename: str) -> str | None:
    """photo / video / audio for a recognised media filename, else None."""
    return MEDIA_EXTENSIONS.get(_extension(filename))


def is_markdown_file(filename: str) -> bool:
    return filename.endswith(".md")


def is_special_file(filename: str) -> bool:
    """``_event.md``, ``_year.md``, ``_canvas.json`` and anything else starting with ``_``."""
    return filename.startswith("_")


def media_extension(filename: str) -> str:
    return _extension(filename)


def extension_from_data_url(data_url: str) -> str:
    """File extension implied by a ``data:<type>/<subtype>;...`` URI (default ``jpg``)."""
    m = _DATA_URL_RE.match(data_url)
    if not m:
        return "jpg"
    subtype = m.group(2).lower()
    return _MIME_EXTENSIONS.get(subtype, subtype)


# ---------------------------------------------------------------------------
# Dates
# ---------------------------------------------------------------------------

def to_datetime(value: str | None) -> datetime | None:
    """Parse ``YYYY-MM-DD`` or an ISO timestamp into an aware UTC datetime."""
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def to_iso(dt: datetime) -> str:
    """``2024-03-15T10:20:30.123Z`` (UTC, millisecond precision)."""
    dt = dt.astimezone(UTC)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def now_iso() -> str:
    return to_iso(datetime.now(UTC))


def parse_date(value: str | None) -> str | None:
    """Normalise a frontmatter date: ``YYYY-MM-DD`` gains a midnight UTC time, ISO passes through."""
    if not value:
        return None
    if "T" in value:
        return value
    if _DATE_ONLY_RE.match(value):
        return f"{value}T00:00:00.000Z"
    return value


def format_date(value: str | None) -> str | None:
    """Shorten a midnight-UTC ISO timestamp to ``YYYY-MM-DD`` for frontmatter output."""
    if not value or _DATE_ONLY_RE.match(value):
        return value
    dt = to_datetime(value)
    if dt is None:
        return value
    if dt.hour == 0 and dt.minute == 0 and dt.second == 0:
        return f"{dt:%Y-%m-%d}"
    return value
