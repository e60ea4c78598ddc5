"""Data models shared by the index store, indexer and writer."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

EVENT_TYPES = ("year", "period", "event", "item")
ITEM_TYPES = ("text", "photo", "video", "link", "audio")
MEDIA_ITEM_TYPES = ("photo", "video", "audio")
FILE_INDEX_TYPES = ("year", "event", "item", "canvas")


@dataclass
class Location:
    lat: float
    lng: float
    label: str | None = None

    @classmethod
    def from_dict(cls, d: Any) -> Location | None:
        """Build from a frontmatter mapping; None when lat/lng are missing or not numbers."""
        if not isinstance(d, dict):
            return None
        lat, lng = d.get("lat"), d.get("lng")
        if isinstance(lat, bool) or isinstance(lng, bool):
            return None
        if not isinstance(lat, (int, float)) or not isinstance(lng, (int, float)):
            return None
        label = d.get("label")
        return cls(lat=float(lat), lng=float(lng), label=str(label) if label is not None else None)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"lat": self.lat, "lng": self.lng}
        if self.label is not None:
            d["label"] = self.label
        return d


@dataclass
class Event:
    """A year, period or event owning a folder under the storage root."""

    id: str
    type: str                               # year | period | event | item
    start_at: str
    title: str | None = None
    description: str | None = None
    end_at: str | None = None
    location: Location | None = None
    featured_photo_id: str | None = None    # item id (legacy / resolved from slug)
    featured_photo_slug: str | None = None  # item slug (file-based)
    featured_photo_data: str | None = None  # separately uploaded data URI
    parent_id: str | None = None            # id of the owning year
    cover_media_id: str | None = None
    tags: list[str] | None = None
    file_path: str | None = None            # root-relative path of _event.md / _year.md
    folder_path: str | None = None          # root-relative path of the folder
    created_at: str = ""
    updated_at: str = ""

    @property
    def descriptor_name(self) -> str:
        return "_year.md" if self.type == "year" else "_event.md"


@dataclass
class Item:
    """An atomic memory inside an event folder, backed by <slug>.md."""

    id: str
    event_id: str
    item_type: str                  # text | photo | video | link | audio
    content: str                    # data: URI, file:<path>, URL or plain text
    caption: str | None = None
    happened_at: str | None = None
    place: Location | None = None
    people: list[str] | None = None
    tags: list[str] | None = None
    category: str | None = None
    url: str | None = None
    body_text: str | None = None
    slug: str | None = None
    file_path: str | None = None    # root-relative path of <slug>.md
    media_path: str | None = None   # media filename relative to the event folder


@dataclass
class CanvasItem:
    event_id: str
    item_id: str
    item_slug: str | None = None
    x: float = 0.0
    y: float = 0.0
    scale: float = 1.0
    rotation: float = 0.0
    z_index: int = 0
    text_scale: float | None = None


@dataclass
class FileIndexEntry:
    """Bookkeeping row used only for drift detection."""

    path: str
    type: str           # year | event | item | canvas
    mtime_ms: int
    size: int
    last_indexed_at: str
    hash: str | None = None


@dataclass
class TimelineEntry:
    """An item placed on its year's timeline (happened_at falls back to the event start)."""

    item_id: str
    event_id: str
    item_type: str
    content: str
    timestamp: str
    caption: str | None = None
    event_title: str | None = None
    event_description: str | None = None
    event_location: str | None = None
    featured_photo: str | None = None   # featured_photo_data, else the featured item's content
