"""Markdown + YAML frontmatter codec, and the _canvas.json layout format.

Files look like (Obsidian-style):

    ---
    id: 5b0c...
    type: photo
    media: strand-selfie.jpg
    caption: Strand selfie
    tags:
      - zomer
    place:
      lat: 52.1
      lng: 4.3
    ---

    Optional body text.

Only the YAML subset these files need is supported: scalars, one level of
scalar lists and one level of nested scalar mappings.  Parsing never raises;
anything unrecognised degrades to "no structured metadata".
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from memorylane.models import EVENT_TYPES, ITEM_TYPES, CanvasItem, Location
from memorylane.paths import format_date

logger = logging.getLogger("memorylane.frontmatter")

_INT_RE = re.compile(r"^[-+]?\d+$")
_FLOAT_RE = re.compile(r"^[-+]?(\d+\.\d*|\.\d+|\d+)([eE][-+]?\d+)?$")
_ESCAPE_RE = re.compile(r"\\(.)")
_UNESCAPES = {"n": "\n", "r": "\r", "t": "\t"}
_QUOTE_PREFIXES = ("[", "{", "-", "'", '"', "~", "&", "*", "!", "|", ">", "%", "@", "`")
_RESERVED_WORDS = ("true", "false", "null", "~")

EVENT_REQUIRED = ("id", "type", "startAt")
ITEM_REQUIRED = ("id", "type")

_EVENT_KEYS = (
    "id", "type", "title", "description", "startAt", "endAt", "location",
    "featuredPhoto", "tags", "createdAt", "updatedAt",
)
_ITEM_KEYS = (
    "id", "type", "media", "url", "caption", "happenedAt", "place", "people",
    "tags", "category", "exif", "createdAt", "updatedAt",
)


@dataclass
class ParsedMarkdown:
    frontmatter: dict[str, Any]
    body: str


# ---------------------------------------------------------------------------
# YAML subset
# ---------------------------------------------------------------------------

def _looks_numeric(s: str) -> bool:
    return bool(_INT_RE.match(s) or _FLOAT_RE.match(s))


def _parse_value(value: str) -> Any:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return _ESCAPE_RE.sub(lambda m: _UNESCAPES.get(m.group(1), m.group(1)), value[1:-1])
    if len(value) >= 2 and value[0] == value[-1] == "'":
        return value[1:-1].replace("''", "'")
    # Unquoted: trailing " # comment" is not part of the value
    comment = value.find(" #")
    if comment != -1:
        value = value[:comment].rstrip()
    if value in ("", "~", "null"):
        return None
    if value == "true":
        return True
    if value == "false":
        return False
    if value == "[]":
        return []
    if value == "{}":
        return {}
    if value.startswith("[") and value.endswith("]"):
        return [_parse_value(part) for part in value[1:-1].split(",") if part.strip()]
    if _INT_RE.match(value):
        return int(value)
    if _FLOAT_RE.match(value):
        return float(value)
    return value


def _parse_block(lines: list[str]) -> Any:
    """A nested block under an empty ``key:`` line: list of scalars or flat mapping."""
    content = [ln.strip() for ln in lines if ln.strip() and not ln.strip().startswith("#")]
    if not content:
        return None
    if content[0] == "-" or content[0].startswith("- "):
        return [_parse_value(ln[1:]) for ln in content if ln.startswith("-")]
    mapping: dict[str, Any] = {}
    for ln in content:
        key, sep, rest = ln.partition(":")
        if sep and key.strip():
            mapping[key.strip()] = _parse_value(rest)
    return mapping


def _parse_yaml(text: str) -> dict[str, Any]:
    result: dict[str, Any] = {}
    lines = text.split("\n")
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or line[0] in " \t" or stripped.startswith("-"):
            continue
        key, sep, rest = stripped.partition(":")
        key = key.strip()
        if not sep or not key:
            continue
        if rest.strip():
            result[key] = _parse_value(rest)
            continue
        block: list[str] = []
        while i < len(lines) and (
            not lines[i].strip() or lines[i][0] in " \t" or lines[i].lstrip().startswith("-")
        ):
            block.append(lines[i])
            i += 1
        value = _parse_block(block)
        if value is not None:
            result[key] = value
    return result


def _format_scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    s = str(value)
    if (
        not s
        or ":" in s
        or "#" in s
        or "\n" in s
        or "\r" in s
        or s != s.strip()
        or s in _RESERVED_WORDS
        or _looks_numeric(s)
        or s.startswith(_QUOTE_PREFIXES)
    ):
        escaped = (
            s.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n").replace("\r", "\\r")
        )
        return f'"{escaped}"'
    return s


def _generate_yaml(data: dict[str, Any]) -> list[str]:
    lines: list[str] = []
    for key, value in data.items():
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            if not value:
                lines.append(f"{key}: []")
                continue
            lines.append(f"{key}:")
            lines.extend(f"  - {_format_scalar(v)}" for v in value if v is not None)
        elif isinstance(value, dict):
            entries = {k: v for k, v in value.items() if v is not None}
            if not entries:
                lines.append(f"{key}: {{}}")
                continue
            lines.append(f"{key}:")
            lines.extend(f"  {k}: {_format_scalar(v)}" for k, v in entries.items())
        else:
            lines.append(f"{key}: {_format_scalar(value)}")
    return lines


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

def parse_frontmatter(content: str) -> ParsedMarkdown:
    """Split a markdown document into (frontmatter, body). Never raises."""
    content = content.removeprefix("\ufeff").replace("\r\n", "\n")
    lines = content.split("\n")
    if not lines or lines[0].strip() != "---":
        return ParsedMarkdown(frontmatter={}, body=content)
    end = next((n for n in range(1, len(lines)) if lines[n].strip() == "---"), -1)
    if end == -1:
        return ParsedMarkdown(frontmatter={}, body=content)
    try:
        fm = _parse_yaml("\n".join(lines[1:end]))
    except (ValueError, IndexError):
        logger.warning("unparseable frontmatter; treating document as body only")
        return ParsedMarkdown(frontmatter={}, body=content)
    return ParsedMarkdown(frontmatter=fm, body="\n".join(lines[end + 1:]).strip())


def generate_markdown(frontmatter: dict[str, Any], body: str | None = None) -> str:
    """Inverse of parse_frontmatter; None-valued keys are omitted."""
    parts = ["---", *_generate_yaml(frontmatter), "---"]
    if body and body.strip():
        parts += ["", body.strip()]
    return "\n".join(parts) + "\n"


# ---------------------------------------------------------------------------
# Typed decode
# ---------------------------------------------------------------------------

def _opt_str(value: Any) -> str | None:
    if value is None:
        return None
    return value if isinstance(value, str) else _format_plain(value)


def _format_plain(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _str_list(value: Any) -> list[str] | None:
    if value is None:
        return None
    if isinstance(value, list):
        return [_format_plain(v) for v in value if v is not None]
    return [_format_plain(value)]


@dataclass
class EventFrontmatter:
    """Fields of ``_event.md`` / ``_year.md``. Unknown keys survive in ``extra``."""

    id: str
    type: str
    start_at: str
    title: str | None = None
    description: str | None = None
    end_at: str | None = None
    location: Location | None = None
    featured_photo: str | None = None   # item slug
    tags: list[str] | None = None
    created_at: str | None = None
    updated_at: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id or None,
            "type": self.type or None,
            "title": self.title,
            "description": self.description,
            "startAt": format_date(self.start_at) or None,
            "endAt": format_date(self.end_at),
            "location": self.location.to_dict() if self.location else None,
            "featuredPhoto": self.featured_photo,
            "tags": self.tags,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        for k, v in self.extra.items():
            d.setdefault(k, v)
        return d


@dataclass
class ItemFrontmatter:
    """Fields of an item's ``<slug>.md``. Unknown keys survive in ``extra``."""

    id: str
    type: str
    media: str | None = None
    url: str | None = None
    caption: str | None = None
    happened_at: str | None = None
    place: Location | None = None
    people: list[str] | None = None
    tags: list[str] | None = None
    category: str | None = None
    exif: dict[str, Any] | None = None
    created_at: str | None = None
    updated_at: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id or None,
            "type": self.type or None,
            "media": self.media,
            "url": self.url,
            "caption": self.caption,
            "happenedAt": format_date(self.happened_at),
            "place": self.place.to_dict() if self.place else None,
            "people": self.people,
            "tags": self.tags,
            "category": self.category,
            "exif": self.exif,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        for k, v in self.extra.items():
            d.setdefault(k, v)
        return d


@dataclass
class Malformed:
    """Frontmatter that could not be decoded into a valid schema.

    ``partial`` holds everything that could be read, with missing required
    fields left empty, so callers can still index the document with defaults.
    """

    raw: dict[str, Any]
    body: str
    missing: tuple[str, ...]
    reason: str
    partial: EventFrontmatter | ItemFrontmatter


def _missing(fm: dict[str, Any], required: tuple[str, ...]) -> tuple[str, ...]:
    return tuple(k for k in required if fm.get(k) in (None, ""))


def decode_event(parsed: ParsedMarkdown) -> EventFrontmatter | Malformed:
    fm = parsed.frontmatter
    etype = _opt_str(fm.get("type")) or ""
    event = EventFrontmatter(
        id=_opt_str(fm.get("id")) or "",
        type=etype if etype in EVENT_TYPES else "",
        start_at=_opt_str(fm.get("startAt")) or "",
        title=_opt_str(fm.get("title")),
        description=_opt_str(fm.get("description")),
        end_at=_opt_str(fm.get("endAt")),
        location=Location.from_dict(fm.get("location")),
        featured_photo=_opt_str(fm.get("featuredPhoto")),
        tags=_str_list(fm.get("tags")),
        created_at=_opt_str(fm.get("createdAt")),
        updated_at=_opt_str(fm.get("updatedAt")),
        extra={k: v for k, v in fm.items() if k not in _EVENT_KEYS},
    )
    if not fm:
        return Malformed(fm, parsed.body, EVENT_REQUIRED, "no frontmatter", event)
    missing = _missing(fm, EVENT_REQUIRED)
    if missing:
        return Malformed(fm, parsed.body, missing, f"missing {', '.join(missing)}", event)
    if etype not in EVENT_TYPES:
        return Malformed(fm, parsed.body, (), f"unknown event type {etype!r}", event)
    return event


def decode_item(parsed: ParsedMarkdown) -> ItemFrontmatter | Malformed:
    fm = parsed.frontmatter
    itype = _opt_str(fm.get("type")) or ""
    exif = fm.get("exif")
    item = ItemFrontmatter(
        id=_opt_str(fm.get("id")) or "",
        type=itype if itype in ITEM_TYPES else "",
        media=_opt_str(fm.get("media")),
        url=_opt_str(fm.get("url")),
        caption=_opt_str(fm.get("caption")),
        happened_at=_opt_str(fm.get("happenedAt")),
        place=Location.from_dict(fm.get("place")),
        people=_str_list(fm.get("people")),
        tags=_str_list(fm.get("tags")),
        category=_opt_str(fm.get("category")),
        exif=exif if isinstance(exif, dict) else None,
        created_at=_opt_str(fm.get("createdAt")),
        updated_at=_opt_str(fm.get("updatedAt")),
        extra={k: v for k, v in fm.items() if k not in _ITEM_KEYS},
    )
    if not fm:
        return Malformed(fm, parsed.body, ITEM_REQUIRED, "no frontmatter", item)
    missing = _missing(fm, ITEM_REQUIRED)
    if missing:
        return Malformed(fm, parsed.body, missing, f"missing {', '.join(missing)}", item)
    if itype not in ITEM_TYPES:
        return Malformed(fm, parsed.body, (), f"unknown item type {itype!r}", item)
    return item


def generate_event_markdown(event: EventFrontmatter, body: str | None = None) -> str:
    return generate_markdown(event.to_dict(), body)


def generate_item_markdown(item: ItemFrontmatter, body: str | None = None) -> str:
    return generate_markdown(item.to_dict(), body)


# ---------------------------------------------------------------------------
# _canvas.json
# ---------------------------------------------------------------------------

CANVAS_VERSION = 1


def _number(value: Any, default: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return float(value)


@dataclass
class CanvasEntry:
    """One placement in _canvas.json, keyed by item slug."""

    item_slug: str
    x: float = 0.0
    y: float = 0.0
    scale: float = 1.0
    rotation: float = 0.0
    z_index: int = 0
    text_scale: float | None = None

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> CanvasEntry | None:
        slug = d.get("itemSlug")
        if not isinstance(slug, str) or not slug:
            return None
        text_scale = d.get("textScale")
        return cls(
            item_slug=slug,
            x=_number(d.get("x"), 0.0),
            y=_number(d.get("y"), 0.0),
            scale=_number(d.get("scale"), 1.0),
            rotation=_number(d.get("rotation"), 0.0),
            z_index=int(_number(d.get("zIndex"), 0)),
            text_scale=_number(text_scale, 1.0) if text_scale is not None else None,
        )

    @classmethod
    def from_canvas_item(cls, ci: CanvasItem) -> CanvasEntry:
        return cls(
            item_slug=ci.item_slug or ci.item_id,
            x=ci.x,
            y=ci.y,
            scale=ci.scale,
            rotation=ci.rotation,
            z_index=ci.z_index,
            text_scale=ci.text_scale,
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "itemSlug": self.item_slug,
            "x": self.x,
            "y": self.y,
            "scale": self.scale,
            "rotation": self.rotation,
            "zIndex": self.z_index,
        }
        if self.text_scale is not None:
            d["textScale"] = self.text_scale
        return d


@dataclass
class CanvasLayout:
    version: int = CANVAS_VERSION
    items: list[CanvasEntry] = field(default_factory=list)
    viewport: dict[str, float] | None = None    # centerX, centerY, zoom
    updated_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "version": self.version,
            "items": [e.to_dict() for e in self.items],
        }
        if self.viewport is not None:
            d["viewport"] = self.viewport
        if self.updated_at is not None:
            d["updatedAt"] = self.updated_at
        return d


def parse_canvas_json(content: str) -> CanvasLayout | None:
    """Decode _canvas.json; None when the document is not a canvas object."""
    try:
        raw = json.loads(content)
    except json.JSONDecodeError:
        logger.warning("failed to parse _canvas.json")
        return None
    if not isinstance(raw, dict):
        return None
    entries = raw.get("items")
    items = [
        e for e in (CanvasEntry.from_dict(d) for d in entries if isinstance(d, dict)) if e
    ] if isinstance(entries, list) else []
    viewport = raw.get("viewport")
    version = raw.get("version")
    updated_at = raw.get("updatedAt")
    return CanvasLayout(
        version=version if isinstance(version, int) and not isinstance(version, bool) else CANVAS_VERSION,
        items=items,
        viewport=viewport if isinstance(viewport, dict) else None,
        updated_at=updated_at if isinstance(updated_at, str) else None,
    )


def generate_canvas_json(layout: CanvasLayout) -> str:
    return json.dumps(layout.to_dict(), indent=2)
