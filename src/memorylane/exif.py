"""EXIF metadata for photos dropped into the tree by hand (Pillow)."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from PIL import ExifTags, Image, UnidentifiedImageError

from memorylane.models import Location

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger("memorylane.exif")

_EXIF_DATE = re.compile(r"^(\d{4}):(\d{2}):(\d{2})\s+(\d{2}):(\d{2}):(\d{2})")


@dataclass
class ExifData:
    date_taken: str | None = None       # local ISO timestamp, no zone
    location: Location | None = None
    orientation: int | None = None
    camera_make: str | None = None
    camera_model: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Frontmatter ``exif`` mapping; empty fields are left out."""
        d: dict[str, Any] = {}
        if self.date_taken:
            d["dateTaken"] = self.date_taken
        if self.camera_make:
            d["make"] = self.camera_make
        if self.camera_model:
            d["model"] = self.camera_model
        if self.orientation:
            d["orientation"] = self.orientation
        return d


def parse_exif_date(value: str) -> str | None:
    """``2024:08:15 14:30:00`` -> ``2024-08-15T14:30:00``."""
    m = _EXIF_DATE.match(value.strip())
    if not m:
        return None
    year, month, day, hour, minute, second = m.groups()
    return f"{year}-{month}-{day}T{hour}:{minute}:{second}"


def _to_decimal(dms: Any, ref: Any) -> float | None:
    try:
        degrees, minutes, seconds = (float(v) for v in dms)
    except (TypeError, ValueError, ZeroDivisionError):
        return None
    decimal = degrees + minutes / 60 + seconds / 3600
    if str(ref).strip().upper() in ("S", "W"):
        decimal = -decimal
    return decimal


def _gps_location(gps: dict[int, Any]) -> Location | None:
    lat = _to_decimal(gps.get(ExifTags.GPS.GPSLatitude), gps.get(ExifTags.GPS.GPSLatitudeRef))
    lng = _to_decimal(gps.get(ExifTags.GPS.GPSLongitude), gps.get(ExifTags.GPS.GPSLongitudeRef))
    if lat is None or lng is None:
        return None
    return Location(lat=lat, lng=lng)


def _text(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value).strip("\x00 ").strip()
    return s or None


def read_exif(path: Path) -> ExifData:
    """EXIF of the image at path; an empty ExifData when it has none or is not an image."""
    try:
        with Image.open(path) as img:
            exif = img.getexif()
            sub = exif.get_ifd(ExifTags.IFD.Exif)
            gps = exif.get_ifd(ExifTags.IFD.GPSInfo)
    except (OSError, UnidentifiedImageError):
        logger.debug("no readable EXIF in %s", path)
        return ExifData()

    raw_date = sub.get(ExifTags.Base.DateTimeOriginal) or exif.get(ExifTags.Base.DateTime)
    orientation = exif.get(ExifTags.Base.Orientation)
    return ExifData(
        date_taken=parse_exif_date(str(raw_date)) if raw_date else None,
        location=_gps_location(gps) if gps else None,
        orientation=int(orientation) if orientation else None,
        camera_make=_text(exif.get(ExifTags.Base.Make)),
        camera_model=_text(exif.get(ExifTags.Base.Model)),
    )
