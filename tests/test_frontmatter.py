from __future__ import annotations

from memorylane.frontmatter import (
    CanvasEntry,
    CanvasLayout,
    EventFrontmatter,
    ItemFrontmatter,
    Malformed,
    decode_event,
    decode_item,
    generate_canvas_json,
    generate_event_markdown,
    generate_item_markdown,
    generate_markdown,
    parse_canvas_json,
    parse_frontmatter,
)
from memorylane.models import Location


def test_roundtrip_preserves_values() -> None:
    fm = {
        "id": "abc",
        "title": "Strand: dag 1",
        "count": 3,
        "ratio": 1.5,
        "flag": True,
        "tags": ["zee", "zon"],
        "empty": [],
        "place": {"lat": 52.1, "lng": 4.3, "label": "Scheveningen"},
        "quoted": "[not a list]",
        "numeric_string": "2024",
        "multiline": "line one\nline \"two\"",
        "bool_word": "true",
        "null_word": "null",
        "hash": "Vakantie #zomer",
        "padded": "  ruimte  ",
        "word_list": ["false", "~", "a # b", " x "],
    }
    parsed = parse_frontmatter(generate_markdown(fm, "Body text"))
    assert parsed.frontmatter == fm
    assert parsed.body == "Body text"


def test_none_values_are_omitted() -> None:
    text = generate_markdown({"id": "x", "caption": None})
    assert "caption" not in text
    assert parse_frontmatter(text).frontmatter == {"id": "x"}


def test_bom_and_crlf() -> None:
    parsed = parse_frontmatter("\ufeff---\r\nid: x\r\ntype: text\r\n---\r\n\r\nHallo\r\n")
    assert parsed.frontmatter == {"id": "x", "type": "text"}
    assert parsed.body == "Hallo"


def test_no_frontmatter_is_all_body() -> None:
    parsed = parse_frontmatter("Just text\n")
    assert parsed.frontmatter == {}
    assert parsed.body == "Just text\n"


def test_unterminated_frontmatter_is_body() -> None:
    parsed = parse_frontmatter("---\nid: x\nno closing fence")
    assert parsed.frontmatter == {}


def test_unquoted_comment_is_dropped() -> None:
    parsed = parse_frontmatter("---\ntitle: Vakantie # zomer\n---\n")
    assert parsed.frontmatter["title"] == "Vakantie"


def test_decode_event() -> None:
    text = generate_event_markdown(
        EventFrontmatter(
            id="e1",
            type="event",
            start_at="2024-03-15T00:00:00.000Z",
            title="Verjaardag",
            location=Location(52.0, 4.0, "Delft"),
            tags=["familie"],
        ),
        "Beschrijving",
    )
    assert "startAt: 2024-03-15\n" in text
    decoded = decode_event(parse_frontmatter(text))
    assert isinstance(decoded, EventFrontmatter)
    assert decoded.start_at == "2024-03-15"
    assert decoded.location == Location(52.0, 4.0, "Delft")
    assert decoded.tags == ["familie"]


def test_decode_event_missing_fields() -> None:
    decoded = decode_event(parse_frontmatter("---\ntitle: Zonder id\n---\n"))
    assert isinstance(decoded, Malformed)
    assert decoded.missing == ("id", "type", "startAt")
    assert decoded.partial.title == "Zonder id"


def test_decode_event_unknown_type() -> None:
    decoded = decode_event(parse_frontmatter("---\nid: x\ntype: party\nstartAt: 2024-01-01\n---\n"))
    assert isinstance(decoded, Malformed)
    assert "party" in decoded.reason
    assert decoded.partial.type == ""


def test_decode_item_keeps_unknown_keys() -> None:
    decoded = decode_item(parse_frontmatter("---\nid: i1\ntype: photo\nmedia: a.jpg\nrating: 5\n---\n"))
    assert isinstance(decoded, ItemFrontmatter)
    assert decoded.media == "a.jpg"
    assert decoded.extra == {"rating": 5}
    assert "rating: 5" in generate_item_markdown(decoded)


def test_decode_item_without_frontmatter() -> None:
    decoded = decode_item(parse_frontmatter("plain note"))
    assert isinstance(decoded, Malformed)
    assert decoded.reason == "no frontmatter"


def test_invalid_location_is_dropped() -> None:
    decoded = decode_item(parse_frontmatter("---\nid: i\ntype: text\nplace:\n  lat: north\n  lng: 4\n---\n"))
    assert isinstance(decoded, ItemFrontmatter)
    assert decoded.place is None


def test_canvas_roundtrip() -> None:
    layout = CanvasLayout(
        items=[CanvasEntry(item_slug="taart", x=10, y=-5, scale=1.5, rotation=3, z_index=2, text_scale=1.2)],
        viewport={"centerX": 1.0, "centerY": 2.0, "zoom": 0.5},
        updated_at="2024-03-15T10:00:00.000Z",
    )
    parsed = parse_canvas_json(generate_canvas_json(layout))
    assert parsed == layout


def test_canvas_invalid_json() -> None:
    assert parse_canvas_json("{not json") is None
    assert parse_canvas_json("[1, 2]") is None


def test_canvas_skips_entries_without_slug() -> None:
    parsed = parse_canvas_json('{"version": 1, "items": [{"x": 1}, {"itemSlug": "a", "x": "bad"}]}')
    assert parsed is not None
    assert [e.item_slug for e in parsed.items] == ["a"]
    assert parsed.items[0].x == 0.0
