from __future__ import annotations

from datetime import datetime, timedelta

from huddle.utils import (
    duration_between,
    humanize_time,
    render_markdown,
    slugify,
    split_interests,
)


def test_slugify_handles_whitespace_and_unicode():
    assert slugify("  Café au Lait  ") == "cafe-au-lait"
    assert slugify("Hello!! World??") == "hello-world"
    assert slugify("") == ""


def test_split_interests_drops_blanks_and_repeats():
    assert split_interests("hiking, Chess,, hiking , chess") == ["hiking", "Chess"]
    assert split_interests(None) == []


def test_render_markdown_renders_blocks_and_inline_html():
    text = """
    # Heading

    This is **bold**, *italic*, and `code` with a [link](https://example.com).

    - Item one
    - Item two
    """
    html = render_markdown(text)
    assert "<h1>Heading</h1>" in html
    assert (
        "<p>This is <strong>bold</strong>, <em>italic</em>, and <code>code</code>"
        in html
    )
    assert '<a href="https://example.com"' in html
    assert "<ul><li>Item one</li><li>Item two</li></ul>" in html


def test_render_markdown_escapes_raw_html():
    html = render_markdown("<script>alert(1)</script>")
    assert "<script>" not in html
    assert "&lt;script&gt;" in html


def test_render_markdown_rejects_unsafe_links():
    html = render_markdown("[bad](javascript:alert(1)) ok")
    assert "javascript:alert" in html
    assert "<a" not in html


def test_humanize_time_handles_future_and_past():
    now = datetime(2024, 1, 1, 12, 0, 0)
    assert humanize_time(now + timedelta(days=2, hours=3), now=now) == "in 2 days"
    assert humanize_time(now - timedelta(seconds=10), now=now) == "moments ago"
    assert humanize_time(now - timedelta(hours=3), now=now) == "3 hours ago"
    assert humanize_time(None) == ""


def test_duration_between_formats_hours_and_minutes():
    start = datetime(2024, 1, 1, 10, 0, 0)
    assert duration_between(start, start + timedelta(hours=1, minutes=30)) == "1h 30m"
    assert duration_between(start, start + timedelta(hours=2)) == "2h"
    assert duration_between(start, start) == "less than 1 minute"
    assert duration_between(start, None) == ""
