"""Utility helpers for Huddle."""

from __future__ import annotations

from datetime import UTC, datetime
import html
import re
import unicodedata

from markupsafe import Markup

_slug_invalid = re.compile(r"[^a-z0-9]+")
_link_pattern = re.compile(r"\[([^\]]+)\]\(([^)\s]+)\)")
_bare_url_pattern = re.compile(r"(?<![\w(\"=/])(https?://[^\s<]*[^\s<.,;:!?)])")
_heading_pattern = re.compile(r"^(#{1,6})\s*(.*)$")
_bullet_pattern = re.compile(r"^[-*]\s+(.*)$")
_ordered_pattern = re.compile(r"^\d+[.)]\s+(.*)$")

# Applied in order; code spans first so their contents are not emphasized.
_inline_rules = (
    (re.compile(r"`([^`]+)`"), r"<code>\1</code>"),
    (re.compile(r"\*\*(.+?)\*\*"), r"<strong>\1</strong>"),
    (re.compile(r"(?<!\*)\*(?!\*)([^*]+?)(?<!\*)\*(?!\*)"), r"<em>\1</em>"),
)

_SAFE_SCHEMES = ("http://", "https://", "mailto:")


def utcnow() -> datetime:
    """Return a naive UTC datetime."""

    return datetime.now(UTC).replace(tzinfo=None)


def slugify(value: str) -> str:
    """Return a lowercase ASCII slug for URLs and download file names."""
    ascii_value = (
        unicodedata.normalize("NFKD", value or "")
        .encode("ascii", "ignore")
        .decode("ascii")
    )
    return _slug_invalid.sub("-", ascii_value.lower()).strip("-")


def split_interests(raw: str | None) -> list[str]:
    """Split a comma-separated interests string, dropping blanks and repeats."""
    seen: list[str] = []
    for part in (raw or "").split(","):
        cleaned = part.strip()
        if cleaned and cleaned.lower() not in {item.lower() for item in seen}:
            seen.append(cleaned)
    return seen


def _safe_href(raw: str) -> str | None:
    target = html.unescape(raw).strip()
    if target.lower().startswith(_SAFE_SCHEMES) or target.startswith(("/", "#")):
        return html.escape(target, quote=True)
    return None


def _anchor(href: str, label: str) -> str:
    return f'<a href="{href}" rel="nofollow noopener noreferrer">{label}</a>'


def _render_inline(text: str) -> str:
    """Render emphasis, code spans and links in already-escaped text."""
    for pattern, replacement in _inline_rules:
        text = pattern.sub(replacement, text)
    text = _bare_url_pattern.sub(
        lambda match: _anchor(_safe_href(match.group(1)) or "", match.group(1)), text
    )

    def link(match: re.Match[str]) -> str:
        href = _safe_href(match.group(2))
        if href is None:
            return match.group(0)
        return _anchor(href, match.group(1))

    return _link_pattern.sub(link, text)


def _classify(line: str) -> tuple[str, str]:
    heading = _heading_pattern.match(line)
    if heading:
        return f"h{len(heading.group(1))}", heading.group(2).strip()
    bullet = _bullet_pattern.match(line)
    if bullet:
        return "ul", bullet.group(1).strip()
    ordered = _ordered_pattern.match(line)
    if ordered:
        return "ol", ordered.group(1).strip()
    return "p", line


def render_markdown(value: str | None) -> Markup:
    """Convert an event or section description into sanitized HTML.

    Supports headings, bullet and numbered lists, paragraphs, ``**bold**``,
    ``*italic*``, code spans, ``[label](url)`` links and bare http(s) URLs.
    Raw HTML is escaped and links with other schemes are left as text.
    """
    escaped = html.escape((value or "").strip())
    blocks: list[str] = []
    kind: str | None = None
    items: list[str] = []

    def close_block() -> None:
        nonlocal kind
        if kind == "p":
            blocks.append(f"<p>{_render_inline(' '.join(items))}</p>")
        elif kind in ("ul", "ol"):
            rendered = "".join(f"<li>{_render_inline(item)}</li>" for item in items)
            blocks.append(f"<{kind}>{rendered}</{kind}>")
        kind = None
        items.clear()

    for raw_line in escaped.splitlines():
        line = raw_line.strip()
        if not line:
            close_block()
            continue
        line_kind, content = _classify(line)
        if line_kind.startswith("h"):
            close_block()
            blocks.append(f"<{line_kind}>{_render_inline(content)}</{line_kind}>")
            continue
        if line_kind != kind:
            close_block()
            kind = line_kind
        items.append(content)
    close_block()

    return Markup("\n".join(blocks))


def humanize_time(value: datetime | None, *, now: datetime | None = None) -> str:
    """Return a friendly string such as 'in 2 days' or '3 hours ago'."""
    if not value:
        return ""
    now = now or utcnow()
    delta_seconds = (value - now).total_seconds()
    past = delta_seconds < 0
    seconds = abs(delta_seconds)

    units = [
        ("year", 365 * 24 * 3600),
        ("month", 30 * 24 * 3600),
        ("day", 24 * 3600),
        ("hour", 3600),
        ("minute", 60),
    ]

    for name, step in units:
        amount = int(seconds // step)
        if amount >= 1:
            label = name if amount == 1 else f"{name}s"
            return f"{amount} {label} ago" if past else f"in {amount} {label}"
    return "moments ago" if past else "in moments"


def duration_between(start: datetime | None, end: datetime | None) -> str:
    """Return a short "2h 30m" style duration string."""
    if not start or not end:
        return ""
    minutes = max(int((end - start).total_seconds()), 0) // 60
    if minutes == 0:
        return "less than 1 minute"
    hours, minutes = divmod(minutes, 60)
    parts = [f"{hours}h"] if hours else []
    if minutes:
        parts.append(f"{minutes}m")
    return " ".join(parts)
