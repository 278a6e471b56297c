from __future__ import annotations

import html
from datetime import datetime

from delphi_bot.storage.types import Item
from delphi_bot.utils import truncate


RELEVANCE_PREFIX = "relevance:"


def _escape_text(s: str) -> str:
    return html.escape(s or "")


def _escape_url_raw(url: str) -> str:
    """Escape URL for TG HTML parse_mode while keeping it visually 'raw'."""
    return html.escape(url or "", quote=False)


def split_summary(summary: str) -> tuple[str, str]:
    """Split a model summary into (main summary, relevance line)."""
    parts = [p.strip() for p in (summary or "").split("\n\n") if p.strip()]
    if not parts:
        return "", ""
    if len(parts) == 1:
        return parts[0], ""
    relevance = parts[1]
    if relevance.lower().startswith(RELEVANCE_PREFIX):
        relevance = relevance[len(RELEVANCE_PREFIX):].strip()
    return parts[0], relevance


def _format_date(dt: datetime) -> str:
    return dt.strftime("%Y-%m-%d")


def render_item(item: Item, max_chars: int = 3800) -> str:
    main, relevance = split_summary(item.summary)

    lines: list[str] = [f"<b>{_escape_text(item.title)}</b>", ""]
    if main:
        lines.append("<b>Summary</b>")
        lines.append(_escape_text(main))
    if relevance:
        lines.append("")
        lines.append("<b>Relevance</b>")
        lines.append(_escape_text(relevance))
    lines.append("")
    lines.append(f"Published: {_format_date(item.publication_date)}")
    lines.append(f'<a href="{html.escape(item.key)}">View original report</a>')

    return truncate("\n".join(lines), max_chars)


def render_digest(items: list[Item], lookback_hours: int, now: datetime, max_chars: int = 3800) -> str | None:
    if not items:
        return None

    lines: list[str] = [
        f"<b>Delphi Digital digest</b> ({_format_date(now)})",
        f"{len(items)} new report(s) in the last {lookback_hours}h",
        "",
    ]
    for item in items:
        main, _ = split_summary(item.summary)
        lines.append(f'• <a href="{html.escape(item.key)}">{_escape_text(item.title)}</a> ({_format_date(item.publication_date)})')
        if main:
            lines.append(f"  {_escape_text(truncate(main, 200))}")
    return truncate("\n".join(lines), max_chars)
