from __future__ import annotations

import json
from datetime import datetime
from urllib.parse import urljoin, urlparse

from selectolax.parser import HTMLParser

from delphi_bot.crawler.selectors import ArticleSelectors, ListingSelectors, Selectors
from delphi_bot.storage.types import FetchedContent, ListingEntry
from delphi_bot.utils import canonicalize_url, collapse_ws, parse_datetime


PAGE_AUTHENTICATED = "AUTHENTICATED"
PAGE_LOGIN_REQUIRED = "LOGIN_REQUIRED"
PAGE_UNKNOWN = "UNKNOWN"


def _first_match(tree: HTMLParser, selectors: list[str]):
    for selector in selectors:
        node = tree.css_first(selector)
        if node is not None:
            return node
    return None


def has_login_form(tree: HTMLParser, selectors: Selectors) -> bool:
    password = any(tree.css_first(f"form {s}") is not None for s in selectors.login.password)
    email = any(tree.css_first(f"form {s}") is not None for s in selectors.login.email)
    return password and email


def is_login_url(url: str, selectors: Selectors) -> bool:
    path = urlparse(url or "").path.lower()
    return any(hint in path for hint in selectors.login.login_path_hints)


def detect_login_required(html: str, url: str, selectors: Selectors, check_text: bool = True) -> bool:
    """Login redirect, a login form, or (optionally) login prompt text in place of content."""
    if is_login_url(url, selectors):
        return True
    tree = HTMLParser(html or "")
    if has_login_form(tree, selectors):
        return True
    if not check_text:
        return False
    body = tree.body
    text = (body.text(separator=" ") if body is not None else "").lower()
    if _has_logout_control(tree, selectors):
        return False
    return any(hint in text for hint in selectors.login.login_text_hints)


def _has_logout_control(tree: HTMLParser, selectors: Selectors) -> bool:
    auth = selectors.authenticated
    for node in tree.css("a, button"):
        text = (node.text() or "").strip().lower()
        href = (node.attributes.get("href") or "").lower()
        if any(t in text for t in auth.logout_texts) or any(h in href for h in auth.logout_hrefs):
            return True
    return False


def classify_page(html: str, url: str, selectors: Selectors) -> str:
    """Decide whether a page was served to an authenticated member."""
    if is_login_url(url, selectors):
        return PAGE_LOGIN_REQUIRED
    tree = HTMLParser(html or "")
    if has_login_form(tree, selectors):
        return PAGE_LOGIN_REQUIRED
    has_content = _first_match(tree, selectors.authenticated.content) is not None
    if has_content or _has_logout_control(tree, selectors):
        return PAGE_AUTHENTICATED
    return PAGE_UNKNOWN


def extract_listing(html: str, base_url: str, selectors: ListingSelectors) -> list[ListingEntry]:
    tree = HTMLParser(html or "")
    excluded = {p.rstrip("/") or "/" for p in selectors.exclude_paths}

    seen: set[str] = set()
    out: list[ListingEntry] = []
    for selector in selectors.links:
        for node in tree.css(selector):
            href = (node.attributes.get("href") or "").strip()
            if not href or href.startswith(("#", "javascript:", "mailto:")):
                continue
            key = canonicalize_url(urljoin(base_url, href))
            if (urlparse(key).path.rstrip("/") or "/") in excluded:
                continue
            if key in seen:
                continue
            seen.add(key)
            title = collapse_ws(node.text(separator=" ") or "")
            if not title:
                title = (node.attributes.get("title") or node.attributes.get("aria-label") or "").strip()
            out.append(ListingEntry(key=key, title=title))
    return out


def _date_from_json_ld(tree: HTMLParser) -> datetime | None:
    for node in tree.css('script[type="application/ld+json"]'):
        try:
            data = json.loads(node.text() or "")
        except ValueError:
            continue
        candidates = data if isinstance(data, list) else [data]
        for entry in candidates:
            if isinstance(entry, dict):
                dt = parse_datetime(str(entry.get("datePublished") or ""))
                if dt is not None:
                    return dt
    return None


def extract_publication_date(tree: HTMLParser, selectors: ArticleSelectors) -> datetime | None:
    dt = _date_from_json_ld(tree)
    if dt is not None:
        return dt

    meta = tree.css_first('meta[property="article:published_time"]')
    if meta is not None:
        dt = parse_datetime(meta.attributes.get("content"))
        if dt is not None:
            return dt

    for selector in selectors.date:
        node = tree.css_first(selector)
        if node is None:
            continue
        dt = parse_datetime(node.attributes.get("datetime")) or parse_datetime(node.text())
        if dt is not None:
            return dt
    return None


def extract_article(html: str, selectors: ArticleSelectors) -> FetchedContent:
    tree = HTMLParser(html or "")

    # Dates can live in <script> JSON-LD, so read them before stripping noise.
    published_at = extract_publication_date(tree, selectors)

    for selector in selectors.noise:
        for node in tree.css(selector):
            node.decompose()

    title = ""
    for selector in selectors.title:
        node = tree.css_first(selector)
        if node is not None:
            title = collapse_ws(node.text(separator=" ") or "")
            if title:
                break

    body = ""
    for selector in selectors.content:
        node = tree.css_first(selector)
        if node is None:
            continue
        body = collapse_ws(node.text(separator="\n") or "")
        if len(body) >= selectors.min_content_chars:
            break

    if len(body) < selectors.min_content_chars and tree.body is not None:
        body = collapse_ws(tree.body.text(separator="\n") or "")

    return FetchedContent(title=title, body=body, published_at=published_at)
