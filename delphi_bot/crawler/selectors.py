from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from pathlib import Path

import yaml


logger = logging.getLogger(__name__)


# Every list is an ordered strategy list: the first selector that matches wins.
DEFAULT_SELECTORS: dict = {
    "listing": {
        "links": ['a[href*="/reports/"]'],
        "exclude_paths": ["/reports", "/reports/"],
    },
    "article": {
        "noise": [
            "nav",
            "header",
            "footer",
            ".navigation",
            ".footer",
            ".comments",
            ".sidebar",
            ".ad",
            ".advertisement",
            ".social-share",
            "script",
            "style",
            "noscript",
            "iframe",
        ],
        "title": ["h1", ".article-title", ".post-title", ".entry-title", '[itemprop="headline"]'],
        "content": [
            "article",
            ".article-content",
            ".post-content",
            ".entry-content",
            ".content",
            "main",
            '[itemprop="articleBody"]',
        ],
        "date": [".date", ".published", ".publish-date", ".timestamp", ".article-date", "time", "[datetime]"],
        "min_content_chars": 500,
    },
    "login": {
        "email": ['input[type="email"]', 'input[name*="user"]', 'input[name*="email"]', "#email"],
        "password": ['input[type="password"]', 'input[name*="pass"]', "#password"],
        "submit": [
            'button[type="submit"]',
            'input[type="submit"]',
            'button[class*="submit" i]',
            'button[class*="login" i]',
            'button[id*="submit" i]',
            'button[id*="login" i]',
            "button:not([type])",
        ],
        "submit_texts": ["sign in", "log in", "login", "submit"],
        "login_path_hints": ["/login", "/signin", "/sign-in"],
        "login_text_hints": ["sign in", "log in"],
    },
    "authenticated": {
        "content": [
            ".reports-container",
            ".article-list",
            ".content-area",
            ".dashboard",
            'main[role="main"]',
            "#main-content",
        ],
        "logout_texts": ["logout", "log out", "sign out"],
        "logout_hrefs": ["logout", "signout", "sign-out"],
    },
}


@dataclass(frozen=True)
class ListingSelectors:
    links: list[str]
    exclude_paths: list[str]


@dataclass(frozen=True)
class ArticleSelectors:
    noise: list[str]
    title: list[str]
    content: list[str]
    date: list[str]
    min_content_chars: int


@dataclass(frozen=True)
class LoginSelectors:
    email: list[str]
    password: list[str]
    submit: list[str]
    submit_texts: list[str]
    login_path_hints: list[str]
    login_text_hints: list[str]


@dataclass(frozen=True)
class AuthenticatedSelectors:
    content: list[str]
    logout_texts: list[str]
    logout_hrefs: list[str]


@dataclass(frozen=True)
class Selectors:
    listing: ListingSelectors
    article: ArticleSelectors
    login: LoginSelectors
    authenticated: AuthenticatedSelectors


def load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"selectors yaml must be a mapping: {path}")
    return data


def merge_strategies(base: dict, override: dict) -> dict:
    """Overlay ``override`` onto ``base``.

    Lists are merged override-first so site-specific selectors are tried
    before the built-in ones.
    """
    out = copy.deepcopy(base)
    for k, v in override.items():
        if v is None:
            continue
        if isinstance(out.get(k), dict) and isinstance(v, dict):
            out[k] = merge_strategies(out[k], v)
            continue
        if isinstance(out.get(k), list) and isinstance(v, list):
            seen: set[str] = set()
            merged = []
            for item in v + out[k]:
                marker = str(item)
                if marker in seen:
                    continue
                seen.add(marker)
                merged.append(item)
            out[k] = merged
            continue
        out[k] = copy.deepcopy(v)
    return out


def build_selectors(data: dict) -> Selectors:
    return Selectors(
        listing=ListingSelectors(**data["listing"]),
        article=ArticleSelectors(**data["article"]),
        login=LoginSelectors(**data["login"]),
        authenticated=AuthenticatedSelectors(**data["authenticated"]),
    )


def load_selectors(path: Path | None = None) -> Selectors:
    data = DEFAULT_SELECTORS
    if path is not None:
        overrides = load_yaml(path)
        if overrides:
            logger.info("loaded selector overrides from %s", path)
            data = merge_strategies(DEFAULT_SELECTORS, overrides)
    return build_selectors(data)
