"""In-memory stand-ins for the browser, site, summarizer and chat."""

from __future__ import annotations

from datetime import datetime, timezone

from delphi_bot.crawler.browser import SubmitOutcome
from delphi_bot.errors import ERROR_TIMEOUT, DeliveryError, FetchError
from delphi_bot.storage.types import FetchedContent, Item, ListingEntry


BASE = "https://members.delphidigital.io"


def report_url(slug: str) -> str:
    return f"{BASE}/reports/{slug}"


def make_item(
    slug: str,
    summary: str = "A short summary.\n\nRelevance: matters.",
    published: datetime | None = None,
    processed: datetime | None = None,
    discovered: datetime | None = None,
    title: str | None = None,
) -> Item:
    published = published or datetime(2024, 5, 1, tzinfo=timezone.utc)
    discovered = discovered or published
    return Item(
        key=report_url(slug),
        title=title if title is not None else slug.replace("-", " ").title(),
        body="",
        summary=summary,
        publication_date=published,
        discovered_at=discovered,
        last_processed_at=processed or discovered,
    )


class FakeBrowser:
    """Scripted page loads keyed by URL; cookies decide what the verify page shows."""

    def __init__(self, pages: dict[str, str] | None = None, valid_cookie: str = "fresh") -> None:
        self.pages = dict(pages or {})
        self.valid_cookie = valid_cookie
        self.current_url = ""
        self.jar: list[dict] = []
        self.filled: dict[str, str] = {}
        self.submit_outcome = SubmitOutcome.NAVIGATED
        self.goto_errors: dict[str, int] = {}
        self.started_count = 0
        self.closed_count = 0
        self.snapshots: list[str] = []

    @property
    def url(self) -> str:
        return self.current_url

    async def start(self) -> None:
        self.started_count += 1

    async def aclose(self) -> None:
        self.closed_count += 1

    async def goto(self, url: str) -> str:
        self.current_url = url
        remaining = self.goto_errors.get(url, 0)
        if remaining:
            self.goto_errors[url] = remaining - 1
            raise FetchError(ERROR_TIMEOUT, f"timeout loading {url}")
        return self.content_for(url)

    def content_for(self, url: str) -> str:
        return self.pages.get(url, "<html><body></body></html>")

    async def content(self) -> str:
        return self.content_for(self.current_url)

    async def cookies(self) -> list[dict]:
        return list(self.jar)

    async def set_cookies(self, cookies: list[dict]) -> None:
        self.jar = list(cookies)

    @property
    def authenticated(self) -> bool:
        return any(c.get("value") == self.valid_cookie for c in self.jar)

    async def fill_first(self, selectors: list[str], value: str) -> str | None:
        selector = selectors[0]
        self.filled[selector] = value
        return selector

    async def submit(self, selectors: list[str], texts: list[str], wait_timeout_seconds: int) -> SubmitOutcome:
        if self.submit_outcome != SubmitOutcome.NOT_FOUND:
            self.jar = [{"name": "session", "value": self.valid_cookie, "domain": "members.delphidigital.io", "path": "/"}]
        return self.submit_outcome

    async def save_snapshot(self, directory, name: str) -> None:
        self.snapshots.append(name)


class FakeSource:
    def __init__(self, listing: list[ListingEntry] | None = None, bodies: dict[str, str] | None = None) -> None:
        self.listing = list(listing or [])
        self.bodies = dict(bodies or {})
        self.list_calls = 0
        self.list_errors: list[Exception] = []
        self.fetch_errors: dict[str, Exception] = {}
        self.fetched: list[str] = []

    async def list_items(self, listing_url: str) -> list[ListingEntry]:
        self.list_calls += 1
        if self.list_errors:
            raise self.list_errors.pop(0)
        return list(self.listing)

    async def fetch_item(self, key: str) -> FetchedContent:
        self.fetched.append(key)
        if key in self.fetch_errors:
            raise self.fetch_errors[key]
        body = self.bodies.get(key, f"Full text of {key}. " * 20)
        return FetchedContent(title="", body=body, published_at=datetime(2024, 6, 1, tzinfo=timezone.utc))


class FakeSummarizer:
    def __init__(self, result: str = "Main point.\n\nRelevance: useful.") -> None:
        self.result = result
        self.calls: list[tuple[str, str]] = []

    async def summarize(self, title: str, body: str) -> str:
        self.calls.append((title, body))
        return self.result


class FakeNotifier:
    channel = "telegram:42"

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.messages: list[str] = []
        self.statuses: list[str] = []

    async def publish(self, message: str) -> str:
        if self.fail:
            raise DeliveryError("chat unavailable")
        self.messages.append(message)
        return str(len(self.messages))

    async def send_status(self, text: str) -> None:
        self.statuses.append(text)


class FakeSession:
    def __init__(self, results: list[bool] | None = None) -> None:
        self.results = list(results or [True])
        self.calls = 0

    async def login(self, username: str, password: str) -> bool:
        self.calls += 1
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]
