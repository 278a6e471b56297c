import asyncio

import pytest

from delphi_bot.errors import ERROR_PARSE_FAIL, AuthRequiredError, FetchError
from delphi_bot.frontier import FrontierResolver, cut_at_watermark
from delphi_bot.storage.types import ListingEntry
from tests.fakes import FakeSource, report_url


LISTING_URL = "https://members.delphidigital.io/reports"


def entry(slug: str) -> ListingEntry:
    return ListingEntry(key=report_url(slug), title=slug)


def resolve(resolver, watermark, limit=None):
    return asyncio.run(resolver.resolve(LISTING_URL, watermark, limit=limit))


def test_stops_at_watermark():
    source = FakeSource([entry("b"), entry("a")])
    resolver = FrontierResolver(source, attempts=3, delay_seconds=0)

    assert resolve(resolver, report_url("a")) == [entry("b")]


def test_no_new_items_when_watermark_is_newest():
    source = FakeSource([entry("b"), entry("a")])
    resolver = FrontierResolver(source, attempts=3, delay_seconds=0)

    assert resolve(resolver, report_url("b")) == []


def test_same_watermark_twice_gives_same_frontier():
    source = FakeSource([entry("c"), entry("b"), entry("a")])
    resolver = FrontierResolver(source, attempts=3, delay_seconds=0)

    first = resolve(resolver, report_url("a"))
    second = resolve(resolver, report_url("a"))
    assert first == second == [entry("c"), entry("b")]


def test_first_run_returns_full_listing_capped_by_limit():
    source = FakeSource([entry(s) for s in "edcba"])

    uncapped = FrontierResolver(source, attempts=1, delay_seconds=0)
    assert len(resolve(uncapped, None)) == 5

    capped = FrontierResolver(source, attempts=1, delay_seconds=0, first_run_limit=2)
    assert resolve(capped, None) == [entry("e"), entry("d")]


def test_first_run_limit_does_not_apply_with_a_watermark():
    source = FakeSource([entry(s) for s in "edcba"])
    resolver = FrontierResolver(source, attempts=1, delay_seconds=0, first_run_limit=1)

    assert len(resolve(resolver, report_url("a"))) == 4


def test_explicit_limit_caps_result():
    source = FakeSource([entry(s) for s in "edcba"])
    resolver = FrontierResolver(source, attempts=1, delay_seconds=0)

    assert resolve(resolver, None, limit=3) == [entry("e"), entry("d"), entry("c")]


def test_explicit_limit_overrides_first_run_limit():
    source = FakeSource([entry(s) for s in "fedcba"])
    resolver = FrontierResolver(source, attempts=1, delay_seconds=0, first_run_limit=2)

    assert len(resolve(resolver, None, limit=5)) == 5


def test_duplicates_and_tracking_params_collapse():
    listing = [
        ListingEntry(report_url("b") + "?utm_source=mail", "b"),
        ListingEntry(report_url("b") + "#top", "b again"),
        entry("a"),
    ]

    out = cut_at_watermark(listing, None)

    assert [e.key for e in out] == [report_url("b"), report_url("a")]


def test_retries_transient_failures():
    source = FakeSource([entry("b"), entry("a")])
    source.list_errors = [FetchError("TIMEOUT", "slow"), AuthRequiredError()]
    resolver = FrontierResolver(source, attempts=3, delay_seconds=0)

    assert resolve(resolver, report_url("a")) == [entry("b")]
    assert source.list_calls == 3


def test_raises_after_exhausting_attempts():
    source = FakeSource([entry("a")])
    source.list_errors = [FetchError(ERROR_PARSE_FAIL, "no links")] * 3
    resolver = FrontierResolver(source, attempts=3, delay_seconds=0)

    with pytest.raises(FetchError) as exc:
        resolve(resolver, None)
    assert exc.value.error_type == ERROR_PARSE_FAIL
    assert source.list_calls == 3
