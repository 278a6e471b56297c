import asyncio
import json

import pytest

from delphi_bot.errors import FetchError, PersistenceError
from delphi_bot.frontier import FrontierResolver
from delphi_bot.jobs.lock import PidLock
from delphi_bot.jobs.pipeline import RunOptions, RunOrchestrator, RunStage, RunStatus
from delphi_bot.processing.processor import ItemProcessor
from delphi_bot.publisher import Publisher
from delphi_bot.storage.types import ListingEntry
from tests.fakes import FakeBrowser, FakeNotifier, FakeSession, FakeSource, FakeSummarizer, make_item, report_url


LISTING_URL = "https://members.delphidigital.io/reports"


def entry(slug: str) -> ListingEntry:
    return ListingEntry(key=report_url(slug), title=slug.upper())


def build(store, tmp_path, source, summarizer=None, notifier=None, session=None, **kwargs):
    browser = FakeBrowser()
    orchestrator = RunOrchestrator(
        store=store,
        browser=browser,
        session=session or FakeSession(),
        resolver=FrontierResolver(source, attempts=2, delay_seconds=0),
        processor=ItemProcessor(source, summarizer or FakeSummarizer()),
        lock=PidLock(tmp_path / "run.pid"),
        listing_url=LISTING_URL,
        username="me@example.com",
        password="pw",
        publisher=Publisher(store, notifier) if notifier is not None else None,
        notifier=notifier,
        retry_attempts=2,
        retry_delay_seconds=0,
        status_path=tmp_path / "status.json",
        **kwargs,
    )
    return orchestrator, browser


def test_full_run_processes_persists_advances_and_publishes(store, tmp_path):
    source = FakeSource([entry("b"), entry("a")])
    notifier = FakeNotifier()
    orchestrator, browser = build(store, tmp_path, source, notifier=notifier)

    result = asyncio.run(orchestrator.run_once())

    assert result.status == RunStatus.DONE
    assert result.counts() == {"discovered": 2, "processed": 2, "failed": 0, "published": 2}
    assert store.get_watermark() == report_url("b")
    assert store.known_keys() == {report_url("a"), report_url("b")}
    assert len(notifier.messages) == 2
    assert browser.started_count == 1
    assert browser.closed_count == 1
    assert not (tmp_path / "run.pid").exists()

    status = json.loads((tmp_path / "status.json").read_text(encoding="utf-8"))
    assert status["last_run_status"] == "DONE"
    assert status["watermark"] == report_url("b")


def test_second_run_only_handles_items_above_watermark(store, tmp_path):
    source = FakeSource([entry("b"), entry("a")])
    notifier = FakeNotifier()
    orchestrator, _ = build(store, tmp_path, source, notifier=notifier)
    asyncio.run(orchestrator.run_once())

    source.listing = [entry("c"), entry("b"), entry("a")]
    source.fetched.clear()
    result = asyncio.run(orchestrator.run_once())

    assert source.fetched == [report_url("c")]
    assert result.published == 1
    assert store.get_watermark() == report_url("c")
    assert len(notifier.messages) == 3
    assert len(store.load_deliveries()) == 3


def test_unchanged_listing_is_a_no_op(store, tmp_path):
    source = FakeSource([entry("b"), entry("a")])
    notifier = FakeNotifier()
    orchestrator, _ = build(store, tmp_path, source, notifier=notifier)
    asyncio.run(orchestrator.run_once())
    source.fetched.clear()

    result = asyncio.run(orchestrator.run_once())

    assert result.status == RunStatus.DONE
    assert source.fetched == []
    assert len(notifier.messages) == 2


def test_failed_save_leaves_watermark_and_next_run_reprocesses(store, tmp_path, monkeypatch):
    source = FakeSource([entry("b"), entry("a")])
    notifier = FakeNotifier()
    orchestrator, browser = build(store, tmp_path, source, notifier=notifier)

    def _fail(items):
        raise PersistenceError("disk full")

    monkeypatch.setattr(store, "merge", _fail)
    result = asyncio.run(orchestrator.run_once())
    monkeypatch.undo()

    assert result.status == RunStatus.FAILED
    assert result.stage == RunStage.PERSIST
    assert store.get_watermark() is None
    assert notifier.messages == []
    assert any("PERSIST" in s for s in notifier.statuses)
    assert browser.closed_count == 1

    source.fetched.clear()
    result = asyncio.run(orchestrator.run_once())

    assert result.status == RunStatus.DONE
    assert sorted(source.fetched) == sorted([report_url("a"), report_url("b")])
    assert store.get_watermark() == report_url("b")


def test_live_lock_makes_run_a_no_op(store, tmp_path, monkeypatch):
    (tmp_path / "run.pid").write_text("4242", encoding="utf-8")
    monkeypatch.setattr("delphi_bot.jobs.lock.pid_alive", lambda pid: True)
    source = FakeSource([entry("a")])
    orchestrator, browser = build(store, tmp_path, source)

    result = asyncio.run(orchestrator.run_once())

    assert result.status == RunStatus.SKIPPED
    assert source.list_calls == 0
    assert browser.started_count == 0
    assert (tmp_path / "run.pid").read_text(encoding="utf-8") == "4242"


def test_auth_failure_aborts_after_retries_and_alerts(store, tmp_path):
    source = FakeSource([entry("a")])
    session = FakeSession([False])
    notifier = FakeNotifier()
    orchestrator, browser = build(store, tmp_path, source, notifier=notifier, session=session, alert_threshold=1)

    result = asyncio.run(orchestrator.run_once())

    assert result.status == RunStatus.FAILED
    assert result.stage == RunStage.ACQUIRE_SESSION
    assert session.calls == 2
    assert source.list_calls == 0
    assert store.get_watermark() is None
    assert browser.closed_count == 1
    assert any(s.startswith("Alert: login") for s in notifier.statuses)
    assert any(s.startswith("Alert: run") for s in notifier.statuses)


def test_listing_failure_fails_run_without_touching_state(store, tmp_path):
    source = FakeSource([])
    orchestrator, _ = build(store, tmp_path, source)
    source.list_errors = [FetchError("PARSE_FAIL", "no links")] * 2
    result = asyncio.run(orchestrator.run_once())

    assert result.status == RunStatus.FAILED
    assert result.stage == RunStage.RESOLVE_FRONTIER
    assert source.list_calls == 2
    assert store.get_watermark() is None


def test_known_items_are_filtered_on_first_run(store, tmp_path):
    store.save([make_item("a")])
    source = FakeSource([entry("b"), entry("a")])
    orchestrator, _ = build(store, tmp_path, source)

    asyncio.run(orchestrator.run_once())

    assert source.fetched == [report_url("b")]
    assert store.get_watermark() == report_url("b")


def test_item_failures_do_not_abort_batch(store, tmp_path):
    source = FakeSource([entry("c"), entry("b"), entry("a")])
    source.bodies[report_url("b")] = ""
    orchestrator, _ = build(store, tmp_path, source, notifier=FakeNotifier())

    result = asyncio.run(orchestrator.run_once())

    assert result.status == RunStatus.DONE
    assert (result.processed, result.failed, result.published) == (2, 1, 2)
    assert store.get(report_url("b")).summary == "[error] no content extracted"
    assert report_url("b") not in store.known_keys()


def test_failed_ledger_items_are_retried(store, tmp_path):
    store.save([make_item("x", summary="[error] fetch failed: timeout")])
    store.set_watermark(report_url("b"))
    source = FakeSource([entry("b"), entry("a")])
    orchestrator, _ = build(store, tmp_path, source, reprocess_failed_limit=5)

    asyncio.run(orchestrator.run_once())

    assert source.fetched == [report_url("x")]
    assert store.get(report_url("x")).ok


def test_forced_failure_keeps_good_summary_and_watermark(store, tmp_path):
    store.save([make_item("a", summary="Good summary.")])
    store.set_watermark(report_url("a"))
    source = FakeSource([entry("b"), entry("a")])
    orchestrator, _ = build(store, tmp_path, source, summarizer=FakeSummarizer("[error] summarization failed"))

    result = asyncio.run(orchestrator.run_once(RunOptions(force_keys=(report_url("a"),))))

    assert result.failed == 1
    assert store.get(report_url("a")).summary == "Good summary."
    assert store.get_watermark() == report_url("a")


def test_force_latest_reprocesses_without_moving_watermark(store, tmp_path):
    store.set_watermark(report_url("c"))
    source = FakeSource([entry("c"), entry("b"), entry("a")])
    orchestrator, _ = build(store, tmp_path, source)

    asyncio.run(orchestrator.run_once(RunOptions(force_latest=2)))

    assert source.fetched == [report_url("c"), report_url("b")]
    assert store.get_watermark() == report_url("c")


def test_resend_delivers_again_with_single_record(store, tmp_path):
    source = FakeSource([entry("a")])
    notifier = FakeNotifier()
    orchestrator, _ = build(store, tmp_path, source, notifier=notifier)
    asyncio.run(orchestrator.run_once())

    asyncio.run(orchestrator.run_once(RunOptions(force_keys=(report_url("a"),), resend=True)))

    assert len(notifier.messages) == 2
    assert len(store.load_deliveries()) == 1


def test_backlog_of_undelivered_items_is_sent(store, tmp_path):
    store.save([make_item("old-1"), make_item("old-2")])
    source = FakeSource([entry("a")])
    notifier = FakeNotifier()
    orchestrator, _ = build(store, tmp_path, source, notifier=notifier, backlog_send_limit=1)

    result = asyncio.run(orchestrator.run_once())

    assert result.published == 2
    assert len(store.undelivered(notifier.channel)) == 1


def test_dry_run_persists_but_sends_nothing(store, tmp_path):
    source = FakeSource([entry("a")])
    notifier = FakeNotifier()
    orchestrator, _ = build(store, tmp_path, source, notifier=notifier)

    result = asyncio.run(orchestrator.run_once(RunOptions(publish=False)))

    assert result.published == 0
    assert notifier.messages == []
    assert store.known_keys() == {report_url("a")}


def test_digest_after_run(store, tmp_path):
    source = FakeSource([entry("a")])
    notifier = FakeNotifier()
    orchestrator, _ = build(store, tmp_path, source, notifier=notifier)

    asyncio.run(orchestrator.run_once(RunOptions(digest=True)))

    assert len(notifier.messages) == 2
    assert "digest" in notifier.messages[-1]
    assert store.get_last_digest_at() is not None


def test_cancellation_flushes_processed_items_without_advancing(store, tmp_path):
    source = FakeSource([entry("b"), entry("a")])
    source.fetch_errors[report_url("a")] = asyncio.CancelledError()
    orchestrator, browser = build(store, tmp_path, source)

    with pytest.raises(asyncio.CancelledError):
        asyncio.run(orchestrator.run_once())

    assert store.known_keys() == {report_url("b")}
    assert store.get_watermark() is None
    assert browser.closed_count == 1
    assert not (tmp_path / "run.pid").exists()


def test_forced_unchanged_report_keeps_summary_unless_resummarized(store, tmp_path):
    source = FakeSource([entry("a")])
    summarizer = FakeSummarizer("First summary.")
    orchestrator, _ = build(store, tmp_path, source, summarizer=summarizer)
    asyncio.run(orchestrator.run_once())

    summarizer.result = "Second summary."
    asyncio.run(orchestrator.run_once(RunOptions(force_keys=(report_url("a"),))))
    assert len(summarizer.calls) == 1
    assert store.get(report_url("a")).summary == "First summary."

    asyncio.run(orchestrator.run_once(RunOptions(force_keys=(report_url("a"),), resummarize=True)))
    assert len(summarizer.calls) == 2
    assert store.get(report_url("a")).summary == "Second summary."


def test_repeated_summary_failures_raise_ai_alert(store, tmp_path):
    source = FakeSource([entry("a")])
    notifier = FakeNotifier()
    summarizer = FakeSummarizer("[error] summarization failed: 503")
    orchestrator, _ = build(
        store, tmp_path, source, summarizer=summarizer, notifier=notifier, alert_threshold=2, reprocess_failed_limit=5
    )

    asyncio.run(orchestrator.run_once())
    assert not any(s.startswith("Alert: ai") for s in notifier.statuses)

    asyncio.run(orchestrator.run_once())
    assert orchestrator.stats.consecutive_ai_failures == 2
    assert any(s.startswith("Alert: ai") for s in notifier.statuses)
