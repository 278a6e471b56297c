from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Protocol

from delphi_bot.ai.client import AIConfig, OpenAICompatClient
from delphi_bot.auth.session import SessionManager
from delphi_bot.config import Config
from delphi_bot.crawler.browser import BrowserSession
from delphi_bot.crawler.selectors import load_selectors
from delphi_bot.crawler.source import DelphiSource
from delphi_bot.digest import send_digest
from delphi_bot.errors import AuthError, FetchError, PersistenceError
from delphi_bot.frontier import FrontierResolver
from delphi_bot.jobs.lock import PidLock
from delphi_bot.metrics.metrics import Metrics, RuntimeStats, stats_to_dict, write_status_json
from delphi_bot.processing.processor import ItemProcessor, ProcessResult
from delphi_bot.publisher import Notifier, Publisher
from delphi_bot.ratelimit import PageThrottle
from delphi_bot.retry import retry_async
from delphi_bot.storage.store import StateStore
from delphi_bot.storage.types import Item, ListingEntry
from delphi_bot.telegram.alerts import maybe_send_consecutive_failure_alert
from delphi_bot.telegram.notifier import TelegramNotifier
from delphi_bot.utils import canonicalize_url


logger = logging.getLogger(__name__)


class RunStage(str, Enum):
    ACQUIRE_SESSION = "ACQUIRE_SESSION"
    RESOLVE_FRONTIER = "RESOLVE_FRONTIER"
    PROCESS_ITEMS = "PROCESS_ITEMS"
    PERSIST = "PERSIST"
    ADVANCE_WATERMARK = "ADVANCE_WATERMARK"
    PUBLISH = "PUBLISH"
    DONE = "DONE"
    FAILED = "FAILED"


class RunStatus(str, Enum):
    DONE = "DONE"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


@dataclass(frozen=True)
class RunOptions:
    force_keys: tuple[str, ...] = ()
    force_latest: int = 0
    resend: bool = False
    publish: bool = True
    digest: bool = False
    resummarize: bool = False

    @property
    def forced(self) -> bool:
        return bool(self.force_keys) or self.force_latest > 0


@dataclass
class RunResult:
    status: RunStatus
    stage: RunStage
    discovered: int = 0
    processed: int = 0
    failed: int = 0
    published: int = 0
    error: str | None = None

    def counts(self) -> dict[str, int]:
        return {
            "discovered": self.discovered,
            "processed": self.processed,
            "failed": self.failed,
            "published": self.published,
        }


class Browser(Protocol):
    async def start(self) -> None: ...

    async def aclose(self) -> None: ...


@dataclass
class AppContext:
    config: Config
    store: StateStore
    browser: BrowserSession
    session: SessionManager
    source: DelphiSource
    resolver: FrontierResolver
    ai: OpenAICompatClient
    processor: ItemProcessor
    notifier: TelegramNotifier | None
    publisher: Publisher | None
    metrics: Metrics
    runtime_stats: RuntimeStats
    throttle: PageThrottle
    lock: PidLock

    async def aclose(self) -> None:
        await self.ai.aclose()
        if self.notifier is not None:
            await self.notifier.aclose()
        await self.browser.aclose()


def build_app_context(config: Config) -> AppContext:
    store = StateStore(config.data_dir, backup_keep=config.backup_keep)
    selectors = load_selectors(config.selectors_path)

    browser = BrowserSession(
        headless=config.playwright_headless,
        nav_timeout_seconds=config.playwright_nav_timeout_seconds,
        user_agent=config.user_agent,
    )
    throttle = PageThrottle(min_interval_seconds=config.item_min_interval_seconds)
    source = DelphiSource(browser, selectors, throttle, settle_seconds=config.page_settle_seconds)
    session = SessionManager(
        browser,
        store,
        selectors,
        login_url=config.login_url,
        verify_url=config.reports_url,
        login_wait_timeout_seconds=config.login_wait_timeout_seconds,
        debug_dir=config.debug_dir,
    )
    resolver = FrontierResolver(
        source,
        attempts=config.retry_attempts,
        delay_seconds=config.retry_delay_seconds,
        first_run_limit=config.first_run_limit,
    )

    ai_config = AIConfig(
        base_url=config.ai_base_url,
        api_key=config.ai_api_key,
        model=config.ai_model,
        timeout_seconds=config.ai_timeout_seconds,
        max_retries=config.ai_max_retries,
        prefer_chat_completions=config.ai_prefer_chat_completions,
        fallback_to_responses=config.ai_fallback_to_responses,
        max_input_chars=config.ai_max_input_chars,
        chunk_chars=config.ai_chunk_chars,
        chunk_overlap_chars=config.ai_chunk_overlap_chars,
    )
    ai = OpenAICompatClient(ai_config)
    if not ai_config.configured:
        logger.warning("AI_BASE_URL/AI_API_KEY/AI_MODEL not set, every summary will be marked as failed")

    notifier = None
    publisher = None
    if config.publishing_enabled:
        notifier = TelegramNotifier.from_token(
            config.bot_token,
            target_chat_id=config.target_chat_id,
            alert_chat_id=config.alert_chat_id,
            parse_mode=config.tg_parse_mode,
        )
        publisher = Publisher(store, notifier)
    else:
        logger.warning("BOT_TOKEN/TARGET_CHAT_ID not set, publishing disabled")

    return AppContext(
        config=config,
        store=store,
        browser=browser,
        session=session,
        source=source,
        resolver=resolver,
        ai=ai,
        processor=ItemProcessor(source, ai),
        notifier=notifier,
        publisher=publisher,
        metrics=Metrics(),
        runtime_stats=RuntimeStats(),
        throttle=throttle,
        lock=PidLock(config.lock_path),
    )


class RunOrchestrator:
    """One run: session, frontier, processing, persistence, watermark, publishing.

    The watermark only moves after the ledger merge returned, so a crash or a
    failed save leaves the next run to pick the same items up again.
    """

    def __init__(
        self,
        *,
        store: StateStore,
        browser: Browser,
        session: SessionManager,
        resolver: FrontierResolver,
        processor: ItemProcessor,
        lock: PidLock,
        listing_url: str,
        username: str,
        password: str,
        publisher: Publisher | None = None,
        notifier: Notifier | None = None,
        retry_attempts: int = 3,
        retry_delay_seconds: float = 5.0,
        reprocess_failed_limit: int = 0,
        backlog_send_limit: int = 0,
        send_interval_seconds: float = 0.0,
        digest_lookback_hours: int = 24,
        alert_threshold: int = 0,
        metrics: Metrics | None = None,
        stats: RuntimeStats | None = None,
        status_path: Path | None = None,
        throttle: PageThrottle | None = None,
    ) -> None:
        self._store = store
        self._browser = browser
        self._session = session
        self._resolver = resolver
        self._processor = processor
        self._lock = lock
        self._listing_url = listing_url
        self._username = username
        self._password = password
        self._publisher = publisher
        self._notifier = notifier
        self._retry_attempts = retry_attempts
        self._retry_delay_seconds = retry_delay_seconds
        self._reprocess_failed_limit = reprocess_failed_limit
        self._backlog_send_limit = backlog_send_limit
        self._send_interval_seconds = send_interval_seconds
        self._digest_lookback_hours = digest_lookback_hours
        self._alert_threshold = alert_threshold
        self.metrics = metrics or Metrics()
        self.stats = stats or RuntimeStats()
        self._status_path = status_path
        self._throttle = throttle

    @classmethod
    def from_context(cls, ctx: AppContext) -> "RunOrchestrator":
        cfg = ctx.config
        return cls(
            store=ctx.store,
            browser=ctx.browser,
            session=ctx.session,
            resolver=ctx.resolver,
            processor=ctx.processor,
            lock=ctx.lock,
            listing_url=cfg.reports_url,
            username=cfg.delphi_email,
            password=cfg.delphi_password,
            publisher=ctx.publisher,
            notifier=ctx.notifier,
            retry_attempts=cfg.retry_attempts,
            retry_delay_seconds=cfg.retry_delay_seconds,
            reprocess_failed_limit=cfg.reprocess_failed_limit,
            backlog_send_limit=cfg.backlog_send_limit,
            send_interval_seconds=cfg.send_interval_seconds,
            digest_lookback_hours=cfg.digest_lookback_hours,
            alert_threshold=cfg.alert_n_run,
            metrics=ctx.metrics,
            stats=ctx.runtime_stats,
            status_path=cfg.status_json_path,
            throttle=ctx.throttle,
        )

    async def run_once(self, options: RunOptions | None = None) -> RunResult:
        options = options or RunOptions()
        if not self._lock.acquire():
            logger.info("run skipped: another run holds %s", self._lock.path)
            return RunResult(RunStatus.SKIPPED, RunStage.ACQUIRE_SESSION)

        started = time.time()
        self.stats.last_run_started_ts = started
        try:
            result = await self._run(options)
        finally:
            self._lock.release()

        self.metrics.runs_total.labels(status=result.status.value).inc()
        self.metrics.run_duration_seconds.observe(time.time() - started)
        await self._after_run(result)
        return result

    async def run_forever(self, options: RunOptions | None = None, interval_seconds: float = 86400) -> None:
        options = options or RunOptions()
        while True:
            result = await self.run_once(options)
            logger.info("run finished: %s %s; next run in %ss", result.status.value, result.counts(), interval_seconds)
            # Forced selections apply to the first run only.
            options = replace(options, force_keys=(), force_latest=0, resend=False, resummarize=False)
            await asyncio.sleep(interval_seconds)

    async def send_digest(self) -> bool:
        if self._notifier is None:
            logger.warning("digest requested but publishing is disabled")
            return False
        return await send_digest(self._store, self._notifier, self._digest_lookback_hours)

    async def _acquire_session(self) -> None:
        async def _login() -> None:
            if not await self._session.login(self._username, self._password):
                raise AuthError("could not establish an authenticated session")

        try:
            await retry_async(
                _login,
                attempts=self._retry_attempts,
                delay_seconds=self._retry_delay_seconds,
                retry_on=(AuthError, FetchError),
                name="session",
            )
        except (AuthError, FetchError):
            self.metrics.logins_total.labels(result="failed").inc()
            self.stats.consecutive_login_failures += 1
            await self._alert("login", self.stats.consecutive_login_failures)
            raise
        self.metrics.logins_total.labels(result="ok").inc()
        self.stats.consecutive_login_failures = 0

    async def _select(self, options: RunOptions) -> tuple[list[ListingEntry], str | None]:
        """Entries to process this run and the key the watermark may move to."""
        if options.force_keys:
            entries = [ListingEntry(key=canonicalize_url(k), title="") for k in options.force_keys]
            return _unique(entries), None
        if options.force_latest > 0:
            entries = await self._resolver.resolve(self._listing_url, None, limit=options.force_latest)
            return entries, None

        watermark = self._store.get_watermark()
        frontier = await self._resolver.resolve(self._listing_url, watermark)
        newest = frontier[0].key if frontier else None

        known = self._store.known_keys()
        entries = [e for e in frontier if e.key not in known]
        if len(entries) != len(frontier):
            logger.info("skipping %s already processed items", len(frontier) - len(entries))

        if self._reprocess_failed_limit > 0:
            queued = {e.key for e in entries}
            for item in self._store.failed(self._reprocess_failed_limit):
                if item.key not in queued:
                    entries.append(ListingEntry(key=item.key, title=item.title))
                    queued.add(item.key)
        return entries, newest

    async def _process(self, entry: ListingEntry, previous: Item | None) -> ProcessResult:
        started = time.perf_counter()
        try:
            return await self._processor.process(entry, previous)
        except Exception as e:
            logger.exception("unexpected error processing %s", entry.key)
            return ProcessResult(self._processor.failure(entry, f"unexpected error: {e}"), ok=False)
        finally:
            self.metrics.item_process_seconds.observe(time.perf_counter() - started)

    def _persistable(self, results: list[ProcessResult]) -> list[Item]:
        """Failed results never overwrite a good stored summary."""
        known = self._store.known_keys() if any(not r.ok for r in results) else set()
        return [r.item for r in results if r.ok or r.item.key not in known]

    def _flush(self, results: list[ProcessResult]) -> None:
        items = self._persistable(results)
        if not items:
            return
        try:
            self._store.merge(items)
            logger.info("flushed %s processed items before shutdown", len(items))
        except PersistenceError:
            logger.error("could not flush %s processed items before shutdown", len(items))

    async def _run(self, options: RunOptions) -> RunResult:
        stage = RunStage.ACQUIRE_SESSION
        result = RunResult(RunStatus.FAILED, stage)
        results: list[ProcessResult] = []
        persisted = False
        try:
            await self._browser.start()
            await self._acquire_session()

            stage = RunStage.RESOLVE_FRONTIER
            if options.forced:
                logger.info("forced run: watermark stays where it is")
            entries, newest = await self._select(options)
            result.discovered = len(entries)
            self.metrics.items_discovered_total.inc(len(entries))

            stage = RunStage.PROCESS_ITEMS
            stored = {} if options.resummarize else {i.key: i for i in self._store.load()}
            for idx, entry in enumerate(entries, start=1):
                logger.info("processing %s/%s: %s", idx, len(entries), entry.key)
                res = await self._process(entry, stored.get(entry.key))
                results.append(res)
                self.metrics.items_processed_total.labels(result="ok" if res.ok else "failed").inc()
            result.processed = sum(1 for r in results if r.ok)
            result.failed = len(results) - result.processed
            await self._track_ai_failures(results)

            stage = RunStage.PERSIST
            if results:
                self._store.merge(self._persistable(results))
            persisted = True

            stage = RunStage.ADVANCE_WATERMARK
            if newest is not None:
                self._store.set_watermark(newest)
                self.stats.watermark = newest

            stage = RunStage.PUBLISH
            if options.publish and self._publisher is not None:
                result.published = await self._publish(results, options.resend)
            elif options.publish:
                logger.info("publishing disabled, %s items not sent", result.processed)
            else:
                logger.info("dry run, %s items not sent", result.processed)

            if options.digest and options.publish:
                await self.send_digest()

            result.stage = RunStage.DONE
            result.status = RunStatus.DONE
            return result
        except asyncio.CancelledError:
            logger.warning("run cancelled during %s", stage.value)
            if not persisted:
                self._flush(results)
            raise
        except Exception as e:
            logger.exception("run failed during %s", stage.value)
            result.stage = stage
            result.error = f"{type(e).__name__}: {e}"
            if self._notifier is not None:
                await self._notifier.send_status(f"delphi-bot run failed during {stage.value}: {result.error}")
            return result
        finally:
            try:
                await self._browser.aclose()
            except Exception:
                logger.exception("failed to close browser")

    async def _publish(self, results: list[ProcessResult], resend: bool) -> int:
        sent = 0
        attempted: set[str] = set()
        for res in results:
            if not res.ok:
                continue
            attempted.add(res.item.key)
            if await self._send(res.item, resend):
                sent += 1

        if self._backlog_send_limit > 0:
            backlog = [
                i
                for i in self._store.undelivered(self._publisher.channel)
                if i.key not in attempted
            ][: self._backlog_send_limit]
            if backlog:
                logger.info("sending %s undelivered items from the ledger", len(backlog))
            for item in backlog:
                if await self._send(item, False):
                    sent += 1
        return sent

    async def _send(self, item: Item, resend: bool) -> bool:
        ok = await self._publisher.maybe_publish(item, resend=resend)
        if ok:
            self.metrics.notifications_sent_total.inc()
            if self._send_interval_seconds > 0:
                await asyncio.sleep(self._send_interval_seconds)
        return ok

    async def _track_ai_failures(self, results: list[ProcessResult]) -> None:
        if not results:
            return
        if any(r.ok for r in results):
            self.stats.consecutive_ai_failures = 0
            return
        self.stats.consecutive_ai_failures += 1
        await self._alert("ai", self.stats.consecutive_ai_failures)

    async def _alert(self, name: str, count: int) -> None:
        if self._notifier is None:
            return
        await maybe_send_consecutive_failure_alert(self._notifier, name, count, self._alert_threshold)

    async def _after_run(self, result: RunResult) -> None:
        stats = self.stats
        stats.last_run_finished_ts = time.time()
        stats.last_run_status = result.status.value
        stats.last_run_stage = result.stage.value
        stats.last_error = result.error
        stats.last_counts = result.counts()
        stats.watermark = self._store.get_watermark()
        if self._throttle is not None:
            stats.page_next_allowed_in_seconds = self._throttle.next_allowed_in_seconds()

        if result.status == RunStatus.FAILED:
            stats.consecutive_run_failures += 1
            await self._alert("run", stats.consecutive_run_failures)
        else:
            stats.consecutive_run_failures = 0

        self.metrics.set_consecutive("run", stats.consecutive_run_failures)
        self.metrics.set_consecutive("login", stats.consecutive_login_failures)
        self.metrics.set_consecutive("ai", stats.consecutive_ai_failures)

        if self._status_path is not None:
            try:
                write_status_json(self._status_path, stats_to_dict(stats))
            except OSError as e:
                logger.warning("failed to write status file %s: %s", self._status_path, e)


def _unique(entries: list[ListingEntry]) -> list[ListingEntry]:
    seen: set[str] = set()
    out: list[ListingEntry] = []
    for e in entries:
        if e.key in seen:
            continue
        seen.add(e.key)
        out.append(e)
    return out
