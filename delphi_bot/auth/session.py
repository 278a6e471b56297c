from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path
from typing import Callable

from delphi_bot.crawler.browser import BrowserSession, SubmitOutcome
from delphi_bot.crawler.parser import PAGE_AUTHENTICATED, classify_page
from delphi_bot.crawler.selectors import Selectors
from delphi_bot.errors import AuthError, FetchError, PersistenceError
from delphi_bot.storage.store import StateStore


logger = logging.getLogger(__name__)


PageClassifier = Callable[[str, str, Selectors], str]


class SessionState(str, Enum):
    NO_SESSION = "NO_SESSION"
    COOKIES_LOADED = "COOKIES_LOADED"
    UNVERIFIED = "UNVERIFIED"
    FORM_LOGIN_ATTEMPTED = "FORM_LOGIN_ATTEMPTED"
    VERIFIED = "VERIFIED"
    FAILED = "FAILED"


class SessionManager:
    """Owns authentication against the members area.

    Cached cookies are tried first; when they no longer grant access the login
    form is driven and the fresh cookies are persisted through the store.
    """

    def __init__(
        self,
        browser: BrowserSession,
        store: StateStore,
        selectors: Selectors,
        login_url: str,
        verify_url: str,
        login_wait_timeout_seconds: int = 45,
        debug_dir: Path | None = None,
        classifier: PageClassifier = classify_page,
    ) -> None:
        self._browser = browser
        self._store = store
        self._selectors = selectors
        self._login_url = login_url
        self._verify_url = verify_url
        self._login_wait_timeout_seconds = login_wait_timeout_seconds
        self._debug_dir = debug_dir
        self._classifier = classifier
        self.state = SessionState.NO_SESSION

    def load_credentials(self) -> list[dict] | None:
        cookies = self._store.load_cookies()
        if cookies:
            logger.info("loaded %s cached cookies", len(cookies))
        return cookies

    async def verify(self, credentials: list[dict] | None) -> bool:
        if credentials is not None:
            await self._browser.set_cookies(credentials)
        try:
            html = await self._browser.goto(self._verify_url)
        except FetchError as e:
            logger.error("navigation error verifying session at %s: %s", self._verify_url, e)
            return False

        verdict = self._classifier(html, self._browser.url, self._selectors)
        if verdict == PAGE_AUTHENTICATED:
            logger.info("session verified at %s", self._browser.url)
            return True
        logger.warning("session not authenticated (%s) at %s", verdict, self._browser.url)
        return False

    async def perform_login(self, username: str, password: str) -> list[dict]:
        self.state = SessionState.FORM_LOGIN_ATTEMPTED
        logger.info("navigating to login page %s", self._login_url)
        try:
            await self._browser.goto(self._login_url)
        except FetchError as e:
            raise AuthError(f"login page unavailable: {e}") from e

        login = self._selectors.login
        if await self._browser.fill_first(login.email, username) is None:
            raise AuthError("email field not found")
        if await self._browser.fill_first(login.password, password) is None:
            raise AuthError("password field not found")

        outcome = await self._browser.submit(login.submit, login.submit_texts, self._login_wait_timeout_seconds)
        if outcome == SubmitOutcome.NOT_FOUND:
            raise AuthError("login submit control not found")
        if outcome == SubmitOutcome.TIMED_OUT:
            # The form may have signed us in through an XHR without a page load.
            logger.info("login submit did not navigate, verifying directly")

        if not await self.verify(None):
            raise AuthError("login verification failed after submitting form")

        return await self._browser.cookies()

    async def login(self, username: str, password: str) -> bool:
        self.state = SessionState.NO_SESSION

        cookies = self.load_credentials()
        if cookies:
            self.state = SessionState.COOKIES_LOADED
            if await self.verify(cookies):
                self.state = SessionState.VERIFIED
                return True
            self.state = SessionState.UNVERIFIED
            logger.info("cached cookies rejected, falling back to form login")

        if not username or not password:
            logger.error("no credentials configured for form login")
            self.state = SessionState.FAILED
            return False

        try:
            fresh = await self.perform_login(username, password)
        except AuthError as e:
            logger.error("login failed: %s", e)
            self.state = SessionState.FAILED
            if self._debug_dir is not None:
                await self._browser.save_snapshot(self._debug_dir, "login_error")
            return False

        try:
            self._store.save_cookies(fresh)
        except PersistenceError:
            logger.warning("logged in but could not persist cookies")

        self.state = SessionState.VERIFIED
        logger.info("logged in with form credentials")
        return True
