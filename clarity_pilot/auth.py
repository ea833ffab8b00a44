"""Login and session re-entry for the marketplace account.

The login form is a single-page app that may render either a one-step
form (email + password) or a two-step one (email, "Continue", password).
Success is signalled either by a redirect to the dashboard or by a
logged-in widget appearing in place; both are awaited concurrently and
whichever resolves first wins.
"""

import asyncio
import re
from enum import Enum
from typing import NoReturn

from playwright.async_api import Page

from config.settings import GlobalConfig
from clarity_pilot.browser import BrowserManager
from clarity_pilot.exceptions import (
    AuthenticationError,
    ClarityPilotError,
    ConfigValidationError,
)
from clarity_pilot.locators import (
    CONTINUE_SELECTORS,
    DASHBOARD_URL_PATTERN,
    EMAIL_SELECTORS,
    LOGGED_IN_INDICATORS,
    LOGIN_SUBMIT_SELECTORS,
    PASSWORD_SELECTORS,
    find_first,
)
from clarity_pilot.logger import get_logger

log = get_logger(__name__)

_DASHBOARD_URL = re.compile(DASHBOARD_URL_PATTERN)


class AuthState(str, Enum):
    ANONYMOUS = "anonymous"
    CREDENTIALS_ENTERED = "credentials_entered"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


class Authenticator:
    """Drives the login form and tracks where in the flow it got to.

    Attributes:
        state: Current AuthState; ``FAILED`` is terminal for this instance.
    """

    def __init__(self, config: GlobalConfig, browser: BrowserManager) -> None:
        self.config = config
        self.browser = browser
        self.state = AuthState.ANONYMOUS

    def _require_credentials(self) -> tuple[str, str]:
        if not self.config.has_credentials:
            missing = "clarity_password" if self.config.clarity_email else "clarity_email"
            raise ConfigValidationError(missing, "Login email and password must both be configured")
        return self.config.clarity_email, self.config.clarity_password.get_secret_value()

    async def ensure_logged_in(self, page: Page) -> Page:
        """Reuse a live session if the record says so, otherwise log in once.

        A session marked logged-in is trusted when visiting the dashboard
        does not bounce back to the login page.
        """
        record = self.browser.sessions.load()
        if record is not None and record.logged_in:
            try:
                await self.browser.navigate(page, self.config.dashboard_url)
                if "login" not in page.url:
                    self.state = AuthState.AUTHENTICATED
                    log.debug("Existing session still authenticated", url=page.url)
                    return page
                log.info("Session expired, re-authenticating")
            except ClarityPilotError as exc:
                log.info("Session check failed, re-authenticating", error=exc.message)

        return await self.login(page)

    async def login(self, page: Page) -> Page:
        """Run the login form once.

        Raises:
            ConfigValidationError: If credentials are missing (before any navigation).
            AuthenticationError: If the form is unrecognized or login never completes.
        """
        email, password = self._require_credentials()

        await self.browser.navigate(page, self.config.login_url)
        await self.browser.dismiss_cookie_banners(page)
        await self.browser.screenshot(page, "login-page")

        if "login" not in page.url:
            # Restored cookies already carried a valid session.
            return await self._mark_authenticated(page)

        email_field = await find_first(page, EMAIL_SELECTORS, timeout_ms=self.config.selector_timeout_ms)
        if email_field is None:
            await self._fail(page, "Could not find email field")
        await email_field.fill(email)

        password_field = await find_first(page, PASSWORD_SELECTORS, timeout_ms=self.config.selector_timeout_ms)
        if password_field is None:
            continue_button = await find_first(page, CONTINUE_SELECTORS)
            if continue_button is not None:
                log.debug("Two-step login form detected")
                await continue_button.click()
                password_field = await find_first(
                    page, PASSWORD_SELECTORS, timeout_ms=self.config.selector_timeout_ms
                )
        if password_field is None:
            await self._fail(page, "Could not find password field")
        await password_field.fill(password)
        self.state = AuthState.CREDENTIALS_ENTERED

        login_button = await find_first(page, LOGIN_SUBMIT_SELECTORS)
        if login_button is not None:
            await login_button.click(force=True)

        if not await self._wait_for_authenticated(page):
            await self._fail(page, "check credentials")

        return await self._mark_authenticated(page)

    async def _wait_for_authenticated(self, page: Page) -> bool:
        """Race the dashboard redirect against a logged-in widget."""
        timeout = self.config.login_timeout_ms
        waiters = [
            asyncio.create_task(page.wait_for_url(_DASHBOARD_URL, timeout=timeout)),
            asyncio.create_task(page.wait_for_selector(LOGGED_IN_INDICATORS, timeout=timeout)),
        ]
        pending = set(waiters)
        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    if task.exception() is None:
                        return True
                    log.debug("Login signal failed", error=str(task.exception()))
            return False
        finally:
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    async def _mark_authenticated(self, page: Page) -> Page:
        self.state = AuthState.AUTHENTICATED
        await self.browser.save_storage_state()
        self.browser.sessions.update(logged_in=True)
        await self.browser.screenshot(page, "login-success", full_page=False)
        log.info("Login successful", url=page.url)
        return page

    async def _fail(self, page: Page, reason: str) -> NoReturn:
        self.state = AuthState.FAILED
        screenshot = await self.browser.capture_failure(page, "login-error")
        log.error("Login failed", reason=reason, screenshot=screenshot)
        raise AuthenticationError(reason=reason, screenshot=screenshot)
