"""Resident browser orchestration and the session record.

This module provides the Playwright wrapper every operation runs through:
- A resident Chromium that outlives the process, reattached via CDP
- Stealth init scripts and cookie/localStorage restoration
- A JSON session record holding the reconnection handle and booking state
- Bounded navigation, SPA content waits and screenshot checkpoints

Design Rationale:
    Each CLI invocation is a short-lived process, but a booking spans two
    invocations (fill, then submit) and must find the same open form. The
    browser is therefore spawned detached with a remote-debugging port and
    each process reconnects to it with ``connect_over_cdp``. Closing the
    Playwright driver on exit only disconnects; the window stays open.

    A stale record (browser gone, or no page left) is never fatal: it is
    discarded and a fresh browser is launched. ``reconnected`` tells the
    booking workflow which of the two happened.
"""

import asyncio
import json
import os
import random
import signal
import subprocess
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncGenerator, Self

from playwright.async_api import (
    Browser,
    BrowserContext,
    Page,
    Playwright,
    async_playwright,
)
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from pydantic import ValidationError

from config.settings import GlobalConfig, get_config
from clarity_pilot.exceptions import (
    BrowserInitializationError,
    NavigationError,
    OperationTimeoutError,
    SessionExpiredError,
)
from clarity_pilot.locators import (
    COOKIE_BUTTONS,
    COOKIE_OVERLAY_SELECTOR,
    LOADING_SELECTORS,
    REMOVE_OVERLAYS_JS,
)
from clarity_pilot.logger import get_logger
from clarity_pilot.schemas import SessionRecord

log = get_logger(__name__)

SINGLETON_FILES = ("SingletonLock", "SingletonSocket", "SingletonCookie")
SPINNER_TIMEOUT_MS = 5000
COOKIE_BANNER_DELAY_MS = 1500
COOKIE_CLICK_TIMEOUT_MS = 3000

# Runs before any page script in every tab of the context.
STEALTH_JS = """
Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
Object.defineProperty(navigator, 'plugins', { get: () => [1, 2, 3, 4, 5] });
Object.defineProperty(navigator, 'languages', { get: () => ['en-US', 'en'] });
if (!window.chrome) { window.chrome = { runtime: {} }; }
"""


class SessionStore:
    """JSON-file persistence for the single SessionRecord.

    A missing file means "no session". A corrupt or schema-invalid file is
    logged, removed and also treated as "no session".

    Note:
        ``update`` is a plain read-modify-write without file locking. Two
        processes updating concurrently can lose a write.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> SessionRecord | None:
        if not self.path.exists():
            return None

        try:
            return SessionRecord.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (ValidationError, ValueError) as exc:
            log.warning("Corrupted session record, discarding", path=str(self.path), error=str(exc))
            self.delete()
            return None
        except OSError as exc:
            log.warning("Failed to read session record", path=str(self.path), error=str(exc))
            return None

    def save(self, record: SessionRecord) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(record.model_dump_json(indent=2), encoding="utf-8")

    def update(self, **changes: Any) -> SessionRecord | None:
        """Apply field changes to the stored record and persist it.

        Returns:
            The updated record, or None when no record exists.
        """
        record = self.load()
        if record is None:
            log.warning("Session update without a record", fields=sorted(changes))
            return None

        updated = record.model_copy(update=changes)
        self.save(updated)
        return updated

    def delete(self) -> None:
        self.path.unlink(missing_ok=True)


class BrowserManager:
    """Connects to (or launches) the resident browser and serves pages.

    Attributes:
        config: GlobalConfig instance for runtime configuration.
        sessions: Store for the on-disk session record.
        reconnected: True when the current page came from an existing
            browser rather than a fresh launch.

    Example:
        async with BrowserManager.create() as browser:
            page = await browser.acquire_page()
            await browser.navigate(page, "https://clarity.fm/browse")
    """

    def __init__(self, config: GlobalConfig, sessions: SessionStore | None = None) -> None:
        self.config = config
        self.sessions = sessions or SessionStore(config.session_path)
        self.reconnected = False
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._context: BrowserContext | None = None
        self._page: Page | None = None

    @classmethod
    @asynccontextmanager
    async def create(cls, config: GlobalConfig | None = None) -> AsyncGenerator[Self, None]:
        """Yield a manager with the Playwright driver running.

        Only the Playwright driver is started here; the browser itself is
        attached lazily by ``acquire_page``. On exit the driver disconnects
        and the resident browser keeps running.

        Raises:
            BrowserInitializationError: If the Playwright driver fails to start.
        """
        if config is None:
            config = get_config()

        instance = cls(config)
        try:
            await instance._initialize()
            yield instance
        finally:
            await instance._cleanup()

    async def _initialize(self) -> None:
        try:
            self._playwright = await async_playwright().start()
        except Exception as exc:
            raise BrowserInitializationError(reason=str(exc)) from exc

    async def _cleanup(self) -> None:
        """Disconnect from the browser without closing it."""
        self._page = None
        self._context = None
        self._browser = None

        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except Exception as exc:
                log.warning("Error stopping playwright", error=str(exc))
            self._playwright = None

        log.debug("Playwright driver disconnected")

    # -- Acquisition ---------------------------------------------------------

    async def acquire_page(self) -> Page:
        """Return the working page, reconnecting or launching as needed.

        Raises:
            BrowserInitializationError: If a fresh browser cannot be started.
        """
        if self._page is not None and not self._page.is_closed():
            return self._page

        record = self.sessions.load()
        if record is not None:
            page = await self._reconnect(record)
            if page is not None:
                self.reconnected = True
                self._page = page
                return page
            self._discard_stale(record)

        self.reconnected = False
        self._page = await self._launch_fresh()
        return self._page

    async def _connect(self, endpoint: str) -> Browser:
        if self._playwright is None:
            raise BrowserInitializationError(reason="Playwright driver not started")
        return await self._playwright.chromium.connect_over_cdp(endpoint)

    async def _reconnect(self, record: SessionRecord) -> Page | None:
        try:
            browser = await self._connect(record.endpoint)
        except PlaywrightError as exc:
            log.info("Stored browser endpoint unreachable", endpoint=record.endpoint, error=str(exc))
            return None

        contexts = browser.contexts
        pages = contexts[0].pages if contexts else []
        if not pages:
            log.info("Stored browser has no open page", endpoint=record.endpoint)
            return None

        self._browser = browser
        self._context = contexts[0]
        await self._inject_stealth_scripts()
        self._apply_timeouts(pages[0])
        log.info("Reconnected to resident browser", endpoint=record.endpoint, pages=len(pages))
        return pages[0]

    def _discard_stale(self, record: SessionRecord) -> None:
        log.info("Discarding stale session record", endpoint=record.endpoint)
        self._terminate(record.browser_pid)
        self.sessions.delete()

    def _clear_profile_locks(self) -> None:
        """Remove lock files left behind by a Chromium that did not exit cleanly."""
        for name in SINGLETON_FILES:
            lock = self.config.user_data_dir / name
            if lock.is_symlink() or lock.exists():
                try:
                    lock.unlink()
                    log.debug("Removed stale profile lock", path=str(lock))
                except OSError as exc:
                    log.warning("Could not remove profile lock", path=str(lock), error=str(exc))

    def _launch_args(self) -> list[str]:
        args = [
            f"--remote-debugging-port={self.config.cdp_port}",
            f"--user-data-dir={self.config.user_data_dir}",
            f"--window-size={self.config.viewport_width},{self.config.viewport_height}",
            f"--user-agent={self.config.user_agent}",
            "--disable-blink-features=AutomationControlled",
            "--no-first-run",
            "--no-default-browser-check",
            "--no-sandbox",
        ]
        if self.config.headless:
            args.append("--headless=new")
        return args

    async def _launch_fresh(self) -> Page:
        """Spawn a detached Chromium and attach to it over CDP."""
        if self._playwright is None:
            raise BrowserInitializationError(reason="Playwright driver not started")

        self.config.user_data_dir.mkdir(parents=True, exist_ok=True)
        self._clear_profile_locks()

        executable = self._playwright.chromium.executable_path
        endpoint = f"http://127.0.0.1:{self.config.cdp_port}"
        log.info("Launching resident browser", endpoint=endpoint, headless=self.config.headless)

        try:
            process = subprocess.Popen(
                [executable, *self._launch_args(), "about:blank"],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as exc:
            raise BrowserInitializationError(reason=f"Could not start {executable}: {exc}") from exc

        self._browser = await self._wait_for_endpoint(endpoint, process.pid)
        self._context = (
            self._browser.contexts[0] if self._browser.contexts else await self._browser.new_context()
        )

        await self._inject_stealth_scripts()
        await self._restore_storage_state()

        # Reconnecting processes take pages[0]; work in the startup tab.
        page = self._context.pages[0] if self._context.pages else await self._context.new_page()
        self._apply_timeouts(page)

        self.sessions.save(SessionRecord(endpoint=endpoint, browser_pid=process.pid))
        log.info("Resident browser ready", endpoint=endpoint, pid=process.pid)
        return page

    async def _wait_for_endpoint(self, endpoint: str, pid: int) -> Browser:
        deadline = time.monotonic() + self.config.browser_launch_timeout_ms / 1000
        last_error = "endpoint never answered"
        while time.monotonic() < deadline:
            try:
                return await self._connect(endpoint)
            except PlaywrightError as exc:
                last_error = str(exc)
                await asyncio.sleep(0.25)

        self._terminate(pid)
        raise BrowserInitializationError(
            reason=(
                f"Browser did not expose {endpoint} within "
                f"{self.config.browser_launch_timeout_ms}ms: {last_error}"
            )
        )

    @staticmethod
    def _terminate(pid: int | None) -> None:
        if pid is None:
            return
        try:
            os.kill(pid, signal.SIGTERM)
            log.debug("Terminated browser process", pid=pid)
        except (ProcessLookupError, PermissionError):
            pass

    def _apply_timeouts(self, page: Page) -> None:
        page.set_default_timeout(self.config.selector_timeout_ms)
        page.set_default_navigation_timeout(self.config.navigation_timeout_ms)

    async def new_tab(self) -> Page:
        """Open an extra page in the shared context (cookies included).

        Raises:
            BrowserInitializationError: If no browser is attached yet.
        """
        if self._context is None:
            raise BrowserInitializationError(reason="Browser context not initialized")

        page = await self._context.new_page()
        self._apply_timeouts(page)
        return page

    async def reset(self) -> None:
        """Close the resident browser and forget the session record."""
        record = self.sessions.load()
        if record is not None:
            try:
                browser = self._browser or await self._connect(record.endpoint)
                cdp = await browser.new_browser_cdp_session()
                await cdp.send("Browser.close")
                log.info("Resident browser closed", endpoint=record.endpoint)
            except PlaywrightError as exc:
                log.info("Resident browser already gone", error=str(exc))
            self._terminate(record.browser_pid)

        self.sessions.delete()
        self._page = None
        self._context = None
        self._browser = None
        self.reconnected = False

    # -- Storage state -------------------------------------------------------

    async def _inject_stealth_scripts(self) -> None:
        """Inject JavaScript to mask Playwright automation indicators."""
        if self._context is None:
            return
        await self._context.add_init_script(STEALTH_JS)
        log.debug("Stealth scripts injected")

    def _load_storage_state(self) -> dict | None:
        """Load the cookie/localStorage snapshot, or None if absent or invalid."""
        state_path = self.config.storage_state_path

        if not state_path.exists():
            log.debug("No existing storage state found", path=str(state_path))
            return None

        try:
            state_data = json.loads(state_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            log.warning("Corrupted storage state file, starting fresh", path=str(state_path), error=str(exc))
            return None
        except OSError as exc:
            log.warning("Failed to read storage state, starting fresh", path=str(state_path), error=str(exc))
            return None

        if not isinstance(state_data, dict) or "cookies" not in state_data or "origins" not in state_data:
            log.warning("Invalid storage state structure, starting fresh", path=str(state_path))
            return None

        return state_data

    async def _restore_storage_state(self) -> None:
        state = self._load_storage_state()
        if state is None or self._context is None:
            return

        if state["cookies"]:
            await self._context.add_cookies(state["cookies"])

        for origin in state["origins"]:
            items = origin.get("localStorage") or []
            if not items:
                continue
            await self._context.add_init_script(_local_storage_script(origin["origin"], items))

        log.info(
            "Restored storage state",
            cookies=len(state["cookies"]),
            origins=len(state["origins"]),
        )

    async def save_storage_state(self) -> Path:
        """Persist cookies and localStorage for the next fresh launch.

        Raises:
            SessionExpiredError: If no browser context is attached.
        """
        if self._context is None:
            raise SessionExpiredError(state_path=str(self.config.storage_state_path))

        state_path = self.config.storage_state_path
        storage_state = await self._context.storage_state()
        state_path.parent.mkdir(parents=True, exist_ok=True)
        state_path.write_text(json.dumps(storage_state, indent=2), encoding="utf-8")
        log.info("Storage state saved", path=str(state_path), cookies=len(storage_state["cookies"]))
        return state_path

    # -- Page helpers --------------------------------------------------------

    async def navigate(
        self,
        page: Page,
        url: str,
        wait_until: str = "domcontentloaded",
        timeout_ms: int | None = None,
        settle_ms: int | None = None,
    ) -> None:
        """Navigate with human-like jitter, a bounded timeout and a settle pause.

        Args:
            page: Playwright Page instance.
            url: Target URL to navigate to.
            wait_until: Navigation wait condition (load, domcontentloaded, networkidle).
            timeout_ms: Override for ``navigation_timeout_ms``.
            settle_ms: Override for ``settle_delay_ms`` (SPA hydration pause).

        Raises:
            NavigationError: If navigation fails or the server answers >= 400.
            OperationTimeoutError: If navigation does not finish in time.
        """
        timeout = timeout_ms or self.config.navigation_timeout_ms
        settle = self.config.settle_delay_ms if settle_ms is None else settle_ms

        jitter_ms = random.randint(100, 500)
        await asyncio.sleep(jitter_ms / 1000)

        log.debug("Navigating to URL", url=url, wait_until=wait_until)

        try:
            response = await page.goto(url, wait_until=wait_until, timeout=timeout)
        except PlaywrightTimeoutError as exc:
            raise OperationTimeoutError(operation=f"navigation to {url}", timeout_ms=timeout, url=url) from exc
        except PlaywrightError as exc:
            raise NavigationError(url=url, reason=str(exc)) from exc

        if response is None:
            raise NavigationError(url=url, reason="No response received")

        if response.status >= 400:
            raise NavigationError(url=url, reason=f"HTTP {response.status}", status_code=response.status)

        log.info("Navigation successful", url=url, status_code=response.status)

        if settle:
            await page.wait_for_timeout(settle)

    async def dismiss_cookie_banners(self, page: Page) -> None:
        """Remove consent overlays, then click the first accept button found."""
        await page.wait_for_timeout(COOKIE_BANNER_DELAY_MS)
        try:
            await page.evaluate(REMOVE_OVERLAYS_JS, COOKIE_OVERLAY_SELECTOR)
        except PlaywrightError as exc:
            log.debug("Overlay removal skipped", error=str(exc))

        for selector in COOKIE_BUTTONS:
            try:
                button = await page.query_selector(selector)
                if button is None:
                    continue
                await button.click(force=True, timeout=COOKIE_CLICK_TIMEOUT_MS)
                await page.wait_for_timeout(300)
                log.debug("Cookie banner dismissed", selector=selector)
                return
            except PlaywrightError:
                continue

    async def wait_for_content(self, page: Page, selector: str, timeout_ms: int | None = None) -> None:
        """Wait for loading spinners to clear, then for ``selector`` to attach.

        Raises:
            OperationTimeoutError: If ``selector`` never appears.
        """
        for spinner in LOADING_SELECTORS:
            try:
                await page.wait_for_selector(spinner, state="hidden", timeout=SPINNER_TIMEOUT_MS)
            except PlaywrightError:
                pass

        timeout = timeout_ms or self.config.content_timeout_ms
        try:
            await page.wait_for_selector(selector, timeout=timeout)
        except PlaywrightTimeoutError as exc:
            raise OperationTimeoutError(
                operation=f"content '{selector}'", timeout_ms=timeout, url=page.url
            ) from exc

    async def screenshot(self, page: Page, label: str, full_page: bool = True) -> str:
        """Write a timestamped PNG checkpoint and return its path."""
        self.config.screenshot_dir.mkdir(parents=True, exist_ok=True)
        path = self.config.screenshot_dir / f"clarity-{label}-{int(time.time() * 1000)}.png"
        await page.screenshot(path=str(path), full_page=full_page)
        log.debug("Screenshot captured", path=str(path))
        return str(path)

    async def screenshot_to(self, page: Page, filename: str, full_page: bool = False) -> str:
        self.config.screenshot_dir.mkdir(parents=True, exist_ok=True)
        path = self.config.screenshot_dir / Path(filename).name
        await page.screenshot(path=str(path), full_page=full_page)
        return str(path)

    async def capture_failure(self, page: Page | None, label: str) -> str | None:
        """Best-effort screenshot for error reports; never raises."""
        if page is None:
            return None
        try:
            return await self.screenshot(page, label)
        except (PlaywrightError, OSError) as exc:
            log.warning("Failure screenshot could not be captured", label=label, error=str(exc))
            return None

    @property
    def page(self) -> Page | None:
        """The working page, once acquired."""
        return self._page


def _local_storage_script(origin: str, items: list[dict[str, str]]) -> str:
    """Init script that replays saved localStorage entries on one origin."""
    return (
        "(() => {"
        f" if (window.location.origin !== {json.dumps(origin)}) return;"
        f" for (const item of {json.dumps(items)}) {{"
        " window.localStorage.setItem(item.name, item.value);"
        " }"
        "})();"
    )
