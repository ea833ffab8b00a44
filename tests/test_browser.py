"""Tests for resident browser management and the session record.

Validates BrowserManager including:
- Playwright driver start/stop (mocked)
- Reconnect-or-launch decision and stale record handling
- Cookie/localStorage restoration and persistence
- Bounded navigation error mapping
- Reset of the resident browser

Testing Philosophy:
    Browser operations are I/O heavy. All Playwright calls and the
    Chromium subprocess are mocked to ensure hermetic, fast tests that
    verify behavior, not implementation.
"""

import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from pytest_mock import MockerFixture

from config.settings import GlobalConfig
from clarity_pilot import browser as browser_module
from clarity_pilot.browser import STEALTH_JS, BrowserManager, SessionStore
from clarity_pilot.exceptions import (
    BrowserInitializationError,
    NavigationError,
    OperationTimeoutError,
    SessionExpiredError,
)
from clarity_pilot.schemas import BookingState, SessionRecord

ENDPOINT = "http://127.0.0.1:9333"


def create_playwright_mock(mocker: MockerFixture) -> tuple[MagicMock, MagicMock, MagicMock, MagicMock]:
    """Create a Playwright mock chain for the async_playwright().start() pattern.

    Returns:
        Tuple of (async_playwright_instance, playwright_mock, browser_mock, context_mock)
    """
    page_mock = MagicMock()
    page_mock.is_closed = MagicMock(return_value=False)

    context_mock = MagicMock()
    context_mock.add_init_script = AsyncMock()
    context_mock.add_cookies = AsyncMock()
    context_mock.storage_state = AsyncMock(return_value={"cookies": [], "origins": []})
    context_mock.new_page = AsyncMock(return_value=page_mock)
    context_mock.pages = []

    cdp_session = MagicMock()
    cdp_session.send = AsyncMock()

    browser_mock = MagicMock()
    browser_mock.contexts = [context_mock]
    browser_mock.new_context = AsyncMock(return_value=context_mock)
    browser_mock.new_browser_cdp_session = AsyncMock(return_value=cdp_session)

    playwright_mock = MagicMock()
    playwright_mock.chromium.executable_path = "/opt/chromium/chrome"
    playwright_mock.chromium.connect_over_cdp = AsyncMock(return_value=browser_mock)
    playwright_mock.stop = AsyncMock()

    async_playwright_instance = MagicMock()
    async_playwright_instance.start = AsyncMock(return_value=playwright_mock)

    return async_playwright_instance, playwright_mock, browser_mock, context_mock


@pytest.fixture
def popen(mocker: MockerFixture) -> MagicMock:
    return mocker.patch("clarity_pilot.browser.subprocess.Popen", return_value=MagicMock(pid=4242))


@pytest.fixture
def kill(mocker: MockerFixture) -> MagicMock:
    return mocker.patch("clarity_pilot.browser.os.kill")


class TestSessionStore:
    """Test suite for the on-disk session record."""

    def test_missing_file_means_no_session(self, tmp_path: Path) -> None:
        assert SessionStore(tmp_path / "session.json").load() is None

    def test_corrupt_file_is_discarded(self, tmp_path: Path) -> None:
        """Verify a corrupt record is treated as absent and removed."""
        path = tmp_path / "session.json"
        path.write_text("{ not json")

        assert SessionStore(path).load() is None
        assert not path.exists()

    def test_update_without_record_returns_none(self, tmp_path: Path) -> None:
        store = SessionStore(tmp_path / "session.json")

        assert store.update(logged_in=True) is None
        assert not store.path.exists()

    def test_update_persists_changes(self, tmp_path: Path) -> None:
        store = SessionStore(tmp_path / "session.json")
        store.save(SessionRecord(endpoint=ENDPOINT, browser_pid=1))

        store.update(booking_filled=True, booking_state=BookingState.FORM_FILLED, current_expert="alice")

        reloaded = store.load()
        assert reloaded is not None
        assert reloaded.booking_state is BookingState.FORM_FILLED
        assert reloaded.current_expert == "alice"
        assert reloaded.browser_pid == 1


class TestBrowserManagerInitialization:
    """Test suite for driver startup and shutdown."""

    @pytest.mark.asyncio
    async def test_driver_start_failure_raises(self, mock_config: GlobalConfig, mocker: MockerFixture) -> None:
        """Verify a failing Playwright start is wrapped in BrowserInitializationError."""
        async_pw = MagicMock()
        async_pw.start = AsyncMock(side_effect=RuntimeError("driver missing"))
        mocker.patch("clarity_pilot.browser.async_playwright", return_value=async_pw)

        with pytest.raises(BrowserInitializationError) as exc_info:
            async with BrowserManager.create(mock_config):
                pass

        assert "driver missing" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_exit_disconnects_without_closing_browser(
        self, mock_config: GlobalConfig, mocker: MockerFixture, popen: MagicMock
    ) -> None:
        """Verify leaving the context stops the driver but leaves Chromium running."""
        async_pw, pw_mock, browser_mock, context_mock = create_playwright_mock(mocker)
        mocker.patch("clarity_pilot.browser.async_playwright", return_value=async_pw)

        async with BrowserManager.create(mock_config) as manager:
            await manager.acquire_page()

        pw_mock.stop.assert_awaited_once()
        browser_mock.close.assert_not_called()
        assert mock_config.session_path.exists()

    @pytest.mark.asyncio
    async def test_stealth_script_injected_on_launch(
        self, mock_config: GlobalConfig, mocker: MockerFixture, popen: MagicMock
    ) -> None:
        async_pw, _, _, context_mock = create_playwright_mock(mocker)
        mocker.patch("clarity_pilot.browser.async_playwright", return_value=async_pw)

        async with BrowserManager.create(mock_config) as manager:
            await manager.acquire_page()

        context_mock.add_init_script.assert_any_await(STEALTH_JS)
        assert "navigator, 'webdriver'" in STEALTH_JS
        assert browser_module.__doc__ is not None
        assert browser_module.__doc__.startswith("Resident browser orchestration")


class TestPageAcquisition:
    """Test suite for the reconnect-or-launch decision."""

    @pytest.mark.asyncio
    async def test_fresh_launch_without_record(
        self, mock_config: GlobalConfig, mocker: MockerFixture, popen: MagicMock
    ) -> None:
        """Verify a detached Chromium is spawned and a session record written."""
        async_pw, pw_mock, browser_mock, context_mock = create_playwright_mock(mocker)
        mocker.patch("clarity_pilot.browser.async_playwright", return_value=async_pw)

        async with BrowserManager.create(mock_config) as manager:
            page = await manager.acquire_page()

            assert manager.reconnected is False
            assert page is context_mock.new_page.return_value

        command = popen.call_args.args[0]
        assert command[0] == "/opt/chromium/chrome"
        assert f"--remote-debugging-port={mock_config.cdp_port}" in command
        assert "--headless=new" in command
        assert popen.call_args.kwargs["start_new_session"] is True

        record = SessionStore(mock_config.session_path).load()
        assert record is not None
        assert record.endpoint == f"http://127.0.0.1:{mock_config.cdp_port}"
        assert record.browser_pid == 4242
        context_mock.add_init_script.assert_awaited()

    @pytest.mark.asyncio
    async def test_stale_profile_locks_removed(
        self, mock_config: GlobalConfig, mocker: MockerFixture, popen: MagicMock
    ) -> None:
        async_pw, _, _, _ = create_playwright_mock(mocker)
        mocker.patch("clarity_pilot.browser.async_playwright", return_value=async_pw)
        mock_config.user_data_dir.mkdir(parents=True)
        lock = mock_config.user_data_dir / "SingletonLock"
        lock.write_text("host-1234")

        async with BrowserManager.create(mock_config) as manager:
            await manager.acquire_page()

        assert not lock.exists()

    @pytest.mark.asyncio
    async def test_reconnects_to_resident_browser(
        self, mock_config: GlobalConfig, mocker: MockerFixture, popen: MagicMock
    ) -> None:
        """Verify an existing record with a live page is reused, not relaunched."""
        async_pw, pw_mock, browser_mock, context_mock = create_playwright_mock(mocker)
        existing_page = MagicMock()
        context_mock.pages = [existing_page]
        mocker.patch("clarity_pilot.browser.async_playwright", return_value=async_pw)
        SessionStore(mock_config.session_path).save(SessionRecord(endpoint=ENDPOINT, browser_pid=99))

        async with BrowserManager.create(mock_config) as manager:
            page = await manager.acquire_page()

            assert page is existing_page
            assert manager.reconnected is True

        popen.assert_not_called()
        pw_mock.chromium.connect_over_cdp.assert_awaited_once_with(ENDPOINT)
        existing_page.set_default_timeout.assert_called_once_with(mock_config.selector_timeout_ms)

    @pytest.mark.asyncio
    async def test_launch_and_reconnect_share_startup_tab(
        self, mock_config: GlobalConfig, mocker: MockerFixture, popen: MagicMock
    ) -> None:
        """Verify the process that launches and the next one that reconnects use the same tab."""
        async_pw, _, _, context_mock = create_playwright_mock(mocker)
        startup_tab = MagicMock(name="startup_tab")
        startup_tab.is_closed = MagicMock(return_value=False)
        context_mock.pages = [startup_tab]
        mocker.patch("clarity_pilot.browser.async_playwright", return_value=async_pw)

        async with BrowserManager.create(mock_config) as launching:
            fill_page = await launching.acquire_page()
            assert launching.reconnected is False

        async with BrowserManager.create(mock_config) as reconnecting:
            submit_page = await reconnecting.acquire_page()
            assert reconnecting.reconnected is True

        assert fill_page is startup_tab
        assert submit_page is startup_tab
        context_mock.new_page.assert_not_awaited()
        popen.assert_called_once()

    @pytest.mark.asyncio
    async def test_unreachable_record_falls_back_to_launch(
        self, mock_config: GlobalConfig, mocker: MockerFixture, popen: MagicMock, kill: MagicMock
    ) -> None:
        """Verify a dead endpoint is discarded (old pid terminated) and a new browser launched."""
        async_pw, pw_mock, browser_mock, _ = create_playwright_mock(mocker)
        pw_mock.chromium.connect_over_cdp = AsyncMock(side_effect=[PlaywrightError("refused"), browser_mock])
        mocker.patch("clarity_pilot.browser.async_playwright", return_value=async_pw)
        SessionStore(mock_config.session_path).save(
            SessionRecord(endpoint=ENDPOINT, browser_pid=99, booking_state=BookingState.FORM_FILLED)
        )

        async with BrowserManager.create(mock_config) as manager:
            await manager.acquire_page()

            assert manager.reconnected is False

        kill.assert_called_once()
        assert kill.call_args.args[0] == 99
        popen.assert_called_once()
        record = SessionStore(mock_config.session_path).load()
        assert record is not None
        assert record.browser_pid == 4242
        assert record.booking_state is BookingState.IDLE

    @pytest.mark.asyncio
    async def test_endpoint_never_answers(
        self, mock_config: GlobalConfig, mocker: MockerFixture, popen: MagicMock, kill: MagicMock
    ) -> None:
        """Verify the launch gives up after the timeout and terminates the child."""
        async_pw, pw_mock, _, _ = create_playwright_mock(mocker)
        pw_mock.chromium.connect_over_cdp = AsyncMock(side_effect=PlaywrightError("refused"))
        mocker.patch("clarity_pilot.browser.async_playwright", return_value=async_pw)

        async with BrowserManager.create(mock_config) as manager:
            with pytest.raises(BrowserInitializationError):
                await manager.acquire_page()

        kill.assert_called_once()
        assert kill.call_args.args[0] == 4242
        assert not mock_config.session_path.exists()


class TestStorageState:
    """Test suite for cookie/localStorage persistence."""

    @pytest.mark.asyncio
    async def test_restores_cookies_and_local_storage(
        self, mock_config: GlobalConfig, mocker: MockerFixture, popen: MagicMock
    ) -> None:
        cookies = [{"name": "_session", "value": "abc", "domain": "clarity.test", "path": "/"}]
        mock_config.storage_state_path.write_text(
            json.dumps(
                {
                    "cookies": cookies,
                    "origins": [
                        {"origin": "https://clarity.test", "localStorage": [{"name": "tz", "value": "UTC"}]}
                    ],
                }
            )
        )
        async_pw, _, _, context_mock = create_playwright_mock(mocker)
        mocker.patch("clarity_pilot.browser.async_playwright", return_value=async_pw)

        async with BrowserManager.create(mock_config) as manager:
            await manager.acquire_page()

        context_mock.add_cookies.assert_awaited_once_with(cookies)
        scripts = [call.args[0] for call in context_mock.add_init_script.await_args_list]
        assert any('"https://clarity.test"' in script and "localStorage.setItem" in script for script in scripts)

    @pytest.mark.asyncio
    async def test_invalid_state_file_ignored(
        self, mock_config: GlobalConfig, mocker: MockerFixture, popen: MagicMock
    ) -> None:
        """Verify a corrupted snapshot does not block the launch."""
        mock_config.storage_state_path.write_text("{ invalid json }")
        async_pw, _, _, context_mock = create_playwright_mock(mocker)
        mocker.patch("clarity_pilot.browser.async_playwright", return_value=async_pw)

        async with BrowserManager.create(mock_config) as manager:
            page = await manager.acquire_page()

        assert page is not None
        context_mock.add_cookies.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_save_writes_json_file(
        self, mock_config: GlobalConfig, mocker: MockerFixture, popen: MagicMock
    ) -> None:
        state = {"cookies": [{"name": "_session", "value": "xyz"}], "origins": []}
        async_pw, _, _, context_mock = create_playwright_mock(mocker)
        context_mock.storage_state = AsyncMock(return_value=state)
        mocker.patch("clarity_pilot.browser.async_playwright", return_value=async_pw)

        async with BrowserManager.create(mock_config) as manager:
            await manager.acquire_page()
            saved_path = await manager.save_storage_state()

        assert json.loads(saved_path.read_text()) == state

    @pytest.mark.asyncio
    async def test_save_without_context_raises(self, mock_config: GlobalConfig, mocker: MockerFixture) -> None:
        async_pw, _, _, _ = create_playwright_mock(mocker)
        mocker.patch("clarity_pilot.browser.async_playwright", return_value=async_pw)

        async with BrowserManager.create(mock_config) as manager:
            with pytest.raises(SessionExpiredError):
                await manager.save_storage_state()


class TestBrowserNavigation:
    """Test suite for page navigation."""

    @pytest.fixture(autouse=True)
    def no_jitter(self, mocker: MockerFixture) -> None:
        mocker.patch("clarity_pilot.browser.random.randint", return_value=0)

    @pytest.mark.asyncio
    async def test_navigate_success(
        self, mock_config: GlobalConfig, mocker: MockerFixture, mock_page: MagicMock
    ) -> None:
        """Verify goto is called with the wait condition and bounded timeout."""
        async_pw, _, _, _ = create_playwright_mock(mocker)
        mocker.patch("clarity_pilot.browser.async_playwright", return_value=async_pw)

        async with BrowserManager.create(mock_config) as manager:
            await manager.navigate(mock_page, "https://clarity.test/alice")

        mock_page.goto.assert_awaited_once_with(
            "https://clarity.test/alice",
            wait_until="domcontentloaded",
            timeout=mock_config.navigation_timeout_ms,
        )
        mock_page.wait_for_timeout.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_settle_pause_after_navigation(
        self, mock_config: GlobalConfig, mocker: MockerFixture, mock_page: MagicMock
    ) -> None:
        async_pw, _, _, _ = create_playwright_mock(mocker)
        mocker.patch("clarity_pilot.browser.async_playwright", return_value=async_pw)

        async with BrowserManager.create(mock_config) as manager:
            await manager.navigate(mock_page, "https://clarity.test/alice", settle_ms=1200)

        mock_page.wait_for_timeout.assert_awaited_once_with(1200)

    @pytest.mark.asyncio
    async def test_http_error_raises_navigation_error(
        self, mock_config: GlobalConfig, mocker: MockerFixture, mock_page: MagicMock
    ) -> None:
        """Verify HTTP 4xx/5xx status codes raise NavigationError with the code."""
        async_pw, _, _, _ = create_playwright_mock(mocker)
        mocker.patch("clarity_pilot.browser.async_playwright", return_value=async_pw)
        mock_page.goto.return_value = MagicMock(status=404)

        async with BrowserManager.create(mock_config) as manager:
            with pytest.raises(NavigationError) as exc_info:
                await manager.navigate(mock_page, "https://clarity.test/nobody")

        assert exc_info.value.status_code == 404
        assert exc_info.value.context["status_code"] == 404

    @pytest.mark.asyncio
    async def test_timeout_raises_operation_timeout(
        self, mock_config: GlobalConfig, mocker: MockerFixture, mock_page: MagicMock
    ) -> None:
        async_pw, _, _, _ = create_playwright_mock(mocker)
        mocker.patch("clarity_pilot.browser.async_playwright", return_value=async_pw)
        mock_page.goto.side_effect = PlaywrightTimeoutError("Timeout 30000ms exceeded")

        async with BrowserManager.create(mock_config) as manager:
            with pytest.raises(OperationTimeoutError):
                await manager.navigate(mock_page, "https://clarity.test/alice", timeout_ms=5000)

        assert mock_page.goto.call_args.kwargs["timeout"] == 5000

    @pytest.mark.asyncio
    async def test_missing_response_raises(
        self, mock_config: GlobalConfig, mocker: MockerFixture, mock_page: MagicMock
    ) -> None:
        async_pw, _, _, _ = create_playwright_mock(mocker)
        mocker.patch("clarity_pilot.browser.async_playwright", return_value=async_pw)
        mock_page.goto.return_value = None

        async with BrowserManager.create(mock_config) as manager:
            with pytest.raises(NavigationError):
                await manager.navigate(mock_page, "https://clarity.test/alice")


class TestContentWaits:
    """Test suite for SPA readiness waits."""

    @pytest.mark.asyncio
    async def test_missing_content_times_out(
        self, mock_config: GlobalConfig, mocker: MockerFixture, mock_page: MagicMock
    ) -> None:
        async_pw, _, _, _ = create_playwright_mock(mocker)
        mocker.patch("clarity_pilot.browser.async_playwright", return_value=async_pw)

        async def _wait(selector: str, **kwargs: object) -> None:
            if kwargs.get("state") == "hidden":
                return None
            raise PlaywrightTimeoutError("never attached")

        mock_page.wait_for_selector = AsyncMock(side_effect=_wait)

        async with BrowserManager.create(mock_config) as manager:
            with pytest.raises(OperationTimeoutError):
                await manager.wait_for_content(mock_page, "li")


class TestScreenshots:
    """Test suite for screenshot paths."""

    @pytest.mark.asyncio
    async def test_named_screenshot_stays_in_screenshot_dir(
        self, mock_config: GlobalConfig, mocker: MockerFixture, mock_page: MagicMock
    ) -> None:
        """Verify directory parts of a caller-supplied filename are dropped."""
        async_pw, _, _, _ = create_playwright_mock(mocker)
        mocker.patch("clarity_pilot.browser.async_playwright", return_value=async_pw)

        async with BrowserManager.create(mock_config) as manager:
            path = await manager.screenshot_to(mock_page, "../../escape.png")

        assert Path(path) == mock_config.screenshot_dir / "escape.png"
        mock_page.screenshot.assert_awaited_once_with(path=path, full_page=False)


class TestReset:
    """Test suite for closing the resident browser."""

    @pytest.mark.asyncio
    async def test_reset_closes_browser_and_clears_record(
        self, mock_config: GlobalConfig, mocker: MockerFixture, kill: MagicMock
    ) -> None:
        async_pw, _, browser_mock, _ = create_playwright_mock(mocker)
        mocker.patch("clarity_pilot.browser.async_playwright", return_value=async_pw)
        SessionStore(mock_config.session_path).save(SessionRecord(endpoint=ENDPOINT, browser_pid=77))

        async with BrowserManager.create(mock_config) as manager:
            await manager.reset()

            assert manager.page is None

        cdp = browser_mock.new_browser_cdp_session.return_value
        cdp.send.assert_awaited_once_with("Browser.close")
        kill.assert_called_once()
        assert kill.call_args.args[0] == 77
        assert not mock_config.session_path.exists()

    @pytest.mark.asyncio
    async def test_reset_without_record_is_harmless(
        self, mock_config: GlobalConfig, mocker: MockerFixture, kill: MagicMock
    ) -> None:
        async_pw, pw_mock, _, _ = create_playwright_mock(mocker)
        mocker.patch("clarity_pilot.browser.async_playwright", return_value=async_pw)

        async with BrowserManager.create(mock_config) as manager:
            await manager.reset()

        pw_mock.chromium.connect_over_cdp.assert_not_awaited()
        kill.assert_not_called()
