"""Pytest configuration and shared fixtures for the Clarity-Pilot test suite.

This module provides hermetic test infrastructure with the following guarantees:
- No external network requests and no real browser (all Playwright I/O mocked)
- Isolated state (session record, ledger and screenshots live in tmp_path)
- No real waiting (settle delays are configured to zero)

Design Rationale:
    Factory fixtures over static fixtures enable dynamic test case generation
    without code duplication. The mock_config fixture overrides the singleton
    GlobalConfig to prevent state leakage between tests.
"""

from pathlib import Path
from typing import Any, Callable
from unittest.mock import AsyncMock, MagicMock

import pytest
from pytest_mock import MockerFixture

from config.settings import GlobalConfig
from clarity_pilot.browser import BrowserManager, SessionStore


@pytest.fixture
def mock_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> GlobalConfig:
    """Provide isolated GlobalConfig with safe test defaults.

    Overrides the lru_cache singleton to prevent state leakage between tests.
    Uses tmp_path for all file operations to avoid polluting the filesystem.

    Example:
        def test_something(mock_config: GlobalConfig) -> None:
            assert mock_config.settle_delay_ms == 0
    """
    from config.settings import get_config

    get_config.cache_clear()

    log_dir = tmp_path / "logs"
    output_dir = tmp_path / "output"
    log_dir.mkdir()
    output_dir.mkdir()

    test_env = {
        "APP_NAME": "Clarity-Pilot-Test",
        "ENVIRONMENT": "test",
        "DEBUG": "false",
        "HEADLESS": "true",
        "LOG_LEVEL": "DEBUG",
        "LOG_DIR": str(log_dir),
        "LOG_ROTATION": "1 day",
        "LOG_RETENTION": "1 day",
        "BASE_URL": "https://clarity.test/",
        "CLARITY_EMAIL": "",
        "CLARITY_PASSWORD": "",
        "CLARITY_PHONE": "",
        "MONTHLY_BUDGET": "0",
        "SETTLE_DELAY_MS": "0",
        "ENRICHMENT_SETTLE_MS": "0",
        "SUBMIT_SETTLE_MS": "0",
        "BROWSER_LAUNCH_TIMEOUT_MS": "1000",
        "SESSION_PATH": str(tmp_path / "session.json"),
        "STORAGE_STATE_PATH": str(tmp_path / "storage_state.json"),
        "USER_DATA_DIR": str(tmp_path / "profile"),
        "BUDGET_PATH": str(tmp_path / "budget.json"),
        "SCREENSHOT_DIR": str(tmp_path / "screenshots"),
        "OUTPUT_DIR": str(output_dir),
    }

    for key, value in test_env.items():
        monkeypatch.setenv(key, value)

    config = get_config()

    yield config

    get_config.cache_clear()


@pytest.fixture
def listing_html_factory() -> Callable[..., str]:
    """Factory fixture for browse-page HTML with one ``<li>`` per expert card.

    Each card dict may set ``name``, ``username``, ``rate`` (number or None),
    ``calls`` and ``bio``. A key set to None omits that element, which is how
    malformed cards are simulated. Navigation list items are always added
    so the card filter has noise to reject.

    Example:
        html = listing_html_factory([{"name": "Alice", "username": "alice", "rate": 5}])
    """

    def _generate_html(cards: list[dict[str, Any]]) -> str:
        items = []
        for index, card in enumerate(cards):
            name = card.get("name", f"Expert {index + 1}")
            username = card.get("username", f"expert{index + 1}")
            rate = card.get("rate", 5.0)
            calls = card.get("calls", 10 + index)
            bio = card.get(
                "bio",
                f"Expert {index + 1} has spent fifteen years helping founders with go-to-market, "
                "pricing and early hiring decisions.",
            )

            link_html = f'<a href="/{username}"><img alt="avatar"></a>' if username else ""
            name_html = f"<strong>{name}</strong>" if name else ""
            rate_html = f"<strong>${rate:.2f}</strong>" if rate is not None else ""
            calls_html = f"<span>({calls})</span>" if calls is not None else ""
            bio_html = f"<p>{bio} Created 3 days ago</p>" if bio else ""

            items.append(
                f"""
                <li>
                    {link_html}
                    <div>{name_html}</div>
                    {calls_html}
                    {bio_html}
                    <div>{rate_html} <span>per minute</span></div>
                    <button>Request a Call</button>
                </li>
                """
            )

        return f"""
        <!DOCTYPE html>
        <html>
        <head><title>Browse Experts | Clarity</title></head>
        <body>
            <nav><ul>
                <li><a href="/browse">Find an Expert</a></li>
                <li><a href="/how-it-works">How it Works</a></li>
            </ul></nav>
            <ul>{"".join(items)}</ul>
            <footer><ul><li>Copyright startups.com</li></ul></footer>
        </body>
        </html>
        """

    return _generate_html


@pytest.fixture
def profile_html_factory() -> Callable[..., str]:
    """Factory fixture for a rendered expert profile page.

    Keyword arguments override ``name``, ``rate``, ``rating_line``,
    ``bio``, ``tags`` and ``calls_line``; passing None drops the element.
    """

    def _generate_html(
        name: str | None = "Alice Founder",
        rate: str | None = "$5.00 per min",
        rating_line: str | None = "4.8 out of 5 · 120 Reviews",
        bio: str | None = (
            "I have built and sold two SaaS companies and now advise early-stage teams on "
            "pricing, positioning and their first sales hires."
        ),
        tags: list[str] | None = None,
        calls_line: str | None = "340 Calls",
    ) -> str:
        tags = ["SaaS", "Pricing Strategy"] if tags is None else tags
        tag_html = "".join(f'<a href="/browse/{tag.lower()}">{tag}</a>' for tag in tags)
        title = f"Startup Advisor - {name} - Clarity" if name else "Clarity"
        return f"""
        <!DOCTYPE html>
        <html>
        <head><title>{title}</title></head>
        <body>
            <header><a href="/browse">Find an Expert</a></header>
            <section>
                <strong>{name or ""}</strong>
                <div>{rate or ""}</div>
                <button>Request a Call</button>
            </section>
            <div>{rating_line or ""}</div>
            <div>{calls_line or ""}</div>
            <div><p>{bio or ""}</p></div>
            <div>{tag_html}</div>
        </body>
        </html>
        """

    return _generate_html


def make_element(mocker: MockerFixture, visible: bool = True) -> MagicMock:
    """An ElementHandle mock with async interaction methods."""
    element = mocker.MagicMock()
    element.click = mocker.AsyncMock()
    element.fill = mocker.AsyncMock()
    element.select_option = mocker.AsyncMock()
    element.is_visible = mocker.AsyncMock(return_value=visible)
    return element


@pytest.fixture
def element_factory(mocker: MockerFixture) -> Callable[..., MagicMock]:
    return lambda visible=True: make_element(mocker, visible)


@pytest.fixture
def mock_page(mocker: MockerFixture) -> MagicMock:
    """Provide mocked Playwright Page object.

    ``page.elements`` maps selectors to element mocks; ``query_selector``
    and ``wait_for_selector`` resolve through it and return None otherwise.
    Page content is set through ``content``/``title``/``inner_text``.
    """
    page = mocker.MagicMock()
    page.url = "https://clarity.test/"
    page.elements = {}

    async def _query(selector: str, **_: Any) -> MagicMock | None:
        return page.elements.get(selector)

    page.query_selector = mocker.AsyncMock(side_effect=_query)
    page.query_selector_all = mocker.AsyncMock(return_value=[])
    page.wait_for_selector = mocker.AsyncMock(side_effect=_query)
    page.wait_for_timeout = mocker.AsyncMock()
    page.wait_for_url = mocker.AsyncMock()
    page.goto = mocker.AsyncMock(return_value=mocker.MagicMock(status=200))
    page.content = mocker.AsyncMock(return_value="<html><body></body></html>")
    page.title = mocker.AsyncMock(return_value="")
    page.inner_text = mocker.AsyncMock(return_value="")
    page.screenshot = mocker.AsyncMock()
    page.evaluate = mocker.AsyncMock()
    page.close = mocker.AsyncMock()
    page.is_closed = mocker.MagicMock(return_value=False)
    return page


@pytest.fixture
def fake_browser(mock_config: GlobalConfig, mocker: MockerFixture, mock_page: MagicMock) -> MagicMock:
    """A BrowserManager stand-in with a real on-disk SessionStore.

    Page-level helpers are AsyncMocks; ``acquire_page`` returns ``mock_page``
    and ``reconnected`` starts True (an existing resident browser).
    """
    browser = mocker.MagicMock(spec=BrowserManager)
    browser.config = mock_config
    browser.sessions = SessionStore(mock_config.session_path)
    browser.reconnected = True
    browser.acquire_page = mocker.AsyncMock(return_value=mock_page)
    browser.page = mock_page
    browser.navigate = mocker.AsyncMock()
    browser.dismiss_cookie_banners = mocker.AsyncMock()
    browser.wait_for_content = mocker.AsyncMock()
    browser.save_storage_state = mocker.AsyncMock(return_value=mock_config.storage_state_path)
    browser.new_tab = mocker.AsyncMock()
    browser.reset = mocker.AsyncMock()

    async def _screenshot(page: Any, label: str, full_page: bool = True) -> str:
        return str(mock_config.screenshot_dir / f"clarity-{label}.png")

    async def _capture_failure(page: Any, label: str) -> str | None:
        return str(mock_config.screenshot_dir / f"clarity-{label}.png")

    browser.screenshot = mocker.AsyncMock(side_effect=_screenshot)
    browser.capture_failure = mocker.AsyncMock(side_effect=_capture_failure)
    return browser


def pytest_configure(config: Any) -> None:
    """Configure pytest with custom markers and settings."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests requiring full stack",
    )
