"""Operations facade over the resident browser.

``ClarityClient`` is the single entry point used by the CLI. Every public
operation returns a result model; any ``ClarityPilotError`` raised along
the way is converted into an ``ErrorResult`` so callers always receive a
structured, JSON-serializable answer (with a screenshot path whenever a
page existed at failure time).
"""

import functools
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, ParamSpec, TypeVar

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page
from pydantic import ValidationError

from config.settings import GlobalConfig
from clarity_pilot.auth import Authenticator
from clarity_pilot.booking import BookingWorkflow
from clarity_pilot.browser import BrowserManager
from clarity_pilot.budget import BudgetGate, BudgetTracker
from clarity_pilot.categories import resolve
from clarity_pilot.enrichment import ProfileEnricher, sort_by_value_score
from clarity_pilot.exceptions import (
    ClarityPilotError,
    ExpertNotFoundError,
    InvalidInputError,
    NavigationError,
    OperationTimeoutError,
)
from clarity_pilot.extraction import (
    capture_snapshot,
    extract_calls,
    extract_cards,
    extract_profile,
    normalize_username,
    profile_url,
)
from clarity_pilot.locators import DASHBOARD_READY, LISTING_READY, PROFILE_READY, SORT_LINKS
from clarity_pilot.logger import get_logger, get_operation_logger
from clarity_pilot.reporter import ReportGenerator
from clarity_pilot.schemas import (
    BestValue,
    BookingDraft,
    CompareResult,
    ErrorResult,
    ExpertRecord,
    ExportResult,
    FillBookingResult,
    ListCallsResult,
    PaymentPendingResult,
    ProfileResult,
    ResetResult,
    ScreenshotResult,
    SearchResult,
    SortOrder,
    StatusFilter,
    SubmitBookingResult,
)

log = get_logger(__name__)

P = ParamSpec("P")
R = TypeVar("R")

SORT_SETTLE_MS = 2000
PROFILE_HYDRATION_MS = 2000


async def _failure_screenshot(client: Any, label: str) -> str | None:
    browser = getattr(client, "browser", None)
    if not isinstance(browser, BrowserManager):
        return None
    return await browser.capture_failure(browser.page, f"{label}-error")


def operation(name: str) -> Callable[[Callable[P, Awaitable[R]]], Callable[P, Awaitable[R | ErrorResult]]]:
    """Convert domain errors raised by an operation into an ErrorResult."""

    def decorator(func: Callable[P, Awaitable[R]]) -> Callable[P, Awaitable[R | ErrorResult]]:
        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R | ErrorResult:
            op_log = get_operation_logger(__name__, name)
            op_log.info("Operation started")
            try:
                result = await func(*args, **kwargs)
            except ClarityPilotError as exc:
                op_log.error(
                    "Operation failed",
                    error_type=type(exc).__name__,
                    message=exc.message,
                    screenshot=exc.screenshot,
                    do_not_retry=exc.do_not_retry,
                )
                return ErrorResult.from_exception(exc)
            except (PlaywrightError, ValidationError, OSError) as exc:
                error_type = "PlaywrightError" if isinstance(exc, PlaywrightError) else type(exc).__name__
                op_log.exception("Unexpected failure", error_type=error_type, error=str(exc))
                screenshot = await _failure_screenshot(args[0] if args else None, name)
                return ErrorResult(error_type=error_type, message=str(exc), screenshot=screenshot)
            op_log.info("Operation finished", success=getattr(result, "success", True))
            return result

        return wrapper

    return decorator


class ClarityClient:
    """High-level marketplace operations.

    Args:
        browser: An entered ``BrowserManager``.
        config: Defaults to the browser's configuration.
        budget: Budget gate consulted by bookings; defaults to the JSON ledger.

    Example:
        async with BrowserManager.create(config) as browser:
            client = ClarityClient(browser)
            result = await client.search("seo", max_rate=10, enrich=3)
    """

    def __init__(
        self,
        browser: BrowserManager,
        config: GlobalConfig | None = None,
        budget: BudgetGate | None = None,
    ) -> None:
        self.config = config or browser.config
        self.browser = browser
        self.budget = budget or BudgetTracker(self.config)
        self.auth = Authenticator(self.config, browser)
        self.enricher = ProfileEnricher(self.config, browser)
        self.booking = BookingWorkflow(self.config, browser, self.auth, self.budget)

    # -- Search --------------------------------------------------------------

    @operation("search")
    async def search(
        self,
        query: str,
        min_rate: float | None = None,
        max_rate: float | None = None,
        sort: SortOrder = "best_match",
        page: int = 1,
        limit: int = 10,
        enrich: int = 0,
    ) -> SearchResult:
        """Browse the category matching ``query`` and extract expert cards.

        ``limit`` is capped at ``max_search_limit``. With ``enrich`` > 0 the
        first ``enrich`` experts get ratings from their profiles and the
        list is re-ordered by value score.
        """
        if page < 1:
            raise InvalidInputError("page", f"must be >= 1, got {page}")
        limit = max(1, min(limit, self.config.max_search_limit))

        category_url = resolve(query, self.config.base_url)
        url = f"{category_url}?page={page}" if page > 1 else category_url

        tab = await self.browser.acquire_page()
        await self.browser.navigate(tab, url)
        await self.browser.dismiss_cookie_banners(tab)
        await self._apply_sort(tab, sort)

        try:
            await self.browser.wait_for_content(tab, LISTING_READY)
        except OperationTimeoutError:
            log.info("Listing content never appeared, extracting what rendered", url=url)

        screenshot = await self.browser.screenshot(tab, "search")
        listing = extract_cards(
            await capture_snapshot(tab),
            limit=limit,
            min_rate=min_rate,
            max_rate=max_rate,
            base_url=self.config.base_url,
        )

        experts = listing.experts
        enriched = 0
        enrichment_note = None
        if enrich > 0 and experts:
            outcome = await self.enricher.enrich(experts, enrich)
            experts = sort_by_value_score(outcome.records)
            enriched = outcome.enriched
            enrichment_note = outcome.note

        log.info("Search complete", query=query, category_url=category_url, results=len(experts))
        return SearchResult(
            experts=experts,
            total_results=len(experts),
            page=page,
            query=query,
            category_url=category_url,
            screenshot=screenshot,
            enriched=enriched,
            enrichment_note=enrichment_note,
            cards_scanned=listing.cards_scanned,
            cards_dropped=listing.cards_dropped,
        )

    async def _apply_sort(self, page: Page, sort: SortOrder) -> None:
        selector = SORT_LINKS.get(sort)
        if selector is None:
            return
        try:
            link = await page.query_selector(selector)
            if link is None:
                log.info("Sort control not present", sort=sort)
                return
            await link.click()
            await page.wait_for_timeout(SORT_SETTLE_MS)
        except PlaywrightError as exc:
            log.info("Sort control unusable", sort=sort, error=str(exc))

    # -- Profiles ------------------------------------------------------------

    async def _load_profile(self, expert: str) -> tuple[ExpertRecord, str]:
        username = normalize_username(expert)
        if not username:
            raise InvalidInputError("expert", f"no username in {expert!r}")

        page = await self.browser.acquire_page()
        try:
            await self.browser.navigate(page, profile_url(self.config.base_url, username))
        except NavigationError as exc:
            if exc.status_code != 404:
                raise
            screenshot = await self.browser.capture_failure(page, "profile-error")
            raise ExpertNotFoundError(username, "HTTP 404", screenshot=screenshot) from exc

        await self.browser.dismiss_cookie_banners(page)
        try:
            await self.browser.wait_for_content(page, PROFILE_READY)
            await page.wait_for_timeout(PROFILE_HYDRATION_MS)
        except OperationTimeoutError as exc:
            screenshot = await self.browser.capture_failure(page, "profile-error")
            raise ExpertNotFoundError(username, "profile never rendered", screenshot=screenshot) from exc

        screenshot = await self.browser.screenshot(page, f"profile-{username}")
        record = extract_profile(await capture_snapshot(page), username, self.config.base_url)
        return record, screenshot

    @operation("view_profile")
    async def view_profile(self, expert: str) -> ProfileResult:
        record, screenshot = await self._load_profile(expert)
        return ProfileResult(profile=record, screenshot=screenshot)

    @operation("compare")
    async def compare(self, experts: str | Sequence[str]) -> CompareResult:
        """Load 2-3 profiles and name the best value among them."""
        raw = experts.split(",") if isinstance(experts, str) else experts
        handles = [handle.strip() for handle in raw if handle.strip()]
        if not 2 <= len(handles) <= 3:
            raise InvalidInputError("experts", "Provide 2-3 comma-separated usernames.")

        profiles: list[ExpertRecord] = []
        screenshots: list[str | None] = []
        for handle in handles:
            record, screenshot = await self._load_profile(handle)
            profiles.append(record)
            screenshots.append(screenshot)

        return CompareResult(
            profiles=profiles,
            best_value=best_value(profiles),
            screenshots=screenshots,
        )

    # -- Booking -------------------------------------------------------------

    @operation("fill_booking")
    async def fill_booking(self, draft: BookingDraft | None = None, **fields: Any) -> FillBookingResult:
        if draft is None:
            try:
                draft = BookingDraft(**fields)
            except ValidationError as exc:
                raise InvalidInputError("booking request", str(exc)) from exc
        return await self.booking.fill(draft)

    @operation("submit_booking")
    async def submit_booking(self, expert: str | None = None) -> SubmitBookingResult | PaymentPendingResult:
        return await self.booking.submit(expert)

    # -- Dashboard & utilities ----------------------------------------------

    @operation("list_calls")
    async def list_calls(self, status: StatusFilter = "all") -> ListCallsResult:
        page = await self.browser.acquire_page()
        await self.auth.ensure_logged_in(page)

        await self.browser.navigate(page, self.config.dashboard_url)
        await self.browser.dismiss_cookie_banners(page)
        try:
            await self.browser.wait_for_content(page, DASHBOARD_READY)
        except OperationTimeoutError:
            log.info("Dashboard shows no call entries")

        screenshot = await self.browser.screenshot(page, "dashboard")
        calls = extract_calls(await capture_snapshot(page), status)
        return ListCallsResult(calls=calls, status_filter=status, total_calls=len(calls), screenshot=screenshot)

    @operation("screenshot")
    async def screenshot(self, filename: str | None = None, full_page: bool = False) -> ScreenshotResult:
        page = await self.browser.acquire_page()
        if filename:
            path = await self.browser.screenshot_to(page, filename, full_page=full_page)
        else:
            path = await self.browser.screenshot(page, "manual", full_page=full_page)
        return ScreenshotResult(screenshot=path)

    @operation("reset")
    async def reset(self) -> ResetResult:
        await self.browser.reset()
        return ResetResult()

    def export(self, result: SearchResult) -> ExportResult | ErrorResult:
        return export_search(self.config, result)


def export_search(config: GlobalConfig, result: SearchResult) -> ExportResult | ErrorResult:
    """Write the Excel shortlist and HTML dashboard for a search result."""
    try:
        reports = ReportGenerator(config).generate_all(result)
    except ClarityPilotError as exc:
        log.error("Export failed", error_type=type(exc).__name__, message=exc.message)
        return ErrorResult.from_exception(exc)
    return ExportResult(excel=str(reports["excel"]), dashboard=str(reports["dashboard"]))


def best_value(profiles: Sequence[ExpertRecord]) -> BestValue:
    """Pick the highest value score; unscored profiles rank last."""
    best = sort_by_value_score(profiles)[0]
    if best.value_score is None:
        reason = "No value score available: no profile shows both a rating and a review count"
    else:
        reason = (
            f"Highest value score: {best.value_score} = ({best.review_count} reviews * "
            f"{best.rating} rating) / ${best.rate_per_minute}/min"
        )
    return BestValue(
        username=best.username,
        name=best.name,
        value_score=best.value_score,
        reason=reason,
    )
