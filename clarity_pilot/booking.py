"""Two-phase booking: fill the request form, then submit it on approval.

State machine (persisted in the session record)::

    IDLE --fill--> FORM_FILLED --submit--> SUBMITTED
                                      \\--> PAYMENT_PENDING
                                       \\-> SUBMIT_FAILED

Design Rationale:
    ``fill`` and ``submit`` run in separate processes, possibly minutes
    apart, with a human reviewing the filled-form screenshot in between.
    The session record is therefore the only authority on whether a form
    is open and for whom, and ``submit`` validates it before touching the
    browser.

    Everything after the submit click is treated as possibly charged:
    any failure is reported as ``SubmitFailureError`` with
    ``do_not_retry`` set and the state leaves FORM_FILLED, so a repeated
    submit is rejected instead of clicking twice.
"""

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from config.settings import GlobalConfig
from clarity_pilot.auth import Authenticator
from clarity_pilot.browser import BrowserManager
from clarity_pilot.budget import BudgetGate
from clarity_pilot.exceptions import (
    BookingUnavailableError,
    ControlNotFoundError,
    StateViolationError,
    SubmitFailureError,
)
from clarity_pilot.extraction import (
    capture_snapshot,
    extract_confirmation,
    extract_profile,
    normalize_username,
    profile_url,
)
from clarity_pilot.locators import (
    BOOKING_BUTTON_SELECTORS,
    DURATION_INPUT,
    DURATION_SELECT,
    PAYMENT_MARKERS,
    PHONE_SELECTORS,
    SET_SLOT_VALUE_JS,
    SLOT_SELECTOR,
    SUBMIT_SELECTORS,
    TOPIC_SELECTORS,
    find_first,
)
from clarity_pilot.logger import get_logger
from clarity_pilot.schemas import (
    BookingDraft,
    BookingState,
    FillBookingResult,
    PaymentPendingResult,
    SessionRecord,
    SubmitBookingResult,
)

log = get_logger(__name__)

FORM_APPEAR_MS = 2000


class BookingWorkflow:
    def __init__(
        self,
        config: GlobalConfig,
        browser: BrowserManager,
        auth: Authenticator,
        budget: BudgetGate,
    ) -> None:
        self.config = config
        self.browser = browser
        self.auth = auth
        self.budget = budget

    # -- Phase 1 -------------------------------------------------------------

    async def fill(self, draft: BookingDraft) -> FillBookingResult:
        """Open the expert's request form and fill it without submitting.

        Individual fields are best effort; only a missing request-a-call
        control is fatal.

        Raises:
            BookingUnavailableError: If the profile has no booking control.
        """
        username = normalize_username(draft.expert)
        url = profile_url(self.config.base_url, username)

        page = await self.browser.acquire_page()
        await self.auth.ensure_logged_in(page)

        await self.browser.navigate(page, url)
        await self.browser.dismiss_cookie_banners(page)

        profile = extract_profile(await capture_snapshot(page), username, self.config.base_url)

        button = await find_first(page, BOOKING_BUTTON_SELECTORS)
        if button is None:
            screenshot = await self.browser.capture_failure(page, "booking-no-button")
            raise BookingUnavailableError(
                username=username,
                selectors_tried=len(BOOKING_BUTTON_SELECTORS),
                screenshot=screenshot,
            )
        await button.click(force=True)
        await page.wait_for_timeout(FORM_APPEAR_MS)

        await self._fill_duration(page, draft.duration)
        if draft.topic:
            await self._fill_first(page, TOPIC_SELECTORS, draft.topic, "topic")
        phone = draft.phone or self.config.clarity_phone
        if phone:
            await self._fill_first(page, PHONE_SELECTORS, phone, "phone")
        if draft.slots:
            await self._fill_slots(page, draft.slots)

        screenshot = await self.browser.screenshot(page, f"booking-filled-{username}")

        filled = draft.model_copy(
            update={"expert": username, "phone": phone or None, "cost_per_minute": profile.rate_per_minute}
        )
        self.browser.sessions.update(
            booking_filled=True,
            booking_state=BookingState.FORM_FILLED,
            current_expert=username,
            draft=filled,
        )
        log.info(
            "Booking form filled",
            expert=username,
            duration=filled.duration,
            estimated_cost=filled.estimated_cost,
        )

        return FillBookingResult(
            screenshot=screenshot,
            expert_name=profile.name,
            expert_profile_url=url,
            estimated_cost=filled.estimated_cost,
            cost_per_minute=filled.cost_per_minute,
            duration=filled.duration,
            topic=filled.topic,
            budget_warning=self._budget_warning(filled.estimated_cost),
        )

    def _budget_warning(self, estimated_cost: float) -> str | None:
        if estimated_cost <= 0 or not self.budget.is_over_budget(estimated_cost):
            return None
        spent = self.budget.get_monthly_spend()
        return (
            f"WARNING: Estimated cost ${estimated_cost:.2f} would exceed the monthly budget "
            f"(${spent:.2f} already spent this month)"
        )

    async def _fill_first(self, page: Page, selectors: tuple[str, ...], value: str, field: str) -> bool:
        for selector in selectors:
            try:
                element = await page.query_selector(selector)
                if element is None:
                    continue
                await element.fill(value)
                log.debug("Booking field filled", field=field, selector=selector)
                return True
            except PlaywrightError:
                continue
        log.info("Booking field not found, skipped", field=field)
        return False

    async def _fill_duration(self, page: Page, minutes: int) -> None:
        try:
            select = await page.query_selector(DURATION_SELECT)
            if select is not None:
                for option in ({"value": str(minutes)}, {"label": f"{minutes} minutes"}, {"label": f"{minutes} min"}):
                    try:
                        await select.select_option(**option)
                        log.debug("Duration selected", minutes=minutes, option=option)
                        return
                    except PlaywrightError:
                        continue
                log.info("No duration option matched", minutes=minutes)
                return

            duration_input = await page.query_selector(DURATION_INPUT)
            if duration_input is not None:
                await duration_input.fill(str(minutes))
                return
        except PlaywrightError as exc:
            log.info("Duration field unusable, skipped", error=str(exc))
            return
        log.info("Booking field not found, skipped", field="duration")

    async def _fill_slots(self, page: Page, slots: list[str]) -> None:
        inputs = await page.query_selector_all(SLOT_SELECTOR)
        for index, (slot_input, value) in enumerate(zip(inputs, slots)):
            try:
                await slot_input.fill(value)
            except PlaywrightError:
                try:
                    await page.evaluate(SET_SLOT_VALUE_JS, [SLOT_SELECTOR, index, value])
                except PlaywrightError as exc:
                    log.info("Time slot could not be set", slot=index + 1, error=str(exc))
        if len(inputs) < len(slots):
            log.info("Fewer slot inputs than proposed slots", inputs=len(inputs), slots=len(slots))

    # -- Phase 2 -------------------------------------------------------------

    @staticmethod
    def _validate_submit(record: SessionRecord | None, expert: str | None) -> SessionRecord:
        if record is None:
            raise StateViolationError(
                "No booking form has been filled. Call fill-booking first.",
                expected=BookingState.FORM_FILLED.value,
            )
        if record.booking_state != BookingState.FORM_FILLED or not record.booking_filled:
            raise StateViolationError(
                "No booking form has been filled. Call fill-booking first.",
                expected=BookingState.FORM_FILLED.value,
                actual=record.booking_state.value,
            )
        if expert is not None and normalize_username(expert) != record.current_expert:
            raise StateViolationError(
                f'The filled form is for "{record.current_expert}", not "{expert}".',
                expected=BookingState.FORM_FILLED.value,
                actual=record.booking_state.value,
            )
        return record

    async def submit(self, expert: str | None = None) -> SubmitBookingResult | PaymentPendingResult:
        """Click submit on the form left open by ``fill``.

        Raises:
            StateViolationError: No matching filled form (checked before any
                browser action), or the browser was relaunched and the form lost.
            ControlNotFoundError: No visible submit control; nothing was clicked.
            SubmitFailureError: Anything failed after the click. Never retry.
        """
        record = self._validate_submit(self.browser.sessions.load(), expert)

        page = await self.browser.acquire_page()
        if not self.browser.reconnected:
            self.browser.sessions.update(
                booking_filled=False, booking_state=BookingState.IDLE, current_expert=None, draft=None
            )
            raise StateViolationError(
                "The browser was restarted and the filled form is gone. Call fill-booking again.",
                expected=BookingState.FORM_FILLED.value,
                actual=BookingState.IDLE.value,
            )

        button = await find_first(page, SUBMIT_SELECTORS, visible=True)
        if button is None:
            screenshot = await self.browser.capture_failure(page, "submit-no-button")
            raise ControlNotFoundError(
                control="submit button",
                selectors_tried=len(SUBMIT_SELECTORS),
                hint="The user may need to click submit manually in the browser window",
                screenshot=screenshot,
            )

        expert_name = record.current_expert
        log.warning("Submitting booking", expert=expert_name)
        try:
            await button.click(force=True)
            await page.wait_for_timeout(self.config.submit_settle_ms)

            if await page.query_selector(PAYMENT_MARKERS) is not None:
                screenshot = await self.browser.screenshot(page, "payment-step")
                self.browser.sessions.update(booking_filled=False, booking_state=BookingState.PAYMENT_PENDING)
                log.warning("Payment step detected, manual completion required", expert=expert_name)
                return PaymentPendingResult(screenshot=screenshot, expert=expert_name)

            screenshot = await self.browser.screenshot(page, "booking-confirmed")
            confirmation = extract_confirmation(await page.inner_text("body"))
            await self.browser.save_storage_state()
            self.browser.sessions.update(booking_filled=False, booking_state=BookingState.SUBMITTED)
        except Exception as exc:
            screenshot = await self.browser.capture_failure(page, "submit-error")
            self.browser.sessions.update(booking_filled=False, booking_state=BookingState.SUBMIT_FAILED)
            log.error("Booking submit failed after click", expert=expert_name, error=str(exc))
            raise SubmitFailureError(reason=str(exc), expert=expert_name, screenshot=screenshot) from exc

        self._record_spend(record)
        log.info("Booking submitted", expert=expert_name, call_id=confirmation.call_id)
        return SubmitBookingResult(screenshot=screenshot, confirmation=confirmation, expert=expert_name)

    def _record_spend(self, record: SessionRecord) -> None:
        draft = record.draft
        if draft is None:
            log.warning("Submitted booking has no draft, spend not recorded", expert=record.current_expert)
            return
        try:
            self.budget.add_entry(draft.expert, draft.duration, draft.cost_per_minute)
        except OSError as exc:
            log.error("Could not record booking spend", expert=draft.expert, error=str(exc))
