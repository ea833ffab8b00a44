"""Selector strategy tables for the marketplace UI.

Each table is an ordered tuple of Playwright selectors for one logical
control, most specific first. ``find_first`` walks a table and returns the
first element that resolves; callers decide whether a miss is fatal.

Keeping the strategies as data means DOM drift is fixed by editing a
tuple rather than control flow.
"""

from playwright.async_api import ElementHandle, Page
from playwright.async_api import Error as PlaywrightError

from clarity_pilot.logger import get_logger

log = get_logger(__name__)

# -- Page chrome -------------------------------------------------------------

COOKIE_OVERLAY_SELECTOR = (
    "#onetrust-consent-sdk, .onetrust-pc-dark-filter, #onetrust-banner-sdk, "
    '[class*="cookie-overlay"], [class*="consent-overlay"], [id*="cookie-banner"], '
    '[class*="CookieConsent"], [id*="CookieConsent"]'
)

REMOVE_OVERLAYS_JS = """
(selector) => {
    document.querySelectorAll(selector).forEach((el) => el.remove());
    document.body.style.overflow = "";
}
"""

COOKIE_BUTTONS = (
    'button:has-text("Accept All")',
    'button:has-text("Accept Cookies")',
    'button:has-text("Accept")',
    'button:has-text("I Agree")',
    'button:has-text("Got it")',
    'button:has-text("OK")',
)

LOADING_SELECTORS = (
    'text="Loading..."',
    '[class*="loading"], [class*="spinner"]',
)

# -- Readiness indicators ----------------------------------------------------

LISTING_READY = "li"
PROFILE_READY = "button, strong"
DASHBOARD_READY = '[class*="call"], [class*="booking"], [class*="dashboard"]'

SORT_LINKS = {
    "rate": 'a:has-text("Lowest Price")',
    "calls": 'a:has-text("Popular")',
}

# -- Login -------------------------------------------------------------------

EMAIL_SELECTORS = (
    'input[name="email"]',
    'input[type="email"]',
    'input[id="email"]',
    'input[placeholder*="email" i]',
    'input[name="username"]',
    'input[id="username"]',
)

PASSWORD_SELECTORS = (
    'input[type="password"]',
    'input[name="password"]',
    'input[id="password"]',
)

CONTINUE_SELECTORS = (
    'button[type="submit"]',
    'button:has-text("Continue")',
    'button:has-text("Next")',
)

LOGIN_SUBMIT_SELECTORS = (
    'button[type="submit"]',
    'button:has-text("Log In")',
    'button:has-text("Sign In")',
    'button:has-text("Login")',
    'input[type="submit"]',
)

LOGGED_IN_INDICATORS = (
    '[class*="avatar"], [class*="user-menu"], [href*="/settings"], [href*="/dashboard"]'
)

DASHBOARD_URL_PATTERN = r"dashboard|home|clarity\.fm/$"

# -- Booking form ------------------------------------------------------------

BOOKING_BUTTON_SELECTORS = (
    'button:has-text("Request a Call")',
    'button:has-text("Schedule a Call")',
    'button:has-text("Book a Call")',
    'button:has-text("Request Call")',
    'a:has-text("Request a Call")',
    'a:has-text("Schedule a Call")',
    '[class*="book-button"]',
    '[class*="cta-button"]',
    '[data-testid*="book"]',
    '[data-testid*="request"]',
)

DURATION_SELECT = (
    'select[name*="duration" i], select[id*="duration" i], select[class*="duration" i]'
)
DURATION_INPUT = 'input[name*="duration" i], input[id*="duration" i]'

TOPIC_SELECTORS = (
    'textarea[name*="topic" i]',
    'textarea[name*="message" i]',
    'textarea[name*="description" i]',
    'textarea[placeholder*="topic" i]',
    'textarea[placeholder*="discuss" i]',
    'textarea[placeholder*="message" i]',
    'input[name*="topic" i]',
    "textarea",
)

PHONE_SELECTORS = (
    'input[name*="phone" i]',
    'input[type="tel"]',
    'input[id*="phone" i]',
    'input[placeholder*="phone" i]',
)

SLOT_SELECTOR = (
    'input[type="datetime-local"], input[type="date"], '
    'input[name*="time" i], input[name*="date" i], input[name*="slot" i]'
)

# React-controlled inputs ignore a plain value assignment; go through the
# native setter and fire the events the framework listens to.
SET_SLOT_VALUE_JS = """
([selector, index, value]) => {
    const inputs = document.querySelectorAll(selector);
    const input = inputs[index];
    if (!input) {
        return false;
    }
    const setter = Object.getOwnPropertyDescriptor(HTMLInputElement.prototype, "value").set;
    setter.call(input, value);
    input.dispatchEvent(new Event("input", { bubbles: true }));
    input.dispatchEvent(new Event("change", { bubbles: true }));
    return true;
}
"""

SUBMIT_SELECTORS = (
    'button:has-text("Request Call")',
    'button:has-text("Confirm")',
    'button:has-text("Submit")',
    'button:has-text("Book")',
    'button:has-text("Send Request")',
    'button[type="submit"]',
    '[class*="submit-button"]',
    '[class*="confirm-button"]',
)

PAYMENT_MARKERS = (
    '[class*="payment"], [class*="stripe"], [class*="credit-card"], iframe[src*="stripe"]'
)


async def find_first(
    page: Page,
    selectors: tuple[str, ...],
    timeout_ms: int | None = None,
    visible: bool = False,
) -> ElementHandle | None:
    """Return the first element matched by an ordered selector table.

    Args:
        page: Page to search.
        selectors: Strategies in priority order.
        timeout_ms: When given, wait up to this long for each strategy to
            attach instead of probing the current DOM once.
        visible: Skip matches that are not currently visible.

    Returns:
        The first matching element handle, or None if every strategy missed.
    """
    for selector in selectors:
        try:
            if timeout_ms is None:
                element = await page.query_selector(selector)
            else:
                element = await page.wait_for_selector(selector, timeout=timeout_ms)
            if element is None:
                continue
            if visible and not await element.is_visible():
                continue
            log.debug("Selector strategy matched", selector=selector)
            return element
        except PlaywrightError:
            continue
    log.debug("No selector strategy matched", tried=len(selectors), first=selectors[0])
    return None
