"""Heuristic extraction of expert data from rendered marketplace pages.

The marketplace is a single-page app with a class-free, frequently
changing DOM, so nothing here relies on CSS class names. Every field is
produced by a short chain of independent heuristics over a
``PageSnapshot`` (rendered HTML + body innerText + title), each ending
in an explicit "absent" value rather than an exception.

Keeping the heuristics as pure functions over a snapshot means the
browser is touched exactly once per page (``capture_snapshot``) and the
whole engine can be exercised against static HTML.
"""

import re
from urllib.parse import urlparse

from bs4 import BeautifulSoup, Tag
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page
from pydantic import BaseModel, Field

from clarity_pilot.logger import get_logger
from clarity_pilot.schemas import (
    BookingConfirmation,
    CallEntry,
    ExpertRecord,
    StatusFilter,
    compute_value_score,
)

log = get_logger(__name__)

RATE_MARKER = "per minute"
CTA_MARKER = "Request a Call"

# First path segments that belong to site navigation, never to an expert.
RESERVED_PATHS = frozenset(
    {
        "browse",
        "topics",
        "login",
        "search",
        "signup",
        "dashboard",
        "settings",
        "questions",
        "calls",
        "inbox",
        "help",
        "terms",
        "how-it-works",
        "customers",
    }
)

# Generic navigation labels that also link into /browse or /topics.
TAG_DENYLIST = frozenset(
    {"About", "How it Works", "Success Stories", "Find an Expert", "Become an Expert"}
)

# Strings that mark a text block as site chrome rather than an expert bio.
BIO_BOILERPLATE = ("Request a Call", "Clarity", "startups.com", "Copyright")

LISTING_BIO_MAX = 200
LISTING_BIO_MIN = 80
PROFILE_BIO_MIN = 100
PROFILE_BIO_MAX = 2000
MAX_TAG_LABEL = 60

CALL_ENTRY_SELECTORS = (
    '[class*="call-item"]',
    '[class*="booking-item"]',
    '[class*="appointment"]',
    'tr, [class*="row"]',
)

_NUMBER = re.compile(r"\d+(?:\.\d+)?")
_HANDLE_PATH = re.compile(r"^/([A-Za-z0-9_-]+)")
_CALL_COUNT_PAREN = re.compile(r"\((\d[\d,]*)\)")
_CREATED_AGO = re.compile(r"Created \d+ \w+ ago", re.IGNORECASE)
_TITLE_SEPARATOR = re.compile(r"\s+[-–—|]\s+")
_PROFILE_RATE = re.compile(r"\$(\d+(?:\.\d+)?)\s*(?:per\s*min|/\s*min)", re.IGNORECASE)
_RATING = re.compile(r"(\d+(?:\.\d+)?)\s*(?:out of 5|stars?|★|[/⁄]5)", re.IGNORECASE)
_REVIEW_COUNT = re.compile(r"(\d[\d,]*)\s*(?:Reviews?|Ratings?|Feedback)\b", re.IGNORECASE)
_TOTAL_CALLS = re.compile(r"(\d[\d,]*)\s*(?:Calls?|Sessions?|Consultations?)\b", re.IGNORECASE)

_CONFIRM_CALL_ID = re.compile(
    r"(?:Call|Request|Booking)\s*(?:#|ID|Number)[:\s]*([A-Za-z0-9-]+)", re.IGNORECASE
)
_CONFIRM_SCHEDULED = re.compile(r"(?:Scheduled|Time|Date)[:\s]*([^\n]+)", re.IGNORECASE)
_CONFIRM_DIAL_IN = re.compile(r"(?:Dial[- ]?in|Dial|Phone)[:\s]*(\+?[\d(][\d() -]{5,}\d)")
_CONFIRM_TOTAL = re.compile(
    r"(?:Total|Cost|Charge|Amount)[:\s]*\$?(\d+(?:\.\d+)?)", re.IGNORECASE
)

_CALL_DATE = re.compile(r"(\d{1,2}[/-]\d{1,2}[/-]\d{2,4}|\w+ \d{1,2},? \d{4})")
_CALL_DURATION = re.compile(r"(\d+)\s*min", re.IGNORECASE)
_CALL_COST = re.compile(r"\$[\d.]+")


class PageSnapshot(BaseModel):
    """Everything the heuristics need from one rendered page."""

    url: str = ""
    title: str = ""
    html: str = ""
    text: str = ""

    @classmethod
    def from_html(cls, html: str, url: str = "") -> "PageSnapshot":
        """Build a snapshot without a browser, approximating innerText."""
        soup = _soup(html)
        title_tag = soup.find("title")
        body = soup.body or soup
        return cls(
            url=url,
            title=title_tag.get_text(strip=True) if title_tag else "",
            html=html,
            text=body.get_text("\n"),
        )


class ListingExtraction(BaseModel):
    experts: list[ExpertRecord] = Field(default_factory=list)
    cards_scanned: int = 0
    cards_dropped: int = 0
    cards_filtered: int = 0


async def capture_snapshot(page: Page) -> PageSnapshot:
    """Read title, HTML and body text from a live page.

    ``inner_text`` reflects layout (line breaks between blocks) which the
    count patterns depend on; if it fails the HTML-derived text is used.
    """
    html = await page.content()
    title = await page.title()
    try:
        text = await page.inner_text("body")
    except PlaywrightError as exc:
        log.debug("Body innerText unavailable, using HTML text", error=str(exc))
        text = PageSnapshot.from_html(html).text
    return PageSnapshot(url=page.url, title=title, html=html, text=text)


# -- Scalar parsers ----------------------------------------------------------


def parse_rate(text: str) -> float:
    """First number in a rate string ("$5.00/min" -> 5.0), or 0.0."""
    match = _NUMBER.search(text or "")
    return float(match.group(0)) if match else 0.0


def _parse_int(raw: str) -> int:
    return int(raw.replace(",", ""))


def _collapse(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def normalize_username(value: str) -> str:
    """Accept a profile URL, "@handle" or "handle" and return the handle."""
    value = value.strip()
    if value.startswith("http"):
        path = urlparse(value).path.strip("/")
        return path.split("/")[0] if path else ""
    return value.lstrip("@")


def profile_url(base_url: str, username: str) -> str:
    return f"{base_url.rstrip('/')}/{username}"


def _soup(html: str) -> BeautifulSoup:
    soup = BeautifulSoup(html or "", "html.parser")
    for hidden in soup(["script", "style", "noscript", "template"]):
        hidden.decompose()
    return soup


def _child_element_count(element: Tag) -> int:
    return len(element.find_all(True, recursive=False))


# -- Listing cards -----------------------------------------------------------


def _find_cards(soup: BeautifulSoup) -> list[Tag]:
    """List items carrying both the rate marker and the call-to-action.

    Navigation and footer list items never contain both, which makes the
    dual marker the primary noise filter.
    """
    return [
        item
        for item in soup.find_all("li")
        if RATE_MARKER in item.get_text() and CTA_MARKER in item.get_text()
    ]


def _card_username(card: Tag) -> str:
    for link in card.select('a[href^="/"]'):
        match = _HANDLE_PATH.match(link.get("href", ""))
        if match and match.group(1) not in RESERVED_PATHS:
            return match.group(1)
    return ""


def _card_rate_and_name(card: Tag) -> tuple[float, str, str]:
    rate = 0.0
    rate_display = "N/A"
    name = ""
    for strong in card.find_all("strong"):
        text = strong.get_text().strip()
        if text.startswith("$") and rate == 0:
            rate = parse_rate(text)
            rate_display = f"{text}/min"
        elif not text.startswith("$") and len(text) > 1 and not name:
            name = text
    return rate, rate_display, name


def _card_total_calls(card: Tag) -> int:
    match = _CALL_COUNT_PAREN.search(card.get_text())
    return _parse_int(match.group(1)) if match else 0


def _card_bio(card: Tag) -> str:
    """Longest shallow text block, minus the "Created N days ago" stamp."""
    best = ""
    for element in card.find_all(True):
        if _child_element_count(element) > 2 or not element.contents:
            continue
        text = element.get_text().strip()
        if len(text) > LISTING_BIO_MIN and len(text) > len(best) and CTA_MARKER not in text:
            best = text
    cleaned = _collapse(_CREATED_AGO.sub("", _collapse(best), count=1))
    return cleaned[:LISTING_BIO_MAX]


def extract_cards(
    snapshot: PageSnapshot,
    limit: int,
    min_rate: float | None = None,
    max_rate: float | None = None,
    base_url: str = "https://clarity.fm",
) -> ListingExtraction:
    """Turn a browse page into at most ``limit`` expert records.

    Rate filtering happens per card, before the card counts toward
    ``limit``. A card yielding neither a name nor a username is dropped;
    any other missing field falls back to its empty default.
    """
    soup = _soup(snapshot.html)
    cards = _find_cards(soup)
    result = ListingExtraction(cards_scanned=len(cards))

    for card in cards:
        if len(result.experts) >= limit:
            break

        username = _card_username(card)
        rate, rate_display, name = _card_rate_and_name(card)

        if min_rate is not None and rate < min_rate:
            result.cards_filtered += 1
            continue
        if max_rate is not None and rate > max_rate:
            result.cards_filtered += 1
            continue

        if not name and not username:
            result.cards_dropped += 1
            continue

        result.experts.append(
            ExpertRecord(
                name=name or username,
                username=username,
                profile_url=profile_url(base_url, username) if username else "",
                rate_per_minute=rate,
                rate_display=rate_display,
                bio=_card_bio(card),
                total_calls=_card_total_calls(card),
            )
        )

    log.debug(
        "Listing cards extracted",
        url=snapshot.url,
        cards_scanned=result.cards_scanned,
        extracted=len(result.experts),
        filtered=result.cards_filtered,
        dropped=result.cards_dropped,
    )
    return result


# -- Profile page ------------------------------------------------------------


def _name_from_title(title: str) -> str:
    parts = [
        part.strip()
        for part in _TITLE_SEPARATOR.split(title or "")
        if part.strip() and part.strip() not in ("Clarity", "Clarity.fm")
    ]
    if len(parts) >= 2:
        return parts[1]
    if len(parts) == 1:
        return parts[0]
    return ""


def _name_from_strong(soup: BeautifulSoup) -> str:
    for strong in soup.find_all("strong"):
        text = strong.get_text().strip()
        if (
            len(text) > 3
            and not text.startswith("$")
            and not text[0].isdigit()
            and "startups" not in text
            and "Clarity" not in text
        ):
            return text
    return ""


def extract_rating(text: str) -> float | None:
    """First star-rating value within (0, 5], or None."""
    for match in _RATING.finditer(text or ""):
        value = float(match.group(1))
        if 0 < value <= 5:
            return value
    return None


def extract_review_count(text: str) -> int | None:
    match = _REVIEW_COUNT.search(text or "")
    return _parse_int(match.group(1)) if match else None


def extract_total_calls(text: str) -> int:
    match = _TOTAL_CALLS.search(text or "")
    return _parse_int(match.group(1)) if match else 0


def extract_rating_and_reviews(text: str) -> tuple[float | None, int | None]:
    """The subset of profile fields that listing pages never render."""
    return extract_rating(text), extract_review_count(text)


def extract_profile_rate(text: str) -> tuple[float, str]:
    match = _PROFILE_RATE.search(text or "")
    if match is None:
        return 0.0, "N/A"
    return float(match.group(1)), f"${match.group(1)}/min"


def _profile_bio(soup: BeautifulSoup) -> str:
    """First substantial text block below the booking controls.

    Everything above the first element mentioning the call-to-action or
    the per-minute rate is header/navigation. Blocks from "similar
    experts" further down are avoided by taking the first match only.
    """
    past_booking_button = False
    root = soup.body or soup
    for element in root.find_all(True):
        text = element.get_text().strip()
        if CTA_MARKER in text or "per min" in text:
            past_booking_button = True
        if not past_booking_button or _child_element_count(element) > 3:
            continue
        if not PROFILE_BIO_MIN < len(text) < PROFILE_BIO_MAX:
            continue
        if any(marker in text for marker in BIO_BOILERPLATE):
            continue
        return _collapse(text)
    return ""


def _expertise_tags(soup: BeautifulSoup) -> list[str]:
    tags = []
    for link in soup.select('a[href*="/topics/"], a[href*="/browse/"]'):
        label = link.get_text().strip()
        if 2 < len(label) < MAX_TAG_LABEL and label not in TAG_DENYLIST:
            tags.append(label)
    return tags


def extract_profile(
    snapshot: PageSnapshot,
    username: str,
    base_url: str = "https://clarity.fm",
) -> ExpertRecord:
    """Build a full ExpertRecord from a rendered profile page."""
    soup = _soup(snapshot.html)
    text = snapshot.text

    name = _name_from_title(snapshot.title)
    if len(name) < 2:
        name = _name_from_strong(soup)

    rate, rate_display = extract_profile_rate(text)
    rating, review_count = extract_rating_and_reviews(text)

    record = ExpertRecord(
        name=name or username,
        username=username,
        profile_url=profile_url(base_url, username),
        rate_per_minute=rate,
        rate_display=rate_display,
        bio=_profile_bio(soup),
        expertise_tags=_expertise_tags(soup),
        total_calls=extract_total_calls(text),
        rating=rating,
        review_count=review_count,
    )
    log.debug(
        "Profile extracted",
        username=username,
        rate=record.rate_per_minute,
        rating=record.rating,
        review_count=record.review_count,
        value_score=compute_value_score(review_count, rating, record.rate_per_minute),
    )
    return record


# -- Booking confirmation & dashboard ---------------------------------------


def extract_confirmation(text: str) -> BookingConfirmation:
    """Pull labelled fields off the post-submit page; any may be missing."""
    text = text or ""
    call_id = _CONFIRM_CALL_ID.search(text)
    scheduled = _CONFIRM_SCHEDULED.search(text)
    dial_in = _CONFIRM_DIAL_IN.search(text)
    total = _CONFIRM_TOTAL.search(text)
    return BookingConfirmation(
        call_id=call_id.group(1) if call_id else None,
        scheduled_at=scheduled.group(1).strip() if scheduled else None,
        dial_in_number=dial_in.group(1).strip() if dial_in else None,
        estimated_total=float(total.group(1)) if total else None,
        page_text=text[:2000],
    )


def _status_matches(status_filter: StatusFilter, status: str) -> bool:
    if status_filter == "all":
        return True
    if status_filter == "upcoming":
        return "upcoming" in status or "scheduled" in status
    if status_filter == "pending":
        return "pending" in status
    return "completed" in status or "done" in status


def _select_text(entry: Tag, selector: str) -> str:
    element = entry.select_one(selector)
    return element.get_text().strip() if element else ""


def extract_calls(snapshot: PageSnapshot, status_filter: StatusFilter = "all") -> list[CallEntry]:
    """Parse dashboard call rows; the first selector with any hit wins."""
    soup = _soup(snapshot.html)

    entries: list[Tag] = []
    for selector in CALL_ENTRY_SELECTORS:
        entries = soup.select(selector)
        if entries:
            break

    calls = []
    for entry in entries:
        text = entry.get_text(" ")
        expert_name = _select_text(entry, '[class*="name"], [class*="expert"], a[href^="/"]')
        date_match = _CALL_DATE.search(text)
        date = date_match.group(1) if date_match else ""
        if not expert_name and not date:
            continue

        duration_match = _CALL_DURATION.search(text)
        cost_match = _CALL_COST.search(text)
        status = _select_text(entry, '[class*="status"], [class*="badge"]').lower()

        if not _status_matches(status_filter, status):
            continue

        calls.append(
            CallEntry(
                expert_name=expert_name,
                date=date,
                duration=f"{duration_match.group(1)} min" if duration_match else "",
                cost=cost_match.group(0) if cost_match else "",
                status=status,
                topic=_select_text(entry, '[class*="topic"], [class*="subject"]'),
            )
        )
    return calls
