"""Data model for experts, sessions, bookings and operation results.

Every structure crossing a module boundary is a Pydantic model so that
raw page text is normalized once, at construction, and downstream code
can trust types and ranges.

Absent data is modelled as ``None`` and is never coerced to zero: an
expert with no visible rating is different from one rated 0, and the
value score of such an expert is unknown rather than worthless.
"""

import re
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, computed_field, field_validator

from clarity_pilot.exceptions import ClarityPilotError

NAME_MAX_LENGTH = 200
BIO_MAX_LENGTH = 500
MAX_EXPERTISE_TAGS = 15
MAX_TIME_SLOTS = 3

SortOrder = Literal["best_match", "rate", "calls"]
StatusFilter = Literal["upcoming", "pending", "completed", "all"]


def compute_value_score(
    review_count: int | None,
    rating: float | None,
    rate: float,
) -> float | None:
    """Rank experts by review volume and rating relative to price.

    Returns None when either rating or review count is unknown. A
    non-positive rate yields 0.0 (only once both inputs are known).
    """
    if rating is None or review_count is None:
        return None
    if rate <= 0:
        return 0.0
    return round((review_count * rating) / rate, 2)


def _collapse_whitespace(value: str) -> str:
    return re.sub(r"\s+", " ", value).strip()


class ExpertRecord(BaseModel):
    """One expert as seen on a listing card or a profile page.

    Attributes:
        name: Display name (falls back to the username), capped at 200 characters.
        username: URL handle; the join key across search, enrichment,
            comparison and booking. Frozen once assigned.
        profile_url: Absolute profile URL.
        rate_per_minute: USD per minute, 2-decimal precision.
        rate_display: Rate as shown to humans, e.g. "$5.00/min".
        bio: Free text, whitespace collapsed, capped at 500 characters.
        expertise_tags: Ordered, deduplicated topic labels (max 15).
        total_calls: Completed calls count.
        rating: Star rating in (0, 5], or None when not shown.
        review_count: Number of reviews, or None when not shown.
        availability: Free text, may be empty.
    """

    name: str = Field(..., min_length=1, max_length=NAME_MAX_LENGTH)
    username: str = Field(default="", frozen=True)
    profile_url: str = Field(default="")
    rate_per_minute: float = Field(default=0.0, ge=0.0)
    rate_display: str = Field(default="N/A")
    bio: str = Field(default="")
    expertise_tags: list[str] = Field(default_factory=list)
    total_calls: int = Field(default=0, ge=0)
    rating: float | None = Field(default=None, gt=0.0, le=5.0)
    review_count: int | None = Field(default=None, ge=0)
    availability: str = Field(default="")

    @field_validator("name", mode="before")
    @classmethod
    def clean_name(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError(f"Name must be a string, got {type(value).__name__}")
        return _collapse_whitespace(value)[:NAME_MAX_LENGTH]

    @field_validator("rate_per_minute", mode="after")
    @classmethod
    def round_rate(cls, value: float) -> float:
        return round(value, 2)

    @field_validator("bio", mode="before")
    @classmethod
    def clean_bio(cls, value: Any) -> str:
        if value is None:
            return ""
        return _collapse_whitespace(str(value))[:BIO_MAX_LENGTH]

    @field_validator("expertise_tags", mode="before")
    @classmethod
    def dedupe_tags(cls, value: Any) -> list[str]:
        """Drop blanks and duplicates while keeping first-seen order."""
        if value is None:
            return []
        seen: dict[str, None] = {}
        for tag in value:
            cleaned = _collapse_whitespace(str(tag))
            if cleaned:
                seen.setdefault(cleaned, None)
        return list(seen)[:MAX_EXPERTISE_TAGS]

    @computed_field  # type: ignore[prop-decorator]
    @property
    def value_score(self) -> float | None:
        return compute_value_score(self.review_count, self.rating, self.rate_per_minute)


class BookingState(str, Enum):
    """Lifecycle of the single in-flight booking."""

    IDLE = "idle"
    FORM_FILLED = "form_filled"
    SUBMITTED = "submitted"
    SUBMIT_FAILED = "submit_failed"
    PAYMENT_PENDING = "payment_pending"


class BookingDraft(BaseModel):
    """Parameters of a booking request, plus the rate seen when filling it."""

    expert: str = Field(..., min_length=1)
    duration: int = Field(default=30, ge=15, le=120, description="Minutes")
    topic: str | None = None
    slots: list[str] = Field(default_factory=list, max_length=MAX_TIME_SLOTS)
    phone: str | None = None
    cost_per_minute: float = Field(default=0.0, ge=0.0)

    @field_validator("slots", mode="before")
    @classmethod
    def drop_empty_slots(cls, value: Any) -> list[str]:
        if value is None:
            return []
        return [slot for slot in value if slot]

    @computed_field  # type: ignore[prop-decorator]
    @property
    def estimated_cost(self) -> float:
        return self.cost_per_minute * self.duration


class SessionRecord(BaseModel):
    """The one-per-machine handle to the resident browser.

    It is also the only place that knows whether a booking form is
    currently open, and for which expert.
    """

    endpoint: str
    browser_pid: int | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    logged_in: bool = False
    booking_filled: bool = False
    booking_state: BookingState = BookingState.IDLE
    current_expert: str | None = None
    draft: BookingDraft | None = None


class BudgetEntry(BaseModel):
    """An append-only ledger line for one submitted booking."""

    date: datetime = Field(default_factory=lambda: datetime.now(UTC))
    expert: str
    duration: int = Field(..., ge=0)
    cost_per_minute: float = Field(..., ge=0.0)
    estimated_total: float = Field(..., ge=0.0)

    @classmethod
    def create(cls, expert: str, duration: int, cost_per_minute: float) -> "BudgetEntry":
        return cls(
            expert=expert,
            duration=duration,
            cost_per_minute=cost_per_minute,
            estimated_total=duration * cost_per_minute,
        )


class BookingConfirmation(BaseModel):
    """Fields recovered from the post-submit confirmation page."""

    call_id: str | None = None
    scheduled_at: str | None = None
    dial_in_number: str | None = None
    estimated_total: float | None = None
    page_text: str = ""


class CallEntry(BaseModel):
    expert_name: str = ""
    date: str = ""
    duration: str = ""
    cost: str = ""
    status: str = ""
    topic: str = ""


# -- Operation results -------------------------------------------------------


class OperationResult(BaseModel):
    success: bool = True


class SearchResult(OperationResult):
    """Experts from one browse page, in final (post-enrichment) order."""

    experts: list[ExpertRecord]
    total_results: int
    page: int = 1
    query: str
    category_url: str
    screenshot: str | None = None
    enriched: int = 0
    enrichment_note: str | None = None
    cards_scanned: int = 0
    cards_dropped: int = 0


class ProfileResult(OperationResult):
    profile: ExpertRecord
    screenshot: str | None = None


class BestValue(BaseModel):
    username: str
    name: str
    value_score: float | None
    reason: str


class CompareResult(OperationResult):
    profiles: list[ExpertRecord]
    best_value: BestValue
    screenshots: list[str | None]


class FillBookingResult(OperationResult):
    screenshot: str | None
    expert_name: str
    expert_profile_url: str
    estimated_cost: float
    cost_per_minute: float
    duration: int
    topic: str | None = None
    budget_warning: str | None = None
    message: str = (
        "Booking form filled. Review the screenshot before confirming. "
        "DO NOT call submit-booking without user approval."
    )


class SubmitBookingResult(OperationResult):
    screenshot: str | None
    confirmation: BookingConfirmation
    expert: str | None
    message: str = "Booking submitted successfully."


class PaymentPendingResult(OperationResult):
    """The site asked for payment details; a human must finish in the browser."""

    success: bool = False
    requires_manual_payment: bool = True
    screenshot: str | None
    expert: str | None
    message: str = (
        "Payment confirmation step detected. Please complete payment manually "
        "in the browser window. DO NOT retry automatically."
    )


class ListCallsResult(OperationResult):
    calls: list[CallEntry]
    status_filter: StatusFilter
    total_calls: int
    screenshot: str | None = None


class ScreenshotResult(OperationResult):
    screenshot: str


class ResetResult(OperationResult):
    message: str = "Browser session closed and cleared."


class BudgetStatus(OperationResult):
    """Spend for one month; ``remaining`` is -1 when no cap is set."""

    month: str
    monthly_cap: float
    spent: float
    remaining: float
    entries: list[BudgetEntry]
    over_budget: bool


class SetBudgetResult(OperationResult):
    monthly_cap: float
    message: str


class ExportResult(OperationResult):
    excel: str
    dashboard: str


class ErrorResult(OperationResult):
    """Structured failure returned in place of any operation result."""

    success: bool = False
    error: bool = True
    error_type: str
    message: str
    screenshot: str | None = None
    do_not_retry: bool = False
    context: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_exception(cls, exc: ClarityPilotError) -> "ErrorResult":
        return cls(
            error_type=type(exc).__name__,
            message=exc.message,
            screenshot=exc.screenshot,
            do_not_retry=exc.do_not_retry,
            context={k: v for k, v in exc.context.items() if v is not None},
        )
