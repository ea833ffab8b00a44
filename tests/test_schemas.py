"""Tests for the Pydantic data model.

Validates:
- Value score rules (absent inputs, zero rate, rounding)
- ExpertRecord normalization (whitespace, bio cap, tag dedupe, frozen username)
- Booking draft cost estimation and slot handling
- ErrorResult construction from domain exceptions
"""

import pytest
from hypothesis import given
from hypothesis import strategies as st
from pydantic import ValidationError

from clarity_pilot.exceptions import SubmitFailureError
from clarity_pilot.schemas import (
    BIO_MAX_LENGTH,
    NAME_MAX_LENGTH,
    BookingDraft,
    BookingState,
    ErrorResult,
    ExpertRecord,
    SessionRecord,
    compute_value_score,
)

ratings = st.one_of(st.none(), st.floats(min_value=0.1, max_value=5.0))
review_counts = st.one_of(st.none(), st.integers(min_value=0, max_value=100_000))


class TestValueScore:
    """Test suite for compute_value_score and the computed field."""

    def test_known_example(self) -> None:
        """Verify (120 reviews * 4.8) / $5.00 = 115.2."""
        assert compute_value_score(120, 4.8, 5.0) == 115.2

    def test_zero_rate_with_known_inputs_is_zero(self) -> None:
        assert compute_value_score(10, 4.0, 0.0) == 0.0

    def test_zero_rate_with_unknown_rating_is_absent(self) -> None:
        assert compute_value_score(10, None, 0.0) is None

    @given(review_count=review_counts, rating=ratings, rate=st.floats(min_value=0.0, max_value=1000.0))
    def test_absent_iff_an_input_is_absent(
        self, review_count: int | None, rating: float | None, rate: float
    ) -> None:
        """Verify the score is None exactly when rating or review count is None."""
        score = compute_value_score(review_count, rating, rate)
        assert (score is None) == (rating is None or review_count is None)
        if score is not None:
            assert score >= 0.0

    def test_record_exposes_value_score_in_dump(self) -> None:
        """Verify value_score is serialized alongside stored fields."""
        record = ExpertRecord(name="Alice", username="alice", rate_per_minute=2.5, rating=5.0, review_count=10)
        dumped = record.model_dump()
        assert dumped["value_score"] == 20.0

    def test_enriched_copy_recomputes_score(self) -> None:
        """Verify model_copy with new rating data updates the derived score."""
        record = ExpertRecord(name="Alice", username="alice", rate_per_minute=4.0)
        assert record.value_score is None

        enriched = record.model_copy(update={"rating": 4.0, "review_count": 50})
        assert enriched.value_score == 50.0


class TestExpertRecord:
    """Test suite for ExpertRecord normalization."""

    def test_whitespace_collapsed_in_name_and_bio(self) -> None:
        record = ExpertRecord(name="  Alice \n Founder ", bio="Built\n\n  two   companies")
        assert record.name == "Alice Founder"
        assert record.bio == "Built two companies"

    def test_bio_capped(self) -> None:
        record = ExpertRecord(name="Alice", bio="x" * (BIO_MAX_LENGTH + 100))
        assert len(record.bio) == BIO_MAX_LENGTH

    def test_name_capped(self) -> None:
        record = ExpertRecord(name="A" * (NAME_MAX_LENGTH + 50), username="alice")
        assert record.name == "A" * NAME_MAX_LENGTH

    def test_tags_deduplicated_in_order(self) -> None:
        record = ExpertRecord(name="Alice", expertise_tags=["SaaS", " ", "Pricing", "SaaS", "Growth"])
        assert record.expertise_tags == ["SaaS", "Pricing", "Growth"]

    def test_rate_rounded_to_cents(self) -> None:
        assert ExpertRecord(name="Alice", rate_per_minute=3.14159).rate_per_minute == 3.14

    def test_rating_out_of_range_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ExpertRecord(name="Alice", rating=5.5)
        with pytest.raises(ValidationError):
            ExpertRecord(name="Alice", rating=0.0)

    def test_empty_name_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ExpertRecord(name="   ")

    def test_username_is_frozen(self) -> None:
        """Verify the join key cannot be reassigned after construction."""
        record = ExpertRecord(name="Alice", username="alice")
        with pytest.raises(ValidationError):
            record.username = "mallory"


class TestBookingDraft:
    """Test suite for BookingDraft."""

    def test_estimated_cost(self) -> None:
        draft = BookingDraft(expert="alice", duration=30, cost_per_minute=5.0)
        assert draft.estimated_cost == 150.0

    @pytest.mark.parametrize("duration", [14, 121])
    def test_duration_bounds(self, duration: int) -> None:
        with pytest.raises(ValidationError):
            BookingDraft(expert="alice", duration=duration)

    def test_empty_slots_dropped(self) -> None:
        draft = BookingDraft(expert="alice", slots=["2026-11-02T10:00", None, ""])
        assert draft.slots == ["2026-11-02T10:00"]

    def test_more_than_three_slots_rejected(self) -> None:
        with pytest.raises(ValidationError):
            BookingDraft(expert="alice", slots=["a", "b", "c", "d"])


class TestSessionRecord:
    """Test suite for SessionRecord persistence format."""

    def test_json_round_trip_keeps_draft(self) -> None:
        record = SessionRecord(
            endpoint="http://127.0.0.1:9333",
            booking_filled=True,
            booking_state=BookingState.FORM_FILLED,
            current_expert="alice",
            draft=BookingDraft(expert="alice", cost_per_minute=5.0),
        )

        restored = SessionRecord.model_validate_json(record.model_dump_json())

        assert restored.booking_state is BookingState.FORM_FILLED
        assert restored.draft is not None
        assert restored.draft.estimated_cost == 150.0

    def test_defaults_are_idle(self) -> None:
        record = SessionRecord(endpoint="http://127.0.0.1:9333")
        assert record.booking_state is BookingState.IDLE
        assert record.booking_filled is False
        assert record.logged_in is False


class TestErrorResult:
    """Test suite for ErrorResult.from_exception."""

    def test_carries_do_not_retry_and_screenshot(self) -> None:
        exc = SubmitFailureError(reason="timeout", expert="alice", screenshot="/tmp/fail.png")

        result = ErrorResult.from_exception(exc)

        assert result.success is False
        assert result.error is True
        assert result.error_type == "SubmitFailureError"
        assert result.do_not_retry is True
        assert result.screenshot == "/tmp/fail.png"
        assert result.context == {"expert": "alice", "reason": "timeout"}
