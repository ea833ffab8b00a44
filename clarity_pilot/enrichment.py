"""Bounded-parallel profile enrichment.

Listing cards never show ratings, so value scores only exist for experts
whose profile page has been visited. ``ProfileEnricher`` visits the top
N profiles in small concurrent batches, each in its own tab of the shared
browser context, and merges rating/review counts back into the records.

A failed profile never affects its neighbours: batches settle all their
tasks, and the record of a failed fetch is returned unchanged.
"""

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

from playwright.async_api import Error as PlaywrightError
from pydantic import BaseModel

from config.settings import GlobalConfig
from clarity_pilot.browser import BrowserManager
from clarity_pilot.exceptions import ExpertNotFoundError
from clarity_pilot.extraction import extract_rating_and_reviews, profile_url
from clarity_pilot.logger import get_logger
from clarity_pilot.schemas import ExpertRecord

log = get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")


async def gather_in_batches(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    batch_size: int = 3,
) -> list[R | BaseException]:
    """Run ``worker`` over ``items`` with at most ``batch_size`` in flight.

    Each batch settles completely before the next starts. The result list
    is in input order; a slot holds the worker's return value or the
    exception it raised.
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")

    results: list[R | BaseException] = []
    for start in range(0, len(items), batch_size):
        batch = items[start : start + batch_size]
        results.extend(await asyncio.gather(*(worker(item) for item in batch), return_exceptions=True))
    return results


def sort_by_value_score(records: Sequence[ExpertRecord]) -> list[ExpertRecord]:
    """Scored records first (highest score first), then unscored in input order.

    Ties keep their input order.
    """
    scored = [record for record in records if record.value_score is not None]
    unscored = [record for record in records if record.value_score is None]
    return sorted(scored, key=lambda record: record.value_score, reverse=True) + unscored


class EnrichmentOutcome(BaseModel):
    records: list[ExpertRecord]
    attempted: int
    enriched: int

    @property
    def note(self) -> str:
        return f"Enriched {self.enriched}/{self.attempted} profiles with real ratings"


class ProfileEnricher:
    """Fetches ratings for the first N records from their profile pages."""

    def __init__(self, config: GlobalConfig, browser: BrowserManager) -> None:
        self.config = config
        self.browser = browser

    async def _fetch_rating(self, record: ExpertRecord) -> tuple[float | None, int | None]:
        if not record.username:
            raise ExpertNotFoundError(username=record.name, reason="record has no username")

        url = record.profile_url or profile_url(self.config.base_url, record.username)
        tab = await self.browser.new_tab()
        try:
            await self.browser.navigate(
                tab,
                url,
                timeout_ms=self.config.enrichment_timeout_ms,
                settle_ms=self.config.enrichment_settle_ms,
            )
            text = await tab.inner_text("body")
            return extract_rating_and_reviews(text)
        finally:
            try:
                await tab.close()
            except PlaywrightError as exc:
                log.debug("Enrichment tab close failed", username=record.username, error=str(exc))

    async def enrich(self, records: Sequence[ExpertRecord], limit: int) -> EnrichmentOutcome:
        """Enrich ``records[:limit]``; later records pass through untouched."""
        head = list(records[:limit])
        tail = list(records[limit:])

        log.info("Enriching profiles", count=len(head), batch_size=self.config.enrichment_batch_size)
        outcomes = await gather_in_batches(head, self._fetch_rating, self.config.enrichment_batch_size)

        merged: list[ExpertRecord] = []
        for record, outcome in zip(head, outcomes):
            if isinstance(outcome, BaseException):
                log.warning(
                    "Profile enrichment failed",
                    username=record.username,
                    error_type=type(outcome).__name__,
                    error=str(outcome),
                )
                merged.append(record)
                continue

            rating, review_count = outcome
            merged.append(record.model_copy(update={"rating": rating, "review_count": review_count}))

        enriched = sum(1 for record in merged if record.rating is not None)
        outcome = EnrichmentOutcome(records=merged + tail, attempted=len(head), enriched=enriched)
        log.info("Enrichment complete", enriched=enriched, attempted=len(head))
        return outcome
