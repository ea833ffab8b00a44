"""Monthly spend tracking for submitted bookings.

The booking workflow only depends on the ``BudgetGate`` protocol: it asks
whether an estimated cost would exceed the cap (advisory only) and records
an entry once a booking is actually submitted. ``BudgetTracker`` is the
default implementation, a JSON ledger grouped by ``YYYY-MM``:

    {"monthly_cap": 200.0, "entries": {"2026-03": [BudgetEntry, ...]}}
"""

from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, Field, ValidationError

from config.settings import GlobalConfig
from clarity_pilot.logger import get_logger
from clarity_pilot.schemas import BudgetEntry, BudgetStatus, SetBudgetResult

log = get_logger(__name__)


class BudgetGate(Protocol):
    def get_monthly_spend(self, month: str | None = None) -> float: ...

    def is_over_budget(self, additional_cost: float, month: str | None = None) -> bool: ...

    def add_entry(self, expert: str, duration: int, cost_per_minute: float) -> None: ...


class BudgetLedger(BaseModel):
    monthly_cap: float = Field(default=0.0, ge=0.0)
    entries: dict[str, list[BudgetEntry]] = Field(default_factory=dict)


def current_month() -> str:
    return datetime.now(UTC).strftime("%Y-%m")


class BudgetTracker:
    """JSON-file ledger implementing ``BudgetGate``.

    The effective cap is the ledger's own ``monthly_cap`` when set (> 0),
    otherwise the configured ``monthly_budget``. A cap of 0 disables the
    over-budget check.
    """

    def __init__(self, config: GlobalConfig, path: Path | None = None) -> None:
        self.config = config
        self.path = path or config.budget_path
        self.ledger = self._load()

    def _load(self) -> BudgetLedger:
        if not self.path.exists():
            return BudgetLedger()
        try:
            return BudgetLedger.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (ValidationError, ValueError, OSError) as exc:
            log.warning("Unreadable budget ledger, starting empty", path=str(self.path), error=str(exc))
            return BudgetLedger()

    def _save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(self.ledger.model_dump_json(indent=2), encoding="utf-8")

    @property
    def monthly_cap(self) -> float:
        if self.ledger.monthly_cap > 0:
            return self.ledger.monthly_cap
        return self.config.monthly_budget

    def set_budget(self, monthly: float) -> SetBudgetResult:
        self.ledger.monthly_cap = monthly
        self._save()
        log.info("Monthly budget updated", monthly_cap=monthly)
        return SetBudgetResult(monthly_cap=monthly, message=f"Monthly budget set to ${monthly:.2f}")

    def add_entry(self, expert: str, duration: int, cost_per_minute: float) -> None:
        entry = BudgetEntry.create(expert=expert, duration=duration, cost_per_minute=cost_per_minute)
        self.ledger.entries.setdefault(current_month(), []).append(entry)
        self._save()
        log.info("Budget entry recorded", expert=expert, estimated_total=entry.estimated_total)

    def get_monthly_spend(self, month: str | None = None) -> float:
        entries = self.ledger.entries.get(month or current_month(), [])
        return sum(entry.estimated_total for entry in entries)

    def is_over_budget(self, additional_cost: float, month: str | None = None) -> bool:
        cap = self.monthly_cap
        if cap <= 0:
            return False
        return self.get_monthly_spend(month) + additional_cost > cap

    def get_status(self, month: str | None = None) -> BudgetStatus:
        month = month or current_month()
        spent = self.get_monthly_spend(month)
        cap = self.monthly_cap
        return BudgetStatus(
            month=month,
            monthly_cap=cap,
            spent=round(spent, 2),
            remaining=round(cap - spent, 2) if cap > 0 else -1,
            entries=self.ledger.entries.get(month, []),
            over_budget=cap > 0 and spent > cap,
        )
