"""Type definitions for the balance and allocation calculators."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum

ZERO = Decimal("0")
MINUTES_PER_HOUR = Decimal(60)


class InvoiceStatus(str, Enum):
    """Invoice status values."""

    DRAFT = "draft"
    ISSUED = "issued"
    PAID = "paid"
    VOID = "void"


class LineType(str, Enum):
    """Invoice line types.

    The tag decides ownership during regeneration: system-generated lines are
    replaced wholesale, operator lines are preserved verbatim.
    """

    RETAINER = "retainer"
    PRIOR_MONTH_RETAINER = "prior_month_retainer"
    ADDITIONAL_HOURS = "additional_hours"
    PRIOR_MONTH_BILLABLE = "prior_month_billable"
    EXPENSE = "expense"
    ADJUSTMENT = "adjustment"
    CREDIT = "credit"

    @property
    def is_system_generated(self) -> bool:
        return self in SYSTEM_LINE_TYPES


SYSTEM_LINE_TYPES = frozenset(
    {
        LineType.RETAINER,
        LineType.PRIOR_MONTH_RETAINER,
        LineType.ADDITIONAL_HOURS,
        LineType.PRIOR_MONTH_BILLABLE,
        LineType.CREDIT,
    }
)
MANUAL_LINE_TYPES = frozenset({LineType.EXPENSE, LineType.ADJUSTMENT})


class AllocationType(str, Enum):
    """Capacity pools, in the order they are drained."""

    PRIOR_MONTH_RETAINER = "prior_month_retainer"
    CURRENT_MONTH_RETAINER = "current_month_retainer"
    CATCH_UP = "catch_up"
    BILLABLE_CATCHUP = "billable_catchup"


@dataclass(frozen=True)
class OpeningBalance:
    """Hours available at the start of a period."""

    retainer_hours: Decimal
    rollover_hours: Decimal
    expired_hours: Decimal
    total_available: Decimal
    negative_offset: Decimal
    effective_retainer_hours: Decimal
    # Prior negative hours the retainer could not absorb. Reported only;
    # never added to the period's charge.
    invoiced_negative_balance: Decimal
    remaining_negative_balance: Decimal


@dataclass(frozen=True)
class ClosingBalance:
    """How worked hours consumed the period's availability."""

    hours_used_from_retainer: Decimal
    hours_used_from_rollover: Decimal
    unused_hours: Decimal
    excess_hours: Decimal
    negative_balance: Decimal
    remaining_rollover: Decimal


@dataclass(frozen=True)
class MonthInput:
    """One period fed to BalanceCalculator.calculate_multiple_months."""

    period_key: str
    retainer_hours: Decimal
    hours_worked: Decimal


@dataclass(frozen=True)
class MonthSummary:
    """Opening and closing balance for one period."""

    opening: OpeningBalance
    hours_worked: Decimal
    closing: ClosingBalance
    period_key: str = ""


@dataclass(frozen=True)
class HoursBreakdown:
    """Hours on an invoice's time-bearing lines split by when they were worked.

    carried_in_hours is work dated before the invoice period; it appears when
    an invoice picks up entries left over from earlier months.
    """

    carried_in_hours: Decimal
    current_month_hours: Decimal

    @property
    def total_hours(self) -> Decimal:
        return self.carried_in_hours + self.current_month_hours


@dataclass(frozen=True)
class TimeFragment:
    """A share of one time entry's minutes assigned to a capacity pool."""

    original_record_id: int
    minutes: int
    date_worked: date
    allocation_type: AllocationType
    description: str = ""
    user_id: int | None = None
    linked_line_id: int | None = None

    @property
    def hours(self) -> Decimal:
        return Decimal(self.minutes) / MINUTES_PER_HOUR

    @property
    def is_linked(self) -> bool:
        return self.linked_line_id is not None


@dataclass
class AllocationPlan:
    """Fragments per capacity pool with per-pool hour totals."""

    prior_month_retainer_fragments: list[TimeFragment] = field(default_factory=list)
    current_month_retainer_fragments: list[TimeFragment] = field(default_factory=list)
    catch_up_fragments: list[TimeFragment] = field(default_factory=list)
    billable_catchup_fragments: list[TimeFragment] = field(default_factory=list)
    total_prior_month_retainer_hours: Decimal = ZERO
    total_current_month_retainer_hours: Decimal = ZERO
    total_catch_up_hours: Decimal = ZERO
    total_billable_catchup_hours: Decimal = ZERO

    @property
    def total_fragments(self) -> int:
        return len(self.all_fragments())

    @property
    def total_hours(self) -> Decimal:
        return (
            self.total_prior_month_retainer_hours
            + self.total_current_month_retainer_hours
            + self.total_catch_up_hours
            + self.total_billable_catchup_hours
        )

    @property
    def covered_hours(self) -> Decimal:
        """Hours absorbed by retainer capacity (prior and current pools)."""
        return self.total_prior_month_retainer_hours + self.total_current_month_retainer_hours

    @property
    def overage_hours(self) -> Decimal:
        """Hours no retainer capacity absorbed."""
        return self.total_catch_up_hours + self.total_billable_catchup_hours

    def all_fragments(self) -> list[TimeFragment]:
        return [
            *self.prior_month_retainer_fragments,
            *self.current_month_retainer_fragments,
            *self.catch_up_fragments,
            *self.billable_catchup_fragments,
        ]

    def fragments_for(self, record_id: int) -> list[TimeFragment]:
        """All fragments derived from one time entry, in pool order."""
        return [f for f in self.all_fragments() if f.original_record_id == record_id]
