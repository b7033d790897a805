"""Rollover hour balance calculator for retainer agreements."""

from __future__ import annotations

from collections import OrderedDict
from collections.abc import Mapping, Sequence
from decimal import ROUND_HALF_UP, Decimal

from retainer_billing.calculators.types import (
    ZERO,
    ClosingBalance,
    MonthInput,
    MonthSummary,
    OpeningBalance,
)

HourValue = Decimal | int | float | str


def to_hours(value: HourValue | None) -> Decimal:
    """Coerce an hour amount to Decimal without float artifacts."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


class BalanceCalculator:
    """Calculates opening and closing hour balances for billing periods.

    Rules:
    1. Each period grants retainer_hours to the available pool.
    2. Unused hours from a period N months ago roll over while
       N <= rollover_months (0 = no rollover); older hours expire.
    3. Hours worked consume the current retainer first, then rollover.
    4. A negative balance carried in is offset against this period's
       retainer before rollover is added. Any part exceeding the retainer is
       reported (invoiced_negative_balance) and carried again, not charged.
    5. Hours beyond everything available become a negative balance, unless
       the caller asks for them to be billed immediately.

    All outputs are quantized to 4 decimal places with ROUND_HALF_UP.
    Currency rounding is not done here.
    """

    PRECISION = Decimal("0.0001")

    @classmethod
    def round_hours(cls, hours: Decimal) -> Decimal:
        """Round hours to 4 decimal places."""
        return hours.quantize(cls.PRECISION, rounding=ROUND_HALF_UP)

    def calculate_opening_balance(
        self,
        retainer_hours: HourValue,
        previous_months_unused: Mapping[int, HourValue],
        rollover_months: int,
        previous_negative_balance: HourValue = ZERO,
    ) -> OpeningBalance:
        """Calculate the hours available at the start of a period.

        Args:
            retainer_hours: Hours granted by this period's retainer
            previous_months_unused: Unused hours keyed by months ago
                (1 = immediately prior period)
            rollover_months: How many months unused hours stay usable
            previous_negative_balance: Negative hours carried in
        """
        retainer = to_hours(retainer_hours)
        previous_negative = to_hours(previous_negative_balance)

        rollover = ZERO
        expired = ZERO
        for months_ago, unused in previous_months_unused.items():
            if months_ago <= rollover_months:
                rollover += to_hours(unused)
            else:
                expired += to_hours(unused)

        negative_offset = ZERO
        if previous_negative > 0:
            negative_offset = min(previous_negative, retainer)
        effective_retainer = retainer - negative_offset
        remaining_negative = max(ZERO, previous_negative - retainer)

        return OpeningBalance(
            retainer_hours=self.round_hours(retainer),
            rollover_hours=self.round_hours(rollover),
            expired_hours=self.round_hours(expired),
            total_available=self.round_hours(effective_retainer + rollover),
            negative_offset=self.round_hours(negative_offset),
            effective_retainer_hours=self.round_hours(effective_retainer),
            invoiced_negative_balance=self.round_hours(remaining_negative),
            remaining_negative_balance=self.round_hours(remaining_negative),
        )

    def calculate_closing_balance(
        self,
        total_available: HourValue,
        hours_worked: HourValue,
        retainer_hours: HourValue,
        rollover_hours: HourValue,
        bill_excess_immediately: bool = False,
        remaining_negative_balance: HourValue = ZERO,
    ) -> ClosingBalance:
        """Calculate how the hours worked consumed the period's availability.

        Cases, evaluated in order:
        - C: worked <= retainer. Retainer covers everything; the rest is unused.
        - A: worked <= total available. Retainer exhausted, rollover covers the rest.
        - B: worked > total available. Retainer and rollover exhausted; the
          excess is billed now or carried as negative balance.
        """
        total = to_hours(total_available)
        worked = to_hours(hours_worked)
        retainer = to_hours(retainer_hours)
        rollover = to_hours(rollover_hours)
        negative = to_hours(remaining_negative_balance)

        used_from_retainer = ZERO
        used_from_rollover = ZERO
        unused = ZERO
        excess = ZERO

        if worked <= retainer:
            used_from_retainer = worked
            unused = retainer - worked
        elif worked <= total:
            used_from_retainer = retainer
            used_from_rollover = worked - retainer
        else:
            used_from_retainer = retainer
            used_from_rollover = rollover
            overage = worked - total
            if bill_excess_immediately:
                excess = overage
            else:
                negative += overage

        return ClosingBalance(
            hours_used_from_retainer=self.round_hours(used_from_retainer),
            hours_used_from_rollover=self.round_hours(used_from_rollover),
            unused_hours=self.round_hours(unused),
            excess_hours=self.round_hours(excess),
            negative_balance=self.round_hours(negative),
            remaining_rollover=self.round_hours(max(ZERO, rollover - used_from_rollover)),
        )

    def calculate_month_summary(
        self,
        retainer_hours: HourValue,
        hours_worked: HourValue,
        previous_months_unused: Mapping[int, HourValue],
        rollover_months: int,
        previous_negative_balance: HourValue = ZERO,
        bill_excess_immediately: bool = False,
        period_key: str = "",
    ) -> MonthSummary:
        """Combine opening and closing balance for one period."""
        opening = self.calculate_opening_balance(
            retainer_hours,
            previous_months_unused,
            rollover_months,
            previous_negative_balance,
        )
        closing = self.calculate_closing_balance(
            opening.total_available,
            hours_worked,
            opening.effective_retainer_hours,
            opening.rollover_hours,
            bill_excess_immediately=bill_excess_immediately,
            remaining_negative_balance=opening.remaining_negative_balance,
        )
        return MonthSummary(
            opening=opening,
            hours_worked=self.round_hours(to_hours(hours_worked)),
            closing=closing,
            period_key=period_key,
        )

    def calculate_multiple_months(
        self,
        months: Sequence[MonthInput],
        rollover_months: int,
        bill_excess_immediately: bool = False,
    ) -> list[MonthSummary]:
        """Fold balances across an ordered list of periods.

        A FIFO ledger maps period key -> (period index, unused hours). After
        each period the rollover it consumed is drained from the oldest
        eligible entries first, its own unused hours are appended, and entries
        more than rollover_months periods old are pruned. Entries survive one
        extra period so the following period reports them as expired.
        """
        results: list[MonthSummary] = []
        ledger: OrderedDict[str, tuple[int, Decimal]] = OrderedDict()

        for index, month in enumerate(months):
            previous_months_unused = {
                index - period_index: hours for period_index, hours in ledger.values()
            }
            previous_negative = results[-1].closing.negative_balance if results else ZERO

            summary = self.calculate_month_summary(
                month.retainer_hours,
                month.hours_worked,
                previous_months_unused,
                rollover_months,
                previous_negative,
                bill_excess_immediately=bill_excess_immediately,
                period_key=month.period_key,
            )
            results.append(summary)

            self._drain_ledger(
                ledger, index, rollover_months, summary.closing.hours_used_from_rollover
            )

            if summary.closing.unused_hours > 0:
                ledger[month.period_key] = (index, summary.closing.unused_hours)

            for key in [k for k, (i, _) in ledger.items() if index - i > rollover_months]:
                del ledger[key]

        return results

    def _drain_ledger(
        self,
        ledger: OrderedDict[str, tuple[int, Decimal]],
        index: int,
        rollover_months: int,
        consumed: Decimal,
    ) -> None:
        """Deduct consumed rollover from the oldest eligible entries."""
        remaining = consumed
        for key in list(ledger):
            if remaining <= 0:
                break
            period_index, hours = ledger[key]
            if index - period_index > rollover_months:
                continue
            taken = min(hours, remaining)
            remaining -= taken
            if hours - taken > 0:
                ledger[key] = (period_index, hours - taken)
            else:
                del ledger[key]

    def status_description(self, summary: MonthSummary) -> str:
        """Human-readable description of a period's balance status."""
        closing = summary.closing

        if closing.excess_hours > 0:
            return f"Exceeded by {closing.excess_hours:.2f} hours (will be billed at hourly rate)"

        if closing.negative_balance > 0:
            return f"Negative balance of {closing.negative_balance:.2f} hours carried forward"

        if closing.unused_hours > 0:
            return f"{closing.unused_hours:.2f} unused hours will roll over"

        if closing.hours_used_from_rollover > 0:
            return f"Used {closing.hours_used_from_rollover:.2f} rollover hours"

        return "All retainer hours used exactly"
