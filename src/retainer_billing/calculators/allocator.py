"""Greedy allocation of time entries across capacity pools."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Protocol

from retainer_billing.calculators.types import (
    MINUTES_PER_HOUR,
    ZERO,
    AllocationPlan,
    AllocationType,
    TimeFragment,
)

logger = logging.getLogger(__name__)


class AllocatableRecord(Protocol):
    """Anything with the fields the allocator reads."""

    id: int
    minutes_worked: int
    date_worked: date


def hours_to_minutes(hours: Decimal | int | str) -> int:
    """Convert hours to whole minutes, rounding half up."""
    minutes = Decimal(str(hours)) * MINUTES_PER_HOUR
    return int(minutes.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def minutes_to_hours(minutes: int) -> Decimal:
    return (Decimal(minutes) / MINUTES_PER_HOUR).quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP)


class TimeEntryAllocator:
    """Assigns record minutes to capacity pools in chronological order.

    Pools are drained in a fixed order: prior month retainer, current month
    retainer, catch-up, then billable catch-up, which is unbounded. A record
    spanning a pool boundary yields one fragment per pool it touches. The
    allocator is pure: it never touches storage.
    """

    def allocate(
        self,
        records: Iterable[AllocatableRecord],
        prior_month_capacity_hours: Decimal,
        current_month_capacity_hours: Decimal,
        catch_up_threshold_hours: Decimal = ZERO,
    ) -> AllocationPlan:
        prior_capacity = max(0, hours_to_minutes(prior_month_capacity_hours))
        current_capacity = max(0, hours_to_minutes(current_month_capacity_hours))
        threshold = hours_to_minutes(catch_up_threshold_hours)
        catch_up_capacity = max(0, threshold - (prior_capacity + current_capacity))

        plan = AllocationPlan()
        pools = [
            (AllocationType.PRIOR_MONTH_RETAINER, plan.prior_month_retainer_fragments),
            (AllocationType.CURRENT_MONTH_RETAINER, plan.current_month_retainer_fragments),
            (AllocationType.CATCH_UP, plan.catch_up_fragments),
        ]
        capacities = [prior_capacity, current_capacity, catch_up_capacity]

        for record in sorted(records, key=lambda r: (r.date_worked, r.id)):
            remaining = record.minutes_worked
            for index, (allocation_type, fragments) in enumerate(pools):
                if remaining <= 0:
                    break
                taken = min(remaining, capacities[index])
                if taken <= 0:
                    continue
                fragments.append(self._fragment(record, taken, allocation_type))
                capacities[index] -= taken
                remaining -= taken
            if remaining > 0:
                plan.billable_catchup_fragments.append(
                    self._fragment(record, remaining, AllocationType.BILLABLE_CATCHUP)
                )

        plan.total_prior_month_retainer_hours = self._total(plan.prior_month_retainer_fragments)
        plan.total_current_month_retainer_hours = self._total(plan.current_month_retainer_fragments)
        plan.total_catch_up_hours = self._total(plan.catch_up_fragments)
        plan.total_billable_catchup_hours = self._total(plan.billable_catchup_fragments)

        logger.debug(
            "Allocated %d fragments: prior=%s current=%s catch_up=%s billable=%s",
            plan.total_fragments,
            plan.total_prior_month_retainer_hours,
            plan.total_current_month_retainer_hours,
            plan.total_catch_up_hours,
            plan.total_billable_catchup_hours,
        )
        return plan

    @staticmethod
    def _fragment(
        record: AllocatableRecord, minutes: int, allocation_type: AllocationType
    ) -> TimeFragment:
        return TimeFragment(
            original_record_id=record.id,
            minutes=minutes,
            date_worked=record.date_worked,
            allocation_type=allocation_type,
            description=getattr(record, "name", "") or "",
            user_id=getattr(record, "user_id", None),
            linked_line_id=getattr(record, "client_invoice_line_id", None),
        )

    @staticmethod
    def _total(fragments: list[TimeFragment]) -> Decimal:
        return minutes_to_hours(sum(f.minutes for f in fragments))
