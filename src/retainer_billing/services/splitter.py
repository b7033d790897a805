"""Time entry splitting."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from retainer_billing.errors import InvalidSplitPoint
from retainer_billing.models import ClientTimeEntry
from retainer_billing.services.repositories import SqlTimeRecordRepository, TimeRecordRepository

logger = logging.getLogger(__name__)

# Attributes an overflow fragment inherits from the entry it was cut from
_COPIED_FIELDS = (
    "client_company_id",
    "project_id",
    "task_id",
    "user_id",
    "creator_user_id",
    "name",
    "date_worked",
    "is_billable",
    "job_type",
)


@dataclass(frozen=True)
class SplitResult:
    """The two entries produced by a split."""

    primary: ClientTimeEntry
    overflow: ClientTimeEntry

    @property
    def total_minutes(self) -> int:
        return self.primary.minutes_worked + self.overflow.minutes_worked


class TimeEntrySplitter:
    """Splits one time entry into two at a minute boundary.

    The primary keeps its id, its link and the first split_at minutes. The
    overflow is a new unlinked entry with the remainder. Both writes land in
    the caller's unit of work and commit or roll back together.
    """

    def __init__(self, session: AsyncSession, time_records: TimeRecordRepository | None = None):
        self.session = session
        self.time_records = time_records or SqlTimeRecordRepository(session)

    async def split_entry(self, record: ClientTimeEntry, split_at_minutes: int) -> SplitResult:
        """Split record so that the primary keeps split_at_minutes.

        Raises:
            InvalidSplitPoint: unless 0 < split_at_minutes < minutes_worked
        """
        original_minutes = record.minutes_worked
        if split_at_minutes <= 0 or split_at_minutes >= original_minutes:
            raise InvalidSplitPoint(record.id, original_minutes, split_at_minutes)

        overflow_fields = {field: getattr(record, field) for field in _COPIED_FIELDS}
        overflow_fields["minutes_worked"] = original_minutes - split_at_minutes
        overflow_fields["client_invoice_line_id"] = None

        record.minutes_worked = split_at_minutes
        await self.time_records.update(record)
        overflow = await self.time_records.create(**overflow_fields)

        logger.debug(
            "Split time entry %s: %d -> %d + %d (new entry %s)",
            record.id,
            original_minutes,
            split_at_minutes,
            overflow.minutes_worked,
            overflow.id,
        )
        return SplitResult(primary=record, overflow=overflow)
