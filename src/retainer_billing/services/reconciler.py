"""Recombination of unlinked time entry fragments."""

from __future__ import annotations

import logging
from collections import defaultdict

from sqlalchemy.ext.asyncio import AsyncSession

from retainer_billing.models import ClientTimeEntry
from retainer_billing.services.repositories import (
    MergeKey,
    SqlTimeRecordRepository,
    TimeRecordRepository,
)

logger = logging.getLogger(__name__)


class FragmentReconciler:
    """Merges fragments left behind by earlier splits.

    Unlinked entries sharing (date_worked, user_id, name, project_id, task_id)
    are collapsed into the one with the lowest id. A group is left alone while
    any entry with the same key is still linked to an invoice line, since
    that entry's sibling fragments belong to a live invoice.
    """

    def __init__(self, session: AsyncSession, time_records: TimeRecordRepository | None = None):
        self.session = session
        self.time_records = time_records or SqlTimeRecordRepository(session)

    async def recombine_unlinked_fragments(self, company_id: int) -> int:
        """Merge unlinked fragments for a company.

        Returns:
            Number of entries eliminated by merging
        """
        groups: dict[MergeKey, list[ClientTimeEntry]] = defaultdict(list)
        for record in await self.time_records.find_unlinked(company_id):
            groups[record.merge_key].append(record)

        eliminated = 0
        for key, records in groups.items():
            if len(records) < 2:
                continue
            if await self.time_records.has_linked_sibling(company_id, key):
                continue

            records.sort(key=lambda r: r.id)
            survivor, *rest = records
            survivor.minutes_worked = sum(r.minutes_worked for r in records)
            for record in rest:
                await self.time_records.delete(record)
            await self.time_records.update(survivor)
            eliminated += len(rest)

        if eliminated:
            logger.info(
                "Recombined %d time entry fragments for client company %s", eliminated, company_id
            )
        return eliminated
