"""Repository interfaces and their SQLAlchemy implementations.

The Protocols describe the seams the orchestrator, splitter and reconciler
accept; the Sql* classes are the defaults the services build from a session.
None of these commit: writes are flushed into the caller's unit of work.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from datetime import date
from decimal import Decimal
from typing import Any, Protocol

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from retainer_billing.calculators.types import ZERO, InvoiceStatus, LineType
from retainer_billing.models import (
    ClientAgreement,
    ClientCompany,
    ClientInvoice,
    ClientInvoiceLine,
    ClientInvoicePayment,
    ClientTimeEntry,
)

MergeKey = tuple[date, int, str, int | None, int | None]


class AgreementProvider(Protocol):
    async def active_agreement_for(self, company_id: int, as_of: date) -> ClientAgreement | None: ...

    async def get_agreement(self, agreement_id: int) -> ClientAgreement | None: ...

    async def get_company(self, company_id: int) -> ClientCompany | None: ...


class TimeRecordRepository(Protocol):
    async def get(self, record_id: int) -> ClientTimeEntry | None: ...

    async def find_unlinked_billable(
        self, company_id: int, start: date, end: date
    ) -> list[ClientTimeEntry]: ...

    async def find_unlinked(self, company_id: int) -> list[ClientTimeEntry]: ...

    async def has_linked_sibling(self, company_id: int, merge_key: MergeKey) -> bool: ...

    async def find_by_line(self, line_id: int) -> list[ClientTimeEntry]: ...

    async def link_to_line(self, record: ClientTimeEntry, line_id: int) -> None: ...

    async def unlink(self, record: ClientTimeEntry) -> None: ...

    async def unlink_lines(self, line_ids: Sequence[int]) -> int: ...

    async def create(self, **fields: Any) -> ClientTimeEntry: ...

    async def update(self, record: ClientTimeEntry) -> ClientTimeEntry: ...

    async def delete(self, record: ClientTimeEntry) -> None: ...


class InvoiceRepository(Protocol):
    async def get(self, invoice_id: int) -> ClientInvoice | None: ...

    async def find_overlapping(
        self,
        company_id: int,
        agreement_id: int,
        start: date,
        end: date,
        exclude_id: int | None = None,
    ) -> ClientInvoice | None: ...

    async def find_for_period(
        self, company_id: int, agreement_id: int, start: date, end: date
    ) -> ClientInvoice | None: ...

    async def find_any_for_period(
        self, company_id: int, agreement_id: int, start: date, end: date
    ) -> ClientInvoice | None: ...

    async def find_prior_non_void(
        self, company_id: int, agreement_id: int, before: date
    ) -> ClientInvoice | None: ...

    async def sum_unused_in_window(self, agreement_id: int, start: date, end: date) -> Decimal: ...

    async def list_before(self, agreement_id: int, before: date) -> list[ClientInvoice]: ...

    async def list_for_company(self, company_id: int) -> list[ClientInvoice]: ...

    async def next_invoice_number(
        self, company_id: int, company_name: str, period_start: date, prefix_length: int = 4
    ) -> str: ...

    async def create(self, **fields: Any) -> ClientInvoice: ...

    async def save(self, invoice: ClientInvoice) -> ClientInvoice: ...

    async def delete(self, invoice: ClientInvoice) -> None: ...

    async def lines_for(self, invoice_id: int) -> list[ClientInvoiceLine]: ...

    async def get_line(self, line_id: int) -> ClientInvoiceLine | None: ...

    async def add_line(self, **fields: Any) -> ClientInvoiceLine: ...

    async def delete_lines(self, lines: Sequence[ClientInvoiceLine]) -> None: ...

    async def get_payment(self, payment_id: int) -> ClientInvoicePayment | None: ...

    async def add_payment(self, **fields: Any) -> ClientInvoicePayment: ...

    async def save_payment(self, payment: ClientInvoicePayment) -> ClientInvoicePayment: ...

    async def delete_payment(self, payment: ClientInvoicePayment) -> None: ...

    async def payments_total(self, invoice_id: int) -> Decimal: ...


def _not_void():
    return ClientInvoice.status != InvoiceStatus.VOID.value


def _nullable_eq(column, value):
    return column.is_(None) if value is None else column == value


class SqlAgreementProvider:
    """Agreements and companies backed by the ORM."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_company(self, company_id: int) -> ClientCompany | None:
        return await self.session.get(ClientCompany, company_id)

    async def create_company(self, company_name: str) -> ClientCompany:
        company = ClientCompany(company_name=company_name)
        self.session.add(company)
        await self.session.flush()
        return company

    async def get_agreement(self, agreement_id: int) -> ClientAgreement | None:
        return await self.session.get(ClientAgreement, agreement_id)

    async def create_agreement(self, **fields: Any) -> ClientAgreement:
        """Create an agreement after validating its terms.

        Raises ConfigurationError before anything is written.
        """
        agreement = ClientAgreement(**fields)
        if agreement.catch_up_threshold_hours is None:
            agreement.catch_up_threshold_hours = ZERO
        if agreement.rollover_months is None:
            agreement.rollover_months = 0
        agreement.validate()
        self.session.add(agreement)
        await self.session.flush()
        return agreement

    async def active_agreement_for(self, company_id: int, as_of: date) -> ClientAgreement | None:
        """The most recently started agreement in effect on as_of."""
        result = await self.session.execute(
            select(ClientAgreement)
            .where(
                ClientAgreement.client_company_id == company_id,
                ClientAgreement.active_date <= as_of,
                or_(
                    ClientAgreement.termination_date.is_(None),
                    ClientAgreement.termination_date >= as_of,
                ),
            )
            .order_by(ClientAgreement.active_date.desc(), ClientAgreement.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()


class SqlTimeRecordRepository:
    """Time entries backed by the ORM."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, record_id: int) -> ClientTimeEntry | None:
        return await self.session.get(ClientTimeEntry, record_id)

    async def find_unlinked_billable(
        self, company_id: int, start: date, end: date
    ) -> list[ClientTimeEntry]:
        """Billable, unlinked entries worked within [start, end], oldest first."""
        result = await self.session.execute(
            select(ClientTimeEntry)
            .where(
                ClientTimeEntry.client_company_id == company_id,
                ClientTimeEntry.client_invoice_line_id.is_(None),
                ClientTimeEntry.is_billable.is_(True),
                ClientTimeEntry.date_worked >= start,
                ClientTimeEntry.date_worked <= end,
            )
            .order_by(ClientTimeEntry.date_worked, ClientTimeEntry.id)
        )
        return list(result.scalars().all())

    async def find_unlinked(self, company_id: int) -> list[ClientTimeEntry]:
        result = await self.session.execute(
            select(ClientTimeEntry)
            .where(
                ClientTimeEntry.client_company_id == company_id,
                ClientTimeEntry.client_invoice_line_id.is_(None),
            )
            .order_by(ClientTimeEntry.id)
        )
        return list(result.scalars().all())

    async def has_linked_sibling(self, company_id: int, merge_key: MergeKey) -> bool:
        """Whether any entry sharing the merge key is linked to a line."""
        date_worked, user_id, name, project_id, task_id = merge_key
        result = await self.session.execute(
            select(func.count(ClientTimeEntry.id)).where(
                ClientTimeEntry.client_company_id == company_id,
                ClientTimeEntry.date_worked == date_worked,
                ClientTimeEntry.user_id == user_id,
                ClientTimeEntry.name == name,
                _nullable_eq(ClientTimeEntry.project_id, project_id),
                _nullable_eq(ClientTimeEntry.task_id, task_id),
                ClientTimeEntry.client_invoice_line_id.is_not(None),
            )
        )
        return (result.scalar_one() or 0) > 0

    async def find_by_line(self, line_id: int) -> list[ClientTimeEntry]:
        result = await self.session.execute(
            select(ClientTimeEntry)
            .where(ClientTimeEntry.client_invoice_line_id == line_id)
            .order_by(ClientTimeEntry.date_worked, ClientTimeEntry.id)
        )
        return list(result.scalars().all())

    async def linked_minutes_for_invoice(self, invoice_id: int) -> int:
        """Total minutes of entries linked to any line of the invoice."""
        result = await self.session.execute(
            select(func.coalesce(func.sum(ClientTimeEntry.minutes_worked), 0))
            .join(ClientInvoiceLine, ClientInvoiceLine.id == ClientTimeEntry.client_invoice_line_id)
            .where(ClientInvoiceLine.client_invoice_id == invoice_id)
        )
        return int(result.scalar_one())

    async def link_to_line(self, record: ClientTimeEntry, line_id: int) -> None:
        record.client_invoice_line_id = line_id
        await self.session.flush()

    async def unlink(self, record: ClientTimeEntry) -> None:
        record.client_invoice_line_id = None
        await self.session.flush()

    async def unlink_lines(self, line_ids: Sequence[int]) -> int:
        """Detach every entry linked to the given lines."""
        if not line_ids:
            return 0
        await self.session.flush()
        result = await self.session.execute(
            update(ClientTimeEntry)
            .where(ClientTimeEntry.client_invoice_line_id.in_(list(line_ids)))
            .values(client_invoice_line_id=None)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount or 0

    async def create(self, **fields: Any) -> ClientTimeEntry:
        record = ClientTimeEntry(**fields)
        self.session.add(record)
        await self.session.flush()
        return record

    async def update(self, record: ClientTimeEntry) -> ClientTimeEntry:
        self.session.add(record)
        await self.session.flush()
        return record

    async def delete(self, record: ClientTimeEntry) -> None:
        await self.session.delete(record)
        await self.session.flush()


class SqlInvoiceRepository:
    """Invoices, lines and payments backed by the ORM."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, invoice_id: int) -> ClientInvoice | None:
        return await self.session.get(ClientInvoice, invoice_id)

    async def find_overlapping(
        self,
        company_id: int,
        agreement_id: int,
        start: date,
        end: date,
        exclude_id: int | None = None,
    ) -> ClientInvoice | None:
        """First non-void invoice of the agreement intersecting [start, end]."""
        stmt = (
            select(ClientInvoice)
            .where(
                ClientInvoice.client_company_id == company_id,
                ClientInvoice.client_agreement_id == agreement_id,
                _not_void(),
                ClientInvoice.period_start <= end,
                ClientInvoice.period_end >= start,
            )
            .order_by(ClientInvoice.period_start, ClientInvoice.id)
            .limit(1)
        )
        if exclude_id is not None:
            stmt = stmt.where(ClientInvoice.id != exclude_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_for_period(
        self, company_id: int, agreement_id: int, start: date, end: date
    ) -> ClientInvoice | None:
        """The non-void invoice for exactly this period, if any."""
        result = await self.session.execute(
            select(ClientInvoice)
            .where(
                ClientInvoice.client_company_id == company_id,
                ClientInvoice.client_agreement_id == agreement_id,
                ClientInvoice.period_start == start,
                ClientInvoice.period_end == end,
                _not_void(),
            )
            .order_by(ClientInvoice.id)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_any_for_period(
        self, company_id: int, agreement_id: int, start: date, end: date
    ) -> ClientInvoice | None:
        """The latest invoice for exactly this period, void included."""
        result = await self.session.execute(
            select(ClientInvoice)
            .where(
                ClientInvoice.client_company_id == company_id,
                ClientInvoice.client_agreement_id == agreement_id,
                ClientInvoice.period_start == start,
                ClientInvoice.period_end == end,
            )
            .order_by(ClientInvoice.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_prior_non_void(
        self, company_id: int, agreement_id: int, before: date
    ) -> ClientInvoice | None:
        """Latest non-void invoice of the agreement ending before a date."""
        result = await self.session.execute(
            select(ClientInvoice)
            .where(
                ClientInvoice.client_company_id == company_id,
                ClientInvoice.client_agreement_id == agreement_id,
                ClientInvoice.period_end < before,
                _not_void(),
            )
            .order_by(ClientInvoice.period_end.desc(), ClientInvoice.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_for_company(self, company_id: int) -> list[ClientInvoice]:
        """Every invoice of the company, void included, newest period first."""
        result = await self.session.execute(
            select(ClientInvoice)
            .where(ClientInvoice.client_company_id == company_id)
            .order_by(ClientInvoice.period_start.desc(), ClientInvoice.id.desc())
        )
        return list(result.scalars().all())

    async def list_before(self, agreement_id: int, before: date) -> list[ClientInvoice]:
        """Every non-void invoice of the agreement starting before a date, oldest first."""
        result = await self.session.execute(
            select(ClientInvoice)
            .where(
                ClientInvoice.client_agreement_id == agreement_id,
                ClientInvoice.period_start < before,
                _not_void(),
            )
            .order_by(ClientInvoice.period_start, ClientInvoice.id)
        )
        return list(result.scalars().all())

    async def sum_unused_in_window(self, agreement_id: int, start: date, end: date) -> Decimal:
        """Plain sum of unused hours over invoices starting in [start, end)."""
        result = await self.session.execute(
            select(func.coalesce(func.sum(ClientInvoice.unused_hours_balance), 0)).where(
                ClientInvoice.client_agreement_id == agreement_id,
                ClientInvoice.period_start >= start,
                ClientInvoice.period_start < end,
                _not_void(),
            )
        )
        return Decimal(str(result.scalar_one()))

    async def next_invoice_number(
        self, company_id: int, company_name: str, period_start: date, prefix_length: int = 4
    ) -> str:
        """Next free {PREFIX}-{YYYYMM}-{SEQ:03d} for the company and month.

        Void invoices keep their numbers, so they count as used.
        """
        prefix = re.sub(r"[^A-Za-z0-9]", "", company_name)[:prefix_length].upper()
        year_month = period_start.strftime("%Y%m")
        stem = f"{prefix}-{year_month}-" if prefix else f"{year_month}-"

        result = await self.session.execute(
            select(ClientInvoice.invoice_number).where(
                ClientInvoice.client_company_id == company_id,
                ClientInvoice.invoice_number.like(f"{stem}%"),
            )
        )
        used = set()
        for number in result.scalars().all():
            suffix = number[len(stem):]
            if suffix.isdigit():
                used.add(int(suffix))

        seq = max(used, default=0) + 1
        return f"{stem}{seq:03d}"

    async def create(self, **fields: Any) -> ClientInvoice:
        invoice = ClientInvoice(**fields)
        self.session.add(invoice)
        await self.session.flush()
        return invoice

    async def save(self, invoice: ClientInvoice) -> ClientInvoice:
        self.session.add(invoice)
        await self.session.flush()
        return invoice

    async def delete(self, invoice: ClientInvoice) -> None:
        await self.session.delete(invoice)
        await self.session.flush()

    async def lines_for(self, invoice_id: int) -> list[ClientInvoiceLine]:
        result = await self.session.execute(
            select(ClientInvoiceLine)
            .where(ClientInvoiceLine.client_invoice_id == invoice_id)
            .order_by(ClientInvoiceLine.sort_order, ClientInvoiceLine.id)
        )
        return list(result.scalars().all())

    async def get_line(self, line_id: int) -> ClientInvoiceLine | None:
        return await self.session.get(ClientInvoiceLine, line_id)

    async def add_line(self, **fields: Any) -> ClientInvoiceLine:
        line_type = fields.get("line_type")
        if isinstance(line_type, LineType):
            fields["line_type"] = line_type.value
        line = ClientInvoiceLine(**fields)
        self.session.add(line)
        await self.session.flush()
        return line

    async def delete_lines(self, lines: Sequence[ClientInvoiceLine]) -> None:
        for line in lines:
            await self.session.delete(line)
        await self.session.flush()

    async def get_payment(self, payment_id: int) -> ClientInvoicePayment | None:
        return await self.session.get(ClientInvoicePayment, payment_id)

    async def add_payment(self, **fields: Any) -> ClientInvoicePayment:
        payment = ClientInvoicePayment(**fields)
        self.session.add(payment)
        await self.session.flush()
        return payment

    async def save_payment(self, payment: ClientInvoicePayment) -> ClientInvoicePayment:
        self.session.add(payment)
        await self.session.flush()
        return payment

    async def delete_payment(self, payment: ClientInvoicePayment) -> None:
        await self.session.delete(payment)
        await self.session.flush()

    async def payments_total(self, invoice_id: int) -> Decimal:
        result = await self.session.execute(
            select(func.coalesce(func.sum(ClientInvoicePayment.amount), 0)).where(
                ClientInvoicePayment.client_invoice_id == invoice_id
            )
        )
        return Decimal(str(result.scalar_one()))


__all__ = [
    "AgreementProvider",
    "InvoiceRepository",
    "MergeKey",
    "SqlAgreementProvider",
    "SqlInvoiceRepository",
    "SqlTimeRecordRepository",
    "TimeRecordRepository",
]
