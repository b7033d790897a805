"""Invoice service - orchestrates generation, lifecycle and editing of invoices."""

from __future__ import annotations

import calendar
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from retainer_billing.calculators.allocator import TimeEntryAllocator, hours_to_minutes, minutes_to_hours
from retainer_billing.calculators.line_builder import InvoiceLineBuilder, InvoiceLineCandidate
from retainer_billing.calculators.rollover import BalanceCalculator
from retainer_billing.calculators.types import (
    ZERO,
    AllocationPlan,
    HoursBreakdown,
    InvoiceStatus,
    LineType,
    OpeningBalance,
)
from retainer_billing.config import Settings, get_settings
from retainer_billing.database import acquire_advisory_lock
from retainer_billing.errors import (
    BillingError,
    InvalidTransition,
    NoActiveAgreement,
    NotEditable,
    OverlappingPeriod,
)
from retainer_billing.models import (
    ClientAgreement,
    ClientCompany,
    ClientInvoice,
    ClientInvoiceLine,
    ClientInvoicePayment,
    ClientTimeEntry,
)
from retainer_billing.services.reconciler import FragmentReconciler
from retainer_billing.services.repositories import (
    AgreementProvider,
    InvoiceRepository,
    SqlAgreementProvider,
    SqlInvoiceRepository,
    SqlTimeRecordRepository,
    TimeRecordRepository,
)
from retainer_billing.services.splitter import TimeEntrySplitter
from retainer_billing.services.state_machine import InvoiceStateMachine

logger = logging.getLogger(__name__)

_UNSET: Any = object()

_BREAKDOWN_LINE_TYPES = frozenset(
    {
        LineType.PRIOR_MONTH_RETAINER.value,
        LineType.PRIOR_MONTH_BILLABLE.value,
        LineType.ADDITIONAL_HOURS.value,
    }
)


def month_bounds(day: date) -> tuple[date, date]:
    """First and last day of the calendar month containing day."""
    last = calendar.monthrange(day.year, day.month)[1]
    return day.replace(day=1), day.replace(day=last)


def add_months(day: date, months: int) -> date:
    """Shift a date by whole months, clamping to the end of shorter months."""
    index = day.year * 12 + day.month - 1 + months
    year, month = divmod(index, 12)
    last = calendar.monthrange(year, month + 1)[1]
    return date(year, month + 1, min(day.day, last))


def months_between(earlier: date, later: date) -> int:
    return (later.year - earlier.year) * 12 + later.month - earlier.month


@dataclass
class BulkGenerationResult:
    """Outcome of walking every month of an agreement."""

    generated: list[dict[str, Any]] = field(default_factory=list)
    updated: list[dict[str, Any]] = field(default_factory=list)
    skipped: list[dict[str, Any]] = field(default_factory=list)

    @property
    def summary(self) -> dict[str, int]:
        return {
            "generated_count": len(self.generated),
            "updated_count": len(self.updated),
            "skipped_count": len(self.skipped),
        }


class InvoiceOrchestrator:
    """Service for generating invoices and managing their lifecycle.

    Operations:
    - generate_invoice: Create or regenerate the invoice for one period
    - generate_for_period: Resolve the active agreement, then generate
    - generate_all_monthly_invoices: Walk every calendar month of an agreement
    - issue / mark_paid / void / unvoid: Status transitions
    - update_invoice / add_line_item / update_line_item / remove_line_item /
      link_time_entry / unlink_time_entry / delete_invoice: Draft-only editing
    - record_payment / update_payment / delete_payment: Payments
    - hours_breakdown / invoice_history: Read-only reporting

    Nothing here commits. Run each call inside database.get_session() so that
    a failure at any step rolls back every write made by that call.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        agreements: AgreementProvider | None = None,
        time_records: TimeRecordRepository | None = None,
        invoices: InvoiceRepository | None = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.agreements = agreements or SqlAgreementProvider(session)
        self.time_records = time_records or SqlTimeRecordRepository(session)
        self.invoices = invoices or SqlInvoiceRepository(session)
        self.calculator = BalanceCalculator()
        self.allocator = TimeEntryAllocator()
        self.splitter = TimeEntrySplitter(session, self.time_records)
        self.reconciler = FragmentReconciler(session, self.time_records)

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def generate_for_period(
        self, company_id: int, period_start: date, period_end: date
    ) -> ClientInvoice:
        """Generate an invoice using the agreement active at period_end."""
        company = await self.agreements.get_company(company_id)
        if company is None:
            raise ValueError(f"Client company {company_id} not found")

        agreement = await self.agreements.active_agreement_for(company_id, period_end)
        if agreement is None:
            raise NoActiveAgreement(company_id, period_end)

        return await self.generate_invoice(company, agreement, period_start, period_end)

    async def generate_invoice(
        self,
        company: ClientCompany,
        agreement: ClientAgreement,
        period_start: date,
        period_end: date,
    ) -> ClientInvoice:
        """Generate or regenerate the invoice for one billing period.

        Args:
            company: The client company
            agreement: The agreement whose terms apply
            period_start: First day of the period (inclusive)
            period_end: Last day of the period (inclusive)

        Returns:
            The draft invoice

        Regenerating a draft replaces only system-generated lines. Manual
        lines keep their ids, amounts and linked time entries and are
        renumbered after the system lines. Entries on system lines are
        relinked from scratch.
        """
        if period_end < period_start:
            raise ValueError("period_end must not precede period_start")
        if agreement.client_company_id != company.id:
            raise ValueError(
                f"Agreement {agreement.id} does not belong to client company {company.id}"
            )
        if agreement.terminated_before(period_start):
            raise NoActiveAgreement(
                company.id,
                period_start,
                reason=f"agreement {agreement.id} terminated on {agreement.termination_date}",
            )
        if agreement.active_date > period_end:
            raise NoActiveAgreement(
                company.id,
                period_end,
                reason=f"agreement {agreement.id} starts on {agreement.active_date}",
            )

        await acquire_advisory_lock(self.session, "client_invoice", company.id, agreement.id)

        invoice = await self.invoices.find_for_period(
            company.id, agreement.id, period_start, period_end
        )
        if invoice is not None and not InvoiceStateMachine.can_edit(invoice.status):
            raise OverlappingPeriod(
                invoice.id, invoice.invoice_number, invoice.period_start, invoice.period_end
            )

        overlapping = await self.invoices.find_overlapping(
            company.id,
            agreement.id,
            period_start,
            period_end,
            exclude_id=invoice.id if invoice is not None else None,
        )
        if overlapping is not None:
            raise OverlappingPeriod(
                overlapping.id,
                overlapping.invoice_number,
                overlapping.period_start,
                overlapping.period_end,
            )

        previous = await self.invoices.find_prior_non_void(company.id, agreement.id, period_start)
        previous_negative = Decimal(previous.negative_hours_balance) if previous else ZERO
        previous_months_unused = await self._previous_months_unused(agreement, period_start)

        manual_lines: list[ClientInvoiceLine] = []
        manual_minutes = 0
        if invoice is not None:
            manual_lines = await self._clear_for_regeneration(invoice)
            for line in manual_lines:
                linked = await self.time_records.find_by_line(line.id)
                manual_minutes += sum(r.minutes_worked for r in linked)

        records = await self.time_records.find_unlinked_billable(
            company.id, period_start, period_end
        )
        # Entries on manual lines are priced by the operator and use no capacity
        hours_worked = minutes_to_hours(sum(r.minutes_worked for r in records))

        carry_overage = self.settings.carry_overage_as_negative_balance
        summary = self.calculator.calculate_month_summary(
            Decimal(agreement.monthly_retainer_hours),
            hours_worked,
            previous_months_unused,
            agreement.rollover_months,
            previous_negative,
            bill_excess_immediately=not carry_overage,
            period_key=period_start.strftime("%Y-%m"),
        )
        opening, closing = summary.opening, summary.closing

        threshold = Decimal(agreement.catch_up_threshold_hours or 0)
        plan = self.allocator.allocate(
            records,
            opening.rollover_hours,
            opening.effective_retainer_hours,
            threshold,
        )
        retroactive = agreement.active_date > period_start
        buffer_hours = self._catch_up_buffer(plan, opening, threshold) if retroactive else ZERO
        billed_hours = closing.excess_hours + buffer_hours
        covered_hours = closing.hours_used_from_retainer + closing.hours_used_from_rollover

        fields = {
            "retainer_hours_included": Decimal(agreement.monthly_retainer_hours),
            "hours_worked": hours_worked + minutes_to_hours(manual_minutes),
            "rollover_hours_used": closing.hours_used_from_rollover,
            "unused_hours_balance": closing.unused_hours,
            "negative_hours_balance": closing.negative_balance,
            "hours_billed_at_rate": billed_hours,
            "starting_unused_hours": opening.rollover_hours,
            "starting_negative_hours": previous_negative,
            "status": InvoiceStatus.DRAFT.value,
        }

        regenerated = invoice is not None
        if invoice is None:
            invoice_number = await self.invoices.next_invoice_number(
                company.id,
                company.company_name,
                period_start,
                self.settings.invoice_number_prefix_length,
            )
            invoice = await self.invoices.create(
                client_company_id=company.id,
                client_agreement_id=agreement.id,
                invoice_number=invoice_number,
                period_start=period_start,
                period_end=period_end,
                invoice_total=ZERO,
                **fields,
            )
        else:
            for name, value in fields.items():
                setattr(invoice, name, value)
            await self.invoices.save(invoice)

        candidates = self._build_line_candidates(
            agreement, retroactive, period_start, covered_hours, billed_hours, closing.hours_used_from_rollover
        )
        system_lines = []
        for sort_order, candidate in enumerate(candidates, start=1):
            system_lines.append(
                await self._write_line(invoice, candidate, sort_order, agreement.id)
            )
        for sort_order, line in enumerate(manual_lines, start=len(system_lines) + 1):
            line.sort_order = sort_order

        covered_line = system_lines[0]
        additional_line = next(
            (l for l in system_lines if l.line_type == LineType.ADDITIONAL_HOURS.value), None
        )
        overflow_line = (
            additional_line
            if additional_line is not None and closing.excess_hours > 0
            else covered_line
        )
        await self._link_records(records, hours_to_minutes(covered_hours), covered_line, overflow_line)

        await self.recalculate_total(invoice)

        logger.info(
            "%s invoice %s for client company %s (%s - %s): worked=%s billed=%s total=%s",
            "Regenerated" if regenerated else "Generated",
            invoice.invoice_number,
            company.id,
            period_start,
            period_end,
            invoice.hours_worked,
            billed_hours,
            invoice.invoice_total,
        )
        return invoice

    async def generate_all_monthly_invoices(
        self, company_id: int, through: date | None = None
    ) -> BulkGenerationResult:
        """Generate invoices for every calendar month of the active agreement.

        Walks from the agreement's start month to its termination date or
        `through` (default today), whichever is earlier. Drafts are
        regenerated, missing months are created, and issued, paid or void
        months are skipped. A month that fails is recorded as skipped with its
        error and the walk continues.
        """
        through = through or date.today()
        company = await self.agreements.get_company(company_id)
        if company is None:
            raise ValueError(f"Client company {company_id} not found")

        agreement = await self.agreements.active_agreement_for(company_id, through)
        if agreement is None:
            raise NoActiveAgreement(company_id, through)

        end = through
        if agreement.termination_date is not None and agreement.termination_date < end:
            end = agreement.termination_date

        result = BulkGenerationResult()
        current, _ = month_bounds(agreement.active_date)
        while current <= end:
            period_start, period_end = month_bounds(current)
            period = period_start.strftime("%Y-%m")
            current = add_months(current, 1)

            existing = await self.invoices.find_any_for_period(
                company.id, agreement.id, period_start, period_end
            )
            if existing is not None and existing.status != InvoiceStatus.DRAFT.value:
                result.skipped.append(
                    {
                        "period": period,
                        "invoice_id": existing.id,
                        "status": existing.status,
                        "reason": f"Invoice already exists with status: {existing.status}",
                    }
                )
                continue

            try:
                invoice = await self.generate_invoice(company, agreement, period_start, period_end)
            except BillingError as e:
                logger.exception("Could not generate invoice for %s (company %s)", period, company_id)
                result.skipped.append({"period": period, "error": str(e)})
                continue

            entry = {
                "period": period,
                "invoice_id": invoice.id,
                "invoice_number": invoice.invoice_number,
            }
            if existing is not None:
                result.updated.append(entry)
            else:
                result.generated.append(entry)

        logger.info("Bulk generation for client company %s: %s", company_id, result.summary)
        return result

    async def _previous_months_unused(
        self, agreement: ClientAgreement, period_start: date
    ) -> dict[int, Decimal]:
        """Unused hours still unconsumed from earlier invoices, keyed by months ago.

        Replays the agreement's invoice history as a FIFO ledger: each invoice
        drains the rollover it used from the oldest eligible earlier entries,
        then adds its own unused hours. Entries older than the rollover window
        are returned too so the calculator can report them as expired.
        """
        window = agreement.rollover_months
        window_start = add_months(period_start.replace(day=1), -(window + 1))
        if await self.invoices.sum_unused_in_window(agreement.id, window_start, period_start) <= 0:
            return {}

        history = await self.invoices.list_before(agreement.id, period_start)
        ledger: OrderedDict[int, tuple[date, Decimal]] = OrderedDict()

        for past in history:
            consumed = Decimal(past.rollover_hours_used or 0)
            for invoice_id in list(ledger):
                if consumed <= 0:
                    break
                started, hours = ledger[invoice_id]
                if months_between(started, past.period_start) > window:
                    continue
                taken = min(hours, consumed)
                consumed -= taken
                if hours - taken > 0:
                    ledger[invoice_id] = (started, hours - taken)
                else:
                    del ledger[invoice_id]

            unused = Decimal(past.unused_hours_balance or 0)
            if unused > 0:
                ledger[past.id] = (past.period_start, unused)

        previous: dict[int, Decimal] = {}
        for started, hours in ledger.values():
            months_ago = max(1, months_between(started, period_start))
            if months_ago > window + 1:
                continue
            previous[months_ago] = previous.get(months_ago, ZERO) + hours
        return previous

    async def _clear_for_regeneration(self, invoice: ClientInvoice) -> list[ClientInvoiceLine]:
        """Detach entries from system lines, drop those lines, recombine fragments.

        Returns the surviving manual lines in display order, their links intact.
        """
        lines = await self.invoices.lines_for(invoice.id)
        system_lines = [line for line in lines if line.is_system_generated]
        await self.time_records.unlink_lines([line.id for line in system_lines])
        await self.invoices.delete_lines(system_lines)
        await self.reconciler.recombine_unlinked_fragments(invoice.client_company_id)
        return [line for line in lines if not line.is_system_generated]

    @staticmethod
    def _catch_up_buffer(plan: AllocationPlan, opening: OpeningBalance, threshold: Decimal) -> Decimal:
        """Hours billed to restore the catch-up threshold after allocation.

        Only applies to work that predates the agreement; an ordinary period
        whose retainer and rollover are fully used bills nothing extra.
        """
        if threshold <= 0:
            return ZERO
        capacity = opening.rollover_hours + opening.effective_retainer_hours
        remaining = max(ZERO, capacity - plan.covered_hours)
        return InvoiceLineBuilder.round_hours(
            max(ZERO, threshold - remaining - plan.total_catch_up_hours)
        )

    @staticmethod
    def _build_line_candidates(
        agreement: ClientAgreement,
        retroactive: bool,
        period_start: date,
        covered_hours: Decimal,
        billed_hours: Decimal,
        rollover_used: Decimal,
    ) -> list[InvoiceLineCandidate]:
        candidates = []
        if retroactive and covered_hours > 0:
            candidates.append(
                InvoiceLineBuilder.create_prior_month_retainer_line(covered_hours, period_start)
            )
        candidates.append(
            InvoiceLineBuilder.create_retainer_line(
                Decimal(agreement.monthly_retainer_hours),
                Decimal(agreement.monthly_retainer_fee),
                period_start,
            )
        )
        if billed_hours > 0:
            candidates.append(
                InvoiceLineBuilder.create_additional_hours_line(
                    billed_hours, Decimal(agreement.hourly_rate), period_start
                )
            )
        if rollover_used > 0:
            candidates.append(InvoiceLineBuilder.create_credit_line(rollover_used, period_start))
        return candidates

    async def _write_line(
        self,
        invoice: ClientInvoice,
        candidate: InvoiceLineCandidate,
        sort_order: int,
        agreement_id: int | None = None,
    ) -> ClientInvoiceLine:
        return await self.invoices.add_line(
            client_invoice_id=invoice.id,
            client_agreement_id=agreement_id,
            description=candidate.description,
            quantity=candidate.quantity,
            unit_price=candidate.unit_price,
            line_total=candidate.line_total,
            line_type=candidate.line_type,
            hours=candidate.hours,
            line_date=candidate.line_date,
            sort_order=sort_order,
        )

    async def _link_records(
        self,
        records: list[ClientTimeEntry],
        covered_minutes: int,
        covered_line: ClientInvoiceLine,
        overflow_line: ClientInvoiceLine,
    ) -> None:
        """Link entries chronologically, splitting the one that straddles the boundary."""
        remaining = covered_minutes
        for record in records:
            if overflow_line is covered_line or record.minutes_worked <= remaining:
                await self.time_records.link_to_line(record, covered_line.id)
                remaining -= record.minutes_worked
            elif remaining > 0:
                split = await self.splitter.split_entry(record, remaining)
                await self.time_records.link_to_line(split.primary, covered_line.id)
                await self.time_records.link_to_line(split.overflow, overflow_line.id)
                remaining = 0
            else:
                await self.time_records.link_to_line(record, overflow_line.id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def get_invoice(self, invoice_id: int) -> ClientInvoice:
        invoice = await self.invoices.get(invoice_id)
        if invoice is None:
            raise ValueError(f"Invoice {invoice_id} not found")
        return invoice

    async def issue(self, invoice_id: int, issued_at: datetime | None = None) -> ClientInvoice:
        """Issue a draft invoice, fixing its issue and due dates."""
        invoice = await self.get_invoice(invoice_id)
        InvoiceStateMachine.validate_transition(invoice.status, InvoiceStatus.ISSUED.value)

        invoice.issue_date = issued_at or datetime.now(timezone.utc)
        if invoice.due_date is None:
            invoice.due_date = invoice.issue_date.date() + timedelta(
                days=self.settings.payment_terms_days
            )
        invoice.status = InvoiceStatus.ISSUED.value
        await self.invoices.save(invoice)
        logger.info("Issued invoice %s", invoice.invoice_number)
        return invoice

    async def mark_paid(self, invoice_id: int, paid_date: date | None = None) -> ClientInvoice:
        invoice = await self.get_invoice(invoice_id)
        InvoiceStateMachine.validate_transition(invoice.status, InvoiceStatus.PAID.value)

        invoice.paid_date = paid_date or date.today()
        invoice.status = InvoiceStatus.PAID.value
        await self.invoices.save(invoice)
        logger.info("Marked invoice %s paid", invoice.invoice_number)
        return invoice

    async def void(self, invoice_id: int) -> ClientInvoice:
        """Void an invoice and release its time entries for re-billing.

        Rejected for paid invoices and for invoices with payments.
        """
        invoice = await self.get_invoice(invoice_id)
        if await self.invoices.payments_total(invoice.id) > 0:
            raise InvalidTransition(invoice.status, InvoiceStatus.VOID.value, "invoice has payments")
        InvoiceStateMachine.validate_transition(invoice.status, InvoiceStatus.VOID.value)

        lines = await self.invoices.lines_for(invoice.id)
        released = await self.time_records.unlink_lines([line.id for line in lines])

        invoice.status_before_void = invoice.status
        invoice.status = InvoiceStatus.VOID.value
        await self.invoices.save(invoice)
        await self.reconciler.recombine_unlinked_fragments(invoice.client_company_id)

        logger.info("Voided invoice %s (%d time entries released)", invoice.invoice_number, released)
        return invoice

    async def unvoid(self, invoice_id: int, target_status: str = InvoiceStatus.ISSUED.value) -> ClientInvoice:
        """Restore a void invoice to draft, issued or paid.

        The invoice is regenerated while in draft so that its time entries are
        linked again, then moved to the target status. Regeneration recomputes
        hours and amounts from the entries and history as they stand now: the
        restored total matches the voided one only if neither changed while
        the invoice was void. Manual lines are kept as they were.
        """
        target = InvoiceStateMachine.validate_unvoid_target(target_status)
        invoice = await self.get_invoice(invoice_id)
        if invoice.status != InvoiceStatus.VOID.value:
            raise InvalidTransition(invoice.status, target.value, "only void invoices can be restored")
        if await self.invoices.payments_total(invoice.id) > 0:
            raise InvalidTransition(invoice.status, target.value, "invoice has payments")

        company = await self.agreements.get_company(invoice.client_company_id)
        agreement = await self.agreements.get_agreement(invoice.client_agreement_id)

        invoice.status = InvoiceStatus.DRAFT.value
        await self.invoices.save(invoice)
        invoice = await self.generate_invoice(
            company, agreement, invoice.period_start, invoice.period_end
        )

        invoice.status = target.value
        invoice.status_before_void = None
        if target != InvoiceStatus.DRAFT and invoice.issue_date is None:
            invoice.issue_date = datetime.now(timezone.utc)
        if target == InvoiceStatus.PAID and invoice.paid_date is None:
            invoice.paid_date = date.today()
        await self.invoices.save(invoice)

        logger.info("Restored invoice %s to %s", invoice.invoice_number, target.value)
        return invoice

    # ------------------------------------------------------------------
    # Editing (draft only)
    # ------------------------------------------------------------------

    async def _editable_invoice(self, invoice_id: int, action: str) -> ClientInvoice:
        invoice = await self.get_invoice(invoice_id)
        InvoiceStateMachine.ensure_editable(invoice, action)
        return invoice

    async def _invoice_line(self, invoice: ClientInvoice, line_id: int) -> ClientInvoiceLine:
        line = await self.invoices.get_line(line_id)
        if line is None or line.client_invoice_id != invoice.id:
            raise ValueError(f"Line {line_id} not found on invoice {invoice.id}")
        return line

    async def update_invoice(
        self,
        invoice_id: int,
        notes: str | None = _UNSET,
        due_date: date | None = _UNSET,
    ) -> ClientInvoice:
        invoice = await self._editable_invoice(invoice_id, "update")
        if notes is not _UNSET:
            invoice.notes = notes
        if due_date is not _UNSET:
            invoice.due_date = due_date
        await self.invoices.save(invoice)
        return invoice

    async def add_line_item(
        self,
        invoice_id: int,
        description: str,
        quantity: str,
        unit_price: Decimal,
        line_type: LineType | str = LineType.ADJUSTMENT,
        line_date: date | None = None,
    ) -> ClientInvoiceLine:
        """Append an expense or adjustment line and refresh the total."""
        invoice = await self._editable_invoice(invoice_id, "add line item")
        candidate = InvoiceLineBuilder.create_manual_line(
            description, quantity, Decimal(str(unit_price)), LineType(line_type), line_date
        )
        lines = await self.invoices.lines_for(invoice.id)
        sort_order = max((line.sort_order for line in lines), default=0) + 1
        line = await self._write_line(invoice, candidate, sort_order)
        await self.recalculate_total(invoice)
        return line

    async def update_line_item(
        self,
        invoice_id: int,
        line_id: int,
        description: str,
        quantity: str,
        unit_price: Decimal,
    ) -> ClientInvoiceLine:
        invoice = await self._editable_invoice(invoice_id, "update line item")
        line = await self._invoice_line(invoice, line_id)
        if line.is_system_generated:
            raise ValueError("Cannot edit system-generated line items")

        candidate = InvoiceLineBuilder.create_manual_line(
            description, quantity, Decimal(str(unit_price)), LineType(line.line_type)
        )
        line.description = candidate.description
        line.quantity = candidate.quantity
        line.unit_price = candidate.unit_price
        line.line_total = candidate.line_total
        await self.session.flush()
        await self.recalculate_total(invoice)
        return line

    async def remove_line_item(self, invoice_id: int, line_id: int) -> ClientInvoice:
        """Delete a line, unlinking its time entries first."""
        invoice = await self._editable_invoice(invoice_id, "remove line item")
        line = await self._invoice_line(invoice, line_id)
        if line.line_type == LineType.RETAINER.value:
            raise ValueError("Cannot remove the retainer line item")

        linked = await self.time_records.find_by_line(line.id)
        for record in linked:
            await self.time_records.unlink(record)
        invoice.hours_worked = Decimal(invoice.hours_worked) - minutes_to_hours(
            sum(r.minutes_worked for r in linked)
        )
        await self.invoices.delete_lines([line])
        await self.recalculate_total(invoice)
        return invoice

    async def link_time_entry(self, invoice_id: int, entry_id: int, line_id: int) -> ClientTimeEntry:
        invoice = await self._editable_invoice(invoice_id, "link time entry")
        line = await self._invoice_line(invoice, line_id)
        record = await self.time_records.get(entry_id)
        if record is None or record.client_company_id != invoice.client_company_id:
            raise ValueError(f"Time entry {entry_id} not found for client company {invoice.client_company_id}")
        if record.is_linked:
            raise ValueError(f"Time entry {entry_id} is already linked to line {record.client_invoice_line_id}")

        await self.time_records.link_to_line(record, line.id)
        invoice.hours_worked = Decimal(invoice.hours_worked) + minutes_to_hours(record.minutes_worked)
        await self.invoices.save(invoice)
        return record

    async def unlink_time_entry(self, invoice_id: int, entry_id: int) -> ClientTimeEntry:
        invoice = await self._editable_invoice(invoice_id, "unlink time entry")
        record = await self.time_records.get(entry_id)
        if record is None or record.client_invoice_line_id is None:
            raise ValueError(f"Time entry {entry_id} is not linked")
        await self._invoice_line(invoice, record.client_invoice_line_id)

        await self.time_records.unlink(record)
        invoice.hours_worked = Decimal(invoice.hours_worked) - minutes_to_hours(record.minutes_worked)
        await self.invoices.save(invoice)
        return record

    async def delete_invoice(self, invoice_id: int) -> int:
        """Delete a draft invoice with its lines, releasing its time entries.

        Returns the number of time entries released. The invoice number is
        freed for reuse.
        """
        invoice = await self._editable_invoice(invoice_id, "delete")
        lines = await self.invoices.lines_for(invoice.id)
        released = await self.time_records.unlink_lines([line.id for line in lines])
        await self.invoices.delete_lines(lines)
        await self.invoices.delete(invoice)
        await self.reconciler.recombine_unlinked_fragments(invoice.client_company_id)

        logger.info("Deleted invoice %s (%d time entries released)", invoice.invoice_number, released)
        return released

    # ------------------------------------------------------------------
    # Totals and payments
    # ------------------------------------------------------------------

    async def recalculate_total(self, invoice: ClientInvoice) -> Decimal:
        """Set invoice_total to the sum of every line, system and manual."""
        await self.session.flush()
        lines = await self.invoices.lines_for(invoice.id)
        invoice.invoice_total = InvoiceLineBuilder.round_to_cents(
            sum((Decimal(line.line_total) for line in lines), ZERO)
        )
        await self.invoices.save(invoice)
        return invoice.invoice_total

    async def record_payment(
        self,
        invoice_id: int,
        amount: Decimal,
        payment_date: date | None = None,
        payment_method: str | None = None,
        notes: str | None = None,
    ) -> ClientInvoicePayment:
        invoice = await self.get_invoice(invoice_id)
        if invoice.status != InvoiceStatus.ISSUED.value:
            raise NotEditable(invoice.id, invoice.status, "record payment")
        amount = self._payment_amount(amount)
        remaining = Decimal(invoice.invoice_total) - await self.invoices.payments_total(invoice.id)
        if amount > remaining:
            raise ValueError(f"Payment amount {amount} exceeds remaining balance {remaining}")

        payment = await self.invoices.add_payment(
            client_invoice_id=invoice.id,
            amount=amount,
            payment_date=payment_date or date.today(),
            payment_method=payment_method,
            notes=notes,
        )
        logger.info("Recorded payment of %s on invoice %s", amount, invoice.invoice_number)
        return payment

    async def update_payment(
        self,
        invoice_id: int,
        payment_id: int,
        amount: Decimal,
        payment_date: date | None = _UNSET,
        payment_method: str | None = _UNSET,
        notes: str | None = _UNSET,
    ) -> ClientInvoicePayment:
        """Change a payment on an issued or paid invoice.

        The new amount may not push total payments past the invoice total. A
        paid invoice left with an outstanding balance goes back to issued.
        """
        invoice, payment = await self._invoice_payment(invoice_id, payment_id, "update payment")
        amount = self._payment_amount(amount)
        paid_elsewhere = await self.invoices.payments_total(invoice.id) - Decimal(payment.amount)
        allowed = Decimal(invoice.invoice_total) - paid_elsewhere
        if amount > allowed:
            raise ValueError(f"Payment amount {amount} exceeds invoice balance {allowed}")

        payment.amount = amount
        if payment_date is not _UNSET:
            payment.payment_date = payment_date
        if payment_method is not _UNSET:
            payment.payment_method = payment_method
        if notes is not _UNSET:
            payment.notes = notes
        await self.invoices.save_payment(payment)
        await self._reopen_if_underpaid(invoice)
        return payment

    async def delete_payment(self, invoice_id: int, payment_id: int) -> ClientInvoice:
        """Remove a payment; a paid invoice left with a balance goes back to issued."""
        invoice, payment = await self._invoice_payment(invoice_id, payment_id, "delete payment")
        await self.invoices.delete_payment(payment)
        await self._reopen_if_underpaid(invoice)
        logger.info("Deleted payment %s from invoice %s", payment_id, invoice.invoice_number)
        return invoice

    async def _invoice_payment(
        self, invoice_id: int, payment_id: int, action: str
    ) -> tuple[ClientInvoice, ClientInvoicePayment]:
        invoice = await self.get_invoice(invoice_id)
        if invoice.status not in (InvoiceStatus.ISSUED.value, InvoiceStatus.PAID.value):
            raise NotEditable(invoice.id, invoice.status, action)
        payment = await self.invoices.get_payment(payment_id)
        if payment is None or payment.client_invoice_id != invoice.id:
            raise ValueError(f"Payment {payment_id} not found on invoice {invoice.id}")
        return invoice, payment

    async def _reopen_if_underpaid(self, invoice: ClientInvoice) -> None:
        if invoice.status != InvoiceStatus.PAID.value:
            return
        if await self.invoices.payments_total(invoice.id) >= Decimal(invoice.invoice_total):
            return
        invoice.status = InvoiceStatus.ISSUED.value
        invoice.paid_date = None
        await self.invoices.save(invoice)
        logger.info("Invoice %s has an outstanding balance again; status back to issued", invoice.invoice_number)

    @staticmethod
    def _payment_amount(amount: Decimal) -> Decimal:
        amount = InvoiceLineBuilder.round_to_cents(Decimal(str(amount)))
        if amount <= 0:
            raise ValueError("Payment amount must be positive")
        return amount

    async def payments_total(self, invoice_id: int) -> Decimal:
        return await self.invoices.payments_total(invoice_id)

    async def remaining_balance(self, invoice_id: int) -> Decimal:
        invoice = await self.get_invoice(invoice_id)
        return Decimal(invoice.invoice_total) - await self.invoices.payments_total(invoice_id)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def hours_breakdown(self, invoice_id: int) -> HoursBreakdown:
        """Split hours on the time-bearing lines into carried-in and current.

        A prior_month_retainer, prior_month_billable or additional_hours line
        dated before the period counts wholly as carried in. Otherwise its
        linked entries are classed by date_worked against period_start.
        """
        invoice = await self.get_invoice(invoice_id)
        carried_in = ZERO
        current_minutes = 0
        carried_minutes = 0
        for line in await self.invoices.lines_for(invoice.id):
            if line.line_type not in _BREAKDOWN_LINE_TYPES:
                continue
            if line.line_date is not None and line.line_date < invoice.period_start:
                carried_in += Decimal(line.hours or 0)
                continue
            for record in await self.time_records.find_by_line(line.id):
                if record.date_worked < invoice.period_start:
                    carried_minutes += record.minutes_worked
                else:
                    current_minutes += record.minutes_worked

        return HoursBreakdown(
            carried_in_hours=carried_in + minutes_to_hours(carried_minutes),
            current_month_hours=minutes_to_hours(current_minutes),
        )

    async def invoice_history(self, company_id: int) -> list[dict[str, Any]]:
        """Summaries of every invoice of a company, void included, newest first."""
        invoices = await self.invoices.list_for_company(company_id)
        return [
            {
                "id": invoice.id,
                "invoice_number": invoice.invoice_number,
                "period_start": invoice.period_start,
                "period_end": invoice.period_end,
                "invoice_total": invoice.invoice_total,
                "status": invoice.status,
                "issue_date": invoice.issue_date,
                "paid_date": invoice.paid_date,
                "hours_worked": invoice.hours_worked,
                "retainer_hours_included": invoice.retainer_hours_included,
                "unused_hours_balance": invoice.unused_hours_balance,
                "hours_billed_at_rate": invoice.hours_billed_at_rate,
            }
            for invoice in invoices
        ]
