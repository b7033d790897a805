"""Tests for invoice status transitions, editing and payments."""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from retainer_billing.calculators.types import LineType
from retainer_billing.errors import (
    InvalidTargetStatus,
    InvalidTransition,
    NoActiveAgreement,
    NotEditable,
)
from retainer_billing.services.repositories import SqlInvoiceRepository, SqlTimeRecordRepository

JAN_START, JAN_END = date(2024, 1, 1), date(2024, 1, 31)


@pytest.fixture
def generate(orchestrator, agreement, company):
    """Generate the January invoice for the default agreement."""

    async def _generate(start=JAN_START, end=JAN_END):
        return await orchestrator.generate_for_period(company.id, start, end)

    return _generate


@pytest.fixture
def overage_entries(make_entry):
    """13 hours of January work, the second entry crossing the retainer boundary."""

    async def _create():
        return [
            await make_entry(minutes=480, date_worked=date(2024, 1, 10)),
            await make_entry(minutes=300, date_worked=date(2024, 1, 20)),
        ]

    return _create


class TestIssueAndPay:
    """Test forward transitions."""

    async def test_issue_sets_dates(self, orchestrator, generate):
        invoice = await generate()
        issued_at = datetime(2024, 2, 1, 9, 30, tzinfo=timezone.utc)

        invoice = await orchestrator.issue(invoice.id, issued_at)

        assert invoice.status == "issued"
        assert invoice.issue_date == issued_at
        assert invoice.due_date == date(2024, 3, 2)

    async def test_issue_keeps_explicit_due_date(self, orchestrator, generate):
        invoice = await generate()
        await orchestrator.update_invoice(invoice.id, due_date=date(2024, 2, 15))

        invoice = await orchestrator.issue(invoice.id)

        assert invoice.due_date == date(2024, 2, 15)

    async def test_issue_twice_rejected(self, orchestrator, generate):
        invoice = await generate()
        await orchestrator.issue(invoice.id)

        with pytest.raises(InvalidTransition):
            await orchestrator.issue(invoice.id)

    async def test_mark_paid(self, orchestrator, generate):
        invoice = await generate()
        await orchestrator.issue(invoice.id)

        invoice = await orchestrator.mark_paid(invoice.id, date(2024, 2, 20))

        assert invoice.status == "paid"
        assert invoice.paid_date == date(2024, 2, 20)

    async def test_draft_cannot_be_paid(self, orchestrator, generate):
        invoice = await generate()

        with pytest.raises(InvalidTransition):
            await orchestrator.mark_paid(invoice.id)

    async def test_unknown_invoice(self, orchestrator):
        with pytest.raises(ValueError, match="not found"):
            await orchestrator.issue(12345)


class TestVoid:
    """Test voiding and restoring invoices."""

    async def test_void_releases_time_entries(self, session, orchestrator, generate, overage_entries, company):
        """Test that voiding unlinks entries and merges split fragments back."""
        await overage_entries()
        invoice = await generate()
        await orchestrator.issue(invoice.id)

        invoice = await orchestrator.void(invoice.id)

        assert invoice.status == "void"
        assert invoice.status_before_void == "issued"
        records = SqlTimeRecordRepository(session)
        assert await records.linked_minutes_for_invoice(invoice.id) == 0
        unlinked = await records.find_unlinked_billable(company.id, JAN_START, JAN_END)
        assert sorted(r.minutes_worked for r in unlinked) == [300, 480]

    async def test_paid_invoice_cannot_be_voided(self, orchestrator, generate):
        invoice = await generate()
        await orchestrator.issue(invoice.id)
        await orchestrator.mark_paid(invoice.id)

        with pytest.raises(InvalidTransition):
            await orchestrator.void(invoice.id)

    async def test_invoice_with_payments_cannot_be_voided(self, orchestrator, generate):
        invoice = await generate()
        await orchestrator.issue(invoice.id)
        await orchestrator.record_payment(invoice.id, Decimal("100.00"))

        with pytest.raises(InvalidTransition, match="payments"):
            await orchestrator.void(invoice.id)

    async def test_unvoid_relinks_entries(self, session, orchestrator, generate, overage_entries):
        await overage_entries()
        invoice = await generate()
        issued_at = datetime(2024, 2, 1, tzinfo=timezone.utc)
        await orchestrator.issue(invoice.id, issued_at)
        await orchestrator.void(invoice.id)

        restored = await orchestrator.unvoid(invoice.id, "issued")

        assert restored.id == invoice.id
        assert restored.status == "issued"
        assert restored.status_before_void is None
        assert restored.issue_date == issued_at
        assert restored.invoice_total == Decimal("1450.00")
        minutes = await SqlTimeRecordRepository(session).linked_minutes_for_invoice(invoice.id)
        assert minutes == 780

    async def test_unvoid_preserves_amounts_when_entries_unchanged(
        self, session, orchestrator, generate, overage_entries
    ):
        """Test that restoring an untouched invoice reproduces its lines and totals."""
        await overage_entries()
        invoice = await generate()
        await orchestrator.add_line_item(invoice.id, "Hosting", "1", Decimal("49.99"), LineType.EXPENSE)
        await orchestrator.issue(invoice.id)
        invoices = SqlInvoiceRepository(session)
        before = [(l.line_type, l.quantity, l.line_total) for l in await invoices.lines_for(invoice.id)]
        total, billed = invoice.invoice_total, invoice.hours_billed_at_rate
        await orchestrator.void(invoice.id)

        restored = await orchestrator.unvoid(invoice.id, "issued")

        after = [(l.line_type, l.quantity, l.line_total) for l in await invoices.lines_for(invoice.id)]
        assert after == before
        assert restored.invoice_total == total == Decimal("1499.99")
        assert restored.hours_billed_at_rate == billed
        assert restored.invoice_number == invoice.invoice_number

    async def test_unvoid_reflects_entries_added_while_void(self, orchestrator, generate, make_entry):
        """Test that restoring recomputes from the entries present at restore time."""
        await make_entry(minutes=480)
        invoice = await generate()
        await orchestrator.void(invoice.id)
        await make_entry(minutes=300, date_worked=date(2024, 1, 25))

        restored = await orchestrator.unvoid(invoice.id, "draft")

        assert restored.hours_worked == Decimal("13")
        assert restored.invoice_total == Decimal("1450.00")

    async def test_unvoid_to_paid_sets_paid_date(self, orchestrator, generate):
        invoice = await generate()
        await orchestrator.void(invoice.id)

        restored = await orchestrator.unvoid(invoice.id, "paid")

        assert restored.status == "paid"
        assert restored.issue_date is not None
        assert restored.paid_date is not None

    async def test_unvoid_invalid_target(self, orchestrator, generate):
        invoice = await generate()
        await orchestrator.void(invoice.id)

        with pytest.raises(InvalidTargetStatus):
            await orchestrator.unvoid(invoice.id, "void")

    async def test_unvoid_requires_void_invoice(self, orchestrator, generate):
        invoice = await generate()

        with pytest.raises(InvalidTransition):
            await orchestrator.unvoid(invoice.id, "draft")


class TestDraftEditing:
    """Test line and link edits on drafts."""

    async def test_add_and_remove_line(self, orchestrator, generate):
        invoice = await generate()

        line = await orchestrator.add_line_item(
            invoice.id, "Domain renewal", "1", Decimal("49.99"), LineType.EXPENSE
        )
        assert invoice.invoice_total == Decimal("1049.99")
        assert line.sort_order == 2

        await orchestrator.remove_line_item(invoice.id, line.id)
        assert invoice.invoice_total == Decimal("1000.00")

    async def test_update_manual_line(self, orchestrator, generate):
        invoice = await generate()
        line = await orchestrator.add_line_item(invoice.id, "Workshop", "1", Decimal("100"))

        line = await orchestrator.update_line_item(invoice.id, line.id, "Workshop", "2:30", Decimal("100"))

        assert line.line_total == Decimal("250.00")
        assert invoice.invoice_total == Decimal("1250.00")

    async def test_system_line_cannot_be_updated(self, session, orchestrator, generate):
        invoice = await generate()
        retainer_line = (await SqlInvoiceRepository(session).lines_for(invoice.id))[0]

        with pytest.raises(ValueError, match="system-generated"):
            await orchestrator.update_line_item(invoice.id, retainer_line.id, "Cheaper", "1", Decimal("1"))

    async def test_retainer_line_cannot_be_removed(self, session, orchestrator, generate):
        invoice = await generate()
        retainer_line = (await SqlInvoiceRepository(session).lines_for(invoice.id))[0]

        with pytest.raises(ValueError, match="retainer"):
            await orchestrator.remove_line_item(invoice.id, retainer_line.id)

    async def test_remove_additional_line_unlinks_entries(
        self, session, orchestrator, generate, overage_entries
    ):
        """Test that hours_worked tracks entries released with a removed line."""
        await overage_entries()
        invoice = await generate()
        additional = (await SqlInvoiceRepository(session).lines_for(invoice.id))[1]

        await orchestrator.remove_line_item(invoice.id, additional.id)

        assert invoice.hours_worked == Decimal("10")
        assert invoice.invoice_total == Decimal("1000.00")
        minutes = await SqlTimeRecordRepository(session).linked_minutes_for_invoice(invoice.id)
        assert minutes == 600

    async def test_link_and_unlink_time_entry(self, session, orchestrator, generate, make_entry):
        invoice = await generate()
        retainer_line = (await SqlInvoiceRepository(session).lines_for(invoice.id))[0]
        late_entry = await make_entry(minutes=90, date_worked=date(2024, 2, 2))

        await orchestrator.link_time_entry(invoice.id, late_entry.id, retainer_line.id)
        assert invoice.hours_worked == Decimal("1.5")

        await orchestrator.unlink_time_entry(invoice.id, late_entry.id)
        assert invoice.hours_worked == Decimal("0")
        assert late_entry.client_invoice_line_id is None

    async def test_link_already_linked_entry_rejected(self, session, orchestrator, generate, make_entry):
        entry = await make_entry(minutes=60)
        invoice = await generate()
        retainer_line = (await SqlInvoiceRepository(session).lines_for(invoice.id))[0]

        with pytest.raises(ValueError, match="already linked"):
            await orchestrator.link_time_entry(invoice.id, entry.id, retainer_line.id)

    async def test_update_notes(self, orchestrator, generate):
        invoice = await generate()

        invoice = await orchestrator.update_invoice(invoice.id, notes="Thanks for your business")

        assert invoice.notes == "Thanks for your business"

    async def test_issued_invoice_not_editable(self, session, orchestrator, generate):
        invoice = await generate()
        await orchestrator.issue(invoice.id)
        retainer_line = (await SqlInvoiceRepository(session).lines_for(invoice.id))[0]

        with pytest.raises(NotEditable):
            await orchestrator.add_line_item(invoice.id, "Late fee", "1", Decimal("25"))
        with pytest.raises(NotEditable):
            await orchestrator.update_invoice(invoice.id, notes="changed")
        with pytest.raises(NotEditable):
            await orchestrator.remove_line_item(invoice.id, retainer_line.id)
        with pytest.raises(NotEditable):
            await orchestrator.delete_invoice(invoice.id)


class TestDeleteInvoice:
    """Test deleting draft invoices."""

    async def test_delete_releases_entries_and_lines(
        self, session, orchestrator, generate, overage_entries, company
    ):
        """Test that deleting unlinks entries, merges fragments and removes lines."""
        await overage_entries()
        invoice = await generate()
        await orchestrator.add_line_item(invoice.id, "Hosting", "1", Decimal("49.99"), LineType.EXPENSE)

        released = await orchestrator.delete_invoice(invoice.id)

        assert released == 3
        invoices = SqlInvoiceRepository(session)
        assert await invoices.get(invoice.id) is None
        assert await invoices.lines_for(invoice.id) == []
        unlinked = await SqlTimeRecordRepository(session).find_unlinked_billable(company.id, JAN_START, JAN_END)
        assert sorted(r.minutes_worked for r in unlinked) == [300, 480]

    async def test_period_can_be_generated_again(self, orchestrator, generate):
        invoice = await generate()
        await orchestrator.delete_invoice(invoice.id)

        replacement = await generate()

        assert replacement.status == "draft"
        assert replacement.invoice_number == invoice.invoice_number

    async def test_void_invoice_cannot_be_deleted(self, orchestrator, generate):
        invoice = await generate()
        await orchestrator.void(invoice.id)

        with pytest.raises(NotEditable):
            await orchestrator.delete_invoice(invoice.id)


class TestPayments:
    """Test payments and balances."""

    async def test_payment_reduces_remaining_balance(self, orchestrator, generate):
        invoice = await generate()
        await orchestrator.issue(invoice.id)

        payment = await orchestrator.record_payment(
            invoice.id, Decimal("400"), date(2024, 2, 10), payment_method="ach"
        )

        assert payment.amount == Decimal("400.00")
        assert await orchestrator.payments_total(invoice.id) == Decimal("400")
        assert await orchestrator.remaining_balance(invoice.id) == Decimal("600")

    async def test_payment_on_draft_rejected(self, orchestrator, generate):
        invoice = await generate()

        with pytest.raises(NotEditable):
            await orchestrator.record_payment(invoice.id, Decimal("100"))

    async def test_non_positive_payment_rejected(self, orchestrator, generate):
        invoice = await generate()
        await orchestrator.issue(invoice.id)

        with pytest.raises(ValueError):
            await orchestrator.record_payment(invoice.id, Decimal("0"))

    async def test_overpayment_rejected(self, orchestrator, generate):
        invoice = await generate()
        await orchestrator.issue(invoice.id)
        await orchestrator.record_payment(invoice.id, Decimal("600"))

        with pytest.raises(ValueError, match="exceeds remaining balance"):
            await orchestrator.record_payment(invoice.id, Decimal("400.01"))

    async def test_update_payment(self, orchestrator, generate):
        invoice = await generate()
        await orchestrator.issue(invoice.id)
        payment = await orchestrator.record_payment(invoice.id, Decimal("400"), date(2024, 2, 10))

        payment = await orchestrator.update_payment(
            invoice.id, payment.id, Decimal("250.50"), payment_method="check", notes="Partial"
        )

        assert payment.amount == Decimal("250.50")
        assert payment.payment_date == date(2024, 2, 10)
        assert payment.payment_method == "check"
        assert await orchestrator.remaining_balance(invoice.id) == Decimal("749.50")

    async def test_update_payment_cannot_exceed_total(self, orchestrator, generate):
        """Test that the other payments count against the allowed amount."""
        invoice = await generate()
        await orchestrator.issue(invoice.id)
        await orchestrator.record_payment(invoice.id, Decimal("300"))
        payment = await orchestrator.record_payment(invoice.id, Decimal("200"))

        with pytest.raises(ValueError, match="exceeds invoice balance"):
            await orchestrator.update_payment(invoice.id, payment.id, Decimal("700.01"))

        payment = await orchestrator.update_payment(invoice.id, payment.id, Decimal("700"))
        assert await orchestrator.remaining_balance(invoice.id) == Decimal("0")

    async def test_reducing_payment_reopens_paid_invoice(self, orchestrator, generate):
        invoice = await generate()
        await orchestrator.issue(invoice.id)
        payment = await orchestrator.record_payment(invoice.id, Decimal("1000"))
        await orchestrator.mark_paid(invoice.id, date(2024, 2, 20))

        await orchestrator.update_payment(invoice.id, payment.id, Decimal("900"))

        assert invoice.status == "issued"
        assert invoice.paid_date is None

    async def test_delete_payment_allows_void(self, orchestrator, generate):
        """Test that removing the only payment lets the invoice be voided."""
        invoice = await generate()
        await orchestrator.issue(invoice.id)
        payment = await orchestrator.record_payment(invoice.id, Decimal("100"))

        await orchestrator.delete_payment(invoice.id, payment.id)

        assert await orchestrator.payments_total(invoice.id) == Decimal("0")
        invoice = await orchestrator.void(invoice.id)
        assert invoice.status == "void"

    async def test_delete_payment_reopens_paid_invoice(self, orchestrator, generate):
        invoice = await generate()
        await orchestrator.issue(invoice.id)
        payment = await orchestrator.record_payment(invoice.id, Decimal("1000"))
        await orchestrator.mark_paid(invoice.id)

        invoice = await orchestrator.delete_payment(invoice.id, payment.id)

        assert invoice.status == "issued"
        assert invoice.paid_date is None

    async def test_payment_must_belong_to_invoice(self, orchestrator, generate):
        january = await generate()
        february = await generate(date(2024, 2, 1), date(2024, 2, 29))
        await orchestrator.issue(january.id)
        await orchestrator.issue(february.id)
        payment = await orchestrator.record_payment(january.id, Decimal("100"))

        with pytest.raises(ValueError, match="not found"):
            await orchestrator.delete_payment(february.id, payment.id)

    async def test_payment_edits_rejected_on_draft(self, orchestrator, generate):
        invoice = await generate()

        with pytest.raises(NotEditable):
            await orchestrator.delete_payment(invoice.id, 1)


class TestReporting:
    """Test hours breakdown and invoice history."""

    async def test_hours_breakdown_splits_by_date_worked(
        self, session, orchestrator, generate, overage_entries, make_entry
    ):
        """Test that December work on the additional line counts as carried in."""
        await overage_entries()
        invoice = await generate()
        additional = (await SqlInvoiceRepository(session).lines_for(invoice.id))[1]
        december = await make_entry(minutes=45, date_worked=date(2023, 12, 28))
        await orchestrator.link_time_entry(invoice.id, december.id, additional.id)

        breakdown = await orchestrator.hours_breakdown(invoice.id)

        # Retainer-covered hours are not part of the breakdown
        assert breakdown.current_month_hours == Decimal("3")
        assert breakdown.carried_in_hours == Decimal("0.75")
        assert breakdown.total_hours == Decimal("3.75")

    async def test_hours_breakdown_counts_prior_month_retainer(
        self, orchestrator, make_agreement, make_entry, company
    ):
        """Test work covered retroactively by a mid-month agreement."""
        await make_agreement(active_date=date(2024, 1, 15), monthly_retainer_hours=Decimal("2"))
        await make_entry(minutes=180, date_worked=date(2024, 1, 5))
        invoice = await orchestrator.generate_for_period(company.id, JAN_START, JAN_END)

        breakdown = await orchestrator.hours_breakdown(invoice.id)

        assert breakdown.carried_in_hours == Decimal("0")
        assert breakdown.current_month_hours == Decimal("3")

    async def test_invoice_history_newest_first(self, orchestrator, generate, company):
        january = await generate()
        february = await generate(date(2024, 2, 1), date(2024, 2, 29))
        await orchestrator.void(january.id)

        history = await orchestrator.invoice_history(company.id)

        assert [h["id"] for h in history] == [february.id, january.id]
        assert history[1]["status"] == "void"
        assert history[0]["invoice_number"] == "ACME-202402-001"
        assert history[0]["period_start"] == date(2024, 2, 1)
        assert history[0]["invoice_total"] == Decimal("1000.00")

    async def test_invoice_history_empty(self, orchestrator, company):
        assert await orchestrator.invoice_history(company.id) == []


class TestBulkGeneration:
    """Test walking every month of an agreement."""

    async def test_generates_each_month(self, orchestrator, agreement, make_entry, company):
        await make_entry(minutes=480)
        await make_entry(minutes=720, date_worked=date(2024, 2, 12))
        await make_entry(minutes=180, date_worked=date(2024, 3, 3))

        result = await orchestrator.generate_all_monthly_invoices(company.id, date(2024, 3, 31))

        assert [g["period"] for g in result.generated] == ["2024-01", "2024-02", "2024-03"]
        assert result.summary == {"generated_count": 3, "updated_count": 0, "skipped_count": 0}

    async def test_rerun_updates_drafts_and_skips_issued(self, orchestrator, agreement, company):
        first = await orchestrator.generate_all_monthly_invoices(company.id, date(2024, 2, 29))
        await orchestrator.issue(first.generated[0]["invoice_id"])

        result = await orchestrator.generate_all_monthly_invoices(company.id, date(2024, 2, 29))

        assert [s["period"] for s in result.skipped] == ["2024-01"]
        assert "issued" in result.skipped[0]["reason"]
        assert [u["period"] for u in result.updated] == ["2024-02"]
        assert result.generated == []

    async def test_failed_month_recorded_and_walk_continues(self, orchestrator, agreement, company):
        """Test that an overlapping mid-month invoice only blocks its own month."""
        await orchestrator.generate_invoice(company, agreement, date(2024, 2, 10), date(2024, 2, 20))

        result = await orchestrator.generate_all_monthly_invoices(company.id, date(2024, 3, 31))

        assert [g["period"] for g in result.generated] == ["2024-01", "2024-03"]
        assert result.skipped[0]["period"] == "2024-02"
        assert "overlapping" in result.skipped[0]["error"]

    async def test_stops_at_termination(self, orchestrator, make_agreement, company):
        await make_agreement(termination_date=date(2024, 2, 15))

        result = await orchestrator.generate_all_monthly_invoices(company.id, date(2024, 2, 10))

        assert [g["period"] for g in result.generated] == ["2024-01", "2024-02"]

    async def test_no_active_agreement(self, orchestrator, make_agreement, company):
        await make_agreement(termination_date=date(2024, 1, 31))

        with pytest.raises(NoActiveAgreement):
            await orchestrator.generate_all_monthly_invoices(company.id, date(2024, 6, 30))
