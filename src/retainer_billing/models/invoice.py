"""Invoice, invoice line and payment models."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from retainer_billing.calculators.types import InvoiceStatus, LineType
from retainer_billing.models.base import Base, TimestampMixin

_STATUS_VALUES = ", ".join(f"'{s.value}'" for s in InvoiceStatus)
_LINE_TYPE_VALUES = ", ".join(f"'{t.value}'" for t in LineType)


class ClientInvoice(Base, TimestampMixin):
    """Invoice for one billing period of an agreement.

    Hour balance columns snapshot the rollover calculation at generation time
    so that later periods can carry unused and negative hours forward.
    """

    __tablename__ = "client_invoice"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_company_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("client_company.id", ondelete="CASCADE"),
        nullable=False,
    )
    client_agreement_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("client_agreement.id"),
        nullable=False,
    )
    invoice_number: Mapped[str] = mapped_column(String, nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default=InvoiceStatus.DRAFT.value)
    status_before_void: Mapped[str | None] = mapped_column(String, nullable=True)

    retainer_hours_included: Mapped[Decimal] = mapped_column(
        Numeric(12, 4), nullable=False, default=Decimal("0")
    )
    hours_worked: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False, default=Decimal("0"))
    rollover_hours_used: Mapped[Decimal] = mapped_column(
        Numeric(12, 4), nullable=False, default=Decimal("0")
    )
    unused_hours_balance: Mapped[Decimal] = mapped_column(
        Numeric(12, 4), nullable=False, default=Decimal("0")
    )
    negative_hours_balance: Mapped[Decimal] = mapped_column(
        Numeric(12, 4), nullable=False, default=Decimal("0")
    )
    hours_billed_at_rate: Mapped[Decimal] = mapped_column(
        Numeric(12, 4), nullable=False, default=Decimal("0")
    )
    starting_unused_hours: Mapped[Decimal | None] = mapped_column(Numeric(12, 4), nullable=True)
    starting_negative_hours: Mapped[Decimal | None] = mapped_column(Numeric(12, 4), nullable=True)
    invoice_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))

    issue_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    paid_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("invoice_number", name="client_invoice_number_unique"),
        CheckConstraint(f"status IN ({_STATUS_VALUES})", name="client_invoice_status_check"),
        CheckConstraint("period_end >= period_start", name="client_invoice_dates_check"),
        Index("ix_client_invoice_agreement_period", "client_agreement_id", "period_start"),
    )


class ClientInvoiceLine(Base, TimestampMixin):
    """Single line on an invoice.

    quantity is a display string: "h:mm" for hour lines, "1" for flat lines.
    """

    __tablename__ = "client_invoice_line"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_invoice_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("client_invoice.id", ondelete="CASCADE"),
        nullable=False,
    )
    client_agreement_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("client_agreement.id"),
        nullable=True,
    )
    description: Mapped[str] = mapped_column(String, nullable=False)
    quantity: Mapped[str] = mapped_column(String, nullable=False, default="1")
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    line_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    line_type: Mapped[str] = mapped_column(String, nullable=False)
    hours: Mapped[Decimal | None] = mapped_column(Numeric(12, 4), nullable=True)
    line_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint(f"line_type IN ({_LINE_TYPE_VALUES})", name="client_invoice_line_type_check"),
        Index("ix_client_invoice_line_invoice", "client_invoice_id"),
    )

    @property
    def is_system_generated(self) -> bool:
        return LineType(self.line_type).is_system_generated


class ClientInvoicePayment(Base, TimestampMixin):
    """Payment received against an invoice."""

    __tablename__ = "client_invoice_payment"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_invoice_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("client_invoice.id", ondelete="CASCADE"),
        nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    payment_method: Mapped[str | None] = mapped_column(String, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="client_invoice_payment_amount_check"),
    )
