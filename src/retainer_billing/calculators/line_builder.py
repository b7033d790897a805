"""Invoice line candidate builder."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from retainer_billing.calculators.types import MANUAL_LINE_TYPES, MINUTES_PER_HOUR, ZERO, LineType


@dataclass(frozen=True)
class InvoiceLineCandidate:
    """A line computed before it is written to storage."""

    line_type: LineType
    description: str
    quantity: str
    unit_price: Decimal
    line_total: Decimal
    hours: Decimal | None = None
    line_date: date | None = None


class InvoiceLineBuilder:
    """Builds invoice lines with consistent rounding.

    Rounding:
    - Hours to 4 decimals (ROUND_HALF_UP)
    - Money to 2 decimals at persistence
    - Hour quantities displayed as h:mm, rounded to the nearest minute
    """

    PRECISION = Decimal("0.0001")  # 4 decimal places for hours
    OUTPUT_PRECISION = Decimal("0.01")  # 2 decimal places for money

    @staticmethod
    def round_hours(hours: Decimal) -> Decimal:
        return hours.quantize(InvoiceLineBuilder.PRECISION, rounding=ROUND_HALF_UP)

    @staticmethod
    def round_to_cents(amount: Decimal) -> Decimal:
        """Round amount to 2 decimal places (cents)."""
        return amount.quantize(InvoiceLineBuilder.OUTPUT_PRECISION, rounding=ROUND_HALF_UP)

    @staticmethod
    def format_hours_for_quantity(hours: Decimal) -> str:
        """Format decimal hours as h:mm, e.g. 1.5 -> "1:30"."""
        total_minutes = int(
            (Decimal(hours) * MINUTES_PER_HOUR).quantize(Decimal(1), rounding=ROUND_HALF_UP)
        )
        h, m = divmod(total_minutes, 60)
        return f"{h}:{m:02d}"

    @staticmethod
    def parse_quantity_to_hours(quantity: str) -> Decimal:
        """Parse a quantity string ("h:mm" or a decimal number) to hours."""
        value = quantity.strip()
        try:
            if ":" in value:
                h, m = value.split(":", 1)
                return Decimal(int(h)) + Decimal(int(m)) / MINUTES_PER_HOUR
            return Decimal(value)
        except (ValueError, InvalidOperation) as e:
            raise ValueError(f"Invalid quantity: {quantity!r}") from e

    @staticmethod
    def create_retainer_line(
        retainer_hours: Decimal,
        retainer_fee: Decimal,
        period_start: date,
    ) -> InvoiceLineCandidate:
        """Create the flat retainer fee line."""
        return InvoiceLineCandidate(
            line_type=LineType.RETAINER,
            description=(
                f"Monthly Retainer ({InvoiceLineBuilder.display_hours(retainer_hours)} hours) - "
                f"{period_start.strftime('%b')} {period_start.day}, {period_start.year}"
            ),
            quantity="1",
            unit_price=InvoiceLineBuilder.round_to_cents(retainer_fee),
            line_total=InvoiceLineBuilder.round_to_cents(retainer_fee),
            hours=InvoiceLineBuilder.round_hours(retainer_hours),
            line_date=period_start,
        )

    @staticmethod
    def create_prior_month_retainer_line(covered_hours: Decimal, line_date: date) -> InvoiceLineCandidate:
        """Create the $0 line for work covered retroactively by the retainer."""
        return InvoiceLineCandidate(
            line_type=LineType.PRIOR_MONTH_RETAINER,
            description="Work items included in prior month retainer",
            quantity=InvoiceLineBuilder.format_hours_for_quantity(covered_hours),
            unit_price=ZERO,
            line_total=ZERO,
            hours=InvoiceLineBuilder.round_hours(covered_hours),
            line_date=line_date,
        )

    @staticmethod
    def create_additional_hours_line(
        billed_hours: Decimal,
        hourly_rate: Decimal,
        line_date: date,
    ) -> InvoiceLineCandidate:
        """Create the line for hours billed at the hourly rate."""
        hours = InvoiceLineBuilder.round_hours(billed_hours)
        return InvoiceLineCandidate(
            line_type=LineType.ADDITIONAL_HOURS,
            description="Additional work beyond retainer fee",
            quantity=InvoiceLineBuilder.format_hours_for_quantity(hours),
            unit_price=InvoiceLineBuilder.round_to_cents(hourly_rate),
            line_total=InvoiceLineBuilder.round_to_cents(hours * hourly_rate),
            hours=hours,
            line_date=line_date,
        )

    @staticmethod
    def create_credit_line(rollover_hours: Decimal, line_date: date) -> InvoiceLineCandidate:
        """Create the informational rollover line (always $0)."""
        return InvoiceLineCandidate(
            line_type=LineType.CREDIT,
            description="Rollover Hours Applied (from previous months)",
            quantity=InvoiceLineBuilder.format_hours_for_quantity(rollover_hours),
            unit_price=ZERO,
            line_total=ZERO,
            hours=InvoiceLineBuilder.round_hours(rollover_hours),
            line_date=line_date,
        )

    @staticmethod
    def create_manual_line(
        description: str,
        quantity: str,
        unit_price: Decimal,
        line_type: LineType = LineType.ADJUSTMENT,
        line_date: date | None = None,
    ) -> InvoiceLineCandidate:
        """Create an operator-entered line (expense or adjustment)."""
        if line_type not in MANUAL_LINE_TYPES:
            raise ValueError(f"Line type '{line_type.value}' is reserved for generated lines")
        amount = InvoiceLineBuilder.parse_quantity_to_hours(quantity) * Decimal(unit_price)
        return InvoiceLineCandidate(
            line_type=line_type,
            description=description,
            quantity=quantity,
            unit_price=InvoiceLineBuilder.round_to_cents(Decimal(unit_price)),
            line_total=InvoiceLineBuilder.round_to_cents(amount),
            line_date=line_date,
        )

    @staticmethod
    def display_hours(hours: Decimal) -> str:
        """Render hours without trailing zeros, e.g. 10.0000 -> "10"."""
        normalized = Decimal(hours).normalize()
        return f"{normalized:f}"
