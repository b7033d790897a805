"""Tests for invoice line builder."""

from datetime import date
from decimal import Decimal

import pytest

from retainer_billing.calculators.line_builder import InvoiceLineBuilder
from retainer_billing.calculators.types import LineType


class TestRounding:
    """Test rounding helpers."""

    def test_round_to_cents(self):
        """Test rounding to 2 decimal places."""
        assert InvoiceLineBuilder.round_to_cents(Decimal("10.125")) == Decimal("10.13")
        assert InvoiceLineBuilder.round_to_cents(Decimal("10.124")) == Decimal("10.12")
        assert InvoiceLineBuilder.round_to_cents(Decimal("10.135")) == Decimal("10.14")

    def test_round_hours(self):
        assert InvoiceLineBuilder.round_hours(Decimal("1.23455")) == Decimal("1.2346")

    def test_display_hours(self):
        assert InvoiceLineBuilder.display_hours(Decimal("10.0000")) == "10"
        assert InvoiceLineBuilder.display_hours(Decimal("7.5000")) == "7.5"


class TestQuantities:
    """Test h:mm quantity formatting and parsing."""

    def test_format_hours(self):
        assert InvoiceLineBuilder.format_hours_for_quantity(Decimal("1.5")) == "1:30"
        assert InvoiceLineBuilder.format_hours_for_quantity(Decimal("3")) == "3:00"
        assert InvoiceLineBuilder.format_hours_for_quantity(Decimal("0.25")) == "0:15"

    def test_format_rounds_to_nearest_minute(self):
        """Test that 1.3333 hours shows as 1:20."""
        assert InvoiceLineBuilder.format_hours_for_quantity(Decimal("1.3333")) == "1:20"
        assert InvoiceLineBuilder.format_hours_for_quantity(Decimal("0.9999")) == "1:00"

    def test_parse_colon_quantity(self):
        assert InvoiceLineBuilder.parse_quantity_to_hours("2:30") == Decimal("2.5")

    def test_parse_decimal_quantity(self):
        assert InvoiceLineBuilder.parse_quantity_to_hours(" 3 ") == Decimal("3")
        assert InvoiceLineBuilder.parse_quantity_to_hours("0.75") == Decimal("0.75")

    def test_parse_invalid_quantity(self):
        with pytest.raises(ValueError, match="Invalid quantity"):
            InvoiceLineBuilder.parse_quantity_to_hours("two hours")


class TestSystemLines:
    """Test generated line candidates."""

    def test_create_retainer_line(self):
        line = InvoiceLineBuilder.create_retainer_line(
            Decimal("10"), Decimal("1000"), date(2024, 1, 1)
        )

        assert line.line_type == LineType.RETAINER
        assert line.description == "Monthly Retainer (10 hours) - Jan 1, 2024"
        assert line.quantity == "1"
        assert line.unit_price == Decimal("1000.00")
        assert line.line_total == Decimal("1000.00")
        assert line.hours == Decimal("10")
        assert line.line_type.is_system_generated

    def test_create_additional_hours_line(self):
        """Test that the total is hours times rate, rounded to cents."""
        line = InvoiceLineBuilder.create_additional_hours_line(
            Decimal("3.3333"), Decimal("150.00"), date(2024, 1, 1)
        )

        assert line.line_type == LineType.ADDITIONAL_HOURS
        assert line.quantity == "3:20"
        assert line.unit_price == Decimal("150.00")
        assert line.line_total == Decimal("500.00")

    def test_create_prior_month_retainer_line(self):
        line = InvoiceLineBuilder.create_prior_month_retainer_line(Decimal("2"), date(2024, 1, 1))

        assert line.line_type == LineType.PRIOR_MONTH_RETAINER
        assert line.quantity == "2:00"
        assert line.line_total == Decimal("0")

    def test_create_credit_line(self):
        line = InvoiceLineBuilder.create_credit_line(Decimal("4"), date(2024, 2, 1))

        assert line.line_type == LineType.CREDIT
        assert line.description == "Rollover Hours Applied (from previous months)"
        assert line.quantity == "4:00"
        assert line.line_total == Decimal("0")


class TestManualLines:
    """Test operator-entered lines."""

    def test_create_expense_line(self):
        line = InvoiceLineBuilder.create_manual_line(
            "Hosting", "1", Decimal("49.99"), LineType.EXPENSE
        )

        assert line.line_type == LineType.EXPENSE
        assert line.line_total == Decimal("49.99")
        assert not line.line_type.is_system_generated

    def test_manual_line_with_time_quantity(self):
        line = InvoiceLineBuilder.create_manual_line("Workshop", "1:30", Decimal("100"))

        assert line.line_type == LineType.ADJUSTMENT
        assert line.line_total == Decimal("150.00")

    def test_negative_adjustment(self):
        line = InvoiceLineBuilder.create_manual_line("Goodwill discount", "1", Decimal("-75"))

        assert line.line_total == Decimal("-75.00")

    def test_rejects_system_line_type(self):
        """Test that manual lines cannot impersonate generated ones."""
        with pytest.raises(ValueError, match="reserved"):
            InvoiceLineBuilder.create_manual_line("Sneaky", "1", Decimal("10"), LineType.RETAINER)
