"""Error kinds raised by the billing engine.

All errors propagate to the caller; none are retried. Given the same stored
state, the same call fails the same way until the underlying condition is
fixed (for example by creating a covering agreement or voiding an invoice).
"""

from __future__ import annotations

from datetime import date


class BillingError(Exception):
    """Base class for billing engine errors."""


class ConfigurationError(BillingError):
    """Raised when agreement terms are invalid at creation time."""


class NoActiveAgreement(BillingError):
    """Raised when no agreement covers the invoicing period."""

    def __init__(self, company_id: int, as_of: date | None = None, reason: str | None = None):
        self.company_id = company_id
        self.as_of = as_of
        msg = f"No active agreement found for client company {company_id}"
        if as_of is not None:
            msg += f" on {as_of.isoformat()}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class OverlappingPeriod(BillingError):
    """Raised when a non-void invoice already covers part of the range."""

    def __init__(
        self,
        invoice_id: int,
        invoice_number: str,
        period_start: date,
        period_end: date,
    ):
        self.invoice_id = invoice_id
        self.invoice_number = invoice_number
        self.period_start = period_start
        self.period_end = period_end
        super().__init__(
            f"An invoice (#{invoice_number}) already exists for an overlapping period "
            f"({period_start.isoformat()} - {period_end.isoformat()}). "
            "Choose a different date range or void the existing invoice first."
        )


class InvalidSplitPoint(BillingError):
    """Raised when a split boundary falls outside (0, minutes_worked)."""

    def __init__(self, record_id: int | None, minutes_worked: int, split_at: int):
        self.record_id = record_id
        self.minutes_worked = minutes_worked
        self.split_at = split_at
        super().__init__(
            f"Split point must be between 1 and {minutes_worked - 1} minutes "
            f"for time entry {record_id}. Got: {split_at}"
        )


class NotEditable(BillingError):
    """Raised when a mutation is attempted on a non-draft invoice."""

    def __init__(self, invoice_id: int, status: str, action: str | None = None):
        self.invoice_id = invoice_id
        self.status = status
        self.action = action
        msg = f"Invoice {invoice_id} is '{status}' and cannot be modified"
        if action:
            msg += f" ({action})"
        super().__init__(msg)


class InvalidTargetStatus(BillingError):
    """Raised when un-voiding to a status other than draft, issued or paid."""

    def __init__(self, target_status: str):
        self.target_status = target_status
        super().__init__(
            f"Target status must be one of 'draft', 'issued', 'paid'. Got: '{target_status}'"
        )


class InvalidTransition(BillingError):
    """Raised when an invoice status transition is not allowed."""

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        msg = f"Invalid transition from '{from_status}' to '{to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
