"""Invoice state machine with transition validation."""

from __future__ import annotations

from typing import TYPE_CHECKING

from retainer_billing.calculators.types import InvoiceStatus
from retainer_billing.errors import InvalidTargetStatus, InvalidTransition, NotEditable

if TYPE_CHECKING:
    from retainer_billing.models import ClientInvoice


class InvoiceStateMachine:
    """State machine for invoice status transitions.

    Allowed transitions:
    - draft → issued
    - draft → void
    - issued → paid
    - issued → void
    - void → draft | issued | paid (unvoid)

    Paid invoices cannot be voided.
    """

    # Define valid transitions: {from_status: [allowed_to_statuses]}
    VALID_TRANSITIONS: dict[str, list[str]] = {
        InvoiceStatus.DRAFT: [InvoiceStatus.ISSUED, InvoiceStatus.VOID],
        InvoiceStatus.ISSUED: [InvoiceStatus.PAID, InvoiceStatus.VOID],
        InvoiceStatus.PAID: [],
        InvoiceStatus.VOID: [InvoiceStatus.DRAFT, InvoiceStatus.ISSUED, InvoiceStatus.PAID],
    }

    # Statuses where lines, links and notes can be modified
    EDITABLE = {InvoiceStatus.DRAFT}

    UNVOID_TARGETS = {InvoiceStatus.DRAFT, InvoiceStatus.ISSUED, InvoiceStatus.PAID}

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str, reason: str | None = None) -> None:
        """Validate a transition, raising InvalidTransition if invalid."""
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransition(from_status, to_status, reason)

    @classmethod
    def can_edit(cls, status: str) -> bool:
        return status in cls.EDITABLE

    @classmethod
    def ensure_editable(cls, invoice: ClientInvoice, action: str | None = None) -> None:
        """Raise NotEditable unless the invoice is a draft."""
        if not cls.can_edit(invoice.status):
            raise NotEditable(invoice.id, invoice.status, action)

    @classmethod
    def validate_unvoid_target(cls, target_status: str) -> InvoiceStatus:
        """Resolve an unvoid target, raising InvalidTargetStatus if not allowed."""
        try:
            target = InvoiceStatus(target_status)
        except ValueError:
            raise InvalidTargetStatus(str(target_status)) from None
        if target not in cls.UNVOID_TARGETS:
            raise InvalidTargetStatus(target.value)
        return target

    @classmethod
    def get_next_statuses(cls, current_status: str) -> list[str]:
        """Get list of valid next statuses from current status."""
        return cls.VALID_TRANSITIONS.get(current_status, [])
