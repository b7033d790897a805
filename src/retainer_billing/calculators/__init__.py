"""Pure billing calculators: balances, allocation and line building."""

from retainer_billing.calculators.allocator import TimeEntryAllocator
from retainer_billing.calculators.line_builder import InvoiceLineBuilder, InvoiceLineCandidate
from retainer_billing.calculators.rollover import BalanceCalculator

__all__ = [
    "BalanceCalculator",
    "InvoiceLineBuilder",
    "InvoiceLineCandidate",
    "TimeEntryAllocator",
]
