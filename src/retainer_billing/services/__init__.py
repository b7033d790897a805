"""Retainer billing services."""

from retainer_billing.services.invoice_service import BulkGenerationResult, InvoiceOrchestrator
from retainer_billing.services.reconciler import FragmentReconciler
from retainer_billing.services.repositories import (
    AgreementProvider,
    InvoiceRepository,
    SqlAgreementProvider,
    SqlInvoiceRepository,
    SqlTimeRecordRepository,
    TimeRecordRepository,
)
from retainer_billing.services.splitter import SplitResult, TimeEntrySplitter
from retainer_billing.services.state_machine import InvoiceStateMachine

__all__ = [
    "AgreementProvider",
    "BulkGenerationResult",
    "FragmentReconciler",
    "InvoiceOrchestrator",
    "InvoiceRepository",
    "InvoiceStateMachine",
    "SplitResult",
    "SqlAgreementProvider",
    "SqlInvoiceRepository",
    "SqlTimeRecordRepository",
    "TimeEntrySplitter",
    "TimeRecordRepository",
]
