"""ORM models for the retainer billing engine."""

from retainer_billing.models.base import Base, TimestampMixin
from retainer_billing.models.client import ClientAgreement, ClientCompany
from retainer_billing.models.invoice import ClientInvoice, ClientInvoiceLine, ClientInvoicePayment
from retainer_billing.models.time_entry import ClientTimeEntry

__all__ = [
    "Base",
    "TimestampMixin",
    "ClientAgreement",
    "ClientCompany",
    "ClientInvoice",
    "ClientInvoiceLine",
    "ClientInvoicePayment",
    "ClientTimeEntry",
]
