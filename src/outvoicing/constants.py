"""Enumerations shared across Outvoicing modules.

Centralises domain constants so that the data layer, the billing engine and
the presentation layers (CLI, portal, exporters) rely on a single source of
truth for status values and identifiers.
"""

from __future__ import annotations

from enum import Enum


# Configuration schema version expected by all layers when loading config.ini.
EXPECTED_SCHEMA_VERSION = "1.0.0"

DEFAULT_SUPPLIER = "Default Supplier"
QUOTE_PREFIX = "Q-"
PURCHASE_ORDER_PREFIX = "PO-"


class Currency(str, Enum):
    """Enumerate the currencies a document may be issued in."""

    ZAR = "ZAR"
    USD = "USD"
    EUR = "EUR"
    GBP = "GBP"


class PaymentGateway(str, Enum):
    """Enumerate the hosted payment gateways the company can route to."""

    PAYFAST = "payfast"
    YOCO = "yoco"


class InvoiceStatus(str, Enum):
    """Enumerate the lifecycle states of an invoice."""

    DRAFT = "Draft"
    PENDING = "Pending"
    PAID = "Paid"
    OVERDUE = "Overdue"
    PARTIAL = "Partial"


class QuoteStatus(str, Enum):
    """Enumerate the lifecycle states of a quote."""

    DRAFT = "Draft"
    SENT = "Sent"
    ACCEPTED = "Accepted"
    DECLINED = "Declined"


class KycStatus(str, Enum):
    """Enumerate the compliance review states of a client."""

    PENDING = "Pending"
    SUBMITTED = "Submitted"
    APPROVED = "Approved"
    REJECTED = "Rejected"


class KycDocument(str, Enum):
    """Enumerate the document kinds a client may be asked to supply."""

    ID = "ID"
    PROOF_OF_ADDRESS = "Proof of Address"


class TaskStatus(str, Enum):
    """Enumerate the columns of the task board."""

    TO_DO = "To Do"
    IN_PROGRESS = "In Progress"
    DONE = "Done"


class AppointmentStatus(str, Enum):
    """Enumerate booking request states."""

    PENDING = "Pending"
    CONFIRMED = "Confirmed"
    CANCELLED = "Cancelled"


class PurchaseOrderStatus(str, Enum):
    """Enumerate purchase order states."""

    DRAFT = "Draft"
    SENT = "Sent"


class FileTag(str, Enum):
    """Enumerate the tags applied to managed files."""

    GENERAL = "General"
    KYC = "KYC"
    CONTRACT = "Contract"


class FormFieldType(str, Enum):
    """Enumerate the input kinds supported by the form builder."""

    TEXT = "text"
    TEXTAREA = "textarea"


class ToDoKind(str, Enum):
    """Enumerate the sources feeding the daily to-do list."""

    INVOICE = "invoice"
    QUOTE = "quote"
    TASK = "task"


class MessageKind(str, Enum):
    """Enumerate the client messages the assistant can draft."""

    REMINDER = "reminder"
    QUOTE_FOLLOW_UP = "quote_follow_up"
    THANK_YOU = "thank_you"


class DocumentKind(str, Enum):
    """Enumerate the business documents the assistant can draft."""

    CONTRACT = "contract"
    TERMS_AND_CONDITIONS = "terms_and_conditions"
    DELIVERY_NOTE = "delivery_note"
    PUBLIC_OFFICER_LETTER = "public_officer_letter"


# Invoice states that still carry an unpaid balance.
OPEN_INVOICE_STATUSES: frozenset[InvoiceStatus] = frozenset(
    {InvoiceStatus.PENDING, InvoiceStatus.OVERDUE, InvoiceStatus.PARTIAL}
)


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_SUPPLIER",
    "QUOTE_PREFIX",
    "PURCHASE_ORDER_PREFIX",
    "Currency",
    "PaymentGateway",
    "InvoiceStatus",
    "QuoteStatus",
    "KycStatus",
    "KycDocument",
    "TaskStatus",
    "AppointmentStatus",
    "PurchaseOrderStatus",
    "FileTag",
    "FormFieldType",
    "ToDoKind",
    "MessageKind",
    "DocumentKind",
    "OPEN_INVOICE_STATUSES",
]
