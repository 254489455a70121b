"""Billing document engine for Outvoicing.

This module contains the rules that keep invoices, quotes and purchase
orders consistent: document numbering, line-item totals, the status
lifecycle of each document type and the stock reconciliation that turns an
invoice's demand into a purchase order. All state lives in the
:class:`~outvoicing.data_manager.AppState` carried by the runtime context;
every mutation passes through the functions below.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union

from . import data_manager, log
from .constants import (
    DEFAULT_SUPPLIER,
    EXPECTED_SCHEMA_VERSION,
    PURCHASE_ORDER_PREFIX,
    QUOTE_PREFIX,
    Currency,
    InvoiceStatus,
    KycDocument,
    KycStatus,
    PaymentGateway,
    PurchaseOrderStatus,
    QuoteStatus,
)
from .data_manager import Client, Invoice, LineItem, Product, PurchaseOrder, PurchaseOrderLine, Quote


CENT = Decimal("0.01")
ZERO = Decimal("0")
DEFAULT_QUOTE_VALIDITY_DAYS = 30


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced client, document or product is unknown."""


class DocumentValidationError(BusinessRuleViolation):
    """Raised when a draft is missing required data and cannot be saved."""


class InvalidTransitionError(BusinessRuleViolation):
    """Raised when a document cannot move to the requested status."""


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and the application state used by the engine."""

    settings: data_manager.ConfigSettings
    state: data_manager.AppState


@dataclass(frozen=True)
class DocumentTotals:
    """Derived monetary totals of an invoice or quote."""

    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal


@dataclass(frozen=True)
class InvoiceDraft:
    """User intent for creating or editing an invoice.

    An empty ``invoice_id`` means "create"; anything else edits the invoice
    with that id in place. ``subtotal``/``tax_amount``/``total`` are only
    carried for display (for example after converting a quote) and are
    recomputed on save.
    """

    client: Optional[Client]
    items: Tuple[LineItem, ...]
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    currency: Currency = Currency.ZAR
    notes: str = ""
    status: InvoiceStatus = InvoiceStatus.DRAFT
    amount_paid: Decimal = ZERO
    payment_method: Optional[str] = None
    invoice_id: str = ""
    subtotal: Optional[Decimal] = None
    tax_amount: Optional[Decimal] = None
    total: Optional[Decimal] = None


@dataclass(frozen=True)
class QuoteDraft:
    """User intent for creating or editing a quote."""

    client: Optional[Client]
    items: Tuple[LineItem, ...]
    issue_date: Optional[date] = None
    expiry_date: Optional[date] = None
    currency: Currency = Currency.ZAR
    notes: str = ""
    status: QuoteStatus = QuoteStatus.DRAFT
    quote_id: str = ""


# Status changes reachable through explicit user actions. ``mark_invoice_paid``
# forces ``Paid`` and is deliberately absent from this table.
INVOICE_TRANSITIONS: Mapping[InvoiceStatus, frozenset[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: frozenset({InvoiceStatus.PENDING}),
    InvoiceStatus.PENDING: frozenset({InvoiceStatus.OVERDUE, InvoiceStatus.PARTIAL, InvoiceStatus.PAID}),
    InvoiceStatus.OVERDUE: frozenset({InvoiceStatus.PARTIAL, InvoiceStatus.PAID}),
    InvoiceStatus.PARTIAL: frozenset({InvoiceStatus.OVERDUE, InvoiceStatus.PAID}),
    InvoiceStatus.PAID: frozenset(),
}

QUOTE_TRANSITIONS: Mapping[QuoteStatus, frozenset[QuoteStatus]] = {
    QuoteStatus.DRAFT: frozenset({QuoteStatus.SENT}),
    QuoteStatus.SENT: frozenset({QuoteStatus.ACCEPTED, QuoteStatus.DECLINED}),
    QuoteStatus.ACCEPTED: frozenset(),
    QuoteStatus.DECLINED: frozenset(),
}


def resolve_today(candidate: Optional[date]) -> date:
    """Return ``candidate`` or the current local calendar date."""

    return candidate if candidate is not None else datetime.now().date()


def new_record_id(prefix: str) -> str:
    """Generate an opaque record identifier such as ``cli-3f9a1c2b7d4e``."""

    return f"{prefix}-{uuid.uuid4().hex[:12]}"


# ---------------------------------------------------------------------------
# Runtime context
# ---------------------------------------------------------------------------


def load_runtime_context(
    config_path: Optional[Path] = None,
    *,
    state: Optional[data_manager.AppState] = None,
) -> RuntimeContext:
    """Load configuration settings and an application state for the engine.

    The helper resolves ``config.ini``, parses settings and, unless a
    pre-populated ``state`` is supplied, creates an empty
    :class:`~outvoicing.data_manager.AppState` seeded with the configured
    company profile.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.
        state (AppState | None): Existing state to wrap, for example demo data.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file cannot be located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    if state is None:
        state = data_manager.AppState(company=settings.company)
    log.info("Loaded runtime context for company '%s'", state.company.name)
    return RuntimeContext(settings=settings, state=state)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate configuration compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Configuration schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Configuration schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def update_company_profile(context: RuntimeContext, **changes: object) -> data_manager.CompanyProfile:
    """Apply settings-screen edits to the company profile.

    Raises:
        ValueError: If the tax rate is negative or the invoice counter is not
            a positive integer.
        TypeError: If ``changes`` names an unknown profile field.
    """
    if "tax_rate" in changes:
        changes["tax_rate"] = data_manager.to_decimal(changes["tax_rate"])
    with context.state.lock:
        updated = replace(context.state.company, **changes)
        if updated.tax_rate < ZERO:
            raise ValueError("Tax rate must be zero or positive")
        if updated.invoice_counter < 1:
            raise ValueError("Invoice counter must be at least 1")
        if not isinstance(updated.preferred_gateway, PaymentGateway):
            updated = replace(updated, preferred_gateway=PaymentGateway(str(updated.preferred_gateway)))
        context.state.company = updated
    log.info("Updated company profile fields: %s", ", ".join(sorted(changes)))
    return updated


# ---------------------------------------------------------------------------
# Numbering authority
# ---------------------------------------------------------------------------


def format_invoice_number(prefix: str, counter: int) -> str:
    return f"{prefix}{counter:04d}"


def allocate_invoice_number(prefix: str, counter: int, existing: Iterable[str]) -> Tuple[str, int]:
    """Find the next free invoice number starting at ``counter``.

    Candidates are probed upward until one is absent from ``existing``. The
    returned counter is ``winning_value + 1`` so numbers skipped because of a
    collision are never handed out later.

    Args:
        prefix (str): Company invoice prefix, e.g. ``"INV-"``.
        counter (int): Stored counter seed.
        existing (Iterable[str]): Numbers (and ids) already in use.

    Returns:
        tuple[str, int]: The assigned number and the counter to persist.
    """
    taken: Set[str] = set(existing)
    candidate = counter
    while format_invoice_number(prefix, candidate) in taken:
        log.debug("Invoice number %s already taken", format_invoice_number(prefix, candidate))
        candidate += 1
    return format_invoice_number(prefix, candidate), candidate + 1


def _allocate_ordinal_number(prefix: str, width: int, count: int, existing: Iterable[str]) -> str:
    taken: Set[str] = set(existing)
    ordinal = count + 1
    while f"{prefix}{ordinal:0{width}d}" in taken:
        ordinal += 1
    return f"{prefix}{ordinal:0{width}d}"


def allocate_quote_number(existing: Iterable[str], count: int) -> str:
    """Return ``Q-{count + 1:03d}``, probing upward if that number is taken."""

    return _allocate_ordinal_number(QUOTE_PREFIX, 3, count, existing)


def allocate_purchase_order_number(existing: Iterable[str], count: int) -> str:
    """Return ``PO-{count + 1:04d}``, probing upward if that number is taken."""

    return _allocate_ordinal_number(PURCHASE_ORDER_PREFIX, 4, count, existing)


# ---------------------------------------------------------------------------
# Line items and totals
# ---------------------------------------------------------------------------


def quantize_money(amount: Decimal) -> Decimal:
    """Round a monetary value to cents using half-up rounding."""

    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def build_line_item(
    description: str,
    quantity: Union[Decimal, int, str],
    rate: Union[Decimal, int, str],
    *,
    cost: Optional[Union[Decimal, int, str]] = None,
    product_id: Optional[str] = None,
) -> LineItem:
    """Create a line item whose ``total`` equals ``quantity * rate``."""

    quantity_value = data_manager.to_decimal(quantity)
    rate_value = data_manager.to_decimal(rate)
    return LineItem(
        description=description,
        quantity=quantity_value,
        rate=rate_value,
        total=quantity_value * rate_value,
        cost=data_manager.to_decimal(cost) if cost is not None else None,
        product_id=product_id,
    )


def edit_line_item(item: LineItem, **changes: object) -> LineItem:
    """Apply form edits to a line item.

    ``total`` is recomputed only when ``quantity`` or ``rate`` changes; edits
    to the description, cost or product link leave it untouched.
    """

    if "total" in changes:
        raise TypeError("total is derived and cannot be edited directly")
    for key in ("quantity", "rate", "cost"):
        if key in changes and changes[key] is not None:
            changes[key] = data_manager.to_decimal(changes[key])
    updated = replace(item, **changes)
    if "quantity" in changes or "rate" in changes:
        updated = replace(updated, total=updated.quantity * updated.rate)
    return updated


def compute_totals(items: Iterable[LineItem], tax_rate: Decimal) -> DocumentTotals:
    """Derive subtotal, tax and total for a document.

    ``subtotal`` sums each item's stored ``total`` without re-deriving it from
    quantity and rate. Tax is ``subtotal * tax_rate / 100`` and every output is
    rounded to cents.

    Args:
        items (Iterable[LineItem]): Line items of the document.
        tax_rate (Decimal): Tax rate expressed as a percentage, e.g. ``15``.

    Returns:
        DocumentTotals: Rounded totals; all zero for an empty document.
    """
    subtotal = sum((item.total for item in items), ZERO)
    tax_amount = subtotal * data_manager.to_decimal(tax_rate) / Decimal("100")
    subtotal = quantize_money(subtotal)
    tax_amount = quantize_money(tax_amount)
    return DocumentTotals(subtotal=subtotal, tax_amount=tax_amount, total=subtotal + tax_amount)


def require_nonnegative_quantity(quantity: Decimal) -> None:
    """Validate that a quantity is zero or positive.

    Raises:
        ValueError: If ``quantity`` is negative.
    """
    if quantity < ZERO:
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be zero or positive")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is nonnegative.

    Raises:
        ValueError: If ``amount`` is less than zero.
    """
    if amount < ZERO:
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")


def require_positive_money(amount: Decimal) -> None:
    if amount <= ZERO:
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be greater than zero")


def _validate_items(items: Tuple[LineItem, ...], document: str) -> None:
    if not items:
        log.error("%s rejected: no line items", document)
        raise DocumentValidationError(f"{document} requires at least one line item")
    for index, item in enumerate(items, start=1):
        try:
            require_nonnegative_quantity(item.quantity)
            require_nonnegative_money(item.rate)
        except ValueError as exc:
            raise DocumentValidationError(f"{document} line {index}: {exc}") from exc


def validate_invoice_draft(draft: InvoiceDraft) -> None:
    """Reject drafts that cannot become a valid invoice.

    Raises:
        DocumentValidationError: If the client or line items are missing, a
            line carries a negative quantity or rate, the amount paid is
            negative, or the due date precedes the issue date.
    """
    if draft.client is None:
        log.error("Invoice rejected: no client selected")
        raise DocumentValidationError("Invoice requires a client")
    _validate_items(draft.items, "Invoice")
    if draft.amount_paid < ZERO:
        raise DocumentValidationError("Amount paid must be zero or positive")
    if draft.issue_date and draft.due_date and draft.due_date < draft.issue_date:
        log.error("Invoice rejected: due date %s precedes issue date %s", draft.due_date, draft.issue_date)
        raise DocumentValidationError("Due date cannot be before the issue date")


def validate_quote_draft(draft: QuoteDraft) -> None:
    """Reject drafts that cannot become a valid quote.

    Raises:
        DocumentValidationError: If the client or line items are missing or
            the expiry date precedes the issue date.
    """
    if draft.client is None:
        log.error("Quote rejected: no client selected")
        raise DocumentValidationError("Quote requires a client")
    _validate_items(draft.items, "Quote")
    if draft.issue_date and draft.expiry_date and draft.expiry_date < draft.issue_date:
        log.error("Quote rejected: expiry %s precedes issue date %s", draft.expiry_date, draft.issue_date)
        raise DocumentValidationError("Expiry date cannot be before the issue date")


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------


def get_client(context: RuntimeContext, client_id: str) -> Client:
    """Resolve a client by id.

    Raises:
        MissingReferenceError: If ``client_id`` is unknown.
    """
    client = context.state.clients.get(client_id)
    if client is None:
        log.warning("Client lookup failed for id '%s'", client_id)
        raise MissingReferenceError(f"Unknown client id: {client_id}")
    return client


def add_client(
    context: RuntimeContext,
    *,
    name: str,
    email: str,
    address: str = "",
    hourly_rate: Optional[Decimal] = None,
    password: Optional[str] = None,
    client_id: Optional[str] = None,
) -> Client:
    """Register a new client awaiting KYC review.

    New clients start in ``Pending`` with both identity and proof of address
    outstanding.

    Raises:
        DocumentValidationError: If name or email is blank.
        ValueError: If ``hourly_rate`` is negative.
    """
    if not name.strip() or not email.strip():
        log.error("Client rejected: name and email are required")
        raise DocumentValidationError("Client name and email are required")
    rate = data_manager.to_decimal(hourly_rate) if hourly_rate is not None else None
    if rate is not None:
        require_nonnegative_money(rate)

    client = Client(
        client_id=client_id or new_record_id("cli"),
        name=name.strip(),
        email=email.strip(),
        address=address,
        hourly_rate=rate,
        password=password,
        kyc_status=KycStatus.PENDING,
        required_docs=(KycDocument.ID, KycDocument.PROOF_OF_ADDRESS),
    )
    with context.state.lock:
        context.state.clients.add(client)
    log.info("Added client '%s' (%s)", client.client_id, client.name)
    return client


def update_client(context: RuntimeContext, client_id: str, **changes: object) -> Client:
    """Edit a client record.

    Documents already issued keep the client snapshot they were created
    with; only future documents see the change.
    """
    with context.state.lock:
        client = get_client(context, client_id)
        if "client_id" in changes:
            raise BusinessRuleViolation("Client id cannot be changed")
        updated = replace(client, **changes)
        if not updated.name.strip() or not updated.email.strip():
            raise DocumentValidationError("Client name and email are required")
        context.state.clients.replace(updated)
    log.info("Updated client '%s'", client_id)
    return updated


def set_kyc_status(context: RuntimeContext, client_id: str, status: KycStatus) -> Client:
    """Move a client to a new KYC review state."""

    updated = update_client(context, client_id, kyc_status=KycStatus(status))
    log.info("Client '%s' KYC status is now %s", client_id, updated.kyc_status.value)
    return updated


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


def get_invoice(context: RuntimeContext, invoice_id: str) -> Invoice:
    """Resolve an invoice by id.

    Raises:
        MissingReferenceError: If ``invoice_id`` is unknown.
    """
    invoice = context.state.invoices.get(invoice_id)
    if invoice is None:
        log.warning("Invoice lookup failed for id '%s'", invoice_id)
        raise MissingReferenceError(f"Unknown invoice id: {invoice_id}")
    return invoice


def list_invoices(context: RuntimeContext) -> List[Invoice]:
    return context.state.invoices.values()


def effective_invoice_status(invoice: Invoice, today: Optional[date] = None) -> InvoiceStatus:
    """Project an invoice's status as of ``today``.

    A stored ``Overdue`` is always honoured; a ``Pending`` invoice whose due
    date has passed is reported as ``Overdue`` without rewriting the record.
    """

    today = resolve_today(today)
    if invoice.status == InvoiceStatus.PENDING and invoice.due_date < today:
        return InvoiceStatus.OVERDUE
    return invoice.status


def save_invoice(context: RuntimeContext, draft: InvoiceDraft, *, today: Optional[date] = None) -> Invoice:
    """Validate, total and store an invoice draft.

    The workflow validates the draft, derives totals with the company tax rate
    in force at save time and embeds a value copy of the client. Drafts with an
    ``invoice_id`` replace the stored invoice in place and keep its number; new
    drafts receive a number from the numbering authority and advance the
    company counter. Nothing is stored when validation fails.

    Args:
        context (RuntimeContext): Runtime context holding the state.
        draft (InvoiceDraft): Invoice data collected from the user.
        today (date | None): Default for missing issue/due dates.

    Returns:
        Invoice: The stored invoice.

    Raises:
        DocumentValidationError: If the draft is incomplete.
        MissingReferenceError: When editing an unknown invoice id.
    """
    validate_invoice_draft(draft)
    today = resolve_today(today)
    issue_date = draft.issue_date or today
    due_date = draft.due_date or issue_date
    if due_date < issue_date:
        raise DocumentValidationError("Due date cannot be before the issue date")

    with context.state.lock:
        company = context.state.company
        totals = compute_totals(draft.items, company.tax_rate)
        if draft.amount_paid > totals.total:
            log.error("Rejected invoice save: amount paid %s exceeds total %s", draft.amount_paid, totals.total)
            raise DocumentValidationError("Amount paid cannot exceed the invoice total")
        client_snapshot = replace(draft.client)

        if draft.invoice_id:
            existing = get_invoice(context, draft.invoice_id)
            invoice = Invoice(
                invoice_id=existing.invoice_id,
                invoice_number=existing.invoice_number,
                client=client_snapshot,
                issue_date=issue_date,
                due_date=due_date,
                items=tuple(draft.items),
                subtotal=totals.subtotal,
                tax_amount=totals.tax_amount,
                total=totals.total,
                currency=draft.currency,
                amount_paid=draft.amount_paid,
                status=draft.status,
                notes=draft.notes,
                payment_method=draft.payment_method or existing.payment_method,
            )
            context.state.invoices.replace(invoice)
            log.info("Updated invoice '%s' (total=%s)", invoice.invoice_number, invoice.total)
            return invoice

        taken = context.state.invoices.numbers() | set(context.state.invoices.keys())
        number, next_counter = allocate_invoice_number(company.invoice_prefix, company.invoice_counter, taken)
        invoice = Invoice(
            invoice_id=number,
            invoice_number=number,
            client=client_snapshot,
            issue_date=issue_date,
            due_date=due_date,
            items=tuple(draft.items),
            subtotal=totals.subtotal,
            tax_amount=totals.tax_amount,
            total=totals.total,
            currency=draft.currency,
            amount_paid=draft.amount_paid,
            status=draft.status,
            notes=draft.notes,
            payment_method=draft.payment_method,
        )
        context.state.invoices.add(invoice)
        context.state.company = replace(company, invoice_counter=next_counter)
    log.info(
        "Created invoice '%s' for client '%s' (total=%s, next counter=%d)",
        invoice.invoice_number,
        invoice.client.name,
        invoice.total,
        next_counter,
    )
    return invoice


def _check_invoice_transition(invoice: Invoice, target: InvoiceStatus) -> None:
    allowed = INVOICE_TRANSITIONS.get(invoice.status, frozenset())
    if target not in allowed:
        log.warning(
            "Rejected invoice '%s' transition %s -> %s",
            invoice.invoice_number,
            invoice.status.value,
            target.value,
        )
        raise InvalidTransitionError(
            f"Invoice {invoice.invoice_number} cannot move from {invoice.status.value} to {target.value}"
        )


def send_invoice(context: RuntimeContext, invoice_id: str) -> Invoice:
    """Issue a draft invoice to the client (``Draft -> Pending``)."""

    with context.state.lock:
        invoice = get_invoice(context, invoice_id)
        _check_invoice_transition(invoice, InvoiceStatus.PENDING)
        updated = context.state.invoices.replace(replace(invoice, status=InvoiceStatus.PENDING))
    log.info("Invoice '%s' sent", updated.invoice_number)
    return updated


def mark_invoice_overdue(context: RuntimeContext, invoice_id: str) -> Invoice:
    """Store ``Overdue`` on an issued invoice, as an import or collections process would."""

    with context.state.lock:
        invoice = get_invoice(context, invoice_id)
        _check_invoice_transition(invoice, InvoiceStatus.OVERDUE)
        updated = context.state.invoices.replace(replace(invoice, status=InvoiceStatus.OVERDUE))
    log.info("Invoice '%s' marked overdue", updated.invoice_number)
    return updated


def mark_invoice_paid(context: RuntimeContext, invoice_id: str) -> Invoice:
    """Force an invoice to ``Paid``.

    The amount paid becomes the invoice total and the company's preferred
    gateway is recorded as the payment method, whatever the previous status.

    Raises:
        MissingReferenceError: If ``invoice_id`` is unknown.
    """
    with context.state.lock:
        invoice = get_invoice(context, invoice_id)
        gateway = context.state.company.preferred_gateway
        updated = replace(
            invoice,
            status=InvoiceStatus.PAID,
            amount_paid=invoice.total,
            payment_method=gateway.value,
        )
        context.state.invoices.replace(updated)
    log.info("Invoice '%s' marked paid via %s (amount=%s)", invoice.invoice_number, gateway.value, invoice.total)
    return updated


def record_invoice_payment(
    context: RuntimeContext,
    invoice_id: str,
    amount: Decimal,
    *,
    payment_method: Optional[str] = None,
) -> Invoice:
    """Apply a payment against an issued invoice.

    The payment is added to ``amount_paid``; the invoice becomes ``Partial``
    while a balance remains and ``Paid`` once settled.

    Raises:
        ValueError: If ``amount`` is not positive.
        InvalidTransitionError: If the invoice is a draft or already paid.
        BusinessRuleViolation: If the payment exceeds the balance due.
    """
    amount = data_manager.to_decimal(amount)
    require_positive_money(amount)
    with context.state.lock:
        invoice = get_invoice(context, invoice_id)
        if invoice.status not in (InvoiceStatus.PENDING, InvoiceStatus.OVERDUE, InvoiceStatus.PARTIAL):
            log.warning("Rejected payment on invoice '%s' in status %s", invoice.invoice_number, invoice.status.value)
            raise InvalidTransitionError(
                f"Invoice {invoice.invoice_number} cannot accept payments while {invoice.status.value}"
            )
        if amount > invoice.balance_due:
            log.error("Payment %s exceeds balance %s on '%s'", amount, invoice.balance_due, invoice.invoice_number)
            raise BusinessRuleViolation(
                f"Payment of {amount} exceeds the balance due of {invoice.balance_due}"
            )
        amount_paid = invoice.amount_paid + amount
        status = InvoiceStatus.PAID if amount_paid >= invoice.total else InvoiceStatus.PARTIAL
        updated = replace(
            invoice,
            amount_paid=amount_paid,
            status=status,
            payment_method=payment_method or invoice.payment_method,
        )
        context.state.invoices.replace(updated)
    log.info(
        "Recorded payment of %s on invoice '%s' (paid=%s, status=%s)",
        amount,
        invoice.invoice_number,
        amount_paid,
        status.value,
    )
    return updated


# ---------------------------------------------------------------------------
# Quotes
# ---------------------------------------------------------------------------


def get_quote(context: RuntimeContext, quote_id: str) -> Quote:
    """Resolve a quote by id.

    Raises:
        MissingReferenceError: If ``quote_id`` is unknown.
    """
    quote = context.state.quotes.get(quote_id)
    if quote is None:
        log.warning("Quote lookup failed for id '%s'", quote_id)
        raise MissingReferenceError(f"Unknown quote id: {quote_id}")
    return quote


def save_quote(context: RuntimeContext, draft: QuoteDraft, *, today: Optional[date] = None) -> Quote:
    """Validate, total and store a quote draft.

    Editing keeps the stored quote number. New quotes are numbered
    ``Q-{n:03d}`` from the number of existing quotes, probing upward if that
    number is already taken.

    Raises:
        DocumentValidationError: If the draft is incomplete.
        MissingReferenceError: When editing an unknown quote id.
    """
    validate_quote_draft(draft)
    today = resolve_today(today)
    issue_date = draft.issue_date or today
    expiry_date = draft.expiry_date or issue_date + timedelta(days=DEFAULT_QUOTE_VALIDITY_DAYS)
    if expiry_date < issue_date:
        raise DocumentValidationError("Expiry date cannot be before the issue date")

    with context.state.lock:
        totals = compute_totals(draft.items, context.state.company.tax_rate)
        if draft.quote_id:
            existing = get_quote(context, draft.quote_id)
            quote_id, quote_number = existing.quote_id, existing.quote_number
        else:
            taken = context.state.quotes.numbers() | set(context.state.quotes.keys())
            quote_number = allocate_quote_number(taken, len(context.state.quotes))
            quote_id = quote_number

        quote = Quote(
            quote_id=quote_id,
            quote_number=quote_number,
            client=replace(draft.client),
            issue_date=issue_date,
            expiry_date=expiry_date,
            items=tuple(draft.items),
            subtotal=totals.subtotal,
            tax_amount=totals.tax_amount,
            total=totals.total,
            currency=draft.currency,
            status=draft.status,
            notes=draft.notes,
        )
        if draft.quote_id:
            context.state.quotes.replace(quote)
        else:
            context.state.quotes.add(quote)
    log.info("Saved quote '%s' (total=%s)", quote.quote_number, quote.total)
    return quote


def _transition_quote(context: RuntimeContext, quote_id: str, target: QuoteStatus) -> Quote:
    with context.state.lock:
        quote = get_quote(context, quote_id)
        if target not in QUOTE_TRANSITIONS.get(quote.status, frozenset()):
            log.warning(
                "Rejected quote '%s' transition %s -> %s",
                quote.quote_number,
                quote.status.value,
                target.value,
            )
            raise InvalidTransitionError(
                f"Quote {quote.quote_number} cannot move from {quote.status.value} to {target.value}"
            )
        updated = context.state.quotes.replace(replace(quote, status=target))
    log.info("Quote '%s' is now %s", updated.quote_number, target.value)
    return updated


def send_quote(context: RuntimeContext, quote_id: str) -> Quote:
    return _transition_quote(context, quote_id, QuoteStatus.SENT)


def accept_quote(context: RuntimeContext, quote_id: str) -> Quote:
    """Approve a sent quote. There is no way back from ``Accepted``."""

    return _transition_quote(context, quote_id, QuoteStatus.ACCEPTED)


def decline_quote(context: RuntimeContext, quote_id: str) -> Quote:
    return _transition_quote(context, quote_id, QuoteStatus.DECLINED)


def convert_quote_to_invoice(quote: Quote) -> InvoiceDraft:
    """Pre-populate an unsaved invoice draft from a quote.

    Client, items, notes, currency and the quote's totals are copied as-is;
    the draft always starts in ``Draft`` whatever the quote's status. The
    draft must still go through :func:`save_invoice` to be numbered and
    stored.
    """

    log.info("Converting quote '%s' into an invoice draft", quote.quote_number)
    return InvoiceDraft(
        client=quote.client,
        items=quote.items,
        notes=quote.notes,
        status=InvoiceStatus.DRAFT,
        currency=quote.currency,
        subtotal=quote.subtotal,
        tax_amount=quote.tax_amount,
        total=quote.total,
    )


# ---------------------------------------------------------------------------
# Stock reconciliation
# ---------------------------------------------------------------------------


def get_product(context: RuntimeContext, product_id: str) -> Product:
    """Resolve a product by id.

    Raises:
        MissingReferenceError: If ``product_id`` is unknown.
    """
    product = context.state.products.get(product_id)
    if product is None:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise MissingReferenceError(f"Unknown product id: {product_id}")
    return product


def _index_products(products: Union[Mapping[str, Product], Iterable[Product]]) -> Dict[str, Product]:
    if isinstance(products, Mapping):
        return dict(products)
    return {product.product_id: product for product in products}


def find_stock_shortfalls(
    invoice: Invoice,
    products: Union[Mapping[str, Product], Iterable[Product]],
) -> List[PurchaseOrderLine]:
    """Compare an invoice's demand against current stock.

    Only items linked to a product are considered. Items whose product no
    longer exists are skipped as non-inventory lines. A line is reported when
    ``quantity - current_stock`` is positive.

    Args:
        invoice (Invoice): Invoice whose items are reconciled.
        products (Mapping | Iterable): Current product catalogue.

    Returns:
        list[PurchaseOrderLine]: Shortfalls in invoice item order; empty when
            everything is in stock.
    """
    catalogue = _index_products(products)
    shortfalls: List[PurchaseOrderLine] = []
    for item in invoice.items:
        if not item.product_id:
            continue
        product = catalogue.get(item.product_id)
        if product is None:
            log.debug("Skipping unknown product '%s' on invoice '%s'", item.product_id, invoice.invoice_number)
            continue
        shortfall = item.quantity - product.current_stock
        if shortfall > ZERO:
            shortfalls.append(
                PurchaseOrderLine(product_id=product.product_id, product_name=product.name, quantity=shortfall)
            )
    return shortfalls


def has_stock_shortage(
    invoice: Invoice,
    products: Union[Mapping[str, Product], Iterable[Product]],
) -> bool:
    """Return ``True`` when at least one linked product is short."""

    return bool(find_stock_shortfalls(invoice, products))


def generate_purchase_order(
    context: RuntimeContext,
    invoice_id: str,
    *,
    today: Optional[date] = None,
) -> Optional[PurchaseOrder]:
    """Create a draft purchase order covering an invoice's stock shortfalls.

    The reconciliation only runs when explicitly requested. It never touches
    stock levels; the purchase order is advisory.

    Args:
        context (RuntimeContext): Runtime context holding the state.
        invoice_id (str): Invoice to reconcile.
        today (date | None): Order date; defaults to the current date.

    Returns:
        PurchaseOrder | None: The stored purchase order, or ``None`` when all
            required products are in stock.

    Raises:
        MissingReferenceError: If ``invoice_id`` is unknown.
    """
    with context.state.lock:
        invoice = get_invoice(context, invoice_id)
        shortfalls = find_stock_shortfalls(invoice, context.state.products.values())
        if not shortfalls:
            log.info("No stock shortage for invoice '%s'; purchase order not needed", invoice.invoice_number)
            return None

        orders = context.state.purchase_orders
        order = PurchaseOrder(
            po_id=new_record_id("PO"),
            po_number=allocate_purchase_order_number(orders.numbers(), len(orders)),
            supplier=DEFAULT_SUPPLIER,
            items=tuple(shortfalls),
            order_date=resolve_today(today),
            status=PurchaseOrderStatus.DRAFT,
        )
        orders.add(order)
    log.info(
        "Generated purchase order '%s' for invoice '%s' (%d item(s))",
        order.po_number,
        invoice.invoice_number,
        len(order.items),
    )
    return order
