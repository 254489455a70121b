"""Client-facing portal operations.

A portal session is a plain marker of which client is being served; it is
not an authentication mechanism. Every operation is scoped to the session's
client so one client never sees or acts on another client's documents.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import List, Optional

from . import log
from .back_office import files_for_client, register_file, request_appointment
from .constants import FileTag, InvoiceStatus, QuoteStatus
from .core_logic import (
    MissingReferenceError,
    RuntimeContext,
    accept_quote,
    effective_invoice_status,
    get_client,
    resolve_today,
)
from .data_manager import Appointment, Client, Invoice, ManagedFile, Quote
from .payments import DEFAULT_BASE_URL, PaymentInstruction, initiate_payment


@dataclass(frozen=True)
class PortalSession:
    client: Client


@dataclass(frozen=True)
class PortalSummary:
    invoices_awaiting_payment: int
    quotes_to_review: int


def open_session(context: RuntimeContext, client_id: str) -> PortalSession:
    """Enter the portal as ``client_id``. No credentials are checked."""

    client = get_client(context, client_id)
    log.info("Portal session opened for '%s'", client.name)
    return PortalSession(client=client)


def client_invoices(context: RuntimeContext, session: PortalSession) -> List[Invoice]:
    client_id = session.client.client_id
    return context.state.invoices.find(lambda invoice: invoice.client.client_id == client_id)


def client_quotes(context: RuntimeContext, session: PortalSession) -> List[Quote]:
    client_id = session.client.client_id
    return context.state.quotes.find(lambda quote: quote.client.client_id == client_id)


def client_files(context: RuntimeContext, session: PortalSession) -> List[ManagedFile]:
    return files_for_client(context, session.client.client_id)


def summarize(context: RuntimeContext, session: PortalSession, today: Optional[date] = None) -> PortalSummary:
    """Count invoices awaiting payment and quotes awaiting a decision."""

    today = resolve_today(today)
    awaiting = [
        invoice
        for invoice in client_invoices(context, session)
        if effective_invoice_status(invoice, today) in (InvoiceStatus.PENDING, InvoiceStatus.OVERDUE)
    ]
    to_review = [quote for quote in client_quotes(context, session) if quote.status == QuoteStatus.SENT]
    return PortalSummary(invoices_awaiting_payment=len(awaiting), quotes_to_review=len(to_review))


def _own_quote(context: RuntimeContext, session: PortalSession, quote_id: str) -> Quote:
    quote = context.state.quotes.get(quote_id)
    if quote is None or quote.client.client_id != session.client.client_id:
        log.warning("Portal client '%s' requested unknown quote '%s'", session.client.client_id, quote_id)
        raise MissingReferenceError(f"Unknown quote id: {quote_id}")
    return quote


def _own_invoice(context: RuntimeContext, session: PortalSession, invoice_id: str) -> Invoice:
    invoice = context.state.invoices.get(invoice_id)
    if invoice is None or invoice.client.client_id != session.client.client_id:
        log.warning("Portal client '%s' requested unknown invoice '%s'", session.client.client_id, invoice_id)
        raise MissingReferenceError(f"Unknown invoice id: {invoice_id}")
    return invoice


def approve_quote(context: RuntimeContext, session: PortalSession, quote_id: str) -> Quote:
    """Accept one of the client's sent quotes."""

    _own_quote(context, session, quote_id)
    return accept_quote(context, quote_id)


def pay_invoice(
    context: RuntimeContext,
    session: PortalSession,
    invoice_id: str,
    *,
    base_url: str = DEFAULT_BASE_URL,
) -> PaymentInstruction:
    """Start a hosted payment for one of the client's invoices."""

    invoice = _own_invoice(context, session, invoice_id)
    return initiate_payment(invoice, context.state.company, base_url=base_url)


def request_booking(
    context: RuntimeContext,
    session: PortalSession,
    *,
    requested_date: date,
    requested_time: str,
    notes: str = "",
) -> Appointment:
    return request_appointment(
        context,
        session.client.client_id,
        requested_date=requested_date,
        requested_time=requested_time,
        notes=notes,
    )


def upload_document(
    context: RuntimeContext,
    session: PortalSession,
    *,
    name: str,
    mime_type: str,
    size: int,
    upload_date: Optional[date] = None,
) -> ManagedFile:
    """Register a compliance document uploaded by the client; it is tagged ``KYC``."""

    return register_file(
        context,
        session.client.client_id,
        name=name,
        mime_type=mime_type,
        size=size,
        tag=FileTag.KYC,
        upload_date=upload_date,
    )
