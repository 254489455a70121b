"""Generative text assistant for drafting, extraction and forecasting.

The assistant is an advisory boundary: every helper returns text or plain
values for the user to review, and none of them touches application state.
Calls go to a hosted chat-completion model through the ``openai`` client.

Requests issued from the UI run on a worker pool through
:class:`AssistantDispatcher`. Each UI surface keeps a monotonically
increasing request id; a result is delivered only if its id is still the
latest for that surface when it arrives, so a slow response can never
overwrite a newer one.
"""

from __future__ import annotations

import base64
import itertools
import json
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from openai import OpenAI, OpenAIError

from . import log
from .constants import DocumentKind, InvoiceStatus, MessageKind
from .core_logic import InvoiceDraft, build_line_item, resolve_today
from .data_manager import (
    Client,
    CompanyProfile,
    ConfigSettings,
    Invoice,
    Product,
    Quote,
    parse_date,
    serialize_record,
    to_decimal,
)


ASSISTANT_PERSONA = (
    "You are TollieB AI, an expert financial assistant for South African small businesses "
    "using the Outvoicing app. Your tone is helpful, professional, and encouraging. Based on the "
    "provided JSON data of invoices and clients, answer the user's question accurately. Format "
    "your answers clearly using markdown where it improves readability. All monetary values are "
    "in South African Rand (ZAR). Do not mention that you were given JSON data."
)


class AssistantError(Exception):
    """Raised when the text service fails or returns an unusable answer."""


@dataclass(frozen=True)
class ReceiptDetails:
    vendor: str
    expense_date: Optional[date]
    amount: Decimal


@dataclass(frozen=True)
class CompanyDetails:
    company_name: str
    registration_number: str
    vat_number: str
    address: str


@dataclass(frozen=True)
class ImageInput:
    """Raw image bytes sent alongside a prompt."""

    content: bytes
    mime_type: str

    def as_data_url(self) -> str:
        encoded = base64.b64encode(self.content).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"


class TextGenerator:
    """Thin wrapper around the chat-completion endpoint.

    Args:
        model (str): Model name used for every request.
        client (OpenAI | None): Preconfigured client; created lazily from
            ``api_key`` when omitted.
        api_key (str | None): Key used to build the client.
    """

    def __init__(self, model: str, *, client: Optional[OpenAI] = None, api_key: Optional[str] = None) -> None:
        self.model = model
        self._client = client
        self._api_key = api_key

    @classmethod
    def from_settings(cls, settings: ConfigSettings) -> "TextGenerator":
        """Build a generator using the key named by ``[Assistant] ApiKeyEnv``."""

        api_key = os.environ.get(settings.assistant_api_key_env)
        if not api_key:
            log.warning("%s is not set; assistant calls will fail", settings.assistant_api_key_env)
        return cls(settings.assistant_model, api_key=api_key)

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            if not self._api_key:
                raise AssistantError("The assistant API key is not configured.")
            self._client = OpenAI(api_key=self._api_key)
        return self._client

    def generate(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        image: Optional[ImageInput] = None,
        json_output: bool = False,
    ) -> str:
        """Send one prompt and return the trimmed response text.

        Raises:
            AssistantError: If the request fails or the response is empty.
        """
        messages: List[Dict[str, Any]] = []
        if system:
            messages.append({"role": "system", "content": system})
        if image is not None:
            content: Any = [
                {"type": "text", "text": prompt},
                {"type": "image_url", "image_url": {"url": image.as_data_url()}},
            ]
        else:
            content = prompt
        messages.append({"role": "user", "content": content})

        request: Dict[str, Any] = {"model": self.model, "messages": messages}
        if json_output:
            request["response_format"] = {"type": "json_object"}

        try:
            response = self.client.chat.completions.create(**request)
        except OpenAIError as exc:
            log.error("Assistant request failed: %s", exc)
            raise AssistantError("The assistant could not complete the request.") from exc

        text = (response.choices[0].message.content or "").strip() if response.choices else ""
        if not text:
            log.warning("Assistant returned an empty response")
            raise AssistantError("The assistant returned an empty response.")
        return text

    def generate_json(self, prompt: str, *, system: Optional[str] = None, image: Optional[ImageInput] = None) -> Any:
        """Like :meth:`generate` but decodes the answer as JSON.

        Raises:
            AssistantError: If the answer is not valid JSON.
        """
        text = self.generate(prompt, system=system, image=image, json_output=True)
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            log.error("Assistant returned malformed JSON: %s", exc)
            raise AssistantError("The assistant returned an unreadable answer.") from exc


def _as_json(records: Iterable[Any]) -> str:
    return json.dumps([serialize_record(record) for record in records], indent=2)


def _require_mapping(payload: Any, what: str) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise AssistantError(f"The assistant returned an unexpected {what} format.")
    return payload


# ---------------------------------------------------------------------------
# Drafting helpers
# ---------------------------------------------------------------------------


def summarize_invoice_items(generator: TextGenerator, line_items: str) -> str:
    """Return a one-sentence description for an invoice, or ``""`` for blank input."""

    if not line_items.strip():
        return ""
    prompt = (
        "Based on the following line items for an invoice, generate a single, concise, professional "
        f"summary sentence to be used as the overall invoice description. Line items: {line_items}"
    )
    return generator.generate(prompt)


def ask_business_question(
    generator: TextGenerator,
    question: str,
    invoices: Sequence[Invoice],
    clients: Sequence[Client],
) -> str:
    """Answer a free-form question using the current invoices and clients as context."""

    if not question.strip():
        return "Please ask a question."
    prompt = (
        "Here is the current data for the business.\n"
        f"Invoices: {_as_json(invoices)}\n"
        f"Clients: {_as_json(clients)}\n\n"
        f'User\'s question: "{question}"'
    )
    return generator.generate(prompt, system=ASSISTANT_PERSONA)


def draft_client_message(
    generator: TextGenerator,
    kind: MessageKind,
    client: Client,
    company_name: str,
    *,
    invoice: Optional[Invoice] = None,
    quote: Optional[Quote] = None,
) -> str:
    """Draft a payment reminder, quote follow-up or thank-you email body.

    Raises:
        ValueError: If the document the message refers to is not supplied.
    """
    prompt = (
        f'You are an admin assistant for a South African small business called "{company_name}". '
        "Your tone is polite, professional, and friendly. Draft an email body based on the "
        "following request. Keep it concise.\n\n"
    )
    kind = MessageKind(kind)
    if kind == MessageKind.QUOTE_FOLLOW_UP:
        if quote is None:
            raise ValueError("A quote is required for a follow-up message")
        prompt += (
            f"Request: Draft a follow-up message regarding quote {quote.quote_number} sent to {client.name}. "
            f"The quote total is {quote.currency.value} {quote.total} and it expires on "
            f"{quote.expiry_date.isoformat()}. Ask if they have any questions."
        )
    else:
        if invoice is None:
            raise ValueError(f"An invoice is required for a {kind.value} message")
        if kind == MessageKind.REMINDER:
            prompt += (
                f"Request: Draft a payment reminder for invoice {invoice.invoice_number} which was due on "
                f"{invoice.due_date.isoformat()}. The total amount is {invoice.currency.value} {invoice.total}. "
                f"The client's name is {client.name}."
            )
        else:
            prompt += (
                f"Request: Draft a thank you message to {client.name} for their payment of invoice "
                f"{invoice.invoice_number}."
            )
    return generator.generate(prompt)


def draft_business_document(
    generator: TextGenerator,
    kind: DocumentKind,
    client: Client,
    company: CompanyProfile,
    *,
    invoice: Optional[Invoice] = None,
) -> str:
    """Draft an illustrative contract, terms, delivery note or public officer letter."""

    kind = DocumentKind(kind)
    prompt = (
        "You are a legal assistant for a South African small business. Generate a simple business "
        "document based on the following details. This is for illustrative purposes and not legally "
        "binding legal advice.\n\n"
        f"Business Name: {company.name}\nClient Name: {client.name}\n\n"
    )
    if kind == DocumentKind.CONTRACT:
        services = ", ".join(item.description for item in invoice.items) if invoice else "[List of Services]"
        value = f"{invoice.currency.value} {invoice.total}" if invoice else "[Total Value]"
        prompt += (
            f"Generate a simple one-page Service Level Agreement (SLA) for the following services: {services}. "
            f"The total value is {value}. Include standard clauses for services, payment, and confidentiality."
        )
    elif kind == DocumentKind.TERMS_AND_CONDITIONS:
        prompt += (
            "Generate a standard set of Terms and Conditions for a service-based business in South Africa. "
            "Include clauses on payment terms (e.g., 30 days), scope of work, liability, and termination."
        )
    elif kind == DocumentKind.DELIVERY_NOTE:
        lines = (
            "\n".join(f"- {item.quantity} x {item.description}" for item in invoice.items)
            if invoice
            else "[List of Items]"
        )
        number = invoice.invoice_number if invoice else "[Invoice Number]"
        prompt += (
            f"Generate a simple Delivery Note for invoice {number}.\n\n"
            f"Delivery Address: {client.address}\n\nItems:\n{lines}\n\n"
            'Include fields for "Received by (Name & Signature)" and "Date".'
        )
    else:
        registration = company.registration_number or "[Registration Number]"
        prompt += (
            "Generate a formal letter for a bank or official body, confirming that the Public Officer of "
            f"{company.name} is [Public Officer Name]. The company's registration number is {registration} "
            f"and its registered address is {company.address}. The letter should be on a company letterhead "
            "(indicate where the logo goes). Include a signature line for a director."
        )
    return generator.generate(prompt)


def draft_kyc_request(generator: TextGenerator, client_name: str, missing_docs: Sequence[str]) -> str:
    prompt = (
        "You are an admin assistant for a South African small business. Your tone is polite, "
        "professional, and friendly.\n"
        f'Draft a concise email to a client named "{client_name}" requesting them to upload their '
        "FICA/KYC documents for compliance purposes.\n"
        f"The following documents are required: {', '.join(missing_docs)}.\n"
        "Explain that they can upload these securely through their client portal."
    )
    return generator.generate(prompt)


def forecast_stock(
    generator: TextGenerator,
    invoices: Sequence[Invoice],
    products: Sequence[Product],
    today: Optional[date] = None,
) -> str:
    """Ask for a reorder-urgency narrative based on paid sales and stock levels."""

    today = resolve_today(today)
    paid = [invoice for invoice in invoices if invoice.status == InvoiceStatus.PAID]
    prompt = (
        "You are a stock management AI. Analyze the sales data from the provided paid invoices and the "
        "current stock levels for the products.\n"
        '- A product needs reordering if its "current_stock" is at or below its "reorder_point".\n'
        "- Calculate the average monthly sales for each product over the last 3 months.\n"
        "- Based on current stock, reorder points, and sales velocity, predict which products need "
        "reordering soon.\n"
        "- Provide a brief summary and a list of products with high reorder urgency, explicitly stating why.\n"
        f"Today's date is {today.isoformat()}.\n"
        f"Products Data (with reorder points): {_as_json(products)}\n"
        f"Paid Invoices Data: {_as_json(paid)}\n"
        "Return a single text string with your analysis. Use markdown for formatting."
    )
    return generator.generate(prompt)


# ---------------------------------------------------------------------------
# Structured extraction
# ---------------------------------------------------------------------------


def suggest_task_schedule(generator: TextGenerator, invoice: Invoice) -> List[Dict[str, str]]:
    """Suggest ``{title, due_date}`` project tasks for an invoice's work."""

    items = ", ".join(f"{item.quantity} x {item.description}" for item in invoice.items)
    prompt = (
        f'Based on the line items of this invoice for "{invoice.client.name}", generate a simple project '
        f"schedule with key tasks and estimated due dates. The invoice was issued on "
        f"{invoice.issue_date.isoformat()}.\nLine Items: {items}.\n"
        'Return a JSON object with a "tasks" array. Each task object should have a "title" and a '
        '"due_date" in YYYY-MM-DD format.'
    )
    payload = generator.generate_json(prompt)
    tasks = payload.get("tasks") if isinstance(payload, dict) else payload
    if not isinstance(tasks, list):
        raise AssistantError("The assistant returned an unexpected schedule format.")
    return [
        {"title": str(task.get("title", "")), "due_date": str(task.get("due_date", ""))}
        for task in tasks
        if isinstance(task, dict)
    ]


def extract_expense_from_receipt(generator: TextGenerator, receipt: ImageInput) -> ReceiptDetails:
    """Read vendor, date and total from a receipt image."""

    prompt = (
        "Analyze this image of a receipt. Extract the vendor or store name, the transaction date, and the "
        'final total amount. Return a JSON object with "vendor", "date" (YYYY-MM-DD) and "amount" (a number).'
    )
    payload = _require_mapping(generator.generate_json(prompt, image=receipt), "receipt")
    raw_date = payload.get("date")
    try:
        expense_date = parse_date(raw_date) if raw_date else None
        amount = to_decimal(payload.get("amount"))
    except ValueError as exc:
        raise AssistantError("Failed to analyze the receipt. Please try a clearer image.") from exc
    return ReceiptDetails(vendor=str(payload.get("vendor") or ""), expense_date=expense_date, amount=amount)


def extract_company_details(generator: TextGenerator, document: ImageInput) -> CompanyDetails:
    """Read company particulars from a registration certificate image."""

    prompt = (
        "Analyze this document, which is a South African company registration document (CIPC). Extract the "
        "following details: Company Name, Registration Number, VAT Number (if present), and the main "
        'Physical Address. Return a JSON object with "company_name", "registration_number", "vat_number" '
        '(a 10-digit number starting with 4, or an empty string) and "address".'
    )
    payload = _require_mapping(generator.generate_json(prompt, image=document), "document")
    return CompanyDetails(
        company_name=str(payload.get("company_name") or ""),
        registration_number=str(payload.get("registration_number") or ""),
        vat_number=str(payload.get("vat_number") or ""),
        address=str(payload.get("address") or ""),
    )


def draft_invoice_from_text(generator: TextGenerator, text: str, clients: Sequence[Client]) -> InvoiceDraft:
    """Turn an email or chat message into an unsaved invoice draft.

    The returned draft carries ``client=None`` when the message could not be
    matched to a known client; saving it will then be rejected.

    Raises:
        ValueError: If ``text`` is blank.
        AssistantError: If the answer cannot be interpreted.
    """
    if not text.strip():
        raise ValueError("Input text cannot be empty.")
    directory = json.dumps([{"id": client.client_id, "name": client.name} for client in clients])
    prompt = (
        "You are an intelligent assistant for an invoicing app. Analyze the following text, which could be "
        "from an email or a WhatsApp message, and extract details to create a draft invoice.\n"
        f"Here is the list of existing clients you can match against:\n{directory}\n"
        f"Analyze this text:\n---\n{text}\n---\n"
        "Extract the client's name and match it to one from the provided list. Also extract all line items "
        "with their description, quantity, and rate. If quantity or rate is not mentioned, make a reasonable "
        'assumption (e.g., quantity 1). Return a JSON object with "client" ({"id", "name"}), "items" '
        '([{"description", "quantity", "rate"}]) and "notes".'
    )
    payload = _require_mapping(generator.generate_json(prompt), "invoice")

    matched = payload.get("client") or {}
    client_id = matched.get("id") if isinstance(matched, dict) else None
    client = next((candidate for candidate in clients if candidate.client_id == client_id), None)
    if client is None:
        log.warning("Assistant draft did not match a known client (id=%r)", client_id)

    try:
        items = tuple(
            build_line_item(
                str(item.get("description", "")),
                item.get("quantity") if item.get("quantity") is not None else 1,
                item.get("rate") or 0,
            )
            for item in payload.get("items") or []
            if isinstance(item, dict)
        )
    except ValueError as exc:
        raise AssistantError(
            "Failed to understand the provided text. Please ensure it contains clear details about the client "
            "and services."
        ) from exc
    return InvoiceDraft(client=client, items=items, notes=str(payload.get("notes") or ""))


# ---------------------------------------------------------------------------
# Dispatching
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AssistantOutcome:
    """Result of one dispatched request.

    ``stale`` is true when a newer request (or a cancel) superseded this one
    before it finished; stale outcomes are never delivered to callbacks.
    """

    surface: str
    request_id: int
    value: Any = None
    error: Optional[AssistantError] = None
    stale: bool = False


class RequestTracker:
    """Hand out request ids per surface and remember which one is current."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._latest: Dict[str, int] = {}
        self._in_flight: Dict[str, int] = {}

    def begin(self, surface: str) -> int:
        with self._lock:
            request_id = next(self._ids)
            self._latest[surface] = request_id
            self._in_flight[surface] = request_id
            return request_id

    def is_current(self, surface: str, request_id: int) -> bool:
        with self._lock:
            return self._latest.get(surface) == request_id

    def finish(self, surface: str, request_id: int) -> bool:
        """Mark ``request_id`` as done; return whether it was still current."""

        with self._lock:
            current = self._latest.get(surface) == request_id
            if self._in_flight.get(surface) == request_id:
                del self._in_flight[surface]
            return current

    def cancel(self, surface: str) -> None:
        with self._lock:
            self._latest[surface] = next(self._ids)
            self._in_flight.pop(surface, None)

    def is_busy(self, surface: str) -> bool:
        with self._lock:
            return surface in self._in_flight


class AssistantDispatcher:
    """Run assistant helpers off the caller's thread.

    Each call to :meth:`submit` supersedes any earlier request for the same
    surface. There is no retry and no automatic timeout; a caller that gives
    up calls :meth:`cancel`.
    """

    def __init__(self, generator: TextGenerator, *, max_workers: int = 4) -> None:
        self.generator = generator
        self.tracker = RequestTracker()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="assistant")

    def submit(
        self,
        surface: str,
        operation: Callable[..., Any],
        *args: Any,
        on_result: Optional[Callable[[Any], None]] = None,
        on_error: Optional[Callable[[AssistantError], None]] = None,
        **kwargs: Any,
    ) -> "Future[AssistantOutcome]":
        """Schedule ``operation(generator, *args, **kwargs)`` for ``surface``."""

        request_id = self.tracker.begin(surface)
        log.debug("Dispatching assistant request %d for '%s'", request_id, surface)

        def run() -> AssistantOutcome:
            value: Any = None
            error: Optional[AssistantError] = None
            try:
                value = operation(self.generator, *args, **kwargs)
            except AssistantError as exc:
                error = exc
            except Exception as exc:
                log.exception("Assistant request %d for '%s' failed", request_id, surface)
                error = AssistantError(str(exc) or type(exc).__name__)
                error.__cause__ = exc

            if not self.tracker.finish(surface, request_id):
                log.info("Discarding stale assistant response %d for '%s'", request_id, surface)
                return AssistantOutcome(surface, request_id, value, error, stale=True)
            if error is not None:
                if on_error is not None:
                    on_error(error)
            elif on_result is not None:
                on_result(value)
            return AssistantOutcome(surface, request_id, value, error)

        return self._executor.submit(run)

    def cancel(self, surface: str) -> None:
        self.tracker.cancel(surface)
        log.debug("Cancelled pending assistant request for '%s'", surface)

    def is_busy(self, surface: str) -> bool:
        return self.tracker.is_busy(surface)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> "AssistantDispatcher":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()
