"""Data access layer for Outvoicing.

This module owns the shapes of the records the application works with and
the in-memory collections that hold them. Business rules belong elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Records: frozen dataclasses for every entity plus helpers that turn them
   into plain JSON-friendly dictionaries.
3. State: insertion-ordered stores grouped per aggregate and the
   :class:`AppState` container that owns them.
"""


from __future__ import annotations

import configparser
import threading
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Generic, Iterator, List, Optional, Set, Tuple, TypeVar

from . import log
from .constants import (
    AppointmentStatus,
    Currency,
    FileTag,
    FormFieldType,
    InvoiceStatus,
    KycDocument,
    KycStatus,
    PaymentGateway,
    PurchaseOrderStatus,
    QuoteStatus,
    TaskStatus,
)


CONFIG_FILE_NAME = "config.ini"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CompanyProfile:
    """Company-wide settings, including the invoice numbering seed."""

    name: str
    address: str
    invoice_prefix: str
    invoice_counter: int
    tax_rate: Decimal
    preferred_gateway: PaymentGateway
    registration_number: str = ""
    vat_number: str = ""
    default_terms: str = ""
    bank_details: str = ""
    logo: Optional[str] = None
    payfast_merchant_id: Optional[str] = None
    payfast_merchant_key: Optional[str] = None
    yoco_public_key: Optional[str] = None
    yoco_secret_key: Optional[str] = None


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    schema_version: str
    export_dir: Path
    company: CompanyProfile
    assistant_model: str
    assistant_api_key_env: str


@dataclass(frozen=True)
class Client:
    """A customer, including the compliance documents still outstanding."""

    client_id: str
    name: str
    email: str
    address: str = ""
    hourly_rate: Optional[Decimal] = None
    password: Optional[str] = None
    kyc_status: KycStatus = KycStatus.PENDING
    required_docs: Tuple[KycDocument, ...] = ()


@dataclass(frozen=True)
class LineItem:
    """One billable row on an invoice or quote."""

    description: str
    quantity: Decimal
    rate: Decimal
    total: Decimal
    cost: Optional[Decimal] = None
    product_id: Optional[str] = None


@dataclass(frozen=True)
class Invoice:
    """An issued (or draft) invoice with its derived totals."""

    invoice_id: str
    invoice_number: str
    client: Client
    issue_date: date
    due_date: date
    items: Tuple[LineItem, ...]
    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal
    currency: Currency
    amount_paid: Decimal
    status: InvoiceStatus
    notes: str = ""
    payment_method: Optional[str] = None

    @property
    def balance_due(self) -> Decimal:
        return self.total - self.amount_paid


@dataclass(frozen=True)
class Quote:
    """A priced proposal that may later be converted into an invoice."""

    quote_id: str
    quote_number: str
    client: Client
    issue_date: date
    expiry_date: date
    items: Tuple[LineItem, ...]
    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal
    currency: Currency
    status: QuoteStatus
    notes: str = ""


@dataclass(frozen=True)
class Product:
    """An inventory item tracked for stock reconciliation."""

    product_id: str
    name: str
    sku: str
    current_stock: Decimal
    price: Decimal
    cost: Decimal
    reorder_point: Optional[Decimal] = None


@dataclass(frozen=True)
class PurchaseOrderLine:
    """A single product shortfall carried by a purchase order."""

    product_id: str
    product_name: str
    quantity: Decimal


@dataclass(frozen=True)
class PurchaseOrder:
    """A supplier order generated from a stock shortfall."""

    po_id: str
    po_number: str
    supplier: str
    items: Tuple[PurchaseOrderLine, ...]
    order_date: date
    status: PurchaseOrderStatus = PurchaseOrderStatus.DRAFT


@dataclass(frozen=True)
class StaffMember:
    staff_id: str
    name: str
    email: str
    role: str


@dataclass(frozen=True)
class Task:
    task_id: str
    title: str
    due_date: date
    status: TaskStatus = TaskStatus.TO_DO
    related_invoice_id: Optional[str] = None
    assignee_id: Optional[str] = None


@dataclass(frozen=True)
class Appointment:
    appointment_id: str
    client_id: str
    client_name: str
    requested_date: date
    requested_time: str
    notes: str = ""
    status: AppointmentStatus = AppointmentStatus.PENDING


@dataclass(frozen=True)
class Expense:
    expense_id: str
    expense_date: date
    vendor: str
    description: str
    amount: Decimal
    receipt_image: Optional[str] = None
    client_id: Optional[str] = None


@dataclass(frozen=True)
class TimeEntry:
    entry_id: str
    client_id: str
    entry_date: date
    hours: Decimal
    description: str


@dataclass(frozen=True)
class ManagedFile:
    file_id: str
    name: str
    mime_type: str
    size: int
    client_id: str
    upload_date: date
    tag: FileTag = FileTag.GENERAL


@dataclass(frozen=True)
class FormField:
    field_id: str
    label: str
    field_type: FormFieldType = FormFieldType.TEXT
    required: bool = False


@dataclass(frozen=True)
class CustomForm:
    form_id: str
    title: str
    description: str
    fields: Tuple[FormField, ...] = ()


@dataclass(frozen=True)
class FormSubmission:
    submission_id: str
    form_id: str
    submitted_at: datetime
    data: Tuple[Tuple[str, str], ...]


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


RecordT = TypeVar("RecordT")


class RecordStore(Generic[RecordT]):
    """Insertion-ordered collection of records keyed by their identifier.

    Replacing a record keeps its original position so list views stay stable
    after edits.
    """

    def __init__(self, key: Callable[[RecordT], str], records: Optional[List[RecordT]] = None) -> None:
        self._key = key
        self._records: Dict[str, RecordT] = {}
        for record in records or ():
            self.add(record)

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[RecordT]:
        return iter(list(self._records.values()))

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._records

    def get(self, record_id: str) -> Optional[RecordT]:
        return self._records.get(record_id)

    def values(self) -> List[RecordT]:
        return list(self._records.values())

    def keys(self) -> List[str]:
        return list(self._records.keys())

    def find(self, predicate: Callable[[RecordT], bool]) -> List[RecordT]:
        return [record for record in self._records.values() if predicate(record)]

    def add(self, record: RecordT) -> RecordT:
        record_id = self._key(record)
        if record_id in self._records:
            raise KeyError(f"Duplicate record id: {record_id}")
        self._records[record_id] = record
        return record

    def replace(self, record: RecordT) -> RecordT:
        record_id = self._key(record)
        if record_id not in self._records:
            raise KeyError(f"Record not found: {record_id}")
        self._records[record_id] = record
        return record

    def remove(self, record_id: str) -> RecordT:
        try:
            return self._records.pop(record_id)
        except KeyError as exc:
            raise KeyError(f"Record not found: {record_id}") from exc


class InvoiceStore(RecordStore[Invoice]):
    """Invoices keyed by id, with lookups by document number."""

    def __init__(self, records: Optional[List[Invoice]] = None) -> None:
        super().__init__(lambda invoice: invoice.invoice_id, records)

    def numbers(self) -> Set[str]:
        return {invoice.invoice_number for invoice in self}

    def find_by_number(self, invoice_number: str) -> Optional[Invoice]:
        for invoice in self:
            if invoice.invoice_number == invoice_number:
                return invoice
        return None


class QuoteStore(RecordStore[Quote]):
    """Quotes keyed by id, with lookups by document number."""

    def __init__(self, records: Optional[List[Quote]] = None) -> None:
        super().__init__(lambda quote: quote.quote_id, records)

    def numbers(self) -> Set[str]:
        return {quote.quote_number for quote in self}

    def find_by_number(self, quote_number: str) -> Optional[Quote]:
        for quote in self:
            if quote.quote_number == quote_number:
                return quote
        return None


class PurchaseOrderStore(RecordStore[PurchaseOrder]):
    def __init__(self, records: Optional[List[PurchaseOrder]] = None) -> None:
        super().__init__(lambda order: order.po_id, records)

    def numbers(self) -> Set[str]:
        return {order.po_number for order in self}


def _store(key: Callable[[Any], str]) -> Callable[[], RecordStore[Any]]:
    return lambda: RecordStore(key)


@dataclass
class AppState:
    """Single owner of every collection in the application.

    The state is constructed once per process and threaded through the
    business layer. ``lock`` serializes mutating operations so numbering
    remains a single-writer read-check-write.
    """

    company: CompanyProfile
    invoices: InvoiceStore = field(default_factory=InvoiceStore)
    quotes: QuoteStore = field(default_factory=QuoteStore)
    purchase_orders: PurchaseOrderStore = field(default_factory=PurchaseOrderStore)
    clients: RecordStore[Client] = field(default_factory=_store(lambda client: client.client_id))
    products: RecordStore[Product] = field(default_factory=_store(lambda product: product.product_id))
    staff: RecordStore[StaffMember] = field(default_factory=_store(lambda member: member.staff_id))
    tasks: RecordStore[Task] = field(default_factory=_store(lambda task: task.task_id))
    appointments: RecordStore[Appointment] = field(
        default_factory=_store(lambda appointment: appointment.appointment_id)
    )
    expenses: RecordStore[Expense] = field(default_factory=_store(lambda expense: expense.expense_id))
    time_entries: RecordStore[TimeEntry] = field(default_factory=_store(lambda entry: entry.entry_id))
    files: RecordStore[ManagedFile] = field(default_factory=_store(lambda managed: managed.file_id))
    forms: RecordStore[CustomForm] = field(default_factory=_store(lambda form: form.form_id))
    form_submissions: RecordStore[FormSubmission] = field(
        default_factory=_store(lambda submission: submission.submission_id)
    )
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls the application.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``. The first match that exists on disk wins.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Validation of required entries happens in :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Required options live under ``[System]`` and ``[Company]``. The
    ``[Assistant]`` section is optional and falls back to sensible defaults.
    A relative ``ExportDirectory`` is anchored to ``base_path`` (or the
    current working directory).

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to resolve relative paths.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing.
        ValueError: If a numeric or enumerated option cannot be parsed.
    """

    try:
        schema_version = parser.get("System", "SchemaVersion")
        export_dir_raw = parser.get("System", "ExportDirectory", fallback="exports")
        company_name = parser.get("Company", "Name")
        invoice_prefix = parser.get("Company", "InvoicePrefix")
        invoice_counter_raw = parser.get("Company", "InvoiceCounter")
        tax_rate_raw = parser.get("Company", "TaxRate")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    try:
        invoice_counter = int(invoice_counter_raw)
    except ValueError as exc:
        raise ValueError(f"InvoiceCounter must be an integer: {invoice_counter_raw!r}") from exc
    if invoice_counter < 1:
        raise ValueError("InvoiceCounter must be at least 1")

    gateway_raw = parser.get("Company", "PreferredGateway", fallback=PaymentGateway.PAYFAST.value)
    company = CompanyProfile(
        name=company_name,
        address=parser.get("Company", "Address", fallback=""),
        invoice_prefix=invoice_prefix,
        invoice_counter=invoice_counter,
        tax_rate=to_decimal(tax_rate_raw),
        preferred_gateway=PaymentGateway(gateway_raw.strip().lower()),
        registration_number=parser.get("Company", "RegistrationNumber", fallback=""),
        vat_number=parser.get("Company", "VatNumber", fallback=""),
        default_terms=parser.get("Company", "DefaultTerms", fallback=""),
        bank_details=parser.get("Company", "BankDetails", fallback=""),
        payfast_merchant_id=parser.get("Company", "PayfastMerchantId", fallback=None) or None,
        payfast_merchant_key=parser.get("Company", "PayfastMerchantKey", fallback=None) or None,
        yoco_public_key=parser.get("Company", "YocoPublicKey", fallback=None) or None,
        yoco_secret_key=parser.get("Company", "YocoSecretKey", fallback=None) or None,
    )

    export_dir = Path(export_dir_raw)
    if not export_dir.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        export_dir = (base_path / export_dir).resolve()

    return ConfigSettings(
        schema_version=schema_version,
        export_dir=export_dir,
        company=company,
        assistant_model=parser.get("Assistant", "Model", fallback="gpt-4o-mini"),
        assistant_api_key_env=parser.get("Assistant", "ApiKeyEnv", fallback="OPENAI_API_KEY"),
    )


# ---------------------------------------------------------------------------
# Conversion helpers
# ---------------------------------------------------------------------------


def to_decimal(value: Any) -> Decimal:
    """Coerce user or config input into a :class:`~decimal.Decimal`.

    Floats are routed through ``str`` so binary artefacts never leak into
    monetary values.

    Raises:
        ValueError: If ``value`` is not numeric.
    """

    if isinstance(value, Decimal):
        return value
    if value is None or value == "":
        return Decimal("0")
    try:
        return Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValueError(f"Not a number: {value!r}") from exc


def parse_date(value: Any) -> date:
    """Parse an ISO ``YYYY-MM-DD`` string (or pass a ``date`` through)."""

    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError as exc:
        raise ValueError(f"Not an ISO date: {value!r}") from exc


def serialize_record(record: Any) -> Any:
    """Convert a record (or nested structure) into JSON-compatible values.

    Decimals become strings to keep their exact value, dates use ISO format
    and enums collapse to their ``value``. Passwords are never exported.
    """

    if is_dataclass(record) and not isinstance(record, type):
        payload: Dict[str, Any] = {}
        for item in fields(record):
            if item.name == "password":
                continue
            payload[item.name] = serialize_record(getattr(record, item.name))
        return payload
    if isinstance(record, Enum):
        return record.value
    if isinstance(record, Decimal):
        return str(record)
    if isinstance(record, (date, datetime)):
        return record.isoformat()
    if isinstance(record, (list, tuple)):
        return [serialize_record(value) for value in record]
    if isinstance(record, dict):
        return {str(key): serialize_record(value) for key, value in record.items()}
    return record


def describe_state(state: AppState) -> Dict[str, int]:
    """Return record counts per store, used for logging and the CLI banner."""

    counts = {
        "clients": len(state.clients),
        "invoices": len(state.invoices),
        "quotes": len(state.quotes),
        "products": len(state.products),
        "purchase_orders": len(state.purchase_orders),
        "tasks": len(state.tasks),
    }
    log.debug("State counts: %s", counts)
    return counts
