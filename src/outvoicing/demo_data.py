"""Sample business used by the command line and for trying the application out."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Optional

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
    QuoteStatus,
    TaskStatus,
)
from .core_logic import resolve_today
from .data_manager import (
    AppState,
    Appointment,
    Client,
    CompanyProfile,
    CustomForm,
    Expense,
    FormField,
    Invoice,
    LineItem,
    ManagedFile,
    Product,
    Quote,
    StaffMember,
    Task,
    TimeEntry,
    describe_state,
)


def demo_company() -> CompanyProfile:
    return CompanyProfile(
        name="Your Company",
        address="123 Business Lane, Johannesburg, 2000",
        invoice_prefix="INV-",
        invoice_counter=5,
        tax_rate=Decimal("15.00"),
        preferred_gateway=PaymentGateway.PAYFAST,
        default_terms="Payment due within 30 days.",
        bank_details="Bank: FNB, Acc No: 1234567890, Branch: 250655",
        payfast_merchant_id="10000100",
        payfast_merchant_key="46f0cd694581a",
        yoco_public_key="pk_test_123456",
        yoco_secret_key="sk_test_abcdef",
    )


def _item(description: str, quantity: str, rate: str, cost: str, product_id: Optional[str] = None) -> LineItem:
    return LineItem(
        description=description,
        quantity=Decimal(quantity),
        rate=Decimal(rate),
        total=Decimal(quantity) * Decimal(rate),
        cost=Decimal(cost),
        product_id=product_id,
    )


def build_demo_state(company: Optional[CompanyProfile] = None, today: Optional[date] = None) -> AppState:
    """Return a populated :class:`AppState` with two clients and a handful of documents.

    ``company`` replaces the built-in profile (for example with the one read
    from ``config.ini``). One task is always due on ``today`` so the daily
    feed has something to show.
    """

    today = resolve_today(today)
    state = AppState(company=company or demo_company())

    innovate = Client(
        client_id="cli-1",
        name="Innovate Solutions Pty Ltd",
        email="contact@innovatesol.co.za",
        address="45 Tech Park, Cape Town",
        hourly_rate=Decimal("750"),
        password="password123",
        kyc_status=KycStatus.APPROVED,
        required_docs=(),
    )
    gauteng = Client(
        client_id="cli-2",
        name="Gauteng Logistics",
        email="accounts@gautenglogistics.com",
        address="101 Highway Business, Pretoria",
        hourly_rate=Decimal("850"),
        password="password123",
        kyc_status=KycStatus.PENDING,
        required_docs=(KycDocument.ID, KycDocument.PROOF_OF_ADDRESS),
    )
    for client in (innovate, gauteng):
        state.clients.add(client)

    state.products.add(
        Product("prod-1", "Standard Widget", "WID-001", Decimal("15"), Decimal("250"), Decimal("120"), Decimal("20"))
    )
    state.products.add(
        Product("prod-2", "Premium Gadget", "GAD-001", Decimal("25"), Decimal("800"), Decimal("450"), Decimal("10"))
    )

    state.staff.add(StaffMember("staff-1", "Alice Johnson", "alice@yourcompany.com", "Project Manager"))
    state.staff.add(StaffMember("staff-2", "Bob Williams", "bob@yourcompany.com", "Developer"))

    invoices = [
        Invoice(
            invoice_id="INV-0001",
            invoice_number="INV-0001",
            client=innovate,
            issue_date=date(2024, 7, 15),
            due_date=date(2024, 8, 14),
            items=(_item("Website Development", "1", "25000", "12000"),),
            subtotal=Decimal("25000"),
            tax_amount=Decimal("0"),
            total=Decimal("25000"),
            currency=Currency.ZAR,
            amount_paid=Decimal("25000"),
            status=InvoiceStatus.PAID,
            notes="Full stack development services.",
            payment_method="EFT",
        ),
        Invoice(
            invoice_id="INV-0002",
            invoice_number="INV-0002",
            client=gauteng,
            issue_date=date(2024, 7, 20),
            due_date=date(2024, 8, 19),
            items=(_item("Logistics Consulting", "10", "850", "300"),),
            subtotal=Decimal("8500"),
            tax_amount=Decimal("1275"),
            total=Decimal("9775"),
            currency=Currency.ZAR,
            amount_paid=Decimal("0"),
            status=InvoiceStatus.PENDING,
            notes="Consulting hours for Q3.",
        ),
        Invoice(
            invoice_id="INV-0003",
            invoice_number="INV-0003",
            client=innovate,
            issue_date=date(2024, 6, 1),
            due_date=date(2024, 7, 1),
            items=(_item("Server Maintenance", "1", "5000", "1500"),),
            subtotal=Decimal("5000"),
            tax_amount=Decimal("750"),
            total=Decimal("5750"),
            currency=Currency.ZAR,
            amount_paid=Decimal("0"),
            status=InvoiceStatus.OVERDUE,
            notes="Monthly maintenance contract.",
        ),
        Invoice(
            invoice_id="INV-0004",
            invoice_number="INV-0004",
            client=gauteng,
            issue_date=date(2024, 7, 25),
            due_date=date(2024, 8, 24),
            items=(_item("Standard Widget", "20", "250", "120", product_id="prod-1"),),
            subtotal=Decimal("5000"),
            tax_amount=Decimal("750"),
            total=Decimal("5750"),
            currency=Currency.ZAR,
            amount_paid=Decimal("5750"),
            status=InvoiceStatus.PAID,
            notes="Order #5821",
            payment_method="PayFast",
        ),
    ]
    for invoice in invoices:
        state.invoices.add(invoice)

    state.quotes.add(
        Quote(
            quote_id="Q-001",
            quote_number="Q-001",
            client=gauteng,
            issue_date=date(2024, 8, 1),
            expiry_date=date(2024, 8, 31),
            items=(_item("Fleet Management System", "1", "45000", "28000"),),
            subtotal=Decimal("45000"),
            tax_amount=Decimal("6750"),
            total=Decimal("51750"),
            currency=Currency.ZAR,
            status=QuoteStatus.SENT,
            notes="Proposal for new system implementation.",
        )
    )

    state.time_entries.add(
        TimeEntry("time-1", "cli-1", date(2024, 8, 2), Decimal("3"), "API integration meeting and planning.")
    )
    state.time_entries.add(
        TimeEntry("time-2", "cli-1", date(2024, 8, 3), Decimal("5"), "Development of user authentication module.")
    )

    state.expenses.add(
        Expense("exp-1", date(2024, 7, 28), "DigitalOcean", "Server Hosting - July", Decimal("350.50"), client_id="cli-1")
    )

    state.files.add(
        ManagedFile("file-1", "Innovate-Contract.pdf", "application/pdf", 120485, "cli-1", date(2024, 7, 10), FileTag.CONTRACT)
    )
    state.files.add(
        ManagedFile("file-2", "Innovate-ID.pdf", "application/pdf", 80123, "cli-1", date(2024, 7, 11), FileTag.KYC)
    )

    state.tasks.add(Task("task-1", "Follow up on INV-0003", date(2024, 8, 10), TaskStatus.TO_DO, "INV-0003", "staff-1"))
    state.tasks.add(Task("task-2", "Develop user auth", today, TaskStatus.IN_PROGRESS, "INV-0001", "staff-2"))
    state.tasks.add(Task("task-3", "Deploy to production", date(2024, 8, 20), TaskStatus.DONE, "INV-0001"))

    state.appointments.add(
        Appointment(
            "appt-1",
            "cli-2",
            "Gauteng Logistics",
            date(2024, 8, 25),
            "10:00",
            "Discuss Q4 logistics strategy.",
            AppointmentStatus.PENDING,
        )
    )

    state.forms.add(
        CustomForm(
            "form-1",
            "New Client Intake",
            "Onboarding form for new clients.",
            (
                FormField("f-1", "Company Name", FormFieldType.TEXT, True),
                FormField("f-2", "Primary Contact", FormFieldType.TEXT, True),
                FormField("f-3", "Project Brief", FormFieldType.TEXTAREA, False),
            ),
        )
    )

    log.debug("Demo state built: %s", describe_state(state))
    return state
