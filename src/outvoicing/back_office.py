"""Back-office record keeping around the billing engine.

These operations cover the collections that surround invoicing: the
product catalogue, staff, the task board, booking requests, expenses,
managed files, intake forms and billable time. They share the runtime
context and the exception hierarchy of :mod:`outvoicing.core_logic`.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, List, Mapping, Optional, Sequence

from . import log
from .constants import AppointmentStatus, FileTag, FormFieldType, TaskStatus
from .core_logic import (
    BusinessRuleViolation,
    DocumentValidationError,
    InvalidTransitionError,
    InvoiceDraft,
    MissingReferenceError,
    RuntimeContext,
    build_line_item,
    get_client,
    get_product,
    new_record_id,
    require_nonnegative_money,
    require_nonnegative_quantity,
    resolve_today,
)
from .data_manager import (
    Appointment,
    CustomForm,
    Expense,
    FormField,
    FormSubmission,
    ManagedFile,
    Product,
    StaffMember,
    Task,
    TimeEntry,
    to_decimal,
)


# ---------------------------------------------------------------------------
# Products and inventory
# ---------------------------------------------------------------------------


def add_product(
    context: RuntimeContext,
    *,
    name: str,
    sku: str,
    current_stock: Decimal = Decimal("0"),
    price: Decimal = Decimal("0"),
    cost: Decimal = Decimal("0"),
    reorder_point: Optional[Decimal] = None,
    product_id: Optional[str] = None,
) -> Product:
    """Add a product to the catalogue.

    Raises:
        DocumentValidationError: If the name is blank.
        ValueError: If stock, price or cost is negative.
    """
    if not name.strip():
        raise DocumentValidationError("Product name is required")
    product = Product(
        product_id=product_id or new_record_id("prod"),
        name=name.strip(),
        sku=sku,
        current_stock=to_decimal(current_stock),
        price=to_decimal(price),
        cost=to_decimal(cost),
        reorder_point=to_decimal(reorder_point) if reorder_point is not None else None,
    )
    require_nonnegative_quantity(product.current_stock)
    require_nonnegative_money(product.price)
    require_nonnegative_money(product.cost)
    with context.state.lock:
        context.state.products.add(product)
    log.info("Added product '%s' (%s)", product.product_id, product.name)
    return product


def update_product(context: RuntimeContext, product_id: str, **changes: object) -> Product:
    """Edit catalogue fields of a product, including a manual stock count."""

    for key in ("current_stock", "price", "cost", "reorder_point"):
        if key in changes and changes[key] is not None:
            changes[key] = to_decimal(changes[key])
    with context.state.lock:
        product = get_product(context, product_id)
        updated = replace(product, **changes)
        require_nonnegative_quantity(updated.current_stock)
        require_nonnegative_money(updated.price)
        require_nonnegative_money(updated.cost)
        context.state.products.replace(updated)
    log.info("Updated product '%s'", product_id)
    return updated


def adjust_stock(context: RuntimeContext, product_id: str, delta: Decimal) -> Product:
    """Add (or with a negative ``delta`` remove) units of stock.

    Raises:
        BusinessRuleViolation: If the adjustment would leave negative stock.
    """
    delta = to_decimal(delta)
    with context.state.lock:
        product = get_product(context, product_id)
        new_level = product.current_stock + delta
        if new_level < 0:
            log.error("Stock adjustment of %s on '%s' would go negative", delta, product_id)
            raise BusinessRuleViolation(
                f"Cannot remove {-delta} unit(s) of {product.name}; only {product.current_stock} in stock"
            )
        updated = context.state.products.replace(replace(product, current_stock=new_level))
    log.info("Stock for '%s' adjusted by %s to %s", product_id, delta, new_level)
    return updated


def is_low_stock(product: Product) -> bool:
    # A missing reorder point behaves as zero.
    reorder_point = product.reorder_point if product.reorder_point is not None else Decimal("0")
    return product.current_stock <= reorder_point


def low_stock_products(products: Iterable[Product]) -> List[Product]:
    """Return products at or below their reorder point, in catalogue order."""

    flagged = [product for product in products if is_low_stock(product)]
    log.debug("Low stock check flagged %d product(s)", len(flagged))
    return flagged


# ---------------------------------------------------------------------------
# Staff and tasks
# ---------------------------------------------------------------------------


def add_staff_member(context: RuntimeContext, *, name: str, email: str, role: str = "") -> StaffMember:
    if not name.strip() or not email.strip():
        raise DocumentValidationError("Staff name and email are required")
    member = StaffMember(staff_id=new_record_id("staff"), name=name.strip(), email=email.strip(), role=role)
    with context.state.lock:
        context.state.staff.add(member)
    log.info("Added staff member '%s'", member.name)
    return member


def add_task(
    context: RuntimeContext,
    *,
    title: str,
    due_date: date,
    related_invoice_id: Optional[str] = None,
    assignee_id: Optional[str] = None,
) -> Task:
    """Create a ``To Do`` task, optionally linked to an invoice and a staff member.

    Raises:
        DocumentValidationError: If the title is blank.
        MissingReferenceError: If the invoice or assignee is unknown.
    """
    if not title.strip():
        raise DocumentValidationError("Task title is required")
    if related_invoice_id and related_invoice_id not in context.state.invoices:
        log.warning("Task references unknown invoice '%s'", related_invoice_id)
        raise MissingReferenceError(f"Unknown invoice id: {related_invoice_id}")
    if assignee_id and assignee_id not in context.state.staff:
        log.warning("Task references unknown staff member '%s'", assignee_id)
        raise MissingReferenceError(f"Unknown staff id: {assignee_id}")

    task = Task(
        task_id=new_record_id("task"),
        title=title.strip(),
        due_date=due_date,
        status=TaskStatus.TO_DO,
        related_invoice_id=related_invoice_id,
        assignee_id=assignee_id,
    )
    with context.state.lock:
        context.state.tasks.add(task)
    log.info("Added task '%s' due %s", task.title, task.due_date)
    return task


def move_task(context: RuntimeContext, task_id: str, status: TaskStatus) -> Task:
    """Move a task to another board column. Any column may follow any other."""

    with context.state.lock:
        task = context.state.tasks.get(task_id)
        if task is None:
            log.warning("Task lookup failed for id '%s'", task_id)
            raise MissingReferenceError(f"Unknown task id: {task_id}")
        updated = context.state.tasks.replace(replace(task, status=TaskStatus(status)))
    log.info("Task '%s' moved to %s", task_id, updated.status.value)
    return updated


def apply_task_schedule(
    context: RuntimeContext,
    suggestions: Sequence[Mapping[str, str]],
    *,
    related_invoice_id: Optional[str] = None,
) -> List[Task]:
    """Turn assistant-suggested ``{title, due_date}`` entries into tasks.

    The whole batch is validated before any task is stored so a malformed
    suggestion leaves the board untouched.

    Raises:
        DocumentValidationError: If an entry lacks a title or a valid date.
    """
    parsed = []
    for index, suggestion in enumerate(suggestions, start=1):
        title = str(suggestion.get("title", "")).strip()
        try:
            due = date.fromisoformat(str(suggestion.get("due_date", "")).strip())
        except ValueError as exc:
            raise DocumentValidationError(f"Suggested task {index} has an invalid due date") from exc
        if not title:
            raise DocumentValidationError(f"Suggested task {index} has no title")
        parsed.append((title, due))

    with context.state.lock:
        return [
            add_task(context, title=title, due_date=due, related_invoice_id=related_invoice_id)
            for title, due in parsed
        ]


# ---------------------------------------------------------------------------
# Bookings
# ---------------------------------------------------------------------------


def request_appointment(
    context: RuntimeContext,
    client_id: str,
    *,
    requested_date: date,
    requested_time: str,
    notes: str = "",
) -> Appointment:
    """Record a ``Pending`` booking request from a client.

    Raises:
        DocumentValidationError: If the time is blank.
        MissingReferenceError: If the client is unknown.
    """
    if not requested_time.strip():
        raise DocumentValidationError("Please select a date and time")
    client = get_client(context, client_id)
    appointment = Appointment(
        appointment_id=new_record_id("appt"),
        client_id=client.client_id,
        client_name=client.name,
        requested_date=requested_date,
        requested_time=requested_time.strip(),
        notes=notes,
        status=AppointmentStatus.PENDING,
    )
    with context.state.lock:
        context.state.appointments.add(appointment)
    log.info("Appointment requested by '%s' for %s %s", client.name, requested_date, appointment.requested_time)
    return appointment


def _decide_appointment(context: RuntimeContext, appointment_id: str, status: AppointmentStatus) -> Appointment:
    with context.state.lock:
        appointment = context.state.appointments.get(appointment_id)
        if appointment is None:
            log.warning("Appointment lookup failed for id '%s'", appointment_id)
            raise MissingReferenceError(f"Unknown appointment id: {appointment_id}")
        if appointment.status != AppointmentStatus.PENDING:
            raise InvalidTransitionError(
                f"Appointment {appointment_id} is already {appointment.status.value}"
            )
        updated = context.state.appointments.replace(replace(appointment, status=status))
    log.info("Appointment '%s' %s", appointment_id, status.value.lower())
    return updated


def confirm_appointment(context: RuntimeContext, appointment_id: str) -> Appointment:
    return _decide_appointment(context, appointment_id, AppointmentStatus.CONFIRMED)


def cancel_appointment(context: RuntimeContext, appointment_id: str) -> Appointment:
    return _decide_appointment(context, appointment_id, AppointmentStatus.CANCELLED)


# ---------------------------------------------------------------------------
# Expenses
# ---------------------------------------------------------------------------


def record_expense(
    context: RuntimeContext,
    *,
    vendor: str,
    amount: Decimal,
    expense_date: Optional[date] = None,
    description: str = "",
    receipt_image: Optional[str] = None,
    client_id: Optional[str] = None,
) -> Expense:
    """Record a business expense, optionally billable to a client.

    Raises:
        DocumentValidationError: If vendor or amount is missing.
        MissingReferenceError: If ``client_id`` is unknown.
    """
    amount = to_decimal(amount)
    if not vendor.strip() or amount == 0:
        raise DocumentValidationError("Please fill in at least the vendor and amount")
    require_nonnegative_money(amount)
    if client_id:
        get_client(context, client_id)

    expense = Expense(
        expense_id=new_record_id("exp"),
        expense_date=resolve_today(expense_date),
        vendor=vendor.strip(),
        description=description or "N/A",
        amount=amount,
        receipt_image=receipt_image,
        client_id=client_id or None,
    )
    with context.state.lock:
        context.state.expenses.add(expense)
    log.info("Recorded expense of %s at '%s'", amount, expense.vendor)
    return expense


# ---------------------------------------------------------------------------
# Managed files
# ---------------------------------------------------------------------------


def register_file(
    context: RuntimeContext,
    client_id: str,
    *,
    name: str,
    mime_type: str,
    size: int,
    tag: FileTag = FileTag.GENERAL,
    upload_date: Optional[date] = None,
) -> ManagedFile:
    """Register an uploaded file's metadata against a client."""

    client = get_client(context, client_id)
    if size < 0:
        raise ValueError("File size must be zero or positive")
    managed = ManagedFile(
        file_id=new_record_id("file"),
        name=name,
        mime_type=mime_type,
        size=size,
        client_id=client.client_id,
        upload_date=resolve_today(upload_date),
        tag=FileTag(tag),
    )
    with context.state.lock:
        context.state.files.add(managed)
    log.info("Registered %s file '%s' for client '%s'", managed.tag.value, name, client.name)
    return managed


def files_for_client(context: RuntimeContext, client_id: str) -> List[ManagedFile]:
    return context.state.files.find(lambda managed: managed.client_id == client_id)


# ---------------------------------------------------------------------------
# Intake forms
# ---------------------------------------------------------------------------


def build_form_field(label: str, field_type: FormFieldType = FormFieldType.TEXT, *, required: bool = False) -> FormField:
    return FormField(field_id=new_record_id("field"), label=label, field_type=FormFieldType(field_type), required=required)


def save_form(
    context: RuntimeContext,
    *,
    title: str,
    description: str = "",
    fields: Sequence[FormField] = (),
    form_id: Optional[str] = None,
) -> CustomForm:
    """Create a form, or replace the form with ``form_id`` in place.

    Raises:
        DocumentValidationError: If the title is blank.
        MissingReferenceError: When editing an unknown form.
    """
    if not title.strip():
        raise DocumentValidationError("Form title is required")
    with context.state.lock:
        if form_id:
            if form_id not in context.state.forms:
                raise MissingReferenceError(f"Unknown form id: {form_id}")
            form = CustomForm(form_id=form_id, title=title.strip(), description=description, fields=tuple(fields))
            context.state.forms.replace(form)
        else:
            form = CustomForm(
                form_id=new_record_id("form"),
                title=title.strip(),
                description=description,
                fields=tuple(fields),
            )
            context.state.forms.add(form)
    log.info("Saved form '%s' with %d field(s)", form.title, len(form.fields))
    return form


def submit_form(
    context: RuntimeContext,
    form_id: str,
    answers: Mapping[str, str],
    *,
    submitted_at: Optional[datetime] = None,
) -> FormSubmission:
    """Store a response to an intake form.

    ``answers`` is keyed by field id. Required fields must carry a non-blank
    answer; answers for unknown fields are dropped.

    Raises:
        MissingReferenceError: If the form is unknown.
        DocumentValidationError: If a required field is unanswered.
    """
    form = context.state.forms.get(form_id)
    if form is None:
        log.warning("Form lookup failed for id '%s'", form_id)
        raise MissingReferenceError(f"Unknown form id: {form_id}")

    missing = [item.label for item in form.fields if item.required and not str(answers.get(item.field_id, "")).strip()]
    if missing:
        log.error("Submission for form '%s' missing required field(s): %s", form.title, ", ".join(missing))
        raise DocumentValidationError(f"Required field(s) missing: {', '.join(missing)}")

    submission = FormSubmission(
        submission_id=new_record_id("sub"),
        form_id=form.form_id,
        submitted_at=submitted_at or datetime.now(),
        data=tuple((item.field_id, str(answers.get(item.field_id, ""))) for item in form.fields),
    )
    with context.state.lock:
        context.state.form_submissions.add(submission)
    log.info("Recorded submission for form '%s'", form.title)
    return submission


# ---------------------------------------------------------------------------
# Time tracking
# ---------------------------------------------------------------------------


def log_time(
    context: RuntimeContext,
    client_id: str,
    *,
    hours: Decimal,
    description: str,
    entry_date: Optional[date] = None,
) -> TimeEntry:
    """Record billable hours against a client.

    Raises:
        DocumentValidationError: If hours are not positive or the description is blank.
        MissingReferenceError: If the client is unknown.
    """
    hours = to_decimal(hours)
    if hours <= 0 or not description.strip():
        raise DocumentValidationError("Time entries need positive hours and a description")
    get_client(context, client_id)
    entry = TimeEntry(
        entry_id=new_record_id("time"),
        client_id=client_id,
        entry_date=resolve_today(entry_date),
        hours=hours,
        description=description.strip(),
    )
    with context.state.lock:
        context.state.time_entries.add(entry)
    log.info("Logged %s hour(s) for client '%s'", hours, client_id)
    return entry


def invoice_time_entries(
    context: RuntimeContext,
    entry_ids: Sequence[str],
    *,
    today: Optional[date] = None,
) -> InvoiceDraft:
    """Turn selected time entries into an unsaved invoice draft.

    Each entry becomes a line ``"{description} ({date})"`` billed at the
    client's hourly rate (zero when unset). Repeated ids are billed once. The
    consumed entries are removed from the time log.

    Args:
        context (RuntimeContext): Runtime context holding the state.
        entry_ids (Sequence[str]): Entries to bill; all must belong to one client.
        today (date | None): Date quoted in the generated notes.

    Returns:
        InvoiceDraft: Draft ready for :func:`~outvoicing.core_logic.save_invoice`.

    Raises:
        DocumentValidationError: If no entries are selected.
        MissingReferenceError: If an entry or its client is unknown.
        BusinessRuleViolation: If the entries span more than one client.
    """
    if not entry_ids:
        raise DocumentValidationError("Select at least one time entry to invoice")

    with context.state.lock:
        entries = []
        for entry_id in dict.fromkeys(entry_ids):
            entry = context.state.time_entries.get(entry_id)
            if entry is None:
                log.warning("Time entry lookup failed for id '%s'", entry_id)
                raise MissingReferenceError(f"Unknown time entry id: {entry_id}")
            entries.append(entry)

        client_ids = {entry.client_id for entry in entries}
        if len(client_ids) > 1:
            raise BusinessRuleViolation("Selected time entries belong to more than one client")
        client = get_client(context, entries[0].client_id)
        rate = client.hourly_rate if client.hourly_rate is not None else Decimal("0")

        items = tuple(
            build_line_item(
                f"{entry.description} ({entry.entry_date.isoformat()})",
                entry.hours,
                rate,
                cost=Decimal("0"),
            )
            for entry in entries
        )
        for entry in entries:
            context.state.time_entries.remove(entry.entry_id)

    today = resolve_today(today)
    log.info("Drafted invoice for '%s' from %d time entr(ies)", client.name, len(entries))
    return InvoiceDraft(
        client=client,
        items=items,
        notes=f"Invoice generated from time entries on {today.isoformat()}.",
    )
