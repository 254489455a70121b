"""Unit tests for the billing document engine."""

from __future__ import annotations

from dataclasses import replace
from datetime import date
from decimal import Decimal
from unittest.mock import Mock

import pytest

from outvoicing import constants, core_logic, data_manager
from outvoicing.constants import InvoiceStatus, QuoteStatus


def _draft(client, items, /, **overrides):
    values = {
        "client": client,
        "items": tuple(items),
        "issue_date": date(2024, 8, 1),
        "due_date": date(2024, 8, 31),
    }
    values.update(overrides)
    return core_logic.InvoiceDraft(**values)


def _quote_draft(client, items, **overrides):
    values = {
        "client": client,
        "items": tuple(items),
        "issue_date": date(2024, 8, 1),
        "expiry_date": date(2024, 8, 31),
    }
    values.update(overrides)
    return core_logic.QuoteDraft(**values)


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def test_load_runtime_context_returns_context(monkeypatch, tmp_path, settings):
    """load_runtime_context should assemble parsed settings and a fresh state."""

    config_path = tmp_path / "config.ini"
    parser = Mock(name="parser")

    find_config_file = Mock(return_value=config_path)
    read_config = Mock(return_value=parser)
    parse_settings = Mock(return_value=settings)

    monkeypatch.setattr(data_manager, "find_config_file", find_config_file)
    monkeypatch.setattr(data_manager, "read_config", read_config)
    monkeypatch.setattr(data_manager, "parse_settings", parse_settings)

    context = core_logic.load_runtime_context(config_path)

    assert context.settings is settings
    assert context.state.company == settings.company
    assert len(context.state.invoices) == 0
    find_config_file.assert_called_once_with(config_path)
    read_config.assert_called_once_with(config_path.resolve())
    parse_settings.assert_called_once_with(parser, base_path=config_path.resolve().parent)


def test_load_runtime_context_wraps_supplied_state(config_file, settings):
    """An explicitly supplied state should be used as-is."""

    state = data_manager.AppState(company=settings.company)
    context = core_logic.load_runtime_context(config_file, state=state)

    assert context.state is state
    assert context.settings.company.name == "Test Company"


def test_ensure_schema_version_rejects_mismatch(context):
    """Schema mismatches should surface a RuntimeError with clear messaging."""

    bad_context = core_logic.RuntimeContext(
        settings=replace(context.settings, schema_version="0.9"),
        state=context.state,
    )
    with pytest.raises(RuntimeError):
        core_logic.ensure_schema_version(bad_context)


def test_ensure_schema_version_accepts_expected(context):
    """The expected schema version should pass silently."""

    assert context.settings.schema_version == constants.EXPECTED_SCHEMA_VERSION
    core_logic.ensure_schema_version(context)


def test_update_company_profile_coerces_and_validates(context):
    """Settings edits should coerce the tax rate and reject invalid values."""

    updated = core_logic.update_company_profile(context, tax_rate="14.5", name="Renamed Co")

    assert updated.tax_rate == Decimal("14.5")
    assert context.state.company.name == "Renamed Co"
    with pytest.raises(ValueError):
        core_logic.update_company_profile(context, tax_rate="-1")
    with pytest.raises(ValueError):
        core_logic.update_company_profile(context, invoice_counter=0)
    assert context.state.company.tax_rate == Decimal("14.5")


# ---------------------------------------------------------------------------
# Numbering
# ---------------------------------------------------------------------------


def test_allocate_invoice_number_uses_counter_when_free():
    """A free counter value should be used directly and advanced by one."""

    assert core_logic.allocate_invoice_number("INV-", 5, {"INV-0001"}) == ("INV-0005", 6)


def test_allocate_invoice_number_skips_collisions():
    """Taken numbers should be skipped and the counter stored past the winner."""

    number, next_counter = core_logic.allocate_invoice_number("INV-", 5, ["INV-0005", "INV-0006"])

    assert number == "INV-0007"
    assert next_counter == 8


def test_allocate_quote_number_is_ordinal_with_guard():
    """Quote numbers follow the count of quotes but never reuse a taken number."""

    assert core_logic.allocate_quote_number(set(), 0) == "Q-001"
    assert core_logic.allocate_quote_number({"Q-001", "Q-003"}, 2) == "Q-004"


def test_allocate_purchase_order_number_is_padded():
    """Purchase order numbers use four digits."""

    assert core_logic.allocate_purchase_order_number(set(), 0) == "PO-0001"
    assert core_logic.allocate_purchase_order_number({"PO-0002"}, 1) == "PO-0003"


# ---------------------------------------------------------------------------
# Totals
# ---------------------------------------------------------------------------


def test_compute_totals_of_empty_document_is_zero():
    """No items should produce zero subtotal, tax and total."""

    totals = core_logic.compute_totals([], Decimal("15"))

    assert totals == core_logic.DocumentTotals(Decimal("0.00"), Decimal("0.00"), Decimal("0.00"))


def test_compute_totals_applies_tax_rate(make_item):
    """Two units at 100 with 15% tax should total 230."""

    totals = core_logic.compute_totals([make_item(quantity="2", rate="100")], Decimal("15"))

    assert totals.subtotal == Decimal("200.00")
    assert totals.tax_amount == Decimal("30.00")
    assert totals.total == Decimal("230.00")


def test_compute_totals_rounds_half_up(make_item):
    """Tax should round to cents using half-up rounding."""

    totals = core_logic.compute_totals([make_item(quantity="1", rate="0.10")], Decimal("15"))

    assert totals.tax_amount == Decimal("0.02")
    assert totals.total == Decimal("0.12")


def test_compute_totals_uses_stored_item_totals():
    """Subtotal sums item totals without re-deriving them from quantity and rate."""

    item = data_manager.LineItem("Tampered", Decimal("1"), Decimal("100"), Decimal("80"))

    assert core_logic.compute_totals([item], Decimal("0")).subtotal == Decimal("80.00")


def test_edit_line_item_recomputes_total_on_quantity_change(make_item):
    """Changing quantity or rate should recompute the line total."""

    item = make_item(quantity="2", rate="100")

    assert core_logic.edit_line_item(item, quantity="3").total == Decimal("300")
    assert core_logic.edit_line_item(item, rate="50").total == Decimal("100")


def test_edit_line_item_keeps_total_on_description_change(make_item):
    """Other edits should leave the total untouched."""

    item = replace(make_item(quantity="2", rate="100"), total=Decimal("150"))

    assert core_logic.edit_line_item(item, description="Renamed").total == Decimal("150")
    with pytest.raises(TypeError):
        core_logic.edit_line_item(item, total=Decimal("1"))


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


def test_save_invoice_assigns_number_and_totals(context, client, make_item):
    """A new invoice should be numbered from the counter and carry derived totals."""

    invoice = core_logic.save_invoice(context, _draft(client, [make_item(quantity="2", rate="100")]))

    assert invoice.invoice_number == "INV-0005"
    assert invoice.invoice_id == "INV-0005"
    assert invoice.subtotal == Decimal("200.00")
    assert invoice.tax_amount == Decimal("30.00")
    assert invoice.total == invoice.subtotal + invoice.tax_amount
    assert invoice.status == InvoiceStatus.DRAFT
    assert context.state.company.invoice_counter == 6
    assert context.state.invoices.get("INV-0005") == invoice


def test_save_invoice_numbers_stay_unique_despite_collisions(context, client, make_item):
    """Pre-existing numbers above the counter should be skipped."""

    existing = core_logic.save_invoice(context, _draft(client, [make_item()]))
    core_logic.update_company_profile(context, invoice_counter=5)

    second = core_logic.save_invoice(context, _draft(client, [make_item()]))

    assert existing.invoice_number == "INV-0005"
    assert second.invoice_number == "INV-0006"
    assert context.state.company.invoice_counter == 7
    assert len(context.state.invoices.numbers()) == len(context.state.invoices)


def test_save_invoice_edit_keeps_number_and_position(context, client, make_item):
    """Editing replaces the invoice in place and never renumbers it."""

    first = core_logic.save_invoice(context, _draft(client, [make_item()]))
    second = core_logic.save_invoice(context, _draft(client, [make_item()]))

    edited = core_logic.save_invoice(
        context,
        _draft(client, [make_item(quantity="3", rate="100")], invoice_id=first.invoice_id, notes="Revised"),
    )

    assert edited.invoice_number == first.invoice_number
    assert edited.total == Decimal("345.00")
    assert [invoice.invoice_id for invoice in context.state.invoices] == [first.invoice_id, second.invoice_id]
    assert context.state.company.invoice_counter == 7


def test_save_invoice_embeds_client_snapshot(context, client, make_item):
    """Later client edits must not alter issued invoices."""

    invoice = core_logic.save_invoice(context, _draft(client, [make_item()]))
    core_logic.update_client(context, client.client_id, name="Acme Holdings")

    assert context.state.invoices.get(invoice.invoice_id).client.name == "Acme Trading"
    assert context.state.clients.get(client.client_id).name == "Acme Holdings"


def test_save_invoice_uses_tax_rate_at_save_time(context, client, make_item):
    """Changing the tax rate only affects invoices saved afterwards."""

    before = core_logic.save_invoice(context, _draft(client, [make_item()]))
    core_logic.update_company_profile(context, tax_rate=Decimal("0"))
    after = core_logic.save_invoice(context, _draft(client, [make_item()]))

    assert before.tax_amount == Decimal("15.00")
    assert after.tax_amount == Decimal("0.00")


@pytest.mark.parametrize(
    "overrides",
    [
        {"client": None},
        {"items": ()},
        {"due_date": date(2024, 7, 1)},
        {"amount_paid": Decimal("-1")},
        {"amount_paid": Decimal("1000")},
    ],
)
def test_save_invoice_rejects_invalid_drafts(context, client, make_item, overrides):
    """Invalid drafts should raise and leave the state untouched."""

    draft = _draft(client, [make_item()], **overrides)

    with pytest.raises(core_logic.DocumentValidationError):
        core_logic.save_invoice(context, draft)
    assert len(context.state.invoices) == 0
    assert context.state.company.invoice_counter == 5


def test_save_invoice_rejects_negative_quantity(context, client):
    """Negative quantities are a validation failure."""

    item = data_manager.LineItem("Refund", Decimal("-1"), Decimal("10"), Decimal("-10"))

    with pytest.raises(core_logic.DocumentValidationError):
        core_logic.save_invoice(context, _draft(client, [item]))


def test_save_invoice_defaults_dates_to_today(context, client, make_item, set_fixed_today):
    """Missing dates default to the current day."""

    today = set_fixed_today(date(2024, 9, 1))

    invoice = core_logic.save_invoice(context, _draft(client, [make_item()], issue_date=None, due_date=None))

    assert invoice.issue_date == today
    assert invoice.due_date == today


def test_save_invoice_edit_rejects_overpayment(context, client, make_item):
    """An edit cannot record more paid than the invoice total."""

    invoice = core_logic.save_invoice(context, _draft(client, [make_item()]))

    with pytest.raises(core_logic.DocumentValidationError):
        core_logic.save_invoice(
            context,
            _draft(client, [make_item()], invoice_id=invoice.invoice_id, amount_paid=invoice.total + Decimal("0.01")),
        )
    assert context.state.invoices.get(invoice.invoice_id).amount_paid == Decimal("0")


def test_save_invoice_edit_unknown_id_raises(context, client, make_item):
    """Editing a missing invoice should raise a MissingReferenceError."""

    with pytest.raises(core_logic.MissingReferenceError):
        core_logic.save_invoice(context, _draft(client, [make_item()], invoice_id="INV-9999"))


def test_send_invoice_moves_draft_to_pending(context, client, make_item):
    """Sending a draft issues it; sending twice is rejected."""

    invoice = core_logic.save_invoice(context, _draft(client, [make_item()]))

    sent = core_logic.send_invoice(context, invoice.invoice_id)

    assert sent.status == InvoiceStatus.PENDING
    with pytest.raises(core_logic.InvalidTransitionError):
        core_logic.send_invoice(context, invoice.invoice_id)


def test_mark_invoice_paid_uses_preferred_gateway(context, client, make_item):
    """Marking paid settles the total and records the preferred gateway."""

    invoice = core_logic.save_invoice(context, _draft(client, [make_item()]))

    paid = core_logic.mark_invoice_paid(context, invoice.invoice_id)

    assert paid.status == InvoiceStatus.PAID
    assert paid.amount_paid == invoice.total
    assert paid.payment_method == constants.PaymentGateway.PAYFAST.value


def test_record_invoice_payment_partial_then_paid(context, client, make_item):
    """Payments move an issued invoice to Partial and then Paid."""

    invoice = core_logic.save_invoice(context, _draft(client, [make_item(rate="100")]))
    core_logic.send_invoice(context, invoice.invoice_id)

    partial = core_logic.record_invoice_payment(context, invoice.invoice_id, Decimal("50"), payment_method="EFT")
    settled = core_logic.record_invoice_payment(context, invoice.invoice_id, Decimal("65"))

    assert partial.status == InvoiceStatus.PARTIAL
    assert partial.balance_due == Decimal("65.00")
    assert settled.status == InvoiceStatus.PAID
    assert settled.amount_paid == invoice.total
    assert settled.payment_method == "EFT"


def test_record_invoice_payment_rejects_invalid_payments(context, client, make_item):
    """Drafts, overpayments and non-positive amounts are rejected."""

    invoice = core_logic.save_invoice(context, _draft(client, [make_item(rate="100")]))

    with pytest.raises(core_logic.InvalidTransitionError):
        core_logic.record_invoice_payment(context, invoice.invoice_id, Decimal("10"))

    core_logic.send_invoice(context, invoice.invoice_id)
    with pytest.raises(core_logic.BusinessRuleViolation):
        core_logic.record_invoice_payment(context, invoice.invoice_id, Decimal("1000"))
    with pytest.raises(ValueError):
        core_logic.record_invoice_payment(context, invoice.invoice_id, Decimal("0"))


def test_effective_invoice_status_projects_lapsed_pending(context, client, make_item):
    """Pending invoices past their due date read as Overdue without being rewritten."""

    invoice = core_logic.save_invoice(context, _draft(client, [make_item()], status=InvoiceStatus.PENDING))

    assert core_logic.effective_invoice_status(invoice, date(2024, 8, 31)) == InvoiceStatus.PENDING
    assert core_logic.effective_invoice_status(invoice, date(2024, 9, 1)) == InvoiceStatus.OVERDUE
    assert context.state.invoices.get(invoice.invoice_id).status == InvoiceStatus.PENDING


def test_mark_invoice_overdue_requires_issued_invoice(context, client, make_item):
    """Only issued invoices can be stored as Overdue."""

    invoice = core_logic.save_invoice(context, _draft(client, [make_item()]))

    with pytest.raises(core_logic.InvalidTransitionError):
        core_logic.mark_invoice_overdue(context, invoice.invoice_id)
    core_logic.send_invoice(context, invoice.invoice_id)
    assert core_logic.mark_invoice_overdue(context, invoice.invoice_id).status == InvoiceStatus.OVERDUE


# ---------------------------------------------------------------------------
# Quotes
# ---------------------------------------------------------------------------


def test_save_quote_numbers_sequentially(context, client, make_item):
    """Quotes are numbered from the count of existing quotes."""

    first = core_logic.save_quote(context, _quote_draft(client, [make_item()]))
    second = core_logic.save_quote(context, _quote_draft(client, [make_item()]))

    assert [first.quote_number, second.quote_number] == ["Q-001", "Q-002"]
    assert second.total == Decimal("115.00")


def test_save_quote_defaults_expiry(context, client, make_item):
    """A missing expiry date defaults to thirty days after issue."""

    quote = core_logic.save_quote(context, _quote_draft(client, [make_item()], expiry_date=None))

    assert quote.expiry_date == date(2024, 8, 31)


def test_quote_lifecycle_is_enforced(context, client, make_item):
    """Quotes must be sent before acceptance and acceptance is final."""

    quote = core_logic.save_quote(context, _quote_draft(client, [make_item()]))

    with pytest.raises(core_logic.InvalidTransitionError):
        core_logic.accept_quote(context, quote.quote_id)
    core_logic.send_quote(context, quote.quote_id)
    assert core_logic.accept_quote(context, quote.quote_id).status == QuoteStatus.ACCEPTED
    with pytest.raises(core_logic.InvalidTransitionError):
        core_logic.decline_quote(context, quote.quote_id)


def test_convert_quote_to_invoice_preserves_content(context, client, make_item):
    """Conversion copies items, notes, currency and totals into a Draft."""

    quote = core_logic.save_quote(
        context,
        _quote_draft(client, [make_item(quantity="2", rate="100")], notes="Phase one", currency=constants.Currency.USD),
    )
    core_logic.send_quote(context, quote.quote_id)
    accepted = core_logic.accept_quote(context, quote.quote_id)

    draft = core_logic.convert_quote_to_invoice(accepted)

    assert draft.items == accepted.items
    assert draft.notes == "Phase one"
    assert draft.currency == constants.Currency.USD
    assert (draft.subtotal, draft.tax_amount, draft.total) == (accepted.subtotal, accepted.tax_amount, accepted.total)
    assert draft.status == InvoiceStatus.DRAFT
    assert draft.invoice_id == ""


def test_converted_draft_saves_as_new_invoice(context, client, make_item):
    """Saving a converted draft numbers it like any new invoice."""

    quote = core_logic.save_quote(context, _quote_draft(client, [make_item()]))

    invoice = core_logic.save_invoice(context, core_logic.convert_quote_to_invoice(quote))

    assert invoice.invoice_number == "INV-0005"
    assert invoice.total == quote.total
    assert context.state.quotes.get(quote.quote_id).status == QuoteStatus.DRAFT


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------


def test_add_client_starts_pending_kyc(client):
    """New clients await both KYC documents."""

    assert client.kyc_status == constants.KycStatus.PENDING
    assert client.required_docs == (constants.KycDocument.ID, constants.KycDocument.PROOF_OF_ADDRESS)


def test_add_client_requires_name_and_email(context):
    """Blank names or emails are rejected."""

    with pytest.raises(core_logic.DocumentValidationError):
        core_logic.add_client(context, name="  ", email="a@b.test")
    with pytest.raises(core_logic.DocumentValidationError):
        core_logic.add_client(context, name="Name", email="")
    assert len(context.state.clients) == 0


def test_set_kyc_status_updates_client(context, client):
    """KYC review moves the client to the given state."""

    updated = core_logic.set_kyc_status(context, client.client_id, constants.KycStatus.APPROVED)

    assert updated.kyc_status == constants.KycStatus.APPROVED


def test_get_client_unknown_id_raises(context):
    """Unknown client ids surface a MissingReferenceError."""

    with pytest.raises(core_logic.MissingReferenceError):
        core_logic.get_client(context, "missing")


# ---------------------------------------------------------------------------
# Stock reconciliation
# ---------------------------------------------------------------------------


def _stocked_invoice(context, client, make_item, *, stock: str, quantity: str = "20"):
    context.state.products.add(
        data_manager.Product("prod-w", "Widget", "W-1", Decimal(stock), Decimal("250"), Decimal("120"), Decimal("5"))
    )
    return core_logic.save_invoice(
        context,
        _draft(client, [make_item("Widget", quantity, "250", product_id="prod-w"), make_item("Labour")]),
    )


def test_find_stock_shortfalls_reports_missing_units(context, client, make_item):
    """Demand of 20 against stock of 15 is a shortfall of 5."""

    invoice = _stocked_invoice(context, client, make_item, stock="15")

    shortfalls = core_logic.find_stock_shortfalls(invoice, context.state.products.values())

    assert shortfalls == [data_manager.PurchaseOrderLine("prod-w", "Widget", Decimal("5"))]
    assert core_logic.has_stock_shortage(invoice, context.state.products.values())


def test_generate_purchase_order_for_shortfall(context, client, make_item):
    """A shortfall yields a stored Draft purchase order for the default supplier."""

    invoice = _stocked_invoice(context, client, make_item, stock="15")

    order = core_logic.generate_purchase_order(context, invoice.invoice_id, today=date(2024, 8, 2))

    assert order.po_number == "PO-0001"
    assert order.supplier == constants.DEFAULT_SUPPLIER
    assert order.status == constants.PurchaseOrderStatus.DRAFT
    assert order.order_date == date(2024, 8, 2)
    assert order.items[0].quantity == Decimal("5")
    assert context.state.purchase_orders.get(order.po_id) == order
    assert context.state.products.get("prod-w").current_stock == Decimal("15")


def test_generate_purchase_order_without_shortage_returns_none(context, client, make_item):
    """Stock of 25 covers demand of 20, so no purchase order is created."""

    invoice = _stocked_invoice(context, client, make_item, stock="25")

    assert core_logic.find_stock_shortfalls(invoice, context.state.products.values()) == []
    assert core_logic.generate_purchase_order(context, invoice.invoice_id) is None
    assert len(context.state.purchase_orders) == 0


def test_find_stock_shortfalls_skips_unknown_products(context, client, make_item):
    """Items linked to deleted products are treated as non-inventory lines."""

    invoice = core_logic.save_invoice(context, _draft(client, [make_item("Ghost", "3", "10", product_id="gone")]))

    assert core_logic.find_stock_shortfalls(invoice, {}) == []


def test_purchase_order_numbers_increment(context, client, make_item):
    """Consecutive purchase orders get consecutive numbers."""

    invoice = _stocked_invoice(context, client, make_item, stock="15")

    first = core_logic.generate_purchase_order(context, invoice.invoice_id)
    second = core_logic.generate_purchase_order(context, invoice.invoice_id)

    assert (first.po_number, second.po_number) == ("PO-0001", "PO-0002")
    assert first.po_id != second.po_id
