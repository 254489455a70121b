"""Hosted payment gateway hand-off.

The application never processes card data itself. For an invoice it builds
the instructions a browser needs to continue at the company's preferred
gateway: a form post for PayFast or a popup configuration for Yoco.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Union

from . import log
from .constants import PaymentGateway
from .core_logic import BusinessRuleViolation, quantize_money
from .data_manager import CompanyProfile, Invoice


PAYFAST_URL = "https://sandbox.payfast.co.za/eng/process"
YOCO_SDK_URL = "https://js.yoco.com/sdk/v1/yoco-sdk-web.js"
DEFAULT_BASE_URL = "http://localhost:8000"


class PaymentConfigurationError(BusinessRuleViolation):
    """Raised when the selected gateway lacks the credentials it needs."""


@dataclass(frozen=True)
class PaymentRedirect:
    """A form that must be POSTed to the gateway to start the payment."""

    gateway: PaymentGateway
    url: str
    fields: Dict[str, str]
    method: str = "POST"


@dataclass(frozen=True)
class PaymentPopup:
    """Parameters for an in-page checkout popup."""

    gateway: PaymentGateway
    sdk_url: str
    public_key: str
    amount_in_cents: int
    currency: str
    invoice_number: str
    description: str


PaymentInstruction = Union[PaymentRedirect, PaymentPopup]


def _split_name(full_name: str) -> tuple[str, str]:
    parts = full_name.split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


def build_payfast_redirect(invoice: Invoice, company: CompanyProfile, *, base_url: str = DEFAULT_BASE_URL) -> PaymentRedirect:
    """Build the PayFast form post for ``invoice``.

    The invoice number is sent as the merchant payment id so the gateway
    notification can be matched back to the invoice.

    Raises:
        PaymentConfigurationError: If the merchant id or key is missing.
    """
    if not company.payfast_merchant_id or not company.payfast_merchant_key:
        log.error("PayFast payment requested without merchant credentials")
        raise PaymentConfigurationError(
            "PayFast settings are not configured. Add your Merchant ID and Key in Settings."
        )

    first_name, last_name = _split_name(invoice.client.name)
    base_url = base_url.rstrip("/")
    fields = {
        "merchant_id": company.payfast_merchant_id,
        "merchant_key": company.payfast_merchant_key,
        "return_url": f"{base_url}?payment_status=success",
        "cancel_url": f"{base_url}?payment_status=cancelled",
        "notify_url": f"{base_url}/api/payfast-notify",
        "name_first": first_name,
        "name_last": last_name,
        "email_address": invoice.client.email,
        "m_payment_id": invoice.invoice_number,
        "amount": f"{quantize_money(invoice.total):.2f}",
        "item_name": f"Invoice {invoice.invoice_number} - {company.name}",
        "item_description": ", ".join(item.description for item in invoice.items),
    }
    return PaymentRedirect(gateway=PaymentGateway.PAYFAST, url=PAYFAST_URL, fields=fields)


def build_yoco_popup(invoice: Invoice, company: CompanyProfile) -> PaymentPopup:
    """Build the Yoco popup configuration for ``invoice``.

    Raises:
        PaymentConfigurationError: If the public key is missing.
    """
    if not company.yoco_public_key:
        log.error("Yoco payment requested without a public key")
        raise PaymentConfigurationError("Yoco settings are not configured. Add your Public Key in Settings.")

    cents = int(quantize_money(invoice.total) * Decimal("100"))
    return PaymentPopup(
        gateway=PaymentGateway.YOCO,
        sdk_url=YOCO_SDK_URL,
        public_key=company.yoco_public_key,
        amount_in_cents=cents,
        currency=invoice.currency.value,
        invoice_number=invoice.invoice_number,
        description=f"Invoice {invoice.invoice_number} - {company.name}",
    )


def initiate_payment(invoice: Invoice, company: CompanyProfile, *, base_url: str = DEFAULT_BASE_URL) -> PaymentInstruction:
    """Route ``invoice`` to the company's preferred gateway.

    Args:
        invoice (Invoice): Invoice the client wants to pay.
        company (CompanyProfile): Profile holding the gateway choice and credentials.
        base_url (str): Public address of the application, used for return URLs.

    Returns:
        PaymentRedirect | PaymentPopup: Instructions for the client's browser.

    Raises:
        PaymentConfigurationError: If the gateway is unsupported or not configured.
    """
    gateway = company.preferred_gateway
    if gateway == PaymentGateway.PAYFAST:
        instruction: PaymentInstruction = build_payfast_redirect(invoice, company, base_url=base_url)
    elif gateway == PaymentGateway.YOCO:
        instruction = build_yoco_popup(invoice, company)
    else:
        raise PaymentConfigurationError("No payment gateway selected or supported.")
    log.info("Payment for invoice '%s' routed to %s", invoice.invoice_number, gateway.value)
    return instruction
