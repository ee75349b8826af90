from typing import Optional, Tuple
from jinja2 import DictLoader, Environment

from src.api.invoices.constants import InvoiceKind
from src.api.invoices.schemas.invoice import InvoiceRead

PROFORMA_BODY = """Invoice {{ invoice.invoice_number }}

Thank you for your order with {{ company_name }}!

Package: {{ invoice.package_name }}
Subtotal: {{ invoice.subtotal }} {{ invoice.currency }}
VAT ({{ invoice.vat_percentage }}%): {{ invoice.vat_amount }} {{ invoice.currency }}
Total Amount: {{ invoice.total_amount }} {{ invoice.currency }}
{% include "conversion.txt" %}
Invoice Number: {{ invoice.invoice_number }}
Date: {{ invoice.created_at.strftime("%Y-%m-%d") }}
{% if payment_url %}
Payment Link: {{ payment_url }}
{% endif %}{% if has_attachment %}
Invoice document: attached to this email
{% endif %}
This is an automated message from {{ company_name }}.
"""

FISCAL_BODY = """FISCAL INVOICE {{ invoice.invoice_number }} - PAID

Your payment has been confirmed and your fiscal invoice is ready!

Package: {{ invoice.package_name }}
Subtotal: {{ invoice.subtotal }} {{ invoice.currency }}
VAT ({{ invoice.vat_percentage }}%): {{ invoice.vat_amount }} {{ invoice.currency }}
Total Amount: {{ invoice.total_amount }} {{ invoice.currency }}
{% include "conversion.txt" %}
Fiscal Invoice Number: {{ invoice.invoice_number }}
Date: {{ invoice.created_at.strftime("%Y-%m-%d") }}
Status: PAID
{% if has_attachment %}
Invoice document: attached to this email
{% endif %}
This is your official fiscal invoice for tax purposes.

This is an automated message from {{ company_name }}.
"""

CONVERSION = """{% if invoice.converted_amounts and invoice.exchange_rate_snapshot %}
Currency Conversion ({{ invoice.exchange_rate_snapshot.from_currency }} -> {{ invoice.exchange_rate_snapshot.to_currency }})
Exchange Rate: 1 {{ invoice.exchange_rate_snapshot.from_currency }} = {{ invoice.exchange_rate_snapshot.rate }} {{ invoice.exchange_rate_snapshot.to_currency }}
Source: {{ invoice.exchange_rate_snapshot.provider }}
Converted Subtotal: {{ invoice.converted_amounts.subtotal }} {{ invoice.converted_amounts.currency }}
Converted VAT: {{ invoice.converted_amounts.vat_amount }} {{ invoice.converted_amounts.currency }}
Converted Total: {{ invoice.converted_amounts.total_amount }} {{ invoice.converted_amounts.currency }}
{% endif %}"""

jinja_env = Environment(
    loader=DictLoader({
        "proforma.txt": PROFORMA_BODY,
        "fiscal.txt": FISCAL_BODY,
        "conversion.txt": CONVERSION,
    }),
    autoescape=False,
)


def notification_subject(invoice: InvoiceRead) -> str:
    if invoice.kind == InvoiceKind.FISCAL:
        return f"FISCAL INVOICE {invoice.invoice_number} - {invoice.package_name} (PAID)"
    return f"Invoice {invoice.invoice_number} - {invoice.package_name}"


def compose_notification(invoice: InvoiceRead, payment_url: Optional[str] = None,
                         has_attachment: bool = False,
                         company_name: str = "Invoice Engine") -> Tuple[str, str]:
    """Return the (subject, body) of the e-mail sent for an invoice"""
    template_name = "fiscal.txt" if invoice.kind == InvoiceKind.FISCAL else "proforma.txt"
    body = jinja_env.get_template(template_name).render(
        invoice=invoice,
        payment_url=payment_url,
        has_attachment=has_attachment,
        company_name=company_name,
    )
    return notification_subject(invoice), body
