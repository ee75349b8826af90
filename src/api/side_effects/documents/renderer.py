import asyncio
import logging
from pathlib import Path
from typing import Optional
from jinja2 import DictLoader, Environment, select_autoescape

from src.api.invoices.constants import InvoiceKind
from src.api.invoices.schemas.invoice import InvoiceRead
from src.api.side_effects.documents.config import DocumentConfig
from src.api.side_effects.schemas.side_effect import DocumentHandle

logger = logging.getLogger(__name__)

INVOICE_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>{{ title }} {{ invoice.invoice_number }}</title>
</head>
<body>
  <h1>{{ company_name }}</h1>
  <h2>{{ title }} {{ invoice.invoice_number }}</h2>
  <p>Issued: {{ invoice.created_at.strftime("%Y-%m-%d") }}{% if invoice.validity_days %} &middot; valid for {{ invoice.validity_days }} days{% endif %}</p>
  {% if invoice.proforma_invoice_id %}<p>Derived from proforma invoice {{ invoice.proforma_invoice_id }}</p>{% endif %}

  <h3>Bill to</h3>
  <p>
    {{ invoice.buyer.name or invoice.buyer.email }}<br>
    {% if invoice.buyer.company_name %}{{ invoice.buyer.company_name }}<br>{% endif %}
    {% if invoice.buyer.tax_id %}Tax ID: {{ invoice.buyer.tax_id }}<br>{% endif %}
    {% if invoice.buyer.address %}{{ invoice.buyer.address }}<br>{% endif %}
    {% if invoice.buyer.city %}{{ invoice.buyer.city }}{% endif %} {% if invoice.buyer.country %}{{ invoice.buyer.country }}{% endif %}
  </p>

  <table>
    <tr><th>Description</th><th>Hours</th><th>Price per hour</th><th>Amount</th></tr>
    <tr>
      <td>{{ invoice.package_name }}</td>
      <td>{{ invoice.hours or "" }}</td>
      <td>{{ invoice.price_per_hour or "" }}</td>
      <td>{{ invoice.subtotal }} {{ invoice.currency }}</td>
    </tr>
  </table>

  <p>Subtotal: {{ invoice.subtotal }} {{ invoice.currency }}</p>
  <p>VAT ({{ invoice.vat_percentage }}%): {{ invoice.vat_amount }} {{ invoice.currency }}</p>
  <p><strong>Total: {{ invoice.total_amount }} {{ invoice.currency }}</strong></p>

  {% if invoice.converted_amounts and invoice.exchange_rate_snapshot %}
  <p>
    Exchange rate: 1 {{ invoice.exchange_rate_snapshot.from_currency }} = {{ invoice.exchange_rate_snapshot.rate }} {{ invoice.exchange_rate_snapshot.to_currency }}
    ({{ invoice.exchange_rate_snapshot.provider }}{% if invoice.exchange_rate_snapshot.as_of %}, {{ invoice.exchange_rate_snapshot.as_of }}{% endif %})<br>
    Total: {{ invoice.converted_amounts.total_amount }} {{ invoice.converted_amounts.currency }}
  </p>
  {% endif %}

  {% if invoice.payment_status.value == "paid" %}
  <p><strong>PAID</strong>{% if invoice.paid_at %} on {{ invoice.paid_at.strftime("%Y-%m-%d") }}{% endif %}</p>
  {% elif payment_url %}
  <p>Pay online: <a href="{{ payment_url }}">{{ payment_url }}</a></p>
  {% endif %}
</body>
</html>
"""


def html_to_pdf(html: str) -> bytes:
    # WeasyPrint loads Pango on import. A host without it fails the document
    # step only.
    from weasyprint import HTML

    return HTML(string=html).write_pdf()


class PdfDocumentRenderer:
    """
    Renders invoices to PDF documents stored under the upload path.

    The invoice is laid out as HTML with Jinja2 and printed to PDF with
    WeasyPrint. Both steps run in a worker thread.
    """

    def __init__(self, config: DocumentConfig):
        self.config = config
        self.jinja_env = Environment(
            loader=DictLoader({"invoice.html": INVOICE_TEMPLATE}),
            autoescape=select_autoescape(["html", "xml"])
        )

    def _filename(self, invoice: InvoiceRead) -> str:
        prefix = "fiscal-invoice" if invoice.kind == InvoiceKind.FISCAL else "invoice"
        return f"{prefix}-{invoice.invoice_number}.pdf"

    def render_html(self, invoice: InvoiceRead, payment_url: Optional[str] = None) -> str:
        template = self.jinja_env.get_template("invoice.html")
        return template.render(
            invoice=invoice,
            payment_url=payment_url,
            company_name=self.config.company_name,
            title="Fiscal invoice" if invoice.kind == InvoiceKind.FISCAL else "Proforma invoice",
        )

    def render_pdf(self, invoice: InvoiceRead, payment_url: Optional[str] = None) -> bytes:
        return html_to_pdf(self.render_html(invoice, payment_url))

    def _write(self, filename: str, content: bytes) -> str:
        directory = Path(self.config.upload_path)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / filename
        path.write_bytes(content)
        return str(path)

    async def render(self, invoice: InvoiceRead, payment_url: Optional[str] = None) -> DocumentHandle:
        content = await asyncio.to_thread(self.render_pdf, invoice, payment_url)
        filename = self._filename(invoice)
        path = await asyncio.to_thread(self._write, filename, content)
        logger.info(f"Invoice document generated for invoice {invoice.id}: {path}")
        return DocumentHandle(filename=filename, mime_type="application/pdf", content=content, path=path)
