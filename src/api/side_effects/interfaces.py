from decimal import Decimal
from typing import Optional, Protocol

from src.api.invoices.schemas.invoice import InvoiceRead
from src.api.side_effects.schemas.side_effect import DocumentHandle


class PaymentLinkProvider(Protocol):
    async def create_link(self, invoice_id: str, amount: Decimal, currency: str,
                          buyer_email: str, description: Optional[str] = None) -> str:
        ...


class DocumentRenderer(Protocol):
    async def render(self, invoice: InvoiceRead, payment_url: Optional[str] = None) -> DocumentHandle:
        ...


class NotificationSender(Protocol):
    async def send(self, recipient: str, subject: str, body: str,
                   attachment: Optional[DocumentHandle] = None) -> str:
        ...
