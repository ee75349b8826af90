import logging
from decimal import Decimal
from typing import Optional
import httpx
from src.api.common.errors import SideEffectError
from src.api.common.utils.money import round_money
from src.api.side_effects.payments.config import PaymentGatewayConfig
from src.api.side_effects.schemas.side_effect import SideEffectStep

logger = logging.getLogger(__name__)


class PaymentLinkClient:
    """
    Creates payment links on the payment gateway.

    Without gateway credentials a mock link is returned so development
    setups can issue invoices end to end.
    """

    def __init__(self, config: PaymentGatewayConfig):
        self.config = config
        self.headers = {
            "Authorization": f"Bearer {config.api_key}",
            "Content-Type": "application/json"
        }

    async def create_link(self, invoice_id: str, amount: Decimal, currency: str,
                          buyer_email: str, description: Optional[str] = None) -> str:
        """
        Create a payment link for an invoice.

        Args:
            invoice_id: Invoice being paid
            amount: Amount to charge in major units
            currency: ISO currency code
            buyer_email: E-mail of the payer
            description: Text shown on the payment page

        Returns:
            The payment URL
        """
        if not self.config.is_configured:
            url = f"{self.config.mock_base_url}/{invoice_id}"
            logger.info(f"Mock payment link generated for invoice {invoice_id}: {url}")
            return url

        payload = {
            "amount": int(round_money(amount) * 100),
            "currency": currency.lower(),
            "description": description,
            "customer_email": buyer_email,
            "metadata": {"invoice_id": invoice_id},
            "success_url": f"{self.config.frontend_url}/payment/success?invoice_id={invoice_id}",
            "cancel_url": f"{self.config.frontend_url}/payment/cancel?invoice_id={invoice_id}",
        }

        try:
            async with httpx.AsyncClient(timeout=self.config.timeout_seconds) as client:
                response = await client.post(
                    f"{self.config.base_url}/payment-links",
                    headers=self.headers,
                    json=payload
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error occurred in PaymentLinkClient create_link for invoice {invoice_id}: {e}")
            raise SideEffectError(
                f"HTTP error occurred creating payment link: {e}",
                invoice_id=invoice_id, step=SideEffectStep.PAYMENT_LINK.value)
        except httpx.HTTPError as e:
            logger.error(f"Error occurred in PaymentLinkClient create_link for invoice {invoice_id}: {e}")
            raise SideEffectError(
                f"Error occurred creating payment link: {e}",
                invoice_id=invoice_id, step=SideEffectStep.PAYMENT_LINK.value)

        url = data.get("url")
        if not url:
            raise SideEffectError(
                "Payment gateway response did not contain a url",
                invoice_id=invoice_id, step=SideEffectStep.PAYMENT_LINK.value)
        return url
