import os
from typing import Optional
from pydantic import BaseModel, Field


class PaymentGatewayConfig(BaseModel):
    base_url: Optional[str] = Field(default_factory=lambda: os.getenv("PAYMENT_GATEWAY_URL"))
    api_key: Optional[str] = Field(default_factory=lambda: os.getenv("PAYMENT_GATEWAY_KEY"))
    frontend_url: str = Field(default_factory=lambda: os.getenv(
        "FRONTEND_URL", "http://localhost:3000"))
    mock_base_url: str = "https://mock-payment.example.com/pay"
    timeout_seconds: float = Field(default_factory=lambda: float(
        os.getenv("PAYMENT_GATEWAY_TIMEOUT_SECONDS", "10")))

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url and self.api_key)
