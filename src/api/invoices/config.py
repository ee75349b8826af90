import os
from decimal import Decimal
from pydantic import BaseModel, Field
from src.api.invoices.constants import SideEffectsMode


class InvoiceConfig(BaseModel):
    vat_percentage: Decimal = Field(default_factory=lambda: Decimal(
        os.getenv("VAT_PERCENTAGE", "19")))
    prices_include_vat: bool = Field(default_factory=lambda: os.getenv(
        "PRICES_INCLUDE_VAT", "false").lower() == "true")
    default_currency: str = Field(default_factory=lambda: os.getenv(
        "DEFAULT_CURRENCY", "EUR").upper())
    # Conversion target when a command does not name one
    local_currency: str = Field(default_factory=lambda: os.getenv(
        "LOCAL_CURRENCY", "RON").upper())
    proforma_series: str = Field(default_factory=lambda: os.getenv(
        "PROFORMA_INVOICE_SERIES", "PROF"))
    fiscal_series: str = Field(default_factory=lambda: os.getenv(
        "FISCAL_INVOICE_SERIES", "FISC"))
    side_effects_mode: SideEffectsMode = Field(default_factory=lambda: SideEffectsMode(
        os.getenv("SIDE_EFFECTS_MODE", "inline").lower()))
    side_effect_timeout_seconds: float = Field(default_factory=lambda: float(
        os.getenv("SIDE_EFFECT_TIMEOUT_SECONDS", "30")))
