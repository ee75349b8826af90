from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator
from datetime import datetime
from decimal import Decimal

from src.api.exchange_rates.schemas.exchange_rate import ConvertedAmounts, ExchangeRateSnapshot
from src.api.invoices.constants import InvoiceKind, InvoiceStatus, PaymentStatus
from src.api.numbering.schemas.series_counter import CounterSource
from src.api.side_effects.schemas.side_effect import SideEffectReport

CURRENCY_PATTERN = r"^[A-Za-z]{3}$"


class BuyerData(BaseModel):
    """Personal data of the invoiced buyer"""
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    name: Optional[str] = None
    company_name: Optional[str] = None
    tax_id: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None


class IssueProformaRequest(BaseModel):
    """Purchase command that issues a proforma invoice"""
    user_id: str = Field(..., min_length=1)
    package_id: str = Field(..., min_length=1)
    package_name: str = Field(..., min_length=1)
    hours: Optional[Decimal] = Field(default=None, gt=0)
    price_per_hour: Optional[Decimal] = Field(default=None, ge=0)
    total_price: Decimal = Field(..., gt=0, description="Subtotal, or total when prices include VAT")
    currency: Optional[str] = Field(default=None, pattern=CURRENCY_PATTERN)
    vat_percentage: Optional[Decimal] = None
    prices_include_vat: Optional[bool] = None
    convert_currency: bool = False
    target_currency: Optional[str] = Field(default=None, pattern=CURRENCY_PATTERN)
    validity_days: Optional[int] = Field(default=None, gt=0)
    buyer: BuyerData
    payment_method: Optional[str] = None
    payment_link: bool = False

    @field_validator("currency", "target_currency")
    @classmethod
    def upper_currency(cls, value: Optional[str]) -> Optional[str]:
        return value.upper() if value else value


class MarkPaidRequest(BaseModel):
    """Payment metadata recorded when a proforma invoice is paid"""
    payment_method: Optional[str] = None
    transaction_id: Optional[str] = None
    amount: Optional[Decimal] = None
    paid_at: Optional[datetime] = None
    notes: Optional[str] = None

    model_config = ConfigDict(extra="allow")


class CancelRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class InvoiceRead(BaseModel):
    """Schema for reading invoice data"""
    id: str
    invoice_number: str
    series: str
    sequence_number: Optional[int] = None
    kind: InvoiceKind
    status: InvoiceStatus
    payment_status: PaymentStatus
    user_id: str
    package_id: str
    package_name: str
    hours: Optional[Decimal] = None
    price_per_hour: Optional[Decimal] = None
    validity_days: Optional[int] = None
    payment_method: Optional[str] = None
    buyer: BuyerData
    subtotal: Decimal
    vat_percentage: Decimal
    vat_amount: Decimal
    total_amount: Decimal
    prices_include_vat: bool
    currency: str
    target_currency: Optional[str] = None
    conversion_requested: bool = False
    conversion_skipped: bool = False
    conversion_skip_reason: Optional[str] = None
    converted_amounts: Optional[ConvertedAmounts] = None
    exchange_rate_snapshot: Optional[ExchangeRateSnapshot] = None
    payment_url: Optional[str] = None
    document_ref: Optional[str] = None
    notification_id: Optional[str] = None
    side_effects: Optional[SideEffectReport] = None
    proforma_invoice_id: Optional[str] = None
    fiscal_invoice_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    payment_details: Optional[Dict[str, Any]] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class InvoiceStatusRead(BaseModel):
    invoice_id: str
    invoice_number: str
    kind: InvoiceKind
    status: InvoiceStatus
    payment_status: PaymentStatus
    message: str
    updated_at: datetime


class InvoiceList(BaseModel):
    invoices: List[InvoiceRead]
    total: int
    limit: int
    offset: int


class IssuedInvoiceData(BaseModel):
    """Authoritative result of an issuance, present even when side effects degraded"""
    invoice_id: str
    invoice_number: str
    kind: InvoiceKind
    status: InvoiceStatus
    payment_status: PaymentStatus
    subtotal: Decimal
    vat_percentage: Decimal
    vat_amount: Decimal
    total_amount: Decimal
    currency: str
    numbering_source: CounterSource
    conversion_requested: bool = False
    conversion_skipped: bool = False
    conversion_skip_reason: Optional[str] = None
    converted_amounts: Optional[ConvertedAmounts] = None
    exchange_rate_snapshot: Optional[ExchangeRateSnapshot] = None
    payment_url: Optional[str] = None
    payment_link_generated: Optional[bool] = None
    document_generated: Optional[bool] = None
    notification_sent: Optional[bool] = None
    side_effects: SideEffectReport


class IssueProformaResponse(BaseModel):
    success: bool = True
    data: IssuedInvoiceData


class MarkPaidData(BaseModel):
    proforma_invoice_id: str
    proforma_invoice_number: str
    paid_at: datetime
    fiscal_invoice: IssuedInvoiceData


class MarkPaidResponse(BaseModel):
    success: bool = True
    data: MarkPaidData


class CancelData(BaseModel):
    invoice_id: str
    invoice_number: str
    status: InvoiceStatus
    cancelled_at: datetime
    cancellation_reason: str


class CancelResponse(BaseModel):
    success: bool = True
    data: CancelData
