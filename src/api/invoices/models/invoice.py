import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional
from sqlmodel import Field, Column, JSON, DateTime
from src.api.common.models.base import BaseModel, TimestampMixin
from src.api.common.utils.encryption import encrypt_json, decrypt_json
from src.api.invoices.constants import InvoiceKind, InvoiceStatus, PaymentStatus


def generate_invoice_id() -> str:
    return str(uuid.uuid4())


class Invoice(BaseModel, TimestampMixin, table=True):
    """
    Proforma or fiscal invoice issued by the engine
    """
    id: str = Field(default_factory=generate_invoice_id, primary_key=True, max_length=36)

    # Numbering
    invoice_number: str = Field(index=True, unique=True)
    series: str = Field(index=True)
    sequence_number: Optional[int] = None

    # Classification
    kind: InvoiceKind = Field(index=True)
    status: InvoiceStatus = Field(default=InvoiceStatus.ISSUED, index=True)
    payment_status: PaymentStatus = Field(default=PaymentStatus.PENDING, index=True)

    # Purchase
    user_id: str = Field(index=True)
    package_id: str
    package_name: str
    hours: Optional[Decimal] = Field(default=None, max_digits=10, decimal_places=2)
    price_per_hour: Optional[Decimal] = Field(default=None, max_digits=12, decimal_places=2)
    validity_days: Optional[int] = None
    payment_method: Optional[str] = None

    # Encrypted buyer personal data (JSON)
    encrypted_buyer_data: str = ""

    # Amounts, in `currency`
    subtotal: Decimal = Field(max_digits=14, decimal_places=2)
    vat_percentage: Decimal = Field(max_digits=5, decimal_places=2)
    vat_amount: Decimal = Field(max_digits=14, decimal_places=2)
    total_amount: Decimal = Field(max_digits=14, decimal_places=2)
    prices_include_vat: bool = False
    currency: str = Field(max_length=3)

    # Conversion. The snapshot is copied as-is to derived invoices.
    target_currency: Optional[str] = Field(default=None, max_length=3)
    conversion_requested: bool = False
    conversion_skipped: bool = False
    conversion_skip_reason: Optional[str] = None
    converted_amounts: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    exchange_rate_snapshot: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))

    # Side effect results
    payment_url: Optional[str] = None
    document_ref: Optional[str] = None
    notification_id: Optional[str] = None
    side_effects: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))

    # Proforma <-> fiscal derivation
    proforma_invoice_id: Optional[str] = Field(default=None, foreign_key="invoice.id", index=True)
    fiscal_invoice_id: Optional[str] = Field(default=None, index=True)

    # Transitions
    paid_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    payment_details: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    cancelled_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    cancellation_reason: Optional[str] = None

    # Properties to access encrypted data
    @property
    def buyer(self) -> Dict[str, Any]:
        """Get decrypted buyer data"""
        return decrypt_json(self.encrypted_buyer_data)

    @buyer.setter
    def buyer(self, value: Dict[str, Any]):
        """Set encrypted buyer data"""
        self.encrypted_buyer_data = encrypt_json(value)
