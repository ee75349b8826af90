from typing import Optional, Dict, Any
from datetime import datetime
from sqlmodel import Field, Column, JSON, DateTime
from src.api.common.models.base import BaseModel, TimestampMixin


class SideEffectFailure(BaseModel, TimestampMixin, table=True):
    """
    Model to track side effects that failed while issuing an invoice
    """
    id: Optional[int] = Field(default=None, primary_key=True)

    # Invoice the side effect belonged to. Not a foreign key: failures are
    # recorded even when the invoice write itself is still in flight.
    invoice_id: str = Field(index=True, description="Invoice the side effect was run for")
    invoice_number: Optional[str] = Field(default=None, description="Human-facing invoice number")
    step: str = Field(index=True, description="Side effect that failed (e.g., 'payment_link', 'document', 'notification')")

    # Error details
    error_message: str = Field(description="Human-readable error message")
    error_details: Dict[str, Any] = Field(default={}, sa_column=Column(JSON), description="Additional error details as JSON")

    # Status tracking
    is_resolved: bool = Field(default=False, index=True, description="Whether the failure has been handled")
    resolved_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    resolution_notes: Optional[str] = Field(default=None, description="Notes about how the failure was handled")
