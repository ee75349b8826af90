from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class CounterSource(str, Enum):
    DURABLE = "durable"
    IN_PROCESS = "in_process"
    DEGRADED = "degraded"


class CounterRead(BaseModel):
    """Schema for reading a series counter"""
    series: str
    current_value: int
    start_value: int
    updated_at: Optional[datetime] = None
    source: CounterSource = CounterSource.DURABLE

    model_config = ConfigDict(from_attributes=True)


class AllocatedNumber(BaseModel):
    """A number handed out for a new invoice"""
    series: str
    value: Optional[int] = None
    invoice_number: str
    source: CounterSource
