from datetime import datetime, date
from decimal import Decimal
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field


class FeedRate(BaseModel):
    """A single quote returned by the remote rate feed"""
    rate: Decimal
    as_of: Optional[date] = None


class CurrencyPair(BaseModel):
    from_currency: str
    to_currency: str

    model_config = ConfigDict(frozen=True)

    @property
    def key(self) -> str:
        return f"{self.from_currency}_{self.to_currency}"


class RateCacheEntry(BaseModel):
    """Last successfully fetched rate for a currency pair"""
    pair: CurrencyPair
    rate: Decimal
    fetched_at: datetime
    as_of: Optional[date] = None

    model_config = ConfigDict(frozen=True)


class ExchangeRateSnapshot(BaseModel):
    """
    Rate used for an invoice, embedded in the invoice at issuance time.

    Never recomputed once stored.
    """
    from_currency: str
    to_currency: str
    rate: Decimal
    provider: str
    fetched_at: datetime
    as_of: Optional[date] = None
    is_cached: bool = False
    is_stale: bool = False

    model_config = ConfigDict(frozen=True)


class ConvertedAmounts(BaseModel):
    currency: str
    subtotal: Decimal
    vat_amount: Decimal
    total_amount: Decimal


class CacheEntryStatus(BaseModel):
    pair: str
    rate: Decimal
    fetched_at: datetime
    as_of: Optional[date] = None
    is_fresh: bool


class CacheStatus(BaseModel):
    has_rates: bool
    ttl_hours: float
    last_update: Optional[datetime] = None
    entries: List[CacheEntryStatus] = Field(default_factory=list)
    refreshes_in_flight: List[str] = Field(default_factory=list)
