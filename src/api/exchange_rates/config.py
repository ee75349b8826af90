import os
from typing import List
from pydantic import BaseModel, Field


def _split_currencies(value: str) -> List[str]:
    return [item.strip().upper() for item in value.split(",") if item.strip()]


class ExchangeRateConfig(BaseModel):
    feed_url: str = Field(default_factory=lambda: os.getenv(
        "EXCHANGE_RATE_FEED_URL", "https://www.bnr.ro/nbrfxrates.xml"))
    provider: str = Field(default_factory=lambda: os.getenv(
        "EXCHANGE_RATE_PROVIDER", "BNR"))
    local_currency: str = Field(default_factory=lambda: os.getenv(
        "LOCAL_CURRENCY", "RON").upper())
    # Foreign currencies the feed quotes against the local currency
    currencies: List[str] = Field(default_factory=lambda: _split_currencies(
        os.getenv("EXCHANGE_RATE_CURRENCIES", "EUR")))
    ttl_hours: float = Field(default_factory=lambda: float(
        os.getenv("EXCHANGE_RATE_TTL_HOURS", "24")))
    timeout_seconds: float = Field(default_factory=lambda: float(
        os.getenv("EXCHANGE_RATE_TIMEOUT_SECONDS", "10")))
