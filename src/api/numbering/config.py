import os
from typing import Dict, Optional
from pydantic import BaseModel, Field


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class NumberingConfig(BaseModel):
    proforma_series: str = Field(default_factory=lambda: os.getenv(
        "PROFORMA_INVOICE_SERIES", "PROF"))
    fiscal_series: str = Field(default_factory=lambda: os.getenv(
        "FISCAL_INVOICE_SERIES", "FISC"))
    proforma_start_number: int = Field(default_factory=lambda: int(
        os.getenv("PROFORMA_INVOICE_START_NUMBER", "1000")))
    fiscal_start_number: int = Field(default_factory=lambda: int(
        os.getenv("FISCAL_INVOICE_START_NUMBER", "1000")))
    # Start value for series created lazily by the durable store
    default_start_number: int = 1000
    # "database" or "memory"
    store: str = Field(default_factory=lambda: os.getenv(
        "NUMBERING_STORE", "database").lower())
    timeout_seconds: float = Field(default_factory=lambda: float(
        os.getenv("NUMBERING_TIMEOUT_SECONDS", "5")))
    allow_in_process_fallback: bool = Field(default_factory=lambda: _env_flag(
        "NUMBERING_ALLOW_IN_PROCESS_FALLBACK", "true"))
    require_durable_store: bool = Field(default_factory=lambda: _env_flag(
        "NUMBERING_REQUIRE_DURABLE_STORE",
        "true" if os.getenv("ENV") == "production" else "false"))

    @property
    def configured_series(self) -> Dict[str, int]:
        return {
            self.proforma_series: self.proforma_start_number,
            self.fiscal_series: self.fiscal_start_number,
        }

    def start_for(self, series: str) -> Optional[int]:
        return self.configured_series.get(series)
