import os
from typing import Optional
from pydantic import BaseModel, Field


class SmtpConfig(BaseModel):
    host: Optional[str] = Field(default_factory=lambda: os.getenv("SMTP_HOST"))
    port: int = Field(default_factory=lambda: int(os.getenv("SMTP_PORT", "587")))
    username: Optional[str] = Field(default_factory=lambda: os.getenv("SMTP_USER"))
    password: Optional[str] = Field(default_factory=lambda: os.getenv("SMTP_PASS"))
    use_tls: bool = Field(default_factory=lambda: os.getenv("SMTP_USE_TLS", "true").lower() == "true")
    from_email: Optional[str] = Field(default_factory=lambda: os.getenv("EMAIL_FROM"))
    from_name: str = Field(default_factory=lambda: os.getenv("EMAIL_FROM_NAME", "Invoice Engine"))
    timeout_seconds: float = Field(default_factory=lambda: float(os.getenv("SMTP_TIMEOUT_SECONDS", "10")))

    @property
    def is_configured(self) -> bool:
        return bool(self.host and self.username and self.password)

    @property
    def from_address(self) -> str:
        return f'"{self.from_name}" <{self.from_email or self.username}>'
