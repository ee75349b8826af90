import os
from pydantic import BaseModel, Field


class DocumentConfig(BaseModel):
    upload_path: str = Field(default_factory=lambda: os.getenv("UPLOAD_PATH", "./uploads"))
    company_name: str = Field(default_factory=lambda: os.getenv("COMPANY_NAME", "Invoice Engine"))
