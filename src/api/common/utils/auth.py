import logging
import os
import secrets
from functools import lru_cache
from typing import Optional
from fastapi import Depends, HTTPException, Security
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


class ApiKeyConfig(BaseModel):
    # Empty means no key is configured and every protected request is rejected
    api_key: str = Field(default_factory=lambda: os.getenv("API_KEY", ""))


@lru_cache()
def get_api_key_config() -> ApiKeyConfig:
    config = ApiKeyConfig()
    if not config.api_key:
        logger.warning("API_KEY is not set: every invoice endpoint will answer 401")
    return config


def _unauthorized(message: str) -> HTTPException:
    return HTTPException(
        status_code=401,
        detail={"success": False, "error": message, "step": "authentication", "invoice_id": None},
        headers={"WWW-Authenticate": "ApiKey"},
    )


def require_api_key(
    api_key: Optional[str] = Security(api_key_header),
    config: ApiKeyConfig = Depends(get_api_key_config),
) -> None:
    """Reject requests without the configured X-API-Key header"""
    if not config.api_key:
        raise _unauthorized("API key authentication is not configured")
    if not api_key:
        raise _unauthorized("Missing API key")
    if not secrets.compare_digest(api_key.encode("utf-8"), config.api_key.encode("utf-8")):
        logger.warning("Rejected request with an invalid API key")
        raise _unauthorized("Invalid API key")
