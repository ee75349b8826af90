import json
import logging
import os
from typing import Any, Dict
from cryptography.fernet import Fernet
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

load_dotenv()

# Buyer personal data is encrypted at rest with this key
ENCRYPTION_KEY = os.getenv("ENCRYPTION_KEY")
if not ENCRYPTION_KEY:
    ENCRYPTION_KEY = Fernet.generate_key().decode()
    logger.warning(
        "ENCRYPTION_KEY not found in environment. Generated a temporary key; "
        "buyer data stored with it cannot be read after a restart.")

cipher = Fernet(ENCRYPTION_KEY.encode() if isinstance(ENCRYPTION_KEY, str) else ENCRYPTION_KEY)


def encrypt_data(data: str) -> str:
    """
    Encrypt a string with the service key

    Args:
        data: Plain text, e.g. a buyer e-mail

    Returns:
        Fernet token as text, or "" for empty input
    """
    if not data:
        return ""
    return cipher.encrypt(data.encode()).decode()


def decrypt_data(encrypted_data: str) -> str:
    """
    Decrypt a token produced by ``encrypt_data``

    Raises:
        cryptography.fernet.InvalidToken: the token was not produced with this key
    """
    if not encrypted_data:
        return ""
    return cipher.decrypt(encrypted_data.encode()).decode()


def encrypt_json(data: Dict[str, Any]) -> str:
    """Serialize a mapping to JSON and encrypt it."""
    if not data:
        return ""
    return encrypt_data(json.dumps(data, sort_keys=True, default=str))


def decrypt_json(encrypted_data: str) -> Dict[str, Any]:
    """Decrypt a value produced by ``encrypt_json``."""
    if not encrypted_data:
        return {}
    return json.loads(decrypt_data(encrypted_data))
