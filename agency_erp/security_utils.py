"""
Security Utilities
Token encryption at rest and signed, time-limited tokens
"""

import base64
import hashlib
import logging
import secrets
from typing import Any, Optional

# Encryption of stored OAuth tokens
from cryptography.fernet import Fernet, InvalidToken

# Token generation and validation
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from .config import SECRET_KEY

logger = logging.getLogger(__name__)


# ============================================================================
# TOKEN ENCRYPTION
# ============================================================================


def _get_cipher_suite(secret_key: str = SECRET_KEY) -> Fernet:
    """Build a Fernet cipher from the application secret"""
    key = base64.urlsafe_b64encode(hashlib.sha256(secret_key.encode()).digest())
    return Fernet(key)


def encrypt_token(value: str) -> str:
    """Encrypt a credential for storage"""
    return _get_cipher_suite().encrypt(value.encode()).decode()


def decrypt_token(value: str) -> str:
    """
    Decrypt a stored credential.

    Raises:
        InvalidToken: if the value was not encrypted with the current SECRET_KEY
    """
    return _get_cipher_suite().decrypt(value.encode()).decode()


def try_decrypt_token(value: Optional[str]) -> Optional[str]:
    """Decrypt a stored credential, returning None when it is missing or unreadable"""
    if not value:
        return None
    try:
        return decrypt_token(value)
    except InvalidToken:
        logger.error("❌ Stored credential could not be decrypted (SECRET_KEY changed?)")
        return None


# ============================================================================
# TOKEN GENERATION
# ============================================================================


def generate_secure_token(length: int = 32) -> str:
    """Generate a cryptographically secure random token"""
    return secrets.token_urlsafe(length)


def generate_timed_token(data: dict[str, Any], salt: str = "security-token") -> str:
    """
    Generate a signed token using itsdangerous.
    Expiry is enforced when the token is verified.
    """
    serializer = URLSafeTimedSerializer(SECRET_KEY)
    return serializer.dumps(data, salt=salt)


def verify_timed_token(
    token: str, max_age: int = 3600, salt: str = "security-token"
) -> Optional[dict[str, Any]]:
    """
    Verify and decode a timed token

    Args:
        token: The token to verify
        max_age: Maximum age in seconds (default 1 hour)
        salt: Must match the salt used when generating the token

    Returns:
        Decoded data if valid, None if invalid or expired
    """
    serializer = URLSafeTimedSerializer(SECRET_KEY)
    try:
        return serializer.loads(token, salt=salt, max_age=max_age)
    except SignatureExpired:
        logger.warning("Token expired")
        return None
    except BadSignature:
        logger.warning("Invalid token signature")
        return None
