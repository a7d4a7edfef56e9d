"""
Credential Encoding Utilities
"""
import base64
import hashlib
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken
from passlib.context import CryptContext

from ..config import settings

# Password hashing
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against its hash"""
    if not hashed_password:
        return False
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError:
        # Not a recognised hash
        return False


def get_password_hash(password: str) -> str:
    """Hash a password"""
    return pwd_context.hash(password)


# ── Field-level encryption ──────────────────────────────────────────────────
# Fernet (AES-128-CBC + HMAC-SHA256); the key is derived from SECRET_KEY so
# no extra env var is needed.

@lru_cache()
def _get_fernet(secret_key: str) -> Fernet:
    key_bytes = hashlib.sha256(secret_key.encode()).digest()
    return Fernet(base64.urlsafe_b64encode(key_bytes))


def encrypt_field(value: str, secret_key: str = None) -> str:
    """Encrypt a sensitive string before it is written to the store."""
    if not value:
        return value
    f = _get_fernet(secret_key or settings.SECRET_KEY)
    return f.encrypt(value.encode()).decode()


def decrypt_field(value: str, secret_key: str = None) -> str:
    """Decrypt a value written by encrypt_field.

    Raises ValueError when the value was not produced with this key.
    """
    if not value:
        return value
    f = _get_fernet(secret_key or settings.SECRET_KEY)
    try:
        return f.decrypt(value.encode()).decode()
    except InvalidToken as e:
        raise ValueError("stored value cannot be decrypted with the current key") from e
