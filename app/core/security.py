import hashlib
import secrets
from typing import Any, Dict, Optional

from jose import JWTError, jwt
from fastapi import HTTPException, status
from pydantic import BaseModel

from app.core.config import get_settings

# Length of the non-secret display prefix stored next to the hash
KEY_PREFIX_LENGTH = 8


class IssuedKey(BaseModel):
    """A freshly generated API key. ``key`` is shown to the owner exactly once."""
    key: str
    key_hash: str
    key_prefix: str


def hash_api_key(api_key: str) -> str:
    """Hash an API key for secure storage."""
    return hashlib.sha256(api_key.encode()).hexdigest()


def generate_api_key(prefix: Optional[str] = None) -> IssuedKey:
    """Generate a secure random API key: ``<prefix><64 hex chars>`` (256 bits)."""
    if prefix is None:
        prefix = get_settings().API_KEY_PREFIX
    key = f"{prefix}{secrets.token_hex(32)}"
    return IssuedKey(
        key=key,
        key_hash=hash_api_key(key),
        key_prefix=key[:KEY_PREFIX_LENGTH],
    )


def verify_token(token: str) -> Dict[str, Any]:
    """Verify and decode an account JWT issued by the identity provider."""
    settings = get_settings()

    try:
        with open(settings.JWT_PUBLIC_KEY_PATH, 'r') as key_file:
            public_key = key_file.read()

        payload = jwt.decode(token, public_key, algorithms=[settings.JWT_ALGORITHM])
        return payload
    except FileNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="JWT public key not found"
        )
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
