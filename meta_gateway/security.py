"""Security utilities for session JWTs and provider token encryption.

WHAT:
    - Signed, time-limited session tokens (HS256 JWT via python-jose)
    - Symmetric encryption (Fernet) for Meta access/refresh tokens before
      they are written to the session store

WHY:
    - Session tokens are the only credential tool callers ever hold
    - Provider tokens must never land in the KV store or logs in plaintext
"""

import base64
import logging
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken
from jose import JWTError, jwt

ALGORITHM = "HS256"

logger = logging.getLogger(__name__)


@lru_cache(maxsize=8)
def _cipher(key: str) -> Fernet:
    try:
        # Validate key length by decoding without storing plaintext material.
        base64.urlsafe_b64decode(key.encode("utf-8"))
        return Fernet(key)
    except (ValueError, TypeError) as exc:
        raise RuntimeError(
            "TOKEN_ENCRYPTION_KEY must be a URL-safe base64-encoded 32-byte string. "
            "Generate with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
        ) from exc


def encrypt_secret(plaintext: str, *, key: str, context: str) -> str:
    """Encrypt provider secrets before persisting.

    Args:
        plaintext: Raw secret to encrypt (e.g., Meta access token).
        key:       Fernet key (TOKEN_ENCRYPTION_KEY).
        context:   Friendly label for logs (user/token kind).

    Returns:
        URL-safe base64 ciphertext suitable for the KV store.
    """
    if not plaintext:
        raise ValueError("Cannot encrypt empty secret.")

    ciphertext = _cipher(key).encrypt(plaintext.encode("utf-8")).decode("utf-8")
    logger.debug("[TOKEN_ENCRYPT] Secret encrypted for %s (length=%d)", context, len(plaintext))
    return ciphertext


def decrypt_secret(ciphertext: str, *, key: str, context: str) -> str:
    """Decrypt provider secrets when restoring tokens for API calls.

    Raises:
        ValueError: If the stored value cannot be decrypted.
    """
    if not ciphertext:
        raise ValueError("Cannot decrypt empty secret.")

    try:
        plaintext = _cipher(key).decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        logger.debug("[TOKEN_DECRYPT] Secret decrypted for %s (length=%d)", context, len(plaintext))
        return plaintext
    except InvalidToken as exc:
        logger.error("[TOKEN_DECRYPT] Invalid ciphertext for %s", context)
        raise ValueError("Unable to decrypt stored token.") from exc


def create_access_token(subject: str, *, secret: str, expires_minutes: int) -> str:
    """Create a signed JWT for the given subject (the user id)."""
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=expires_minutes)
    to_encode: Dict[str, Any] = {
        "sub": subject,
        "userId": subject,
        "iat": int(now.timestamp()),
        "exp": int(expire.timestamp()),
    }
    return jwt.encode(to_encode, secret, algorithm=ALGORITHM)


def decode_token(token: str, *, secret: str) -> Dict[str, Any]:
    """Decode and validate a JWT, returning its payload.

    Raises jose.JWTError on failure.
    """
    return jwt.decode(token, secret, algorithms=[ALGORITHM])


def verify_token_subject(token: Optional[str], *, secret: str) -> Optional[str]:
    """Return the token's subject, or None for any bad token.

    Bad signature, expiry and malformed input are indistinguishable to the
    caller.
    """
    if not token or not isinstance(token, str):
        return None
    try:
        payload = decode_token(token, secret=secret)
    except (JWTError, ValueError, TypeError):
        return None
    subject = payload.get("sub")
    return subject if isinstance(subject, str) and subject else None
