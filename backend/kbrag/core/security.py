"""
Security utilities: JWT handling and worker credential checks.
"""

import hmac

from jose import jwt, JWTError

from kbrag.config import get_settings


# ── JWT Token ────────────────────────────────────────────
def decode_access_token(token: str) -> dict | None:
    """Decode and validate a JWT token. Returns payload or None if invalid."""
    settings = get_settings()
    if not settings.JWT_SECRET_KEY:
        return None
    try:
        payload = jwt.decode(
            token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM]
        )
        return payload
    except JWTError:
        return None


# ── Worker credential ────────────────────────────────────
def is_worker_token(token: str | None) -> bool:
    """True if the bearer token is the service key the wake signal carries."""
    expected = get_settings().SUPABASE_SERVICE_KEY
    if not expected or not token:
        return False
    return hmac.compare_digest(token.encode(), expected.encode())
