"""
Bearer token verification.

Accounts and logins belong to the auth service. This API only checks that a
token was signed with the shared key and pulls the user id out of ``sub``.
"""
import logging
from typing import Any, Dict, Optional
from uuid import UUID

from jose import ExpiredSignatureError, JWTError, jwt

from core.config import settings

logger = logging.getLogger(__name__)

MIN_SECRET_LENGTH = 32

if len(settings.SECRET_KEY) < MIN_SECRET_LENGTH:
    raise ValueError(
        f"SECRET_KEY must be at least {MIN_SECRET_LENGTH} characters "
        "and must match the key used by the auth service."
    )


def decode_token(token: str) -> Optional[Dict[str, Any]]:
    """Verified claims, or None when the signature, expiry or audience is wrong."""
    options = {"verify_aud": settings.JWT_AUDIENCE is not None}
    try:
        return jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            audience=settings.JWT_AUDIENCE,
            options=options,
        )
    except ExpiredSignatureError:
        logger.info("Rejected expired bearer token")
        return None
    except JWTError:
        return None


def user_id_from_claims(claims: Dict[str, Any]) -> Optional[UUID]:
    subject = claims.get("sub")
    if not subject:
        return None
    try:
        return UUID(str(subject))
    except ValueError:
        return None
