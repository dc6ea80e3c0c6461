"""
Signed OAuth state helper.

A tamper-proof `state` round-trip binds a provider callback to the user who
started the connect flow, and to the provider they started it for.
"""

from __future__ import annotations

import base64
import hmac
import json
import hashlib
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from core.config import settings


class InvalidOAuthStateError(Exception):
    """State is malformed, forged, expired or issued for another provider."""


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")


def _b64url_decode(s: str) -> bytes:
    pad = "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode((s + pad).encode("utf-8"))


def _sign(payload_b64: str) -> str:
    key = settings.SECRET_KEY.encode("utf-8")
    mac = hmac.new(key, payload_b64.encode("utf-8"), hashlib.sha256).digest()
    return _b64url_encode(mac)


def create_oauth_state(user_id: str, provider: str, *, now: Optional[datetime] = None) -> str:
    """
    Create a signed state token with a nonce and an issued-at timestamp.
    """
    issued = now or datetime.now(timezone.utc)
    payload = {
        "user_id": str(user_id),
        "provider": provider,
        "nonce": secrets.token_urlsafe(16),
        "iat": int(issued.timestamp()),
    }
    raw = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    payload_b64 = _b64url_encode(raw)
    sig = _sign(payload_b64)
    return f"{payload_b64}.{sig}"


def verify_oauth_state(
    token: str,
    *,
    provider: Optional[str] = None,
    ttl_s: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Verify signature, TTL and (optionally) provider. Returns the payload.

    Raises:
        InvalidOAuthStateError
    """
    if not token or "." not in token:
        raise InvalidOAuthStateError("Malformed OAuth state")
    payload_b64, sig = token.split(".", 1)
    if not payload_b64 or not sig:
        raise InvalidOAuthStateError("Malformed OAuth state")
    expected = _sign(payload_b64)
    if not hmac.compare_digest(sig, expected):
        raise InvalidOAuthStateError("OAuth state signature mismatch")
    try:
        payload = json.loads(_b64url_decode(payload_b64))
        iat = int(payload.get("iat"))
    except (ValueError, TypeError, AttributeError) as e:
        raise InvalidOAuthStateError("Malformed OAuth state") from e

    current = int((now or datetime.now(timezone.utc)).timestamp())
    ttl = int(ttl_s if ttl_s is not None else settings.OAUTH_STATE_TTL_S)
    if ttl > 0 and (current - iat) > ttl:
        raise InvalidOAuthStateError("OAuth state expired")

    if provider is not None and payload.get("provider") != provider:
        raise InvalidOAuthStateError("OAuth state was issued for a different provider")
    if not payload.get("user_id"):
        raise InvalidOAuthStateError("OAuth state is missing user")
    return payload
