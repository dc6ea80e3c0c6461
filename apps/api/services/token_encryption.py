"""
Encryption at rest for provider OAuth tokens.

Only the access and refresh tokens inside an integration's credentials JSON
are encrypted. Expiry, scope and token type stay readable so the refresh
check and the batch scheduler never need the key.

TOKEN_ENCRYPTION_KEY may hold several comma-separated Fernet keys: the first
encrypts, all of them decrypt. Rotating a key means prepending the new one
and removing the old one once every integration has been re-sealed.
"""

import logging
from typing import Any, Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from core.config import settings
from services.health_providers.models import OAuthCredentials

logger = logging.getLogger(__name__)


class CredentialDecryptionError(Exception):
    """Stored credentials could not be decrypted (key rotated out or data corrupted)."""


def _parse_keys(raw: str) -> List[Fernet]:
    keys = [k.strip() for k in raw.split(",") if k.strip()]
    try:
        return [Fernet(k.encode()) for k in keys]
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid TOKEN_ENCRYPTION_KEY: {e}") from e


class TokenEncryption:
    def __init__(self, keys: Optional[str] = None):
        keys = keys or settings.TOKEN_ENCRYPTION_KEY
        if not keys:
            if settings.ENVIRONMENT == "production":
                raise RuntimeError("TOKEN_ENCRYPTION_KEY must be set in production")
            # Tokens sealed with this key are unreadable after a restart.
            logger.warning("TOKEN_ENCRYPTION_KEY not set; using an ephemeral key")
            keys = Fernet.generate_key().decode()

        fernets = _parse_keys(keys)
        if not fernets:
            raise ValueError("TOKEN_ENCRYPTION_KEY contains no keys")
        self.cipher = MultiFernet(fernets)

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        if not plaintext:
            return None
        return self.cipher.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: Optional[str]) -> Optional[str]:
        """
        Raises:
            CredentialDecryptionError: no configured key produced this ciphertext
        """
        if not ciphertext:
            return None
        try:
            return self.cipher.decrypt(ciphertext.encode()).decode()
        except InvalidToken as e:
            raise CredentialDecryptionError("Stored credentials could not be decrypted") from e

    def rotate(self, ciphertext: Optional[str]) -> Optional[str]:
        """Re-encrypt under the primary key."""
        if not ciphertext:
            return None
        try:
            return self.cipher.rotate(ciphertext.encode()).decode()
        except InvalidToken as e:
            raise CredentialDecryptionError("Stored credentials could not be decrypted") from e


_encryption: Optional[TokenEncryption] = None


def get_token_encryption() -> TokenEncryption:
    global _encryption
    if _encryption is None:
        _encryption = TokenEncryption()
    return _encryption


def seal_credentials(credentials: OAuthCredentials) -> Dict[str, Any]:
    """Credentials as stored in the integration row (tokens encrypted)."""
    enc = get_token_encryption()
    data = credentials.to_dict()
    data["access_token"] = enc.encrypt(credentials.access_token)
    data["refresh_token"] = enc.encrypt(credentials.refresh_token)
    return data


def open_credentials(stored: Dict[str, Any]) -> OAuthCredentials:
    """Inverse of ``seal_credentials``."""
    enc = get_token_encryption()
    data = dict(stored)
    data["access_token"] = enc.decrypt(stored.get("access_token"))
    data["refresh_token"] = enc.decrypt(stored.get("refresh_token"))
    return OAuthCredentials.from_dict(data)


def reseal_credentials(stored: Dict[str, Any]) -> Dict[str, Any]:
    """Stored credentials re-encrypted under the current primary key."""
    enc = get_token_encryption()
    data = dict(stored)
    data["access_token"] = enc.rotate(stored.get("access_token"))
    data["refresh_token"] = enc.rotate(stored.get("refresh_token"))
    return data
