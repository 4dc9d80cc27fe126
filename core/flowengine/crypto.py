"""
Credential encryption and redaction helpers.

Values are encrypted with Fernet. Key rotation is supported by listing old
keys as ``previous_keys``: decryption tries the primary key first, then each
previous key, and ``re_encrypt`` migrates a value to the primary key.

Keys are passphrases of at least 32 characters. A passphrase that is already
a urlsafe-base64 Fernet key (44 chars) is used as-is; anything else is
stretched with SHA-256.
"""

import base64
import hashlib
import logging
import re
import secrets
from collections.abc import Iterable
from typing import Any

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from flowengine.config import CryptoConfig
from flowengine.errors import CredentialError

logger = logging.getLogger(__name__)

MIN_KEY_LENGTH = 32
FERNET_KEY_LENGTH = 44


def _fernet_for(key: str) -> Fernet:
    if len(key) == FERNET_KEY_LENGTH:
        try:
            return Fernet(key.encode())
        except ValueError:
            pass
    return Fernet(base64.urlsafe_b64encode(hashlib.sha256(key.encode()).digest()))


class Crypto:
    def __init__(self, primary_key: str | None, previous_keys: Iterable[str] = ()):
        if not primary_key or len(primary_key) < MIN_KEY_LENGTH:
            raise CredentialError(
                "ENCRYPTION_KEY", f"Encryption key must be at least {MIN_KEY_LENGTH} characters"
            )
        self._primary = _fernet_for(primary_key)
        self._previous = [_fernet_for(k) for k in previous_keys if k]
        self._all = MultiFernet([self._primary, *self._previous])

    @classmethod
    def from_config(cls, config: CryptoConfig) -> "Crypto":
        return cls(config.primary_key, config.previous_keys)

    def encrypt(self, plaintext: str) -> str:
        return self._primary.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._all.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeEncodeError) as e:
            logger.error("Decryption failed - invalid token or key mismatch")
            raise CredentialError(
                "DECRYPTION_FAILED", "Failed to decrypt data with any available key"
            ) from e

    def re_encrypt(self, ciphertext: str) -> str:
        """Decrypt with any known key and encrypt again with the primary key."""
        return self.encrypt(self.decrypt(ciphertext))

    def needs_re_encryption(self, ciphertext: str) -> bool:
        try:
            self._primary.decrypt(ciphertext.encode("ascii"))
        except (InvalidToken, UnicodeEncodeError):
            return True
        return False


def generate_key() -> str:
    """A fresh Fernet key, suitable for ENCRYPTION_KEY."""
    return Fernet.generate_key().decode("ascii")


def generate_random_string(length: int = 32) -> str:
    return secrets.token_hex((length + 1) // 2)[:length]


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------

SENSITIVE_PATTERNS = [
    re.compile(p, re.I)
    for p in (
        r"api[_-]?key",
        r"secret",
        r"password",
        r"token",
        r"bearer",
        r"authorization",
        r"credential",
        r"private[_-]?key",
        r"access[_-]?key",
        r"client[_-]?secret",
    )
]

SENSITIVE_KEYS = frozenset(
    {
        "apiKey",
        "api_key",
        "secretKey",
        "secret_key",
        "password",
        "token",
        "accessToken",
        "access_token",
        "refreshToken",
        "refresh_token",
        "bearerToken",
        "bearer_token",
        "authorization",
        "privateKey",
        "private_key",
        "clientSecret",
        "client_secret",
        "encryptionKey",
        "encryption_key",
    }
)

CREDENTIAL_PATTERNS = [
    re.compile(r"^sk-[a-zA-Z0-9]{32,}$"),
    re.compile(r"^[a-z]{2,4}_[a-zA-Z0-9]{20,}$"),
    re.compile(r"^[A-Za-z0-9_-]{32,}$"),
    re.compile(r"^Bearer [a-zA-Z0-9._-]+$"),
    re.compile(r"^ghp_[a-zA-Z0-9]{36}$"),
    re.compile(r"^xox[baprs]-[a-zA-Z0-9-]+$"),
]


def is_sensitive_key(key: str) -> bool:
    return key in SENSITIVE_KEYS or any(p.search(key) for p in SENSITIVE_PATTERNS)


def redact(
    obj: dict[str, Any], replacement: str = "***REDACTED***", preserve_length: bool = False
) -> dict[str, Any]:
    """Copy of ``obj`` with string values under sensitive keys replaced, recursively."""

    def redact_value(value: str) -> str:
        return "*" * min(len(value), 20) if preserve_length else replacement

    def process(key: str, value: Any) -> Any:
        if value is None:
            return value
        if isinstance(value, str):
            return redact_value(value) if is_sensitive_key(key) else value
        if isinstance(value, list):
            return [process(str(i), item) for i, item in enumerate(value)]
        if isinstance(value, dict):
            return {k: process(k, v) for k, v in value.items()}
        return value

    return {k: process(k, v) for k, v in obj.items()}


def mask(value: str, show_first: int = 4, show_last: int = 4) -> str:
    if len(value) <= show_first + show_last:
        return "*" * len(value)
    middle = "*" * min(len(value) - show_first - show_last, 8)
    return f"{value[:show_first]}{middle}{value[-show_last:] if show_last else ''}"


def looks_like_credential(value: str) -> bool:
    return any(p.match(value) for p in CREDENTIAL_PATTERNS)


def hash_value(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def short_hash(value: str) -> str:
    return hash_value(value)[:16]
