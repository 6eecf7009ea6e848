"""Secret vault for refresh tokens at rest.

AES-256-GCM with a fresh 96-bit nonce per call. The stored form is

    base64(nonce) "." base64(tag) "." base64(ciphertext)

The key is read once at startup and is the only key material in the
process; nothing else in the codebase touches it.
"""

import base64
import binascii
import os

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = structlog.get_logger()

KEY_BYTES = 32
NONCE_BYTES = 12
TAG_BYTES = 16
_SEPARATOR = "."


class ConfigurationError(Exception):
    """The engine cannot start with the configured values."""


class SecretIntegrityError(Exception):
    """A stored secret is malformed or failed authentication."""


def _b64decode_strict(part: str) -> bytes:
    """Decode base64, rejecting non-alphabet characters and non-canonical encodings."""
    try:
        raw = base64.b64decode(part, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise SecretIntegrityError("Encrypted secret is not valid base64") from exc
    if base64.b64encode(raw).decode("ascii") != part:
        raise SecretIntegrityError("Encrypted secret uses a non-canonical encoding")
    return raw


class SecretVault:
    """Encrypts and decrypts refresh tokens with a single process-wide key."""

    def __init__(self, key: bytes):
        if len(key) != KEY_BYTES:
            raise ConfigurationError(
                f"Encryption key must be {KEY_BYTES} bytes, got {len(key)}"
            )
        self._aead = AESGCM(key)

    @classmethod
    def from_base64(cls, encoded_key: str) -> "SecretVault":
        """Build a vault from the base64 key in configuration. Fails fast."""
        if not encoded_key:
            raise ConfigurationError("LB_ENCRYPTION_KEY is not set")
        try:
            key = base64.b64decode(encoded_key, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ConfigurationError("LB_ENCRYPTION_KEY is not valid base64") from exc
        return cls(key)

    @staticmethod
    def generate_key() -> str:
        """Return a new random key in the base64 form expected by configuration."""
        return base64.b64encode(AESGCM.generate_key(bit_length=KEY_BYTES * 8)).decode("ascii")

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_BYTES)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        # AESGCM appends the tag to the ciphertext
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return _SEPARATOR.join(
            base64.b64encode(part).decode("ascii") for part in (nonce, tag, ciphertext)
        )

    def decrypt(self, payload: str) -> str:
        """Recover the plaintext. Raises SecretIntegrityError on any mismatch."""
        parts = payload.split(_SEPARATOR)
        if len(parts) != 3 or not all(parts[:2]):
            raise SecretIntegrityError("Encrypted secret has an invalid format")

        nonce, tag, ciphertext = (_b64decode_strict(p) for p in parts)
        if len(nonce) != NONCE_BYTES or len(tag) != TAG_BYTES:
            raise SecretIntegrityError("Encrypted secret has an invalid nonce or tag length")

        try:
            plain = self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as exc:
            logger.warning("secret_integrity_check_failed")
            raise SecretIntegrityError("Encrypted secret failed integrity verification") from exc
        return plain.decode("utf-8")
