# app/x402/vault.py
"""
Encryption key vault.

Two layers:
- Master-key wrap: each resource's content key is stored encrypted with
  the master key (AES-256-GCM). The stored token is ``iv:tag:ciphertext``,
  all hex encoded.
- Content encryption: resource bytes are encrypted with the per-resource
  key (AES-256-GCM). The 12-byte IV is prepended to the ciphertext and the
  16-byte tag is appended by the cipher.

Both layers use a fresh random IV per call, so encrypting the same input
twice never yields the same output.
"""
import logging
import secrets
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.x402.errors import ConfigurationError, DecryptionFailed

logger = logging.getLogger(__name__)

KEY_LENGTH = 32
IV_LENGTH = 12
TAG_LENGTH = 16


def generate_content_key() -> bytes:
    """Generate a random AES-256 content key."""
    return secrets.token_bytes(KEY_LENGTH)


def generate_master_key() -> str:
    """Generate a hex master key suitable for MASTER_ENCRYPTION_KEY."""
    return secrets.token_hex(KEY_LENGTH)


def key_to_hex(key: bytes) -> str:
    return key.hex()


def hex_to_key(key_hex: str) -> bytes:
    try:
        key = bytes.fromhex(key_hex)
    except ValueError as e:
        raise DecryptionFailed("Content key is not valid hex") from e
    if len(key) != KEY_LENGTH:
        raise DecryptionFailed(f"Content key must be {KEY_LENGTH} bytes, got {len(key)}")
    return key


def _parse_master_key(master_key: Optional[str]) -> bytes:
    if not master_key:
        raise ConfigurationError("MASTER_ENCRYPTION_KEY not configured")
    try:
        key = bytes.fromhex(master_key)
    except ValueError as e:
        raise ConfigurationError("MASTER_ENCRYPTION_KEY must be hex encoded") from e
    if len(key) != KEY_LENGTH:
        raise ConfigurationError(
            f"MASTER_ENCRYPTION_KEY must be {KEY_LENGTH} bytes ({KEY_LENGTH * 2} hex chars)"
        )
    return key


def wrap_key(plain_key_hex: str, master_key: str) -> str:
    """
    Encrypt a content key with the master key.

    Args:
        plain_key_hex: The content key, hex encoded
        master_key: The master key, hex encoded

    Returns:
        ``iv:tag:ciphertext`` token, each part hex encoded
    """
    aead = AESGCM(_parse_master_key(master_key))
    iv = secrets.token_bytes(IV_LENGTH)
    sealed = aead.encrypt(iv, plain_key_hex.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"


def unwrap_key(token: str, master_key: str) -> str:
    """
    Decrypt a wrapped content key.

    Raises:
        DecryptionFailed: If the token is malformed or the tag does not verify
        ConfigurationError: If the master key is missing or malformed
    """
    aead = AESGCM(_parse_master_key(master_key))

    parts = token.split(":")
    if len(parts) != 3:
        raise DecryptionFailed("Wrapped key must have three ':'-separated parts")
    try:
        iv, tag, ciphertext = (bytes.fromhex(p) for p in parts)
    except ValueError as e:
        raise DecryptionFailed("Wrapped key is not valid hex") from e
    if len(iv) != IV_LENGTH or len(tag) != TAG_LENGTH:
        raise DecryptionFailed("Wrapped key has a bad IV or tag length")

    try:
        plain = aead.decrypt(iv, ciphertext + tag, None)
    except InvalidTag as e:
        logger.error("Content key unwrap failed: authentication tag mismatch")
        raise DecryptionFailed("Wrapped key failed authentication") from e
    return plain.decode("utf-8")


def encrypt_content(plain_bytes: bytes, key: bytes) -> bytes:
    """Encrypt resource bytes. Output is ``iv || ciphertext || tag``."""
    iv = secrets.token_bytes(IV_LENGTH)
    return iv + AESGCM(key).encrypt(iv, plain_bytes, None)


def decrypt_content(cipher_bytes: bytes, key: bytes) -> bytes:
    """
    Decrypt resource bytes produced by encrypt_content.

    Raises:
        DecryptionFailed: On truncated input, tampering, or a wrong key
    """
    if len(cipher_bytes) < IV_LENGTH + TAG_LENGTH:
        raise DecryptionFailed("Encrypted content is truncated")
    iv, sealed = cipher_bytes[:IV_LENGTH], cipher_bytes[IV_LENGTH:]
    try:
        return AESGCM(key).decrypt(iv, sealed, None)
    except InvalidTag as e:
        logger.error("Content decryption failed: authentication tag mismatch")
        raise DecryptionFailed("Encrypted content failed authentication") from e


class KeyVault:
    """Holds the master key and unwraps resource keys on demand."""

    def __init__(self, master_key: Optional[str]):
        self._master_key = master_key

    def wrap(self, plain_key_hex: str) -> str:
        return wrap_key(plain_key_hex, self._master_key)

    def unwrap(self, token: str) -> str:
        return unwrap_key(token, self._master_key)

    def decrypt_resource(self, cipher_bytes: bytes, wrapped_key: str) -> bytes:
        """Unwrap the resource key and decrypt; the plain key lives only in this call."""
        key = hex_to_key(self.unwrap(wrapped_key))
        return decrypt_content(cipher_bytes, key)
