"""
Encryption utilities for tenant credentials.

Uses AES-256-GCM for secret storage in the project registry.
"""

import hashlib
import os
import secrets
from typing import Optional

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from tenantbase.config import Settings, get_settings

PASSWORD_ALPHABET = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"


def get_encryption_key(settings: Optional[Settings] = None) -> bytes:
    """
    Get the encryption key for tenant credentials.

    Uses tenant_encryption_key if set, otherwise derives from secret_key.
    """
    settings = settings or get_settings()

    if settings.tenant_encryption_key:
        key = bytes.fromhex(settings.tenant_encryption_key)
        if len(key) != 32:
            raise ValueError("tenant_encryption_key must be 32 bytes (64 hex chars)")
        return key

    return hashlib.sha256(settings.secret_key.encode()).digest()


def encrypt(plaintext: str, settings: Optional[Settings] = None) -> str:
    """
    Encrypt a string using AES-256-GCM.

    Returns format: iv:authTag:ciphertext (hex encoded)
    """
    aesgcm = AESGCM(get_encryption_key(settings))

    # 96-bit IV, recommended for GCM
    iv = os.urandom(12)

    # AESGCM appends the 16-byte auth tag to the ciphertext
    ciphertext_with_tag = aesgcm.encrypt(iv, plaintext.encode(), None)
    ciphertext = ciphertext_with_tag[:-16]
    auth_tag = ciphertext_with_tag[-16:]

    return f"{iv.hex()}:{auth_tag.hex()}:{ciphertext.hex()}"


def decrypt(encrypted_data: str, settings: Optional[Settings] = None) -> str:
    """
    Decrypt a string encrypted with AES-256-GCM.

    Expects format: iv:authTag:ciphertext (hex encoded)
    """
    aesgcm = AESGCM(get_encryption_key(settings))

    parts = encrypted_data.split(":")
    if len(parts) != 3:
        raise ValueError(f"Invalid encrypted data format: expected 3 parts, got {len(parts)}")

    iv = bytes.fromhex(parts[0])
    auth_tag = bytes.fromhex(parts[1])
    ciphertext = bytes.fromhex(parts[2])

    # Auth tag is verified here; tampering raises InvalidTag
    plaintext = aesgcm.decrypt(iv, ciphertext + auth_tag, None)

    return plaintext.decode()


def generate_password(length: int = 32) -> str:
    """
    Generate a secure random password.
    """
    # Alphanumeric only, so it is safe inside connection strings
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))
