"""Encryption of stored derivation identifiers.

A derivation identifier can embed user identity (``user:<id>``), so it is
stored Fernet-encrypted (AES-128-CBC with HMAC) when MASTER_KEY is set.
"""

import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from offramp.config import get_settings
from offramp.errors import DerivationError

logger = logging.getLogger(__name__)

# Fernet tokens are base64 of a 0x80 version byte, so they start with this
FERNET_PREFIX = "gAAAAA"


def generate_master_key() -> str:
    """Generate a new master encryption key.

    Returns:
        Base64-encoded 32-byte key suitable for Fernet
    """
    return Fernet.generate_key().decode()


class IdentifierCipher:
    """Encrypts and decrypts derivation identifiers.

    Usage:
        cipher = IdentifierCipher(master_key)
        stored = cipher.encrypt("user:42")
        identifier = cipher.decrypt(stored)
    """

    def __init__(self, master_key: str):
        self._fernet = Fernet(master_key.encode())

    def encrypt(self, identifier: str) -> str:
        return self._fernet.encrypt(identifier.encode()).decode()

    def decrypt(self, token: str) -> str:
        """Decrypt a stored identifier.

        Raises:
            InvalidToken: If the key is wrong or the data corrupted
        """
        return self._fernet.decrypt(token.encode()).decode()


def get_cipher(master_key: Optional[str] = None) -> Optional[IdentifierCipher]:
    """Cipher for MASTER_KEY, or None when no key is configured."""
    master_key = master_key if master_key is not None else get_settings().master_key
    if not master_key:
        return None
    return IdentifierCipher(master_key)


def seal_identifier(identifier: str, cipher: Optional[IdentifierCipher] = None) -> str:
    """Prepare an identifier for storage (encrypted if a key is configured)."""
    cipher = cipher or get_cipher()
    if cipher is None:
        return identifier
    return cipher.encrypt(identifier)


def open_identifier(stored: str, cipher: Optional[IdentifierCipher] = None) -> str:
    """Recover the identifier from its stored form.

    Plain values (rows written without a master key) are returned as-is.

    Raises:
        DerivationError: If the value is encrypted and cannot be decrypted
    """
    if not stored.startswith(FERNET_PREFIX):
        return stored

    cipher = cipher or get_cipher()
    if cipher is None:
        raise DerivationError("Derivation identifier is encrypted but MASTER_KEY is not set")

    try:
        return cipher.decrypt(stored)
    except InvalidToken as e:
        raise DerivationError("Derivation identifier could not be decrypted with MASTER_KEY") from e
