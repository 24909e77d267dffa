"""
Encryption utilities for registry credentials.

Uses Fernet symmetric encryption to protect registry passwords at rest.
The key is stored next to the database and auto-generated on first use.

Security Note:
    This protects against database dumps/exports, but does NOT protect against
    full host compromise. An attacker holding both the database AND the key
    can decrypt the passwords.
"""

import os
import logging
from cryptography.fernet import Fernet, InvalidToken

from config.paths import ENCRYPTION_KEY_PATH

logger = logging.getLogger(__name__)

# Path to encryption key file
KEY_PATH = ENCRYPTION_KEY_PATH


def _get_or_create_key() -> bytes:
    """
    Load existing encryption key or generate a new one.

    Returns:
        bytes: Fernet encryption key

    Raises:
        IOError: If key file cannot be read or created
    """
    if os.path.exists(KEY_PATH):
        try:
            with open(KEY_PATH, 'rb') as f:
                return f.read()
        except OSError as e:
            logger.error(f"Failed to read encryption key from {KEY_PATH}: {e}")
            raise IOError(f"Cannot read encryption key: {e}")

    try:
        key = Fernet.generate_key()
        os.makedirs(os.path.dirname(KEY_PATH) or '.', exist_ok=True)

        with open(KEY_PATH, 'wb') as f:
            f.write(key)

        # Owner read/write only
        os.chmod(KEY_PATH, 0o600)

        logger.info(f"Generated new encryption key at {KEY_PATH}")
        return key

    except OSError as e:
        logger.error(f"Failed to generate or save encryption key: {e}")
        raise IOError(f"Cannot create encryption key: {e}")


def encrypt_password(plaintext: str) -> str:
    """
    Encrypt a password for secure storage.

    Raises:
        ValueError: If plaintext is empty
    """
    if not plaintext:
        raise ValueError("Cannot encrypt empty password")

    fernet = Fernet(_get_or_create_key())
    return fernet.encrypt(plaintext.encode('utf-8')).decode('ascii')


def decrypt_password(encrypted: str) -> str:
    """
    Decrypt a password from storage.

    Raises:
        ValueError: If encrypted string is empty or cannot be decrypted
    """
    if not encrypted:
        raise ValueError("Cannot decrypt empty string")

    fernet = Fernet(_get_or_create_key())
    try:
        return fernet.decrypt(encrypted.encode('ascii')).decode('utf-8')
    except InvalidToken:
        logger.error("Failed to decrypt password: invalid token (key mismatch or corrupted data)")
        raise ValueError("Cannot decrypt password: invalid encryption token")
