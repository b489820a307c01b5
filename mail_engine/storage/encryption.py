"""
Symmetric encryption helpers for sensitive data storage.

This module provides encryption and decryption functions using Fernet
(AES-128 in CBC mode with HMAC) for secure at-rest storage of account
passwords.
"""
import logging
import os
import threading

from cryptography.fernet import Fernet, InvalidToken

from mail_engine import config
from mail_engine.utils.errors import DecryptionError


logger = logging.getLogger(__name__)

_key_lock = threading.Lock()


def _get_or_create_key() -> bytes:
    """
    Get the encryption key from file, or generate a new one if missing.

    Returns:
        The encryption key as bytes.
    """
    key_file = config.SECRET_KEY_FILE
    with _key_lock:
        key_file.parent.mkdir(parents=True, exist_ok=True)

        if key_file.exists():
            key = key_file.read_bytes().strip()
            try:
                Fernet(key)
                return key
            except (ValueError, TypeError):
                logger.warning(f"Encryption key at {key_file} is corrupted, generating a new one")

        key = Fernet.generate_key()
        key_file.write_bytes(key)

        # Restrictive permissions (Unix-like systems)
        try:
            os.chmod(key_file, 0o600)
        except OSError:
            logger.debug(f"Could not restrict permissions on {key_file}")

        return key


def _get_cipher() -> Fernet:
    return Fernet(_get_or_create_key())


def encrypt_text(text: str) -> str:
    """
    Encrypt a text string.

    Args:
        text: The text string to encrypt.

    Returns:
        The Fernet token as an ASCII string, safe for SQLite TEXT storage.

    Raises:
        ValueError: If text is empty.
    """
    if not text:
        raise ValueError("Cannot encrypt empty text")
    return _get_cipher().encrypt(text.encode('utf-8')).decode('ascii')


def decrypt_text(token: str) -> str:
    """
    Decrypt a token produced by encrypt_text().

    Raises:
        DecryptionError: If decryption fails (corrupted data, wrong key, etc.).
    """
    if not token:
        raise DecryptionError("Cannot decrypt empty data")

    try:
        decrypted = _get_cipher().decrypt(token.encode('ascii'))
    except InvalidToken as e:
        raise DecryptionError("Decryption failed: invalid or corrupted data") from e
    except (ValueError, TypeError) as e:
        raise DecryptionError(f"Decryption failed: {e}") from e

    try:
        return decrypted.decode('utf-8')
    except UnicodeDecodeError as e:
        raise DecryptionError(f"Decrypted data is not valid UTF-8: {e}") from e
