"""
Credential vault for account passwords.

Passwords are kept out of the accounts table and stored Fernet-encrypted in a
separate table keyed by account ID.
"""
import logging
from typing import Optional

from mail_engine.storage import db
from mail_engine.storage.encryption import decrypt_text, encrypt_text
from mail_engine.utils.errors import DecryptionError


logger = logging.getLogger(__name__)


def credential_key(account_id: int) -> str:
    """Stable name of the secret belonging to an account."""
    return f"account_password_{account_id}"


class CredentialVault:
    """Encrypted at-rest storage of one password per account."""

    def get(self, account_id: int) -> Optional[str]:
        """
        Get the password for an account.

        Returns:
            The decrypted password, or None if none is stored or the stored
            value can no longer be decrypted.
        """
        row = db.fetchone(
            "SELECT encrypted_password FROM credentials WHERE account_id = ?",
            (account_id,)
        )
        if not row or not row["encrypted_password"]:
            return None

        try:
            return decrypt_text(row["encrypted_password"])
        except DecryptionError as e:
            logger.warning(f"Stored secret {credential_key(account_id)} is unreadable: {e}")
            return None

    def set(self, account_id: int, password: str) -> None:
        """Store (or replace) the password for an account."""
        if not password:
            self.clear(account_id)
            return

        db.execute(
            """
            INSERT INTO credentials (account_id, encrypted_password, updated_at)
            VALUES (?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(account_id) DO UPDATE SET
                encrypted_password = excluded.encrypted_password,
                updated_at = CURRENT_TIMESTAMP
            """,
            (account_id, encrypt_text(password))
        )
        logger.debug(f"Stored secret {credential_key(account_id)}")

    def clear(self, account_id: int) -> None:
        """Remove the password for an account, if any."""
        db.execute("DELETE FROM credentials WHERE account_id = ?", (account_id,))
        logger.debug(f"Cleared secret {credential_key(account_id)}")
