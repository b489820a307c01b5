"""
Cache repository layer for SQLite persistence.

This module provides a repository pattern for managing cached accounts,
folders, messages and VIP senders, converting between database rows and
domain models. Listeners registered with subscribe() are told about every
committed write so observers can reload a fresh snapshot.
"""
import logging
import sqlite3
import threading
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from mail_engine.core.vip import is_vip, normalize_address, vip_address_set
from mail_engine.models import Account, Folder, MailSecurity, Message, VipSender
from mail_engine.storage import db


logger = logging.getLogger(__name__)

# Change kinds passed to listeners
ACCOUNTS = "accounts"
FOLDERS = "folders"
MESSAGES = "messages"
VIP_SENDERS = "vip_senders"

ChangeListener = Callable[[str, int], None]

_listeners: List[ChangeListener] = []
_listeners_lock = threading.Lock()


def subscribe(listener: ChangeListener) -> Callable[[], None]:
    """
    Register a listener called as listener(kind, account_id) after each commit.

    Returns:
        A function that removes the listener.
    """
    with _listeners_lock:
        _listeners.append(listener)

    def unsubscribe() -> None:
        with _listeners_lock:
            if listener in _listeners:
                _listeners.remove(listener)

    return unsubscribe


def _notify(kind: str, account_id: int) -> None:
    with _listeners_lock:
        listeners = list(_listeners)
    for listener in listeners:
        try:
            listener(kind, account_id)
        except Exception:
            logger.exception(f"Cache listener failed for {kind} change on account {account_id}")


# ============================================================================
# Accounts
# ============================================================================

def upsert_account(account: Account) -> Account:
    """
    Insert or update an account.

    Returns:
        The account with its ID populated.
    """
    values = (
        account.display_name,
        account.email_address.strip(),
        account.imap_server,
        account.imap_port,
        MailSecurity(account.imap_security).name,
        account.smtp_server,
        account.smtp_port,
        MailSecurity(account.smtp_security).name,
        account.username,
        account.signature,
        1 if account.signature_enabled else 0,
    )

    with db.transaction() as conn:
        existing = None
        if account.id:
            existing = conn.execute("SELECT id FROM accounts WHERE id = ?", (account.id,)).fetchone()

        if existing:
            conn.execute(
                """
                UPDATE accounts
                SET display_name = ?, email_address = ?, imap_server = ?, imap_port = ?,
                    imap_security = ?, smtp_server = ?, smtp_port = ?, smtp_security = ?,
                    username = ?, signature = ?, signature_enabled = ?
                WHERE id = ?
                """,
                values + (account.id,)
            )
        else:
            cursor = conn.execute(
                """
                INSERT INTO accounts (
                    display_name, email_address, imap_server, imap_port, imap_security,
                    smtp_server, smtp_port, smtp_security, username, signature, signature_enabled
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                values
            )
            account.id = cursor.lastrowid

    _notify(ACCOUNTS, account.id)
    return account


def get_account(account_id: int) -> Optional[Account]:
    """Get an account by ID, or None if not found."""
    row = db.fetchone("SELECT * FROM accounts WHERE id = ?", (account_id,))
    return _row_to_account(row) if row else None


def list_accounts() -> List[Account]:
    """List all accounts, ordered by creation."""
    rows = db.fetchall("SELECT * FROM accounts ORDER BY id ASC")
    return [_row_to_account(row) for row in rows]


def delete_account(account_id: int) -> None:
    """Delete an account together with its folders, messages and VIP senders."""
    with db.transaction() as conn:
        conn.execute("DELETE FROM messages WHERE account_id = ?", (account_id,))
        conn.execute("DELETE FROM folders WHERE account_id = ?", (account_id,))
        conn.execute("DELETE FROM vip_senders WHERE account_id = ?", (account_id,))
        conn.execute("DELETE FROM accounts WHERE id = ?", (account_id,))
    _notify(ACCOUNTS, account_id)


# ============================================================================
# Folders
# ============================================================================

def replace_folders(account_id: int, folders: Sequence[Folder]) -> List[Folder]:
    """
    Replace the cached folder list of an account with a fresh one.

    Folder lists are small, so the set is overwritten rather than merged.

    Returns:
        The stored folders with their IDs populated.
    """
    stored = []
    with db.transaction() as conn:
        conn.execute("DELETE FROM folders WHERE account_id = ?", (account_id,))
        for folder in folders:
            folder.account_id = account_id
            cursor = conn.execute(
                """
                INSERT OR REPLACE INTO folders (account_id, server_id, display_name, selectable, type_flags)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    account_id,
                    folder.server_id,
                    folder.display_name,
                    1 if folder.selectable else 0,
                    folder.type_flags,
                )
            )
            folder.id = cursor.lastrowid
            stored.append(folder)

    _notify(FOLDERS, account_id)
    return stored


def list_folders(account_id: int) -> List[Folder]:
    """List all folders for an account, ordered by display name."""
    rows = db.fetchall(
        "SELECT * FROM folders WHERE account_id = ? ORDER BY display_name COLLATE NOCASE",
        (account_id,)
    )
    return [_row_to_folder(row) for row in rows]


# ============================================================================
# Messages
# ============================================================================

_UPSERT_MESSAGE = """
    INSERT INTO messages (
        account_id, uid, folder, sender, subject, preview, body, timestamp, is_read, is_vip
    )
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT(account_id, folder, uid) DO UPDATE SET
        sender = excluded.sender,
        subject = excluded.subject,
        preview = excluded.preview,
        body = excluded.body,
        timestamp = excluded.timestamp,
        is_vip = excluded.is_vip
"""


def replace_messages(account_id: int, folder: str, messages: Sequence[Message]) -> int:
    """
    Reconcile the cached messages of one folder with a freshly fetched set.

    In a single transaction: every cached message whose uid is not in the
    fetched set is deleted (all of them when the set is empty), then every
    fetched message is upserted. Existing rows keep their local read state;
    new rows take the read state reported by the server. is_vip is
    recomputed from the account's VIP senders.

    Returns:
        Number of messages stored.
    """
    fetched_uids = {message.uid for message in messages}

    with db.transaction() as conn:
        cached_uids = {
            row["uid"] for row in conn.execute(
                "SELECT uid FROM messages WHERE account_id = ? AND folder = ?",
                (account_id, folder)
            )
        }
        stale_uids = cached_uids - fetched_uids
        conn.executemany(
            "DELETE FROM messages WHERE account_id = ? AND folder = ? AND uid = ?",
            [(account_id, folder, uid) for uid in stale_uids]
        )

        vip_set = _vip_set(conn, account_id)
        conn.executemany(
            _UPSERT_MESSAGE,
            [
                (
                    account_id,
                    message.uid,
                    folder,
                    message.sender,
                    message.subject,
                    message.preview,
                    message.body,
                    message.timestamp,
                    1 if message.is_read else 0,
                    1 if is_vip(message.sender, vip_set) else 0,
                )
                for message in messages
            ]
        )

    logger.debug(
        f"Reconciled {folder} for account {account_id}: "
        f"{len(stale_uids)} removed, {len(fetched_uids)} stored"
    )
    _notify(MESSAGES, account_id)
    return len(fetched_uids)


def list_messages(account_id: int, folder: str) -> List[Message]:
    """List cached messages of a folder, newest first."""
    rows = db.fetchall(
        "SELECT * FROM messages WHERE account_id = ? AND folder = ? ORDER BY timestamp DESC, id DESC",
        (account_id, folder)
    )
    return [_row_to_message(row) for row in rows]


def list_vip_messages(account_id: int) -> List[Message]:
    """List messages whose persisted VIP flag is set, newest first."""
    rows = db.fetchall(
        "SELECT * FROM messages WHERE account_id = ? AND is_vip = 1 ORDER BY timestamp DESC, id DESC",
        (account_id,)
    )
    return [_row_to_message(row) for row in rows]


def get_message(message_id: int) -> Optional[Message]:
    """Get a message by ID, or None if not found."""
    row = db.fetchone("SELECT * FROM messages WHERE id = ?", (message_id,))
    return _row_to_message(row) if row else None


def update_read_state(message_id: int, is_read: bool) -> bool:
    """
    Set the read flag of a message.

    Returns:
        True if the message exists.
    """
    row = db.fetchone("SELECT account_id FROM messages WHERE id = ?", (message_id,))
    if not row:
        return False
    db.execute("UPDATE messages SET is_read = ? WHERE id = ?", (1 if is_read else 0, message_id))
    _notify(MESSAGES, row["account_id"])
    return True


def update_vip_status(account_id: int, email_address: str, is_vip_sender: bool) -> int:
    """
    Bulk-set is_vip on every message of an account from a sender.

    Returns:
        Number of messages updated.
    """
    with db.transaction() as conn:
        updated = _update_vip_status(conn, account_id, email_address, is_vip_sender)
    _notify(MESSAGES, account_id)
    return updated


def _update_vip_status(conn: sqlite3.Connection, account_id: int, email_address: str, flag: bool) -> int:
    target = normalize_address(email_address)
    updates = [
        (1 if flag else 0, row["id"])
        for row in conn.execute("SELECT id, sender FROM messages WHERE account_id = ?", (account_id,))
        if normalize_address(row["sender"]) == target
    ]
    conn.executemany("UPDATE messages SET is_vip = ? WHERE id = ?", updates)
    return len(updates)


# ============================================================================
# VIP senders
# ============================================================================

def get_vip_sender(account_id: int, email_address: str) -> Optional[VipSender]:
    """Find a VIP sender by address (case-insensitive)."""
    row = db.fetchone(
        "SELECT * FROM vip_senders WHERE account_id = ? AND email_lower = ?",
        (account_id, normalize_address(email_address))
    )
    return _row_to_vip_sender(row) if row else None


def list_vip_senders(account_id: int) -> List[VipSender]:
    """List the VIP senders of an account."""
    rows = db.fetchall(
        "SELECT * FROM vip_senders WHERE account_id = ? ORDER BY email_lower",
        (account_id,)
    )
    return [_row_to_vip_sender(row) for row in rows]


def set_vip_sender(account_id: int, email_address: str, is_vip_sender: bool) -> bool:
    """
    Add or remove a VIP sender and retag its cached messages atomically.

    Returns:
        The VIP state after the call.
    """
    address = email_address.strip()
    with db.transaction() as conn:
        if is_vip_sender:
            conn.execute(
                """
                INSERT OR IGNORE INTO vip_senders (account_id, email_address, email_lower)
                VALUES (?, ?, ?)
                """,
                (account_id, address, normalize_address(address))
            )
        else:
            conn.execute(
                "DELETE FROM vip_senders WHERE account_id = ? AND email_lower = ?",
                (account_id, normalize_address(address))
            )
        _update_vip_status(conn, account_id, address, is_vip_sender)

    _notify(VIP_SENDERS, account_id)
    _notify(MESSAGES, account_id)
    return is_vip_sender


def _vip_set(conn: sqlite3.Connection, account_id: int) -> set:
    rows = conn.execute("SELECT email_lower FROM vip_senders WHERE account_id = ?", (account_id,))
    return vip_address_set(row["email_lower"] for row in rows)


# ============================================================================
# Helper functions for row conversion
# ============================================================================

def _row_to_account(row: sqlite3.Row) -> Account:
    """Convert a database row to an Account model."""
    created_at = None
    if row["created_at"]:
        try:
            created_at = datetime.fromisoformat(str(row["created_at"]))
        except ValueError:
            created_at = None

    return Account(
        id=row["id"],
        display_name=row["display_name"] or "",
        email_address=(row["email_address"] or "").strip(),
        imap_server=row["imap_server"],
        imap_port=row["imap_port"],
        imap_security=MailSecurity.from_display_name(row["imap_security"]),
        smtp_server=row["smtp_server"],
        smtp_port=row["smtp_port"],
        smtp_security=MailSecurity.from_display_name(row["smtp_security"]),
        username=row["username"] or "",
        signature=row["signature"] or "",
        signature_enabled=bool(row["signature_enabled"]),
        created_at=created_at,
    )


def _row_to_folder(row: sqlite3.Row) -> Folder:
    """Convert a database row to a Folder model."""
    return Folder(
        id=row["id"],
        account_id=row["account_id"],
        server_id=row["server_id"],
        display_name=row["display_name"],
        selectable=bool(row["selectable"]),
        type_flags=row["type_flags"] or 0,
    )


def _row_to_message(row: sqlite3.Row) -> Message:
    """Convert a database row to a Message model."""
    return Message(
        id=row["id"],
        account_id=row["account_id"],
        uid=row["uid"],
        folder=row["folder"],
        sender=row["sender"] or "",
        subject=row["subject"] or "",
        preview=row["preview"] or "",
        body=row["body"] or "",
        timestamp=row["timestamp"] or 0,
        is_read=bool(row["is_read"]),
        is_vip=bool(row["is_vip"]),
    )


def _row_to_vip_sender(row: sqlite3.Row) -> VipSender:
    """Convert a database row to a VipSender model."""
    return VipSender(
        id=row["id"],
        account_id=row["account_id"],
        email_address=row["email_address"],
    )
