"""
SQLite database connection and schema management.

This module provides a simple, synchronous interface for SQLite database
operations with connection management and schema initialization. Every call
uses its own connection, so reads and writes from different threads do not
share state; WAL mode lets readers proceed while a writer commits.
"""
import sqlite3
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional, Sequence

from mail_engine import config


BUSY_TIMEOUT_SECONDS = 30


def get_connection() -> sqlite3.Connection:
    """
    Get a SQLite database connection.

    Returns:
        A sqlite3.Connection with row_factory set to sqlite3.Row.

    Note:
        The connection should be closed by the caller when done.
    """
    db_path = config.SQLITE_DB_PATH
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=BUSY_TIMEOUT_SECONDS, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_db() -> None:
    """
    Initialize the database schema.

    Creates all required tables if they don't exist. This function
    should be called on startup.
    """
    conn = get_connection()
    try:
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS accounts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                display_name TEXT NOT NULL DEFAULT '',
                email_address TEXT NOT NULL,
                imap_server TEXT NOT NULL,
                imap_port INTEGER NOT NULL,
                imap_security TEXT NOT NULL,
                smtp_server TEXT NOT NULL,
                smtp_port INTEGER NOT NULL,
                smtp_security TEXT NOT NULL,
                username TEXT NOT NULL DEFAULT '',
                signature TEXT NOT NULL DEFAULT '',
                signature_enabled INTEGER NOT NULL DEFAULT 1,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS folders (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                account_id INTEGER NOT NULL,
                server_id TEXT NOT NULL,
                display_name TEXT NOT NULL,
                selectable INTEGER NOT NULL DEFAULT 1,
                type_flags INTEGER NOT NULL DEFAULT 0,
                UNIQUE(account_id, server_id)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                account_id INTEGER NOT NULL,
                uid TEXT NOT NULL,
                folder TEXT NOT NULL DEFAULT 'INBOX',
                sender TEXT NOT NULL,
                subject TEXT NOT NULL DEFAULT '',
                preview TEXT NOT NULL DEFAULT '',
                body TEXT NOT NULL DEFAULT '',
                timestamp INTEGER NOT NULL,
                is_read INTEGER NOT NULL DEFAULT 0,
                is_vip INTEGER NOT NULL DEFAULT 0,
                UNIQUE(account_id, folder, uid)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS vip_senders (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                account_id INTEGER NOT NULL,
                email_address TEXT NOT NULL,
                email_lower TEXT NOT NULL,
                UNIQUE(account_id, email_lower)
            )
        """)

        # Encrypted account passwords (credential vault)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS credentials (
                account_id INTEGER PRIMARY KEY,
                encrypted_password TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_folders_account
            ON folders(account_id)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_messages_folder
            ON messages(account_id, folder, timestamp)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_messages_sender
            ON messages(account_id, sender COLLATE NOCASE)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_messages_vip
            ON messages(account_id, is_vip)
        """)

        conn.commit()
    finally:
        conn.close()


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    """
    Run a group of statements atomically.

    Takes the write lock up front (BEGIN IMMEDIATE) so read-then-write
    sequences inside the block see a consistent state.

    Example:
        >>> with transaction() as conn:
        ...     conn.execute("DELETE FROM folders WHERE account_id = ?", (1,))
    """
    conn = get_connection()
    conn.isolation_level = None
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
    finally:
        conn.close()


def execute(query: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
    """
    Execute a SQL query and return the cursor.

    Returns:
        The cursor object (useful for getting lastrowid, rowcount, etc.).
    """
    conn = get_connection()
    try:
        cursor = conn.cursor()
        cursor.execute(query, params)
        conn.commit()
        return cursor
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def fetchall(query: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
    """
    Execute a SELECT query and return all rows.

    Example:
        >>> rows = fetchall("SELECT * FROM accounts WHERE imap_server = ?", ("imap.example.com",))
    """
    conn = get_connection()
    try:
        cursor = conn.cursor()
        cursor.execute(query, params)
        return cursor.fetchall()
    finally:
        conn.close()


def fetchone(query: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
    """
    Execute a SELECT query and return the first row.

    Returns:
        A Row object (sqlite3.Row) or None if no rows found.
    """
    conn = get_connection()
    try:
        cursor = conn.cursor()
        cursor.execute(query, params)
        return cursor.fetchone()
    finally:
        conn.close()
