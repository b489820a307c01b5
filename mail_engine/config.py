"""
Global settings and constants for the mail engine.

This module provides configuration constants and helpers for the mail engine.
It is framework-agnostic and designed to be easily unit-testable. Values are
read at call time by the modules that use them, so tests can override them.
"""
import os
from pathlib import Path

from dotenv import load_dotenv


# Application paths
APP_HOME: Path = Path.home() / ".mail_engine"
SQLITE_DB_PATH: Path = APP_HOME / "mail_engine.db"
SECRET_KEY_FILE: Path = APP_HOME / "secret.key"
LOG_DIR: Path = APP_HOME / "logs"

# Network timeouts (seconds)
IMAP_TIMEOUT: int = 30
SMTP_TIMEOUT: int = 30

# Sync and caching configuration
SYNC_INTERVAL_SECONDS: int = 15 * 60
FETCH_WINDOW: int = 50
SYNC_MAX_WORKERS: int = 4

# Backoff applied when a whole periodic tick fails
RETRY_BASE_SECONDS: int = 30
RETRY_MAX_SECONDS: int = 30 * 60


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got {value!r}")


def load_env() -> None:
    """
    Load environment variables and apply sensible defaults.

    Reads an optional .env file, then overrides the module constants from
    the environment. It should be called at application startup.
    """
    global APP_HOME, SQLITE_DB_PATH, SECRET_KEY_FILE, LOG_DIR
    global IMAP_TIMEOUT, SMTP_TIMEOUT, SYNC_INTERVAL_SECONDS, FETCH_WINDOW
    global SYNC_MAX_WORKERS, RETRY_BASE_SECONDS, RETRY_MAX_SECONDS

    load_dotenv()

    home_env = os.environ.get("MAIL_ENGINE_HOME")
    if home_env:
        APP_HOME = Path(home_env)
        SQLITE_DB_PATH = APP_HOME / "mail_engine.db"
        SECRET_KEY_FILE = APP_HOME / "secret.key"
        LOG_DIR = APP_HOME / "logs"

    # Allow override of individual paths via environment variables
    db_path_env = os.environ.get("SQLITE_DB_PATH")
    if db_path_env:
        SQLITE_DB_PATH = Path(db_path_env)
    key_file_env = os.environ.get("SECRET_KEY_FILE")
    if key_file_env:
        SECRET_KEY_FILE = Path(key_file_env)

    IMAP_TIMEOUT = _env_int("IMAP_TIMEOUT", IMAP_TIMEOUT)
    SMTP_TIMEOUT = _env_int("SMTP_TIMEOUT", SMTP_TIMEOUT)
    SYNC_INTERVAL_SECONDS = _env_int("SYNC_INTERVAL_SECONDS", SYNC_INTERVAL_SECONDS)
    FETCH_WINDOW = _env_int("FETCH_WINDOW", FETCH_WINDOW)
    SYNC_MAX_WORKERS = _env_int("SYNC_MAX_WORKERS", SYNC_MAX_WORKERS)
    RETRY_BASE_SECONDS = _env_int("RETRY_BASE_SECONDS", RETRY_BASE_SECONDS)
    RETRY_MAX_SECONDS = _env_int("RETRY_MAX_SECONDS", RETRY_MAX_SECONDS)

    # Ensure the data directories exist
    SQLITE_DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    SECRET_KEY_FILE.parent.mkdir(parents=True, exist_ok=True)
