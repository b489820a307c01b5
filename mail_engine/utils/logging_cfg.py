"""
Logging configuration for the mail engine.

This module sets up logging with rotating file handlers and console output,
providing a centralized way to configure logging throughout the engine.
"""
import logging
import logging.handlers
from pathlib import Path
from typing import Optional

from mail_engine import config


LOG_FILE_NAME = "mail_engine.log"

# Maximum log file size (10 MB)
MAX_LOG_SIZE = 10 * 1024 * 1024

# Number of backup log files to keep
BACKUP_COUNT = 5


def setup_logging(debug: bool = False, log_dir: Optional[Path] = None) -> None:
    """
    Configure logging for the mail engine.

    Sets up:
    - Rotating file handler under the configured log directory
    - Console handler for immediate feedback
    - Appropriate log levels based on debug mode

    Args:
        debug: If True, sets log level to DEBUG. Otherwise, uses INFO.
        log_dir: Directory for the log file. Defaults to config.LOG_DIR.
    """
    log_dir = log_dir or config.LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / LOG_FILE_NAME

    log_level = logging.DEBUG if debug else logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    detailed_formatter = logging.Formatter(
        fmt='%(asctime)s - %(name)s - %(threadName)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    simple_formatter = logging.Formatter(fmt='%(levelname)s - %(message)s')

    file_handler = logging.handlers.RotatingFileHandler(
        filename=str(log_file),
        maxBytes=MAX_LOG_SIZE,
        backupCount=BACKUP_COUNT,
        encoding='utf-8'
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(detailed_formatter)
    root_logger.addHandler(file_handler)

    # Console handler (only show WARNING and above unless debug)
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG if debug else logging.WARNING)
    console_handler.setFormatter(simple_formatter)
    root_logger.addHandler(console_handler)

    logger = logging.getLogger(__name__)
    logger.info("=" * 60)
    logger.info("Mail engine started")
    logger.info(f"Log level: {logging.getLevelName(log_level)}")
    logger.info(f"Log file: {log_file}")
    logger.info("=" * 60)

    _suppress_noisy_loggers()


def _suppress_noisy_loggers() -> None:
    """Suppress verbose logging from standard and third-party libraries."""
    for name in ("imaplib", "smtplib", "apscheduler", "cryptography"):
        logging.getLogger(name).setLevel(logging.WARNING)
