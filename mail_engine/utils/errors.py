"""
Centralized error hierarchy for the mail engine.

This module provides a base exception class and specific error types
for different parts of the engine, along with a helper for converting
technical errors to user-friendly messages.
"""
from typing import Union


class MailEngineError(Exception):
    """
    Base exception class for all mail engine errors.

    All engine-specific exceptions inherit from this class to enable
    centralized error handling and user-friendly message mapping.
    """
    pass


class ConfigurationError(MailEngineError):
    """Raised when an account is misconfigured. Never retried automatically."""
    pass


class CredentialsMissingError(ConfigurationError):
    """Raised when the vault holds no password for an account."""
    pass


class ImapError(MailEngineError):
    """Base exception for IMAP-related errors."""
    pass


class ImapConnectionError(ImapError):
    """Raised when IMAP connection fails."""
    pass


class ImapAuthenticationError(ImapError):
    """Raised when IMAP authentication fails."""
    pass


class ImapOperationError(ImapError):
    """Raised when an IMAP operation fails."""
    pass


class SmtpError(MailEngineError):
    """Base exception for SMTP-related errors."""
    pass


class SmtpConnectionError(SmtpError):
    """Raised when SMTP connection fails."""
    pass


class SmtpAuthenticationError(SmtpError):
    """Raised when SMTP authentication fails."""
    pass


class SmtpSendError(SmtpError):
    """Raised when sending an email fails."""
    pass


class DecryptionError(MailEngineError):
    """Raised when decryption operations fail."""
    pass


class AccountError(MailEngineError):
    """Raised when account management operations fail."""
    pass


class AccountNotFoundError(AccountError):
    """Raised when an account is not found."""
    pass


TRANSPORT_ERRORS = (ImapError, SmtpError, OSError)


def human_friendly_message(exc: Union[MailEngineError, Exception]) -> str:
    """
    Convert technical error exceptions to user-friendly messages.

    Configuration errors are surfaced verbatim; everything else is mapped
    to a message suitable for display, hiding protocol details.

    Args:
        exc: The exception to convert.

    Returns:
        A user-friendly error message string.
    """
    error_msg = str(exc) if str(exc) else ""

    if isinstance(exc, ConfigurationError):
        return error_msg or "The account is not configured correctly."

    if isinstance(exc, (ImapAuthenticationError, SmtpAuthenticationError)):
        return (
            "Could not sign in to your email account. Please check:\n\n"
            "• Your username and password are correct\n"
            "• The security setting (SSL/TLS, STARTTLS, None) matches the server"
        )
    if isinstance(exc, ImapConnectionError):
        return (
            "Could not connect to the email server. Please check:\n\n"
            "• Your internet connection\n"
            "• The server settings for this account\n"
            "• Whether the email service is temporarily unavailable"
        )
    if isinstance(exc, ImapError):
        return (
            "An error occurred while accessing your email. "
            "Please try again. If the problem continues, the email service "
            "may be temporarily unavailable."
        )
    if isinstance(exc, SmtpConnectionError):
        return (
            "Could not connect to the email server to send your message. "
            "Please check your internet connection and try again."
        )
    if isinstance(exc, SmtpSendError):
        return (
            "Failed to send your email. This might be due to:\n\n"
            "• Invalid recipient email addresses\n"
            "• Server restrictions on message size\n"
            "• Temporary server issues\n\n"
            "Please check the recipient addresses and try again."
        )
    if isinstance(exc, SmtpError):
        return (
            "An error occurred while sending your email. "
            "Please try again. If the problem continues, check your "
            "account settings and internet connection."
        )
    if isinstance(exc, DecryptionError):
        return (
            "Could not decrypt stored credentials. The encryption key may have "
            "been lost or changed. Please re-enter the account password."
        )
    if isinstance(exc, AccountNotFoundError):
        return "The requested account could not be found."
    if isinstance(exc, MailEngineError):
        return f"An error occurred: {error_msg}" if error_msg else "An unexpected error occurred. Please try again."

    # Standard Python exceptions
    if isinstance(exc, TimeoutError):
        return (
            "The operation timed out. This might be due to a slow connection "
            "or server issues. Please try again."
        )
    if isinstance(exc, ConnectionError):
        return (
            "Could not connect to the server. Please check your internet "
            "connection and try again."
        )
    if isinstance(exc, ValueError):
        return f"Invalid input: {error_msg}"

    return f"An error occurred: {error_msg or 'Unknown error'}"
