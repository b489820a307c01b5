"""
Core domain models for the mail engine.

This module contains pure domain models (dataclasses) without any database
or network dependencies. These models represent the core business entities.
"""
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Optional


INBOX_SERVER_ID = "INBOX"

# Folder capability bits reported by the transport
HOLDS_MESSAGES = 1
HOLDS_FOLDERS = 2


class MailSecurity(str, Enum):
    """Transport negotiation mode for an IMAP or SMTP connection."""
    SSL_TLS = "SSL/TLS"
    STARTTLS = "STARTTLS"
    NONE = "None"

    @property
    def display_name(self) -> str:
        return self.value

    @classmethod
    def from_display_name(cls, name: Optional[str]) -> "MailSecurity":
        """Resolve a stored/display name, falling back to NONE."""
        for member in cls:
            if name in (member.value, member.name):
                return member
        return cls.NONE


@dataclass(slots=True)
class Account:
    """Represents one mailbox. The password lives in the credential vault."""
    id: Optional[int] = None
    display_name: str = ""
    email_address: str = ""
    imap_server: str = ""
    imap_port: int = 993
    imap_security: MailSecurity = MailSecurity.SSL_TLS
    smtp_server: str = ""
    smtp_port: int = 587
    smtp_security: MailSecurity = MailSecurity.STARTTLS
    username: str = ""
    signature: str = ""
    signature_enabled: bool = True
    created_at: Optional[datetime] = None

    @property
    def has_signature(self) -> bool:
        return self.signature_enabled and bool(self.signature.strip())


@dataclass(slots=True)
class Folder:
    """Represents a mailbox container on one account."""
    account_id: int = 0
    server_id: str = INBOX_SERVER_ID
    display_name: str = ""
    selectable: bool = True
    type_flags: int = HOLDS_MESSAGES
    id: Optional[int] = None


@dataclass(slots=True)
class Message:
    """Represents one cached email."""
    account_id: int = 0
    uid: str = ""
    folder: str = INBOX_SERVER_ID
    sender: str = ""
    subject: str = ""
    preview: str = ""
    body: str = ""
    timestamp: int = 0  # epoch millis of server receipt
    is_read: bool = False
    is_vip: bool = False
    id: Optional[int] = None

    def copy(self, **changes) -> "Message":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)

    @property
    def key(self) -> tuple:
        """Identity of the message within its account."""
        return (self.folder, self.uid)


@dataclass(slots=True)
class VipSender:
    """A sender whose mail is tagged VIP for one account."""
    account_id: int = 0
    email_address: str = ""
    id: Optional[int] = None


@dataclass(slots=True)
class Attachment:
    """An outgoing attachment. Either data or a local path must be provided."""
    filename: str = ""
    mime_type: str = "application/octet-stream"
    data: Optional[bytes] = None
    path: Optional[str] = None
    inline: bool = False
    content_id: Optional[str] = None


@dataclass(slots=True)
class ConnectionCheck:
    """Outcome of a connection test."""
    ok: bool
    error: Optional[str] = None

    @classmethod
    def success(cls) -> "ConnectionCheck":
        return cls(ok=True)

    @classmethod
    def failure(cls, exc: BaseException) -> "ConnectionCheck":
        return cls(ok=False, error=str(exc) or type(exc).__name__)


def is_inbox_id(server_id: Optional[str]) -> bool:
    """Check whether a folder id names the default folder (case-insensitive)."""
    return (server_id or "").upper() == INBOX_SERVER_ID


def canonical_folder_id(server_id: str) -> str:
    """Map any spelling of the default folder to INBOX; other ids are kept as is."""
    return INBOX_SERVER_ID if is_inbox_id(server_id) else server_id
