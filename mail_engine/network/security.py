"""
Connection negotiation shared by the IMAP and SMTP clients.

Both protocols pick their transport from the account's security setting
through resolve_connection(), so the SSL/TLS, STARTTLS and NONE branches
behave identically for fetching and sending.
"""
import ssl
from dataclasses import dataclass
from typing import Optional

from mail_engine.models import MailSecurity
from mail_engine.utils.errors import ConfigurationError


@dataclass(frozen=True)
class ConnectionParams:
    """Negotiated parameters for opening one connection."""
    host: str
    port: int
    security: MailSecurity
    implicit_tls: bool
    starttls: bool
    timeout: int

    @property
    def encrypted(self) -> bool:
        return self.implicit_tls or self.starttls


def resolve_connection(
    host: str,
    port: int,
    security: MailSecurity,
    timeout: int
) -> ConnectionParams:
    """
    Derive connection parameters from a security setting.

    Args:
        host: Server host name.
        port: Server port.
        security: SSL/TLS (implicit TLS on connect), STARTTLS (plaintext
            upgraded after greeting) or NONE (unencrypted).
        timeout: Socket timeout in seconds.

    Returns:
        The ConnectionParams for the connection.

    Raises:
        ConfigurationError: If the host is blank or the port is out of range.
    """
    if not host or not host.strip():
        raise ConfigurationError("Server host is not configured")
    if not isinstance(port, int) or not 0 < port < 65536:
        raise ConfigurationError(f"Invalid port: {port}")

    security = MailSecurity(security)
    if security is MailSecurity.SSL_TLS:
        implicit_tls, starttls = True, False
    elif security is MailSecurity.STARTTLS:
        implicit_tls, starttls = False, True
    else:
        implicit_tls, starttls = False, False

    return ConnectionParams(
        host=host.strip(),
        port=port,
        security=security,
        implicit_tls=implicit_tls,
        starttls=starttls,
        timeout=timeout,
    )


def tls_context(params: ConnectionParams) -> Optional[ssl.SSLContext]:
    """Return a verifying TLS context for encrypted connections, else None."""
    if not params.encrypted:
        return None
    return ssl.create_default_context()
