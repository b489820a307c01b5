"""
SMTP client for sending emails.

This module provides a high-level SMTP client that handles MIME composition
(plain + HTML alternatives, inline and regular attachments) and sending over
an authenticated connection negotiated from the account's security setting.
"""
import logging
import smtplib
import uuid
from email import encoders
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate, make_msgid
from typing import List, Optional, Sequence

from mail_engine import config
from mail_engine.models import Account, Attachment, ConnectionCheck
from mail_engine.network.security import ConnectionParams, resolve_connection, tls_context
from mail_engine.utils.errors import (
    MailEngineError,
    SmtpAuthenticationError,
    SmtpConnectionError,
    SmtpSendError,
)


logger = logging.getLogger(__name__)


class SmtpClient:
    """
    High-level SMTP client for sending emails.

    Each send opens, authenticates and closes its own connection. Errors are
    raised to the caller unchanged in meaning; this class never retries.
    """

    def __init__(self, timeout: Optional[int] = None):
        """
        Initialize the SMTP client.

        Args:
            timeout: Socket timeout in seconds. Defaults to config.SMTP_TIMEOUT.
        """
        self.timeout = timeout

    def connection_params(self, account: Account) -> ConnectionParams:
        """Resolve the negotiated connection parameters for an account."""
        return resolve_connection(
            account.smtp_server,
            account.smtp_port,
            account.smtp_security,
            self.timeout or config.SMTP_TIMEOUT,
        )

    def _connect(self, account: Account, password: str) -> smtplib.SMTP:
        """Establish connection to SMTP server and authenticate."""
        params = self.connection_params(account)
        context = tls_context(params)

        logger.info(f"Connecting to SMTP server {params.host}:{params.port} ({params.security.display_name})")
        try:
            if params.implicit_tls:
                connection = smtplib.SMTP_SSL(
                    params.host, params.port, timeout=params.timeout, context=context
                )
            else:
                connection = smtplib.SMTP(params.host, params.port, timeout=params.timeout)
        except (smtplib.SMTPException, OSError) as e:
            raise SmtpConnectionError(
                f"Failed to connect to SMTP server {params.host}:{params.port}: {e}"
            ) from e

        try:
            if params.starttls:
                connection.ehlo()
                connection.starttls(context=context)
                connection.ehlo()
            connection.login(account.username or account.email_address, password)
        except smtplib.SMTPAuthenticationError as e:
            self._close(connection)
            raise SmtpAuthenticationError(f"SMTP authentication failed: {e}") from e
        except (smtplib.SMTPException, OSError) as e:
            self._close(connection)
            raise SmtpConnectionError(f"SMTP session setup failed with {params.host}: {e}") from e

        logger.info("SMTP connection established and authenticated")
        return connection

    def _close(self, connection: smtplib.SMTP) -> None:
        """Close the SMTP connection."""
        try:
            connection.quit()
            logger.debug("SMTP connection closed gracefully")
        except (smtplib.SMTPException, OSError):
            try:
                connection.close()
                logger.debug("SMTP connection closed")
            except OSError as e:
                logger.debug(f"Ignoring error while closing SMTP connection: {e}")

    def build_mime_message(
        self,
        account: Account,
        to: Sequence[str],
        subject: str,
        body_html: str,
        body_text: str,
        attachments: Sequence[Attachment]
    ) -> MIMEMultipart:
        """
        Build the MIME structure for an outgoing message.

        Layout: multipart/mixed holding a multipart/alternative part with
        the plain-text and HTML bodies, followed by one part per attachment.
        Attachments without data are dropped.

        Returns:
            A constructed message ready to send.
        """
        msg = MIMEMultipart('mixed')

        if account.display_name:
            msg['From'] = formataddr((account.display_name, account.email_address))
        else:
            msg['From'] = account.email_address
        msg['To'] = ', '.join(to)
        msg['Subject'] = subject
        msg['Date'] = formatdate(localtime=True)
        msg['Message-ID'] = make_msgid()

        alternative = MIMEMultipart('alternative')
        alternative.attach(MIMEText(body_text or '', 'plain', 'utf-8'))
        alternative.attach(MIMEText(body_html or '', 'html', 'utf-8'))
        msg.attach(alternative)

        for attachment in attachments:
            if not attachment.data:
                logger.warning(f"Skipping attachment {attachment.filename}: no data available")
                continue
            msg.attach(self._build_attachment_part(attachment))
            logger.debug(f"Added attachment: {attachment.filename} (inline={attachment.inline})")

        return msg

    def _build_attachment_part(self, attachment: Attachment) -> MIMEBase:
        mime_type = attachment.mime_type or 'application/octet-stream'
        main_type, sub_type = mime_type.split('/', 1) if '/' in mime_type else ('application', 'octet-stream')

        part = MIMEBase(main_type, sub_type)
        part.set_payload(attachment.data)
        encoders.encode_base64(part)

        if attachment.inline:
            content_id = attachment.content_id or uuid.uuid4().hex
            part.add_header('Content-ID', f'<{content_id}>')
            part.add_header('Content-Disposition', 'inline', filename=attachment.filename)
        else:
            part.add_header('Content-Disposition', 'attachment', filename=attachment.filename)
        return part

    def send(
        self,
        account: Account,
        password: str,
        to: List[str],
        subject: str,
        body_html: str,
        body_text: str,
        attachments: Sequence[Attachment] = ()
    ) -> None:
        """
        Send an email message with optional attachments.

        Raises:
            ConfigurationError: If the server settings are invalid.
            SmtpError: If connecting, authenticating or sending fails.
        """
        if not to:
            raise SmtpSendError("No recipients specified")
        if not subject:
            logger.warning("Sending email without subject")

        mime_msg = self.build_mime_message(account, to, subject, body_html, body_text, attachments)

        connection = self._connect(account, password)
        try:
            logger.info(f"Sending email to {len(to)} recipient(s)")
            refused = connection.send_message(mime_msg, from_addr=account.email_address, to_addrs=list(to))
            if refused:
                raise SmtpSendError(f"Failed to send to recipients: {', '.join(refused.keys())}")
            logger.info("Email sent successfully")
        except smtplib.SMTPRecipientsRefused as e:
            raise SmtpSendError(f"Recipients refused: {e}") from e
        except smtplib.SMTPDataError as e:
            raise SmtpSendError(f"Server rejected message data: {e}") from e
        except smtplib.SMTPException as e:
            raise SmtpSendError(f"SMTP error: {e}") from e
        except OSError as e:
            raise SmtpConnectionError(f"SMTP connection lost while sending: {e}") from e
        finally:
            self._close(connection)

    def test_connection(self, account: Account, password: str) -> ConnectionCheck:
        """Connect and authenticate once, reporting the outcome."""
        try:
            connection = self._connect(account, password)
        except MailEngineError as e:
            logger.warning(f"SMTP connection test failed for {account.email_address}: {e}")
            return ConnectionCheck.failure(e)
        self._close(connection)
        return ConnectionCheck.success()
