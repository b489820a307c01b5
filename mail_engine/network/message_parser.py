"""
Conversion of raw RFC 822 messages into cached Message records.
"""
import email
import html
import re
import time
import unicodedata
from email.header import decode_header
from email.message import Message as MimeMessage
from email.utils import parseaddr
from typing import Optional

from mail_engine.models import INBOX_SERVER_ID, Message


PREVIEW_LENGTH = 140
NO_SUBJECT = "(No subject)"

_TAG_RE = re.compile(r"<[^>]*>")
_BREAK_RE = re.compile(r"<\s*(br|/p|/div|/li|/tr|/h[1-6])\s*/?\s*>", re.IGNORECASE)
_HIDDEN_BLOCK_RE = re.compile(r"<(script|style)[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)


def clean_text(text: str) -> str:
    """NFKC-normalize and trim a piece of text."""
    return unicodedata.normalize("NFKC", text).strip()


def html_to_text(markup: str) -> str:
    """Strip tags from an HTML fragment, keeping line breaks."""
    text = _HIDDEN_BLOCK_RE.sub("", markup)
    text = _BREAK_RE.sub("\n", text)
    text = _TAG_RE.sub("", text)
    text = html.unescape(text).replace("\xa0", " ")
    return clean_text(text)


def make_preview(body: str) -> str:
    """First non-blank line of the body, at most PREVIEW_LENGTH characters."""
    for line in body.splitlines():
        if line.strip():
            return clean_text(line[:PREVIEW_LENGTH])
    return ""


class MessageParser:
    """
    Normalizes raw messages fetched by the transport.

    A message without a usable From address yields None: it cannot be
    rendered without a sender.
    """

    def parse_message(
        self,
        account_id: int,
        raw: bytes,
        sequence_number: int,
        uid: Optional[str] = None,
        folder: str = INBOX_SERVER_ID,
        received_at: Optional[int] = None,
        is_read: bool = False,
    ) -> Optional[Message]:
        """
        Parse a raw message.

        Args:
            account_id: Owning account.
            raw: The full message bytes.
            sequence_number: Session-relative message number, used as the uid
                when the server reports none. Sequence numbers shift when
                messages are expunged, so such uids are not stable.
            uid: The server UID, if known.
            folder: Server id of the containing folder.
            received_at: Server receive time in epoch millis; defaults to now.
            is_read: Whether the server reports the message as seen.

        Returns:
            A Message, or None when the sender address is missing.
        """
        msg = email.message_from_bytes(raw)

        sender = self._sender_address(msg)
        if not sender:
            return None

        subject = clean_text(self._decode_header(msg.get("Subject", "")))
        body = self.extract_body(msg)

        return Message(
            account_id=account_id,
            uid=uid or str(sequence_number),
            folder=folder,
            sender=sender,
            subject=subject or NO_SUBJECT,
            preview=make_preview(body),
            body=body,
            timestamp=received_at if received_at is not None else int(time.time() * 1000),
            is_read=is_read,
        )

    def extract_body(self, msg: MimeMessage) -> str:
        """Return the plain-text body, falling back to tag-stripped HTML."""
        plain_text = None
        html_text = None

        for part in msg.walk():
            if part.is_multipart():
                continue
            content_disposition = str(part.get("Content-Disposition", ""))
            if "attachment" in content_disposition.lower():
                continue

            content_type = part.get_content_type()
            if content_type == "text/plain" and plain_text is None:
                plain_text = self._decode_payload(part)
            elif content_type == "text/html" and html_text is None:
                html_text = self._decode_payload(part)

        if plain_text is not None:
            return plain_text
        if html_text is not None:
            return html_to_text(html_text)
        return ""

    def _sender_address(self, msg: MimeMessage) -> str:
        sender = self._decode_header(msg.get("From", ""))
        _, address = parseaddr(sender)
        return address.strip()

    def _decode_payload(self, part: MimeMessage) -> str:
        payload = part.get_payload(decode=True)
        if not payload:
            return ""
        charset = part.get_content_charset() or "utf-8"
        try:
            return payload.decode(charset, errors="replace")
        except LookupError:
            return payload.decode("utf-8", errors="replace")

    def _decode_header(self, header) -> str:
        """Decode an RFC 2047 encoded header."""
        if not header:
            return ""
        try:
            decoded_str = ""
            for part, encoding in decode_header(str(header)):
                if isinstance(part, bytes):
                    decoded_str += part.decode(encoding or "utf-8", errors="replace")
                else:
                    decoded_str += part
            return decoded_str
        except (LookupError, ValueError):
            return str(header)
