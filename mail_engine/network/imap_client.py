"""
High-level IMAP client wrapper.

This module provides a clean, high-level interface for the IMAP operations
the sync engine needs, hiding the complexity of imaplib and providing
better error handling. Every public operation opens its own connection and
closes it before returning, whether it succeeds or fails.
"""
import base64
import imaplib
import logging
import re
import time
from contextlib import contextmanager
from typing import Iterator, List, Optional, Tuple

from mail_engine import config
from mail_engine.models import (
    HOLDS_FOLDERS,
    HOLDS_MESSAGES,
    INBOX_SERVER_ID,
    Account,
    ConnectionCheck,
    Folder,
    Message,
    is_inbox_id,
)
from mail_engine.network.message_parser import MessageParser
from mail_engine.network.security import ConnectionParams, resolve_connection, tls_context
from mail_engine.utils.errors import (
    ImapAuthenticationError,
    ImapConnectionError,
    ImapError,
    ImapOperationError,
    MailEngineError,
)


logger = logging.getLogger(__name__)

# IMAP LIST response: (flags) "delimiter" name
_LIST_RE = re.compile(rb'\((?P<flags>[^)]*)\)\s+(?P<delim>"(?:[^"\\]|\\.)*"|NIL)\s*(?P<name>.*)$')
_SEQ_RE = re.compile(rb'^\s*(\d+)')
_UID_RE = re.compile(rb'UID\s+(\d+)')

FETCH_ITEMS = "(UID FLAGS INTERNALDATE BODY.PEEK[])"


class ImapClient:
    """
    Fetches folders and messages from an IMAP server.

    Connection parameters come only from the account's security setting
    (see mail_engine.network.security). The client holds no connection
    between calls, so one instance can be shared across worker threads.
    """

    def __init__(self, parser: Optional[MessageParser] = None, timeout: Optional[int] = None):
        """
        Initialize the IMAP client.

        Args:
            parser: Parser used to turn raw messages into Message records.
            timeout: Socket timeout in seconds. Defaults to config.IMAP_TIMEOUT.
        """
        self.parser = parser or MessageParser()
        self.timeout = timeout

    def connection_params(self, account: Account) -> ConnectionParams:
        """Resolve the negotiated connection parameters for an account."""
        return resolve_connection(
            account.imap_server,
            account.imap_port,
            account.imap_security,
            self.timeout or config.IMAP_TIMEOUT,
        )

    def _connect(self, account: Account, password: str) -> imaplib.IMAP4:
        """Open and authenticate a connection."""
        params = self.connection_params(account)
        context = tls_context(params)

        try:
            if params.implicit_tls:
                connection = imaplib.IMAP4_SSL(
                    params.host, params.port, ssl_context=context, timeout=params.timeout
                )
            else:
                connection = imaplib.IMAP4(params.host, params.port, timeout=params.timeout)
        except (imaplib.IMAP4.error, OSError) as e:
            raise ImapConnectionError(
                f"Failed to connect to IMAP server {params.host}:{params.port}: {e}"
            ) from e

        try:
            if params.starttls:
                connection.starttls(ssl_context=context)
        except (imaplib.IMAP4.error, OSError) as e:
            self._close(connection)
            raise ImapConnectionError(f"STARTTLS negotiation failed with {params.host}: {e}") from e

        try:
            connection.login(account.username or account.email_address, password)
        except imaplib.IMAP4.error as e:
            self._close(connection)
            raise ImapAuthenticationError(f"IMAP login failed for {account.email_address}: {e}") from e
        except OSError as e:
            self._close(connection)
            raise ImapConnectionError(f"IMAP connection lost during login: {e}") from e

        logger.debug(
            f"IMAP connected to {params.host}:{params.port} "
            f"({params.security.display_name}) as {account.email_address}"
        )
        return connection

    def _close(self, connection: imaplib.IMAP4) -> None:
        """Close the IMAP connection, ignoring errors from a dead socket."""
        try:
            connection.logout()
        except (imaplib.IMAP4.error, OSError) as e:
            logger.debug(f"Ignoring error while closing IMAP connection: {e}")

    @contextmanager
    def _session(self, account: Account, password: str) -> Iterator[imaplib.IMAP4]:
        connection = self._connect(account, password)
        try:
            yield connection
        except ImapError:
            raise
        except (imaplib.IMAP4.error, OSError) as e:
            raise ImapOperationError(f"IMAP operation failed: {e}") from e
        finally:
            self._close(connection)

    def _quote_folder_name(self, folder_path: str) -> str:
        """
        Quote IMAP folder name if it contains spaces or special characters.

        For example: "Sent Mail" -> '"Sent Mail"', "[Gmail]/All Mail" -> '"[Gmail]/All Mail"'
        """
        if not folder_path:
            return folder_path
        if folder_path.startswith('"') and folder_path.endswith('"'):
            return folder_path
        if any(ch in folder_path for ch in ' []"\\/'):
            escaped = folder_path.replace('\\', '\\\\').replace('"', '\\"')
            return f'"{escaped}"'
        return folder_path

    # ------------------------------------------------------------------
    # Folders
    # ------------------------------------------------------------------

    def list_folders(self, account: Account, password: str) -> List[Folder]:
        """
        List every folder on the server that can hold messages.

        Returns:
            A list of Folder objects for the account.

        Raises:
            ConfigurationError: If the server settings are invalid.
            ImapError: If connecting, authenticating or listing fails.
        """
        with self._session(account, password) as connection:
            result, data = connection.list()
            if result != 'OK':
                raise ImapOperationError(f"Failed to list folders: {result}")

            folders = []
            for item in data or []:
                folder = self._parse_folder_list_item(account, item)
                if folder and folder.selectable:
                    folders.append(folder)

        logger.info(f"Listed {len(folders)} folder(s) for {account.email_address}")
        return folders

    def _parse_folder_list_item(self, account: Account, item) -> Optional[Folder]:
        """
        Parse an IMAP LIST response item into a Folder object.

        Example: (\\HasNoChildren) "/" "INBOX"
        """
        if item is None:
            return None
        literal_name = None
        if isinstance(item, tuple):
            item, literal_name = item[0], item[1]
        if isinstance(item, str):
            item = item.encode('utf-8')

        match = _LIST_RE.match(item.strip())
        if not match:
            logger.debug(f"Skipping unparseable LIST line: {item!r}")
            return None

        flags = {flag.lower() for flag in match.group('flags').decode('ascii', 'ignore').split()}
        delimiter = _unquote(match.group('delim').decode('utf-8', 'ignore'))
        if delimiter == 'NIL':
            delimiter = ''

        if literal_name is not None:
            raw_name = literal_name.decode('utf-8', 'ignore')
        else:
            raw_name = _unquote(match.group('name').decode('utf-8', 'ignore').strip())
        if not raw_name:
            return None

        holds_messages = not ({'\\noselect', '\\nonexistent'} & flags)
        type_flags = HOLDS_MESSAGES if holds_messages else 0
        if '\\noinferiors' not in flags:
            type_flags |= HOLDS_FOLDERS

        return Folder(
            account_id=account.id or 0,
            server_id=raw_name,
            display_name=folder_display_name(decode_modified_utf7(raw_name), delimiter),
            selectable=holds_messages,
            type_flags=type_flags,
        )

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def fetch_messages(
        self,
        account: Account,
        password: str,
        folder_server_id: str,
        max_count: int
    ) -> List[Message]:
        """
        Fetch the newest messages of a folder.

        The folder is opened read-only (falling back to INBOX when it cannot
        be opened) and the last max_count messages by sequence number are
        fetched, then returned newest first by server receive time.

        Args:
            account: The account to fetch for.
            password: The account password.
            folder_server_id: Server id of the folder to fetch.
            max_count: Size of the fetch window.

        Returns:
            At most max_count messages, each annotated with folder_server_id.

        Raises:
            ConfigurationError: If the server settings are invalid.
            ImapError: If connecting, authenticating or fetching fails.
        """
        if max_count <= 0:
            return []

        with self._session(account, password) as connection:
            total = self._open_readonly(connection, folder_server_id)
            if total <= 0:
                logger.info(f"Folder {folder_server_id} is empty for {account.email_address}")
                return []

            start = max(1, total - max_count + 1)
            result, data = connection.fetch(f"{start}:{total}", FETCH_ITEMS)
            if result != 'OK':
                raise ImapOperationError(
                    f"Failed to fetch messages {start}:{total} from '{folder_server_id}': {result}"
                )

            messages = []
            for sequence_number, uid, is_read, received_at, raw in self._iter_fetch_items(data):
                try:
                    message = self.parser.parse_message(
                        account.id or 0,
                        raw,
                        sequence_number,
                        uid=uid,
                        folder=folder_server_id,
                        received_at=received_at,
                        is_read=is_read,
                    )
                except Exception as e:
                    logger.warning(f"Skipping unparseable message #{sequence_number} in {folder_server_id}: {e}")
                    continue
                if message is None:
                    logger.debug(f"Dropping message #{sequence_number} without sender address")
                    continue
                messages.append(message)

        messages.sort(key=lambda m: m.timestamp, reverse=True)
        logger.info(
            f"Fetched {len(messages)} message(s) from {folder_server_id} for {account.email_address}"
        )
        return messages[:max_count]

    def _open_readonly(self, connection: imaplib.IMAP4, folder_server_id: str) -> int:
        """Examine a folder (or INBOX as fallback) and return its message count."""
        result, data = connection.select(self._quote_folder_name(folder_server_id), readonly=True)
        if result != 'OK':
            logger.warning(f"Cannot open folder '{folder_server_id}' ({result}), falling back to {INBOX_SERVER_ID}")
            result, data = connection.select(INBOX_SERVER_ID, readonly=True)
            if result != 'OK':
                raise ImapOperationError(f"Failed to select folder '{folder_server_id}': {result}")
        return _parse_count(data)

    def _iter_fetch_items(self, data) -> Iterator[Tuple[int, Optional[str], bool, Optional[int], bytes]]:
        """
        Walk a FETCH response.

        imaplib returns one tuple per message, e.g.
        (b'1 (UID 123 FLAGS (\\Seen) INTERNALDATE "..." BODY[] {1234}', b'raw...'),
        followed by the rest of the response line. Servers may send UID, FLAGS
        and INTERNALDATE after the literal, as in b' UID 123 FLAGS (\\Seen))',
        so that trailing element is read together with the header.
        """
        items = list(data or [])
        for index, item in enumerate(items):
            if not isinstance(item, tuple) or len(item) < 2:
                continue
            meta, raw = item[0], item[1]
            if not isinstance(meta, bytes) or not isinstance(raw, bytes):
                continue

            seq_match = _SEQ_RE.match(meta)
            if not seq_match:
                continue

            trailer = items[index + 1] if index + 1 < len(items) else None
            if isinstance(trailer, bytes):
                meta = meta + b' ' + trailer

            uid_match = _UID_RE.search(meta)
            flags = imaplib.ParseFlags(meta)
            internal_date = imaplib.Internaldate2tuple(meta)

            yield (
                int(seq_match.group(1)),
                uid_match.group(1).decode('ascii') if uid_match else None,
                b'\\Seen' in flags,
                int(time.mktime(internal_date) * 1000) if internal_date else None,
                raw,
            )

    def set_read_state(
        self,
        account: Account,
        password: str,
        folder_server_id: str,
        uid: str,
        is_read: bool
    ) -> None:
        """
        Add or remove the \\Seen flag of a message on the server.

        Raises:
            ConfigurationError: If the server settings are invalid.
            ImapError: If the folder cannot be selected or the store fails.
        """
        with self._session(account, password) as connection:
            result, _ = connection.select(self._quote_folder_name(folder_server_id))
            if result != 'OK':
                raise ImapOperationError(f"Failed to select folder '{folder_server_id}': {result}")

            command = '+FLAGS' if is_read else '-FLAGS'
            result, _ = connection.uid('STORE', uid, command, '(\\Seen)')
            if result != 'OK':
                raise ImapOperationError(f"Failed to update read state of message {uid}: {result}")

        logger.debug(f"Set read={is_read} for {folder_server_id}/{uid} on {account.email_address}")

    def test_connection(self, account: Account, password: str) -> ConnectionCheck:
        """Connect and authenticate once, reporting the outcome."""
        try:
            with self._session(account, password) as connection:
                connection.noop()
            return ConnectionCheck.success()
        except MailEngineError as e:
            logger.warning(f"IMAP connection test failed for {account.email_address}: {e}")
            return ConnectionCheck.failure(e)


def folder_display_name(full_name: str, delimiter: str = '/') -> str:
    """
    Human name for a folder.

    "Inbox" for the default folder, else the short name after the last
    hierarchy delimiter, else the last '/'-separated segment of the full id.
    """
    if is_inbox_id(full_name):
        return "Inbox"
    short_name = full_name.rsplit(delimiter, 1)[-1] if delimiter else full_name
    if short_name.strip():
        return short_name
    segments = [segment for segment in full_name.split('/') if segment.strip()]
    return segments[-1] if segments else full_name


def decode_modified_utf7(name: str) -> str:
    """Decode an RFC 3501 modified UTF-7 mailbox name for display."""
    if '&' not in name:
        return name
    result = []
    i = 0
    while i < len(name):
        ch = name[i]
        end = name.find('-', i + 1) if ch == '&' else -1
        if ch != '&' or end == -1:
            result.append(ch)
            i += 1
            continue
        chunk = name[i + 1:end]
        if not chunk:
            result.append('&')
        else:
            encoded = chunk.replace(',', '/')
            encoded += '=' * (-len(encoded) % 4)
            try:
                result.append(base64.b64decode(encoded).decode('utf-16-be'))
            except (ValueError, UnicodeDecodeError):
                result.append(name[i:end + 1])
        i = end + 1
    return ''.join(result)


def _unquote(value: str) -> str:
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        return value[1:-1].replace('\\"', '"').replace('\\\\', '\\')
    return value


def _parse_count(data) -> int:
    if not data or data[0] is None:
        return 0
    value = data[0].decode('ascii', 'ignore') if isinstance(data[0], bytes) else str(data[0])
    try:
        return int(value.strip())
    except ValueError:
        return 0
