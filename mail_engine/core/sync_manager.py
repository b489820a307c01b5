"""
Synchronization manager for the mail engine.

This module orchestrates synchronization between remote mailboxes (via IMAP)
and the local cache (via repository functions), and owns the outgoing mail
path (via SMTP). It never creates threads itself; callers decide where the
blocking calls run.
"""
import html
import logging
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence

from mail_engine import config
from mail_engine.auth.credentials import CredentialVault
from mail_engine.core.vip import stamp_vip, vip_address_set
from mail_engine.core.workers import KeyedLock
from mail_engine.models import (
    INBOX_SERVER_ID,
    Account,
    Attachment,
    ConnectionCheck,
    Folder,
    Message,
    VipSender,
    canonical_folder_id,
)
from mail_engine.network.imap_client import ImapClient
from mail_engine.network.message_parser import html_to_text
from mail_engine.network.smtp_client import SmtpClient
from mail_engine.storage import cache_repo
from mail_engine.utils.errors import (
    TRANSPORT_ERRORS,
    AccountNotFoundError,
    CredentialsMissingError,
    MailEngineError,
)


logger = logging.getLogger(__name__)

MessagesCallback = Callable[[List[Message]], None]


def append_signature_html(body_html: str, signature: str) -> str:
    """Append a plain-text signature to an HTML body."""
    escaped = html.escape(signature).replace("\n", "<br/>")
    return f"{body_html.rstrip()}<br/><br/>{escaped}"


def append_signature_text(body_text: str, signature: str) -> str:
    """Append a signature to a plain-text body."""
    return f"{body_text.rstrip()}\n\n{signature}"


class SyncOrchestrator:
    """
    Coordinates transport, cache and credential vault for every account.

    Reconciliation of one (account, folder) pair is serialized with a keyed
    lock; different pairs may sync in parallel.
    """

    def __init__(
        self,
        vault: CredentialVault,
        imap_client: Optional[ImapClient] = None,
        smtp_client: Optional[SmtpClient] = None,
        fetch_window: Optional[int] = None
    ):
        """
        Initialize the orchestrator.

        Args:
            vault: Source of account passwords.
            imap_client: Transport used for fetching and flag updates.
            smtp_client: Dispatcher used for sending.
            fetch_window: Messages fetched per folder. Defaults to config.FETCH_WINDOW.
        """
        self.vault = vault
        self.imap_client = imap_client or ImapClient()
        self.smtp_client = smtp_client or SmtpClient()
        self.fetch_window = fetch_window
        self._locks = KeyedLock()

    def _require_password(self, account: Account) -> str:
        password = self.vault.get(account.id) if account.id is not None else None
        if not password:
            raise CredentialsMissingError(f"Credentials missing for {account.email_address}")
        return password

    # ------------------------------------------------------------------
    # Synchronization
    # ------------------------------------------------------------------

    def sync_folder(self, account: Account, folder_server_id: str = INBOX_SERVER_ID) -> int:
        """
        Bring the cached contents of one folder in line with the server.

        Fetches the newest window of messages and reconciles them with the
        cache in a single transaction: cached messages the server no longer
        reports are removed, fetched ones are inserted or updated, and the
        local read state of known messages is kept.

        Returns:
            Number of messages now cached for the folder.

        Raises:
            CredentialsMissingError: If no password is stored for the account.
            ImapError: If the fetch fails; the cache is left untouched.
        """
        password = self._require_password(account)
        window = self.fetch_window or config.FETCH_WINDOW
        folder_server_id = canonical_folder_id(folder_server_id)

        with self._locks.hold((account.id, folder_server_id)):
            remote_messages = self.imap_client.fetch_messages(account, password, folder_server_id, window)
            remote_messages = [message.copy(folder=folder_server_id) for message in remote_messages]
            stored = cache_repo.replace_messages(account.id, folder_server_id, remote_messages)

        logger.info(f"Synced {stored} message(s) in {folder_server_id} for {account.email_address}")
        return stored

    def sync_folders(self, account: Account) -> List[Folder]:
        """
        Replace the cached folder list of an account with the server's.

        Raises:
            CredentialsMissingError: If no password is stored for the account.
            ImapError: If listing fails; the cache is left untouched.
        """
        password = self._require_password(account)

        with self._locks.hold((account.id, None)):
            remote_folders = self.imap_client.list_folders(account, password)
            folders = cache_repo.replace_folders(account.id, remote_folders)

        logger.info(f"Synced {len(folders)} folder(s) for {account.email_address}")
        return folders

    def sync_account(self, account: Account, folder_ids: Sequence[str] = (INBOX_SERVER_ID,)) -> int:
        """
        Sync the folder list of an account, then the messages of folder_ids.

        Returns:
            Total number of messages cached across the synced folders.
        """
        self.sync_folders(account)
        return sum(self.sync_folder(account, folder_id) for folder_id in folder_ids)

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    def send_email(
        self,
        account: Account,
        to: Sequence[str],
        subject: str,
        body_html: str,
        attachments: Sequence[Attachment] = (),
        body_text: Optional[str] = None
    ) -> None:
        """
        Send a message from an account.

        The account signature is appended to both bodies when enabled and
        non-blank. Attachments given by path are read from disk; ones that
        cannot be read are left out.

        Raises:
            CredentialsMissingError: If no password is stored for the account.
            SmtpError: If sending fails.
        """
        password = self._require_password(account)

        if body_text is None:
            body_text = html_to_text(body_html)

        if account.has_signature:
            body_html = append_signature_html(body_html, account.signature)
            body_text = append_signature_text(body_text, account.signature)

        recipients = [address.strip() for address in to if address and address.strip()]
        self.smtp_client.send(
            account,
            password,
            recipients,
            subject,
            body_html,
            body_text,
            list(self._load_attachments(attachments)),
        )

    def _load_attachments(self, attachments: Iterable[Attachment]) -> Iterable[Attachment]:
        for attachment in attachments:
            if attachment.data is None and attachment.path:
                try:
                    data = Path(attachment.path).read_bytes()
                except OSError as e:
                    logger.warning(f"Dropping attachment {attachment.filename or attachment.path}: {e}")
                    continue
                yield Attachment(
                    filename=attachment.filename or Path(attachment.path).name,
                    mime_type=attachment.mime_type,
                    data=data,
                    path=attachment.path,
                    inline=attachment.inline,
                    content_id=attachment.content_id,
                )
            else:
                yield attachment

    # ------------------------------------------------------------------
    # VIP senders and read state
    # ------------------------------------------------------------------

    def toggle_vip(self, account_id: int, email_address: str) -> bool:
        """
        Flip the VIP state of a sender and retag its cached messages.

        Returns:
            True if the sender is now a VIP.
        """
        with self._locks.hold(("vip", account_id)):
            currently_vip = cache_repo.get_vip_sender(account_id, email_address) is not None
            return cache_repo.set_vip_sender(account_id, email_address, not currently_vip)

    def set_message_read_state(self, message_id: int, is_read: bool) -> bool:
        """
        Mark a cached message read or unread and push the flag to the server.

        The cache is updated first; the server update is best effort and its
        failures are only logged.

        Returns:
            False if the message is not cached.
        """
        message = cache_repo.get_message(message_id)
        if message is None:
            logger.debug(f"Message {message_id} not cached, ignoring read state change")
            return False

        cache_repo.update_read_state(message_id, is_read)

        account = cache_repo.get_account(message.account_id)
        if account is None:
            logger.warning(f"Account {message.account_id} missing for message {message_id}")
            return True
        password = self.vault.get(account.id)
        if not password:
            logger.warning(f"Not pushing read state for {account.email_address}: credentials missing")
            return True

        try:
            self.imap_client.set_read_state(account, password, message.folder, message.uid, is_read)
        except (MailEngineError,) + TRANSPORT_ERRORS as e:
            logger.warning(f"Failed to update read state of message {message.uid} on server: {e}")
        return True

    def mark_message_read(self, message_id: int) -> bool:
        return self.set_message_read_state(message_id, True)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def add_account(self, account: Account, password: str) -> Account:
        """Store an account and its password."""
        account = cache_repo.upsert_account(account)
        self.vault.set(account.id, password)
        logger.info(f"Saved account {account.email_address}")
        return account

    def delete_account(self, account_id: int) -> None:
        """Remove an account, its cached data and its stored password."""
        if cache_repo.get_account(account_id) is None:
            raise AccountNotFoundError(f"Account with ID {account_id} not found")
        cache_repo.delete_account(account_id)
        self.vault.clear(account_id)
        logger.info(f"Deleted account {account_id}")

    def test_imap_connection(self, account: Account, password: Optional[str] = None) -> ConnectionCheck:
        """Check IMAP settings with the given or stored password."""
        try:
            password = password or self._require_password(account)
        except CredentialsMissingError as e:
            return ConnectionCheck.failure(e)
        return self.imap_client.test_connection(account, password)

    def test_smtp_connection(self, account: Account, password: Optional[str] = None) -> ConnectionCheck:
        """Check SMTP settings with the given or stored password."""
        try:
            password = password or self._require_password(account)
        except CredentialsMissingError as e:
            return ConnectionCheck.failure(e)
        return self.smtp_client.test_connection(account, password)

    # ------------------------------------------------------------------
    # Queries and observation
    # ------------------------------------------------------------------

    def list_folder_messages(self, account_id: int, folder_server_id: str = INBOX_SERVER_ID) -> List[Message]:
        """Cached messages of a folder, newest first, tagged against current VIP senders."""
        folder_server_id = canonical_folder_id(folder_server_id)
        vip_set = vip_address_set(v.email_address for v in cache_repo.list_vip_senders(account_id))
        return stamp_vip(cache_repo.list_messages(account_id, folder_server_id), vip_set)

    def get_vip_messages(self, account_id: int) -> List[Message]:
        """Cached VIP messages of an account across all folders, newest first."""
        return cache_repo.list_vip_messages(account_id)

    def list_vip_senders(self, account_id: int) -> List[VipSender]:
        return cache_repo.list_vip_senders(account_id)

    def observe_folder_messages(
        self,
        account_id: int,
        folder_server_id: str,
        callback: MessagesCallback
    ) -> Callable[[], None]:
        """
        Deliver the folder's messages now and after every relevant cache change.

        Returns:
            A function that stops the observation.
        """
        return self._observe(
            account_id,
            lambda: self.list_folder_messages(account_id, folder_server_id),
            callback,
        )

    def observe_vip_inbox(self, account_id: int, callback: MessagesCallback) -> Callable[[], None]:
        """
        Deliver the account's VIP messages now and after every relevant cache change.

        Returns:
            A function that stops the observation.
        """
        def snapshot() -> List[Message]:
            vip_set = vip_address_set(v.email_address for v in cache_repo.list_vip_senders(account_id))
            return stamp_vip(cache_repo.list_vip_messages(account_id), vip_set)

        return self._observe(account_id, snapshot, callback)

    def _observe(
        self,
        account_id: int,
        snapshot: Callable[[], List[Message]],
        callback: MessagesCallback
    ) -> Callable[[], None]:
        def on_change(kind: str, changed_account_id: int) -> None:
            if changed_account_id == account_id and kind in (cache_repo.MESSAGES, cache_repo.VIP_SENDERS):
                callback(snapshot())

        unsubscribe = cache_repo.subscribe(on_change)
        callback(snapshot())
        return unsubscribe
