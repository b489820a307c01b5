"""
Shared test fixtures and configuration for pytest
"""
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Dict, List

import pytest

from mail_engine import config
from mail_engine.auth.credentials import CredentialVault
from mail_engine.models import (
    Account,
    ConnectionCheck,
    Folder,
    MailSecurity,
    Message,
)
from mail_engine.storage import cache_repo, db
from mail_engine.utils.errors import ImapConnectionError


@pytest.fixture
def temp_db(tmp_path, monkeypatch):
    """Point the cache and key file at a temporary directory"""
    db_path = tmp_path / "test_mail.db"
    monkeypatch.setattr(config, "SQLITE_DB_PATH", db_path)
    monkeypatch.setattr(config, "SECRET_KEY_FILE", tmp_path / "secret.key")
    db.init_db()
    yield db_path


@pytest.fixture(autouse=True)
def clear_cache_listeners():
    """Listeners are module-global; drop any a test left behind"""
    yield
    with cache_repo._listeners_lock:
        cache_repo._listeners.clear()


@pytest.fixture
def make_account():
    """Factory for unsaved accounts"""
    def factory(**overrides) -> Account:
        values = {
            'display_name': 'Jane Doe',
            'email_address': 'jane@example.com',
            'imap_server': 'imap.test.com',
            'imap_port': 993,
            'imap_security': MailSecurity.SSL_TLS,
            'smtp_server': 'smtp.test.com',
            'smtp_port': 587,
            'smtp_security': MailSecurity.STARTTLS,
            'username': 'jane',
        }
        values.update(overrides)
        return Account(**values)
    return factory


@pytest.fixture
def account(temp_db, make_account):
    """A saved account"""
    return cache_repo.upsert_account(make_account())


@pytest.fixture
def vault(temp_db):
    return CredentialVault()


@pytest.fixture
def make_message():
    """Factory for messages as the transport returns them"""
    def factory(uid, sender='alice@example.com', timestamp=None, **overrides) -> Message:
        values = {
            'account_id': 1,
            'uid': str(uid),
            'sender': sender,
            'subject': f'Subject {uid}',
            'preview': f'Preview {uid}',
            'body': f'Body {uid}',
            'timestamp': timestamp if timestamp is not None else int(uid) * 1000,
        }
        values.update(overrides)
        return Message(**values)
    return factory


@pytest.fixture
def raw_message():
    """Factory for raw RFC 822 messages"""
    def factory(sender='Alice <alice@example.com>', subject='Hello', text='Hello there', html=None) -> bytes:
        if html is None:
            msg = MIMEText(text, 'plain', 'utf-8')
        else:
            msg = MIMEMultipart('alternative')
            if text is not None:
                msg.attach(MIMEText(text, 'plain', 'utf-8'))
            msg.attach(MIMEText(html, 'html', 'utf-8'))
        if sender is not None:
            msg['From'] = sender
        if subject is not None:
            msg['Subject'] = subject
        msg['To'] = 'jane@example.com'
        return msg.as_bytes()
    return factory


class FakeTransport:
    """In-memory stand-in for ImapClient"""

    def __init__(self):
        self.remote: Dict[str, List[Message]] = {}
        self.folders: List[Folder] = [Folder(server_id='INBOX', display_name='Inbox')]
        self.failing_accounts = set()
        self.read_state_calls = []
        self.read_state_error = None
        self.fetch_calls = []

    def _check(self, account):
        if account.email_address in self.failing_accounts:
            raise ImapConnectionError(f"Cannot reach server for {account.email_address}")

    def list_folders(self, account, password):
        self._check(account)
        return [Folder(account_id=account.id, server_id=f.server_id, display_name=f.display_name)
                for f in self.folders]

    def fetch_messages(self, account, password, folder_server_id, max_count):
        self._check(account)
        self.fetch_calls.append((account.id, folder_server_id, max_count))
        messages = sorted(self.remote.get(folder_server_id, []), key=lambda m: m.timestamp, reverse=True)
        return [m.copy(account_id=account.id) for m in messages[:max_count]]

    def set_read_state(self, account, password, folder_server_id, uid, is_read):
        self.read_state_calls.append((folder_server_id, uid, is_read))
        if self.read_state_error:
            raise self.read_state_error

    def test_connection(self, account, password):
        return ConnectionCheck.success()


@pytest.fixture
def fake_transport():
    return FakeTransport()
