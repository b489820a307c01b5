"""
Tests for the sync orchestrator

Tests cover:
- Folder and message reconciliation
- Credential handling
- Sending with signatures and attachments
- VIP toggling and read state propagation
- Observation of cached data
"""
import threading
import time
from unittest.mock import MagicMock

import pytest

from mail_engine.core.sync_manager import (
    SyncOrchestrator,
    append_signature_html,
    append_signature_text,
)
from mail_engine.models import Attachment, ConnectionCheck, Folder
from mail_engine.network.smtp_client import SmtpClient
from mail_engine.storage import cache_repo, db
from mail_engine.utils.errors import (
    AccountNotFoundError,
    CredentialsMissingError,
    ImapConnectionError,
    ImapOperationError,
)


@pytest.fixture
def smtp_client():
    return MagicMock(spec=SmtpClient)


@pytest.fixture
def orchestrator(vault, fake_transport, smtp_client):
    return SyncOrchestrator(vault, imap_client=fake_transport, smtp_client=smtp_client, fetch_window=3)


@pytest.fixture
def stored_account(orchestrator, make_account):
    return orchestrator.add_account(make_account(signature='Best, Jane'), 'secret')


class TestSyncFolder:
    """Tests for message reconciliation"""

    def test_fetches_window_into_cache(self, orchestrator, stored_account, fake_transport, make_message):
        fake_transport.remote['INBOX'] = [make_message(i) for i in range(1, 6)]

        stored = orchestrator.sync_folder(stored_account, 'INBOX')

        assert stored == 3
        assert fake_transport.fetch_calls == [(stored_account.id, 'INBOX', 3)]
        assert [m.uid for m in orchestrator.list_folder_messages(stored_account.id)] == ['5', '4', '3']

    def test_idempotent(self, orchestrator, stored_account, fake_transport, make_message):
        fake_transport.remote['INBOX'] = [make_message(1), make_message(2)]

        orchestrator.sync_folder(stored_account)
        first = orchestrator.list_folder_messages(stored_account.id)
        orchestrator.sync_folder(stored_account)

        assert orchestrator.list_folder_messages(stored_account.id) == first

    def test_read_state_preserved(self, orchestrator, stored_account, fake_transport, make_message):
        fake_transport.remote['INBOX'] = [make_message(1)]
        orchestrator.sync_folder(stored_account)
        message = orchestrator.list_folder_messages(stored_account.id)[0]
        orchestrator.mark_message_read(message.id)

        orchestrator.sync_folder(stored_account)

        assert orchestrator.list_folder_messages(stored_account.id)[0].is_read is True

    def test_empty_remote_clears_cache(self, orchestrator, stored_account, fake_transport, make_message):
        fake_transport.remote['INBOX'] = [make_message(1), make_message(2)]
        orchestrator.sync_folder(stored_account)

        fake_transport.remote['INBOX'] = []
        orchestrator.sync_folder(stored_account)

        assert orchestrator.list_folder_messages(stored_account.id) == []

    def test_messages_take_requested_folder(self, orchestrator, stored_account, fake_transport, make_message):
        fake_transport.remote['Work'] = [make_message(1, folder='INBOX')]

        orchestrator.sync_folder(stored_account, 'Work')

        assert [m.folder for m in orchestrator.list_folder_messages(stored_account.id, 'Work')] == ['Work']

    def test_inbox_spellings_share_one_folder(self, orchestrator, stored_account, fake_transport, make_message):
        fake_transport.remote['INBOX'] = [make_message(1)]

        orchestrator.sync_folder(stored_account, 'INBOX')
        orchestrator.sync_folder(stored_account, 'inbox')

        rows = db.fetchall("SELECT folder, uid FROM messages WHERE account_id = ?", (stored_account.id,))
        assert [(row['folder'], row['uid']) for row in rows] == [('INBOX', '1')]
        assert fake_transport.fetch_calls[-1][1] == 'INBOX'
        assert [m.uid for m in orchestrator.list_folder_messages(stored_account.id, 'Inbox')] == ['1']

    def test_transport_failure_leaves_cache(self, orchestrator, stored_account, fake_transport, make_message):
        fake_transport.remote['INBOX'] = [make_message(1)]
        orchestrator.sync_folder(stored_account)
        fake_transport.failing_accounts.add(stored_account.email_address)

        with pytest.raises(ImapConnectionError):
            orchestrator.sync_folder(stored_account)

        assert len(orchestrator.list_folder_messages(stored_account.id)) == 1

    def test_missing_credentials(self, orchestrator, make_account):
        account = cache_repo.upsert_account(make_account(email_address='nopass@example.com'))

        with pytest.raises(CredentialsMissingError, match='Credentials missing for nopass@example.com'):
            orchestrator.sync_folder(account)

    def test_same_folder_syncs_are_serialized(self, vault, make_account, make_message):
        transport = MagicMock()
        in_fetch = threading.Event()
        release = threading.Event()
        guard = threading.Lock()
        active = []
        concurrency = []

        def slow_fetch(account, password, folder, max_count):
            with guard:
                active.append(folder)
                concurrency.append(len(active))
            in_fetch.set()
            release.wait(timeout=5)
            with guard:
                active.remove(folder)
            return [make_message(1)]

        transport.fetch_messages.side_effect = slow_fetch
        orchestrator = SyncOrchestrator(vault, imap_client=transport, smtp_client=MagicMock())
        account = orchestrator.add_account(make_account(), 'secret')

        workers = [threading.Thread(target=orchestrator.sync_folder, args=(account, 'INBOX')) for _ in range(2)]
        for worker in workers:
            worker.start()
        in_fetch.wait(timeout=5)
        time.sleep(0.1)
        release.set()
        for worker in workers:
            worker.join(timeout=5)

        assert concurrency == [1, 1]
        assert transport.fetch_messages.call_count == 2


class TestSyncAccount:
    """Tests for folder sync and the combined account sync"""

    def test_sync_folders_replaces_cache(self, orchestrator, stored_account, fake_transport):
        fake_transport.folders = [
            Folder(server_id='INBOX', display_name='Inbox'),
            Folder(server_id='Work', display_name='Work'),
        ]

        orchestrator.sync_folders(stored_account)

        assert sorted(f.server_id for f in cache_repo.list_folders(stored_account.id)) == ['INBOX', 'Work']

    def test_sync_account_syncs_folders_then_inbox(self, orchestrator, stored_account, fake_transport, make_message):
        fake_transport.remote['INBOX'] = [make_message(1)]

        assert orchestrator.sync_account(stored_account) == 1
        assert [f.server_id for f in cache_repo.list_folders(stored_account.id)] == ['INBOX']


class TestSendEmail:
    """Tests for the outgoing path"""

    def test_signature_appended(self, orchestrator, stored_account, smtp_client):
        orchestrator.send_email(stored_account, ['bob@example.com'], 'Hi', '<p>Hi there</p>', body_text='Hi there')

        args = smtp_client.send.call_args.args
        assert args[2] == ['bob@example.com']
        assert args[4] == '<p>Hi there</p><br/><br/>Best, Jane'
        assert args[5] == 'Hi there\n\nBest, Jane'

    def test_signature_is_escaped(self):
        assert append_signature_html('<p>x</p>  ', 'A & B\n<C>') == '<p>x</p><br/><br/>A &amp; B<br/>&lt;C&gt;'
        assert append_signature_text('x \n', 'sig') == 'x\n\nsig'

    def test_disabled_signature_not_appended(self, orchestrator, make_account, smtp_client):
        account = orchestrator.add_account(make_account(signature='Best', signature_enabled=False), 'secret')

        orchestrator.send_email(account, ['bob@example.com'], 'Hi', '<p>Hi</p>', body_text='Hi')

        assert smtp_client.send.call_args.args[4] == '<p>Hi</p>'
        assert smtp_client.send.call_args.args[5] == 'Hi'

    def test_plain_text_derived_from_html(self, orchestrator, make_account, smtp_client):
        account = orchestrator.add_account(make_account(signature=''), 'secret')

        orchestrator.send_email(account, ['bob@example.com'], 'Hi', '<p>Hello <b>Bob</b></p>')

        assert smtp_client.send.call_args.args[5] == 'Hello Bob'

    def test_attachments_loaded_from_disk(self, orchestrator, stored_account, smtp_client, tmp_path):
        report = tmp_path / 'report.txt'
        report.write_bytes(b'numbers')
        attachments = [
            Attachment(path=str(report), mime_type='text/plain'),
            Attachment(filename='gone.txt', path=str(tmp_path / 'gone.txt')),
            Attachment(filename='inline.png', data=b'png', inline=True),
        ]

        orchestrator.send_email(stored_account, ['bob@example.com'], 'Hi', '', attachments)

        sent = smtp_client.send.call_args.args[6]
        assert [(a.filename, a.data) for a in sent] == [('report.txt', b'numbers'), ('inline.png', b'png')]

    def test_missing_credentials_never_sends(self, orchestrator, make_account, smtp_client):
        account = cache_repo.upsert_account(make_account())

        with pytest.raises(CredentialsMissingError):
            orchestrator.send_email(account, ['bob@example.com'], 'Hi', '')

        smtp_client.send.assert_not_called()


class TestVipAndReadState:
    """Tests for VIP toggling and read state"""

    def test_toggle_vip(self, orchestrator, stored_account, fake_transport, make_message):
        fake_transport.remote['INBOX'] = [make_message(1, sender='Boss@example.com'), make_message(2)]
        orchestrator.sync_folder(stored_account)

        assert orchestrator.toggle_vip(stored_account.id, 'boss@example.com') is True
        assert [m.uid for m in orchestrator.get_vip_messages(stored_account.id)] == ['1']
        assert [v.email_address for v in orchestrator.list_vip_senders(stored_account.id)] == ['boss@example.com']

        assert orchestrator.toggle_vip(stored_account.id, 'BOSS@example.com') is False
        assert orchestrator.get_vip_messages(stored_account.id) == []
        assert not any(m.is_vip for m in orchestrator.list_folder_messages(stored_account.id))

    def test_read_state_pushed_to_server(self, orchestrator, stored_account, fake_transport, make_message):
        fake_transport.remote['INBOX'] = [make_message(7)]
        orchestrator.sync_folder(stored_account)
        message = orchestrator.list_folder_messages(stored_account.id)[0]

        assert orchestrator.set_message_read_state(message.id, True) is True

        assert fake_transport.read_state_calls == [('INBOX', '7', True)]

    def test_push_failure_keeps_local_state(self, orchestrator, stored_account, fake_transport, make_message):
        fake_transport.remote['INBOX'] = [make_message(7)]
        orchestrator.sync_folder(stored_account)
        message = orchestrator.list_folder_messages(stored_account.id)[0]
        fake_transport.read_state_error = ImapOperationError('read-only mailbox')

        orchestrator.set_message_read_state(message.id, True)

        assert cache_repo.get_message(message.id).is_read is True

    def test_unknown_message(self, orchestrator):
        assert orchestrator.set_message_read_state(999, True) is False


class TestAccounts:
    """Tests for account management"""

    def test_delete_account_clears_password(self, orchestrator, stored_account, vault):
        orchestrator.delete_account(stored_account.id)

        assert vault.get(stored_account.id) is None
        assert cache_repo.get_account(stored_account.id) is None

    def test_delete_unknown_account(self, orchestrator):
        with pytest.raises(AccountNotFoundError):
            orchestrator.delete_account(42)

    def test_connection_checks(self, orchestrator, stored_account, smtp_client, make_account):
        smtp_client.test_connection.return_value = ConnectionCheck.success()

        assert orchestrator.test_imap_connection(stored_account).ok is True
        assert orchestrator.test_smtp_connection(stored_account, 'typed').ok is True
        smtp_client.test_connection.assert_called_once_with(stored_account, 'typed')

        unsaved = make_account()
        result = orchestrator.test_imap_connection(unsaved)
        assert result.ok is False
        assert 'Credentials missing' in result.error


class TestObservation:
    """Tests for cache observation"""

    def test_folder_observer_sees_sync_and_vip_changes(self, orchestrator, stored_account, fake_transport, make_message):
        snapshots = []
        unsubscribe = orchestrator.observe_folder_messages(stored_account.id, 'INBOX', snapshots.append)

        fake_transport.remote['INBOX'] = [make_message(1, sender='boss@example.com')]
        orchestrator.sync_folder(stored_account)
        orchestrator.toggle_vip(stored_account.id, 'boss@example.com')
        unsubscribe()
        orchestrator.sync_folder(stored_account)

        assert snapshots[0] == []
        assert [m.uid for m in snapshots[1]] == ['1']
        assert snapshots[-1][0].is_vip is True

    def test_vip_inbox_observer(self, orchestrator, stored_account, fake_transport, make_message):
        fake_transport.remote['INBOX'] = [make_message(1, sender='boss@example.com'), make_message(2)]
        orchestrator.sync_folder(stored_account)
        snapshots = []

        orchestrator.observe_vip_inbox(stored_account.id, snapshots.append)
        orchestrator.toggle_vip(stored_account.id, 'boss@example.com')

        assert snapshots[0] == []
        assert [m.uid for m in snapshots[-1]] == ['1']
