"""
Tests for the cache repository

Tests cover:
- Account and folder persistence
- Message reconciliation (stale removal, upsert, read state)
- VIP sender bookkeeping and message tagging
- Change listeners
"""
from mail_engine.core.vip import is_vip, normalize_address, stamp_vip, vip_address_set
from mail_engine.models import Folder, MailSecurity
from mail_engine.storage import cache_repo


class TestAccounts:
    """Tests for account persistence"""

    def test_insert_and_read_back(self, temp_db, make_account):
        saved = cache_repo.upsert_account(make_account(smtp_security=MailSecurity.NONE, signature='Best'))

        loaded = cache_repo.get_account(saved.id)

        assert loaded.email_address == 'jane@example.com'
        assert loaded.imap_security is MailSecurity.SSL_TLS
        assert loaded.smtp_security is MailSecurity.NONE
        assert loaded.signature == 'Best'
        assert loaded.created_at is not None

    def test_update_existing(self, account):
        account.display_name = 'Jane D.'
        cache_repo.upsert_account(account)

        assert [a.display_name for a in cache_repo.list_accounts()] == ['Jane D.']

    def test_delete_cascades(self, account, make_message):
        cache_repo.replace_messages(account.id, 'INBOX', [make_message(1)])
        cache_repo.replace_folders(account.id, [Folder(server_id='INBOX', display_name='Inbox')])
        cache_repo.set_vip_sender(account.id, 'alice@example.com', True)

        cache_repo.delete_account(account.id)

        assert cache_repo.get_account(account.id) is None
        assert cache_repo.list_messages(account.id, 'INBOX') == []
        assert cache_repo.list_folders(account.id) == []
        assert cache_repo.list_vip_senders(account.id) == []


class TestFolders:
    """Tests for folder replacement"""

    def test_replace_overwrites_previous_set(self, account):
        cache_repo.replace_folders(account.id, [
            Folder(server_id='INBOX', display_name='Inbox'),
            Folder(server_id='Old', display_name='Old'),
        ])
        cache_repo.replace_folders(account.id, [
            Folder(server_id='INBOX', display_name='Inbox'),
            Folder(server_id='Work', display_name='Work'),
        ])

        folders = cache_repo.list_folders(account.id)

        assert sorted(f.server_id for f in folders) == ['INBOX', 'Work']
        assert all(f.account_id == account.id and f.id for f in folders)


class TestReplaceMessages:
    """Tests for message reconciliation"""

    def test_cached_set_matches_fetched_set(self, account, make_message):
        cache_repo.replace_messages(account.id, 'INBOX', [make_message(1), make_message(2), make_message(3)])
        cache_repo.replace_messages(account.id, 'INBOX', [make_message(2), make_message(3), make_message(4)])

        uids = {m.uid for m in cache_repo.list_messages(account.id, 'INBOX')}

        assert uids == {'2', '3', '4'}

    def test_empty_fetch_clears_folder(self, account, make_message):
        cache_repo.replace_messages(account.id, 'INBOX', [make_message(1), make_message(2)])
        cache_repo.replace_messages(account.id, 'Work', [make_message(9)])

        cache_repo.replace_messages(account.id, 'INBOX', [])

        assert cache_repo.list_messages(account.id, 'INBOX') == []
        assert [m.uid for m in cache_repo.list_messages(account.id, 'Work')] == ['9']

    def test_local_read_state_survives_refresh(self, account, make_message):
        cache_repo.replace_messages(account.id, 'INBOX', [make_message(1)])
        message_id = cache_repo.list_messages(account.id, 'INBOX')[0].id
        cache_repo.update_read_state(message_id, True)

        cache_repo.replace_messages(account.id, 'INBOX', [make_message(1, subject='Edited', is_read=False)])

        refreshed = cache_repo.list_messages(account.id, 'INBOX')[0]
        assert refreshed.id == message_id
        assert refreshed.is_read is True
        assert refreshed.subject == 'Edited'

    def test_new_message_takes_server_read_state(self, account, make_message):
        cache_repo.replace_messages(account.id, 'INBOX', [make_message(1, is_read=True)])

        assert cache_repo.list_messages(account.id, 'INBOX')[0].is_read is True

    def test_same_uid_in_different_folders(self, account, make_message):
        cache_repo.replace_messages(account.id, 'INBOX', [make_message(1)])
        cache_repo.replace_messages(account.id, 'Work', [make_message(1)])

        assert len(cache_repo.list_messages(account.id, 'INBOX')) == 1
        assert len(cache_repo.list_messages(account.id, 'Work')) == 1

    def test_newest_first(self, account, make_message):
        cache_repo.replace_messages(account.id, 'INBOX', [make_message(1), make_message(3), make_message(2)])

        assert [m.uid for m in cache_repo.list_messages(account.id, 'INBOX')] == ['3', '2', '1']

    def test_vip_flag_computed_on_upsert(self, account, make_message):
        cache_repo.set_vip_sender(account.id, 'Boss@Example.com', True)

        cache_repo.replace_messages(account.id, 'INBOX', [
            make_message(1, sender='boss@example.com'),
            make_message(2, sender='someone@example.com'),
        ])

        flags = {m.uid: m.is_vip for m in cache_repo.list_messages(account.id, 'INBOX')}
        assert flags == {'1': True, '2': False}


class TestVipSenders:
    """Tests for VIP sender bookkeeping"""

    def test_set_and_unset_retags_messages(self, account, make_message):
        cache_repo.replace_messages(account.id, 'INBOX', [
            make_message(1, sender='BOSS@example.com'),
            make_message(2, sender='other@example.com'),
        ])
        cache_repo.replace_messages(account.id, 'Work', [make_message(3, sender='boss@example.com')])

        cache_repo.set_vip_sender(account.id, 'boss@example.com', True)

        assert sorted(m.uid for m in cache_repo.list_vip_messages(account.id)) == ['1', '3']
        assert cache_repo.get_vip_sender(account.id, 'Boss@Example.COM') is not None

        cache_repo.set_vip_sender(account.id, 'Boss@example.com', False)

        assert cache_repo.list_vip_messages(account.id) == []
        assert cache_repo.get_vip_sender(account.id, 'boss@example.com') is None

    def test_duplicate_vip_is_ignored(self, account):
        cache_repo.set_vip_sender(account.id, 'boss@example.com', True)
        cache_repo.set_vip_sender(account.id, 'BOSS@example.com', True)

        assert [v.email_address for v in cache_repo.list_vip_senders(account.id)] == ['boss@example.com']

    def test_update_vip_status_counts_matches(self, account, make_message):
        cache_repo.replace_messages(account.id, 'INBOX', [
            make_message(1, sender='boss@example.com'),
            make_message(2, sender='Boss@Example.com'),
            make_message(3, sender='other@example.com'),
        ])

        assert cache_repo.update_vip_status(account.id, 'BOSS@example.com', True) == 2

    def test_vip_scoped_to_account(self, account, make_account, make_message):
        other = cache_repo.upsert_account(make_account(email_address='other@example.com'))
        cache_repo.replace_messages(other.id, 'INBOX', [make_message(1, sender='boss@example.com')])

        cache_repo.set_vip_sender(account.id, 'boss@example.com', True)

        assert cache_repo.list_vip_messages(other.id) == []


class TestListeners:
    """Tests for change notifications"""

    def test_listener_receives_changes_until_unsubscribed(self, account, make_message):
        changes = []
        unsubscribe = cache_repo.subscribe(lambda kind, account_id: changes.append((kind, account_id)))

        cache_repo.replace_messages(account.id, 'INBOX', [make_message(1)])
        cache_repo.set_vip_sender(account.id, 'alice@example.com', True)
        unsubscribe()
        cache_repo.replace_messages(account.id, 'INBOX', [])

        assert changes == [
            (cache_repo.MESSAGES, account.id),
            (cache_repo.VIP_SENDERS, account.id),
            (cache_repo.MESSAGES, account.id),
        ]

    def test_failing_listener_does_not_break_writes(self, account, make_message):
        def broken(kind, account_id):
            raise RuntimeError('listener bug')

        cache_repo.subscribe(broken)

        assert cache_repo.replace_messages(account.id, 'INBOX', [make_message(1)]) == 1


class TestVipTagger:
    """Tests for the pure VIP helpers"""

    def test_case_insensitive_membership(self):
        vip_set = vip_address_set(['Boss@Example.com', '  ', ''])

        assert vip_set == {'boss@example.com'}
        assert is_vip(' BOSS@example.COM ', vip_set)
        assert not is_vip('other@example.com', vip_set)
        assert normalize_address(None) == ''

    def test_stamp_vip_returns_copies(self, make_message):
        original = make_message(1, sender='boss@example.com')

        stamped = stamp_vip([original], {'boss@example.com'})

        assert stamped[0].is_vip is True
        assert original.is_vip is False
