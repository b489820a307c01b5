"""
Periodic background synchronization with VIP notifications.

One tick syncs the inbox of every account and announces each VIP message
that was not in the cache before the tick.
"""
import logging
from concurrent.futures import Future
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

from mail_engine.core.notifications import LoggingNotificationSink, NotificationSink
from mail_engine.core.sync_manager import SyncOrchestrator
from mail_engine.core.workers import IoWorkerPool
from mail_engine.models import INBOX_SERVER_ID, Account, Message
from mail_engine.storage import cache_repo
from mail_engine.utils.errors import MailEngineError, human_friendly_message


logger = logging.getLogger(__name__)


class JobResult(Enum):
    SUCCESS = "success"
    RETRY = "retry"


def vip_keys(account_id: int) -> Set[Tuple[str, str]]:
    """(folder, uid) keys of the cached VIP messages of an account."""
    return {message.key for message in cache_repo.list_vip_messages(account_id)}


class PeriodicSyncJob:
    """
    A single unit of periodic work over all accounts.

    Accounts are processed in parallel on the I/O pool and independently of
    one another: a failing account is logged and does not affect the rest.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        pool: IoWorkerPool,
        sink: Optional[NotificationSink] = None,
        folder_server_id: str = INBOX_SERVER_ID
    ):
        self.orchestrator = orchestrator
        self.pool = pool
        self.sink = sink or LoggingNotificationSink()
        self.folder_server_id = folder_server_id

    def run(self) -> JobResult:
        """
        Run one tick.

        Returns:
            RETRY if there was at least one account and every account
            failed, SUCCESS otherwise.
        """
        accounts = cache_repo.list_accounts()
        if not accounts:
            logger.debug("No accounts configured, nothing to sync")
            return JobResult.SUCCESS

        futures: Dict[int, Tuple[Account, Future]] = {}
        for account in accounts:
            futures[account.id] = (account, self.pool.submit(self.sync_account, account))

        failures = 0
        for account, future in futures.values():
            try:
                new_vip = future.result()
            except MailEngineError as e:
                failures += 1
                logger.warning(f"Periodic sync failed for {account.email_address}: {human_friendly_message(e)}")
                logger.debug(f"Sync error for {account.email_address}: {e!r}")
                continue
            except Exception:
                failures += 1
                logger.exception(f"Periodic sync failed for {account.email_address}")
                continue
            logger.debug(f"{account.email_address}: {len(new_vip)} new VIP message(s)")

        if failures == len(accounts):
            logger.warning(f"Periodic sync failed for all {failures} account(s), requesting retry")
            return JobResult.RETRY
        if failures:
            logger.warning(f"Periodic sync failed for {failures} of {len(accounts)} account(s)")
        return JobResult.SUCCESS

    def sync_account(self, account: Account) -> List[Message]:
        """
        Sync one account and notify for VIP messages that arrived with it.

        Returns:
            The newly arrived VIP messages.
        """
        before = vip_keys(account.id)
        self.orchestrator.sync_account(account, (self.folder_server_id,))
        arrived = [
            message for message in cache_repo.list_vip_messages(account.id)
            if message.key not in before
        ]

        for message in arrived:
            try:
                self.sink.notify(message)
            except Exception:
                logger.exception(f"Notification sink failed for message {message.uid}")
        return arrived
