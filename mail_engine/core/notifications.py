"""
Notification sinks for newly arrived VIP mail.
"""
import logging
from abc import ABC, abstractmethod

from mail_engine.models import Message


logger = logging.getLogger(__name__)


class NotificationSink(ABC):
    """Abstract interface for delivering new-mail notifications."""

    @abstractmethod
    def notify(self, message: Message) -> None:
        """
        Announce a newly arrived VIP message.

        Args:
            message: The cached message that triggered the notification.
        """
        pass


class LoggingNotificationSink(NotificationSink):
    """Default sink that writes notifications to the log."""

    def notify(self, message: Message) -> None:
        logger.info(
            f"New VIP mail for account {message.account_id} from {message.sender}: "
            f"{message.subject}"
        )
