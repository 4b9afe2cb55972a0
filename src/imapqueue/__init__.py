"""Use an IMAP folder as a FIFO queue of message identifiers.

Usage:
    from imapqueue import ImapMailClient, MailboxQueue, load_settings, resolve_password

    settings = load_settings()
    with ImapMailClient(settings.imap, resolve_password(settings.imap)) as client:
        queue = MailboxQueue(client, settings.queue)
        while (uid := queue.dequeue_message()) is not None:
            ...
"""

from .client import ImapMailClient, MailClient
from .config import ImapSettings, QueueSettings, Settings, load_settings, resolve_password
from .errors import (
    AuthenticationError,
    ConfigurationError,
    DisconnectedError,
    ImapQueueError,
    MailClientError,
    NotSelectedError,
    RetryExhaustedError,
    TransportError,
)
from .queue import MailboxQueue
from .state import WatermarkRecord, WatermarkStore

__version__ = "0.1.0"

__all__ = [
    "AuthenticationError",
    "ConfigurationError",
    "DisconnectedError",
    "ImapMailClient",
    "ImapQueueError",
    "ImapSettings",
    "MailClient",
    "MailClientError",
    "MailboxQueue",
    "NotSelectedError",
    "QueueSettings",
    "RetryExhaustedError",
    "Settings",
    "TransportError",
    "WatermarkRecord",
    "WatermarkStore",
    "load_settings",
    "resolve_password",
]
