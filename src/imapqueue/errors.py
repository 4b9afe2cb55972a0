"""Error hierarchy for the IMAP queue.

Every failure the queue or a mail client can report derives from
:class:`ImapQueueError`. Queue operations do not raise these to the caller;
they return a failure outcome and keep the exception available through
``MailboxQueue.last_error``.

Usage:
    from imapqueue.errors import ImapQueueError, TransportError

    if queue.dequeue_message() is None:
        error = queue.last_error
        if isinstance(error, TransportError):
            ...
"""

from __future__ import annotations

from typing import Any, Dict, Optional


# =============================================================================
# Base Error
# =============================================================================


class ImapQueueError(Exception):
    """Base exception for all queue errors.

    Attributes:
        code: Error code for categorization
        recoverable: Whether retrying later may succeed
        details: Additional error details for debugging
    """

    code: str = "IMAPQUEUE_ERROR"
    default_message: str = "An unexpected queue error occurred"
    recoverable: bool = True

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "code": self.code,
            "message": self.message,
            "recoverable": self.recoverable,
            "details": self.details,
        }


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(ImapQueueError):
    """Missing or invalid client, settings or options."""

    code = "CONFIGURATION_ERROR"
    default_message = "Invalid queue configuration"
    recoverable = False


# =============================================================================
# Mailbox Errors
# =============================================================================


class NotSelectedError(ImapQueueError):
    """A folder-scoped operation ran without a selected folder."""

    code = "NOT_SELECTED"
    default_message = "Folder must be selected"


class MailClientError(ImapQueueError):
    """The server rejected a command or sent a malformed response."""

    code = "MAIL_CLIENT_ERROR"
    default_message = "Mail client command failed"


class AuthenticationError(MailClientError):
    """Login was refused by the server."""

    code = "AUTHENTICATION_FAILED"
    default_message = "Authentication with the mail server failed"
    recoverable = False


# =============================================================================
# Connection Errors
# =============================================================================


class TransportError(ImapQueueError):
    """Network or protocol-abort failure on the connection."""

    code = "TRANSPORT_ERROR"
    default_message = "Connection to the mail server failed"


class DisconnectedError(TransportError):
    """Connection dropped during IDLE and could not be recovered."""

    code = "DISCONNECTED"
    default_message = "Disconnected while attempting IDLE"


class RetryExhaustedError(ImapQueueError):
    """Reconnect attempts exceeded the configured maximum."""

    code = "RETRY_EXHAUSTED"
    default_message = "Reconnect attempts exhausted"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        attempts: int = 0,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.attempts = attempts
        details = {"attempts": attempts, **(details or {})}
        super().__init__(message, details=details)


__all__ = [
    "AuthenticationError",
    "ConfigurationError",
    "DisconnectedError",
    "ImapQueueError",
    "MailClientError",
    "NotSelectedError",
    "RetryExhaustedError",
    "TransportError",
]
