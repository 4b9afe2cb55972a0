"""Mail client capability used by the queue engine.

:class:`MailClient` is the interface the queue drives: folder status, the next
identifier watermark, searches, IMAP IDLE and reconnection. Any object that
provides these members can back a :class:`~imapqueue.queue.MailboxQueue`.

:class:`ImapMailClient` is the bundled implementation on top of
``imapclient``. It enforces TLS (implicit or STARTTLS) with the ``certifi``
trust store, translates library and socket failures into the queue's error
hierarchy, and can re-establish its session and re-select the previous folder.
"""

from __future__ import annotations

import logging
import ssl
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterator, List, Optional, Protocol, runtime_checkable

import certifi
from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientAbortError, IMAPClientError, LoginError

from .config import ImapSettings
from .errors import AuthenticationError, MailClientError, NotSelectedError, TransportError


logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Capability interface
# ---------------------------------------------------------------------------


@runtime_checkable
class MailClient(Protocol):
    """Operations the queue engine needs from a mail client.

    Implementations raise :class:`~imapqueue.errors.TransportError` when the
    connection fails and :class:`~imapqueue.errors.MailClientError` when the
    server rejects a command.
    """

    @property
    def folder(self) -> Optional[str]:
        """Name of the selected folder, or ``None``."""
        ...

    def is_folder_selected(self) -> bool:
        ...

    def next_identifier_watermark(self, folder: str) -> int:
        """Smallest identifier the server has not yet assigned in ``folder``."""
        ...

    def search_from(self, watermark: int) -> List[int]:
        """Identifiers ``>= watermark`` in ascending order.

        Servers answer ``n:*`` with the highest message even when it is below
        ``n``; callers must filter.
        """
        ...

    def list_all_identifiers(self) -> List[int]:
        ...

    def enter_wait_mode(self) -> Any:
        ...

    def wait_for_update(self, handle: Any, timeout: float) -> List[Any]:
        ...

    def exit_wait_mode(self, handle: Any) -> None:
        ...

    def reconnect(self) -> bool:
        ...

    def probe(self) -> None:
        ...


# ---------------------------------------------------------------------------
# imapclient implementation
# ---------------------------------------------------------------------------


class ConnectionState(str, Enum):
    """Lifecycle states for an IMAP connection."""

    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    IDLE = "idle"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


@dataclass(frozen=True)
class IdleHandle:
    """Token returned by :meth:`ImapMailClient.enter_wait_mode`."""

    folder: str
    started_at: float


class ImapMailClient:
    """Single IMAP connection implementing :class:`MailClient`."""

    def __init__(self, settings: ImapSettings, password: str) -> None:
        self._settings = settings
        self._password = password
        self._client: Optional[IMAPClient] = None
        self._folder: Optional[str] = None
        # folder to re-select on reconnect; survives failed attempts
        self._target_folder: Optional[str] = None
        self._uidvalidity: Optional[int] = None
        self.state = ConnectionState.DISCONNECTED

    def __enter__(self) -> "ImapMailClient":
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def settings(self) -> ImapSettings:
        return self._settings

    @property
    def folder(self) -> Optional[str]:
        return self._folder

    @property
    def uidvalidity(self) -> Optional[int]:
        """UIDVALIDITY reported by the last folder selection."""
        return self._uidvalidity

    # -- lifecycle ---------------------------------------------------------

    def connect(self, folder: Optional[str] = None) -> None:
        """Open the connection, log in and select ``folder`` (default from settings)."""

        self._target_folder = folder or self._settings.folder
        self._open(self._target_folder)

    def close(self) -> None:
        """Log out and drop the connection; never raises."""

        if self._client is None:
            return
        try:
            self._client.logout()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Error during logout", exc_info=exc)
        finally:
            self._client = None
            self.state = ConnectionState.DISCONNECTED

    def select_folder(self, folder: str) -> None:
        with self._translate_errors("select"):
            response = self._require_client().select_folder(folder)
        self._folder = folder
        self._target_folder = folder
        self._uidvalidity = response.get(b"UIDVALIDITY")
        logger.debug(
            f"Selected {folder}",
            extra={"folder": folder, "uidvalidity": self._uidvalidity},
        )

    def reconnect(self) -> bool:
        folder = self._target_folder or self._settings.folder
        self.state = ConnectionState.RECONNECTING
        self._drop()
        try:
            self._open(folder)
        except (TransportError, MailClientError) as exc:
            self.state = ConnectionState.FAILED
            logger.warning(
                f"Reconnect to {self._settings.host} failed: {exc}",
                extra={"host": self._settings.host, "folder": folder},
            )
            return False
        logger.info(f"Reconnected to {self._settings.host}", extra={"folder": folder})
        return True

    def _open(self, folder: str) -> None:
        self._folder = None
        with self._translate_errors("connect"):
            client = IMAPClient(
                host=self._settings.host,
                port=self._settings.port,
                ssl=self._settings.ssl,
                ssl_context=self._create_ssl_context(),
                timeout=self._settings.connection_timeout,
                use_uid=self._settings.use_uid,
            )
            if not self._settings.ssl:
                client.starttls(self._create_ssl_context())
            client.login(self._settings.username, self._password)
        self._client = client
        self.state = ConnectionState.CONNECTED
        self.select_folder(folder)

    def _drop(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        try:
            client.shutdown()
        except Exception as exc:  # noqa: BLE001
            logger.debug("Error closing stale connection", exc_info=exc)

    def _create_ssl_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context()
        context.load_verify_locations(certifi.where())
        context.minimum_version = ssl.TLSVersion.TLSv1_2
        context.check_hostname = True
        context.verify_mode = ssl.CERT_REQUIRED
        return context

    # -- capability --------------------------------------------------------

    def is_folder_selected(self) -> bool:
        return self._client is not None and self._folder is not None

    def next_identifier_watermark(self, folder: str) -> int:
        item = b"UIDNEXT" if self._settings.use_uid else b"MESSAGES"
        with self._translate_errors("status"):
            status = self._require_client().folder_status(folder, [item.decode()])
        if item not in status:
            raise MailClientError(
                f"STATUS response for {folder} lacks {item.decode()}",
                details={"folder": folder},
            )
        value = int(status[item])
        return value if self._settings.use_uid else value + 1

    def search_from(self, watermark: int) -> List[int]:
        criteria: List[str] = [f"{watermark}:*"]
        if self._settings.use_uid:
            criteria.insert(0, "UID")
        with self._translate_errors("search"):
            found = self._require_selected().search(criteria)
        return sorted(int(identifier) for identifier in found)

    def list_all_identifiers(self) -> List[int]:
        with self._translate_errors("search"):
            found = self._require_selected().search(["ALL"])
        return sorted(int(identifier) for identifier in found)

    def enter_wait_mode(self) -> IdleHandle:
        client = self._require_selected()
        with self._translate_errors("idle"):
            client.idle()
        self.state = ConnectionState.IDLE
        return IdleHandle(folder=self._folder or "", started_at=time.monotonic())

    def wait_for_update(self, handle: IdleHandle, timeout: float) -> List[Any]:
        with self._translate_errors("idle_check"):
            responses = self._require_client().idle_check(timeout=timeout)
        if responses:
            logger.debug(f"IDLE update in {handle.folder}: {responses}")
        return list(responses)

    def exit_wait_mode(self, handle: IdleHandle) -> None:
        try:
            with self._translate_errors("idle_done"):
                self._require_client().idle_done()
        finally:
            if self.state == ConnectionState.IDLE:
                self.state = ConnectionState.CONNECTED
        logger.debug(
            f"IDLE on {handle.folder} ended after {time.monotonic() - handle.started_at:.1f}s"
        )

    def probe(self) -> None:
        with self._translate_errors("noop"):
            self._require_client().noop()

    # -- helpers -----------------------------------------------------------

    def _require_client(self) -> IMAPClient:
        if self._client is None:
            raise TransportError("IMAP client not connected", details={"host": self._settings.host})
        return self._client

    def _require_selected(self) -> IMAPClient:
        client = self._require_client()
        if self._folder is None:
            raise NotSelectedError()
        return client

    @contextmanager
    def _translate_errors(self, action: str) -> Iterator[None]:
        details = {"action": action, "host": self._settings.host}
        try:
            yield
        except IMAPClientAbortError as exc:
            self.state = ConnectionState.FAILED
            raise TransportError(f"IMAP {action} aborted: {exc}", details=details) from exc
        except LoginError as exc:
            self.state = ConnectionState.FAILED
            raise AuthenticationError(f"IMAP login refused: {exc}", details=details) from exc
        except IMAPClientError as exc:
            raise MailClientError(f"IMAP {action} failed: {exc}", details=details) from exc
        except OSError as exc:
            # socket.timeout and ssl.SSLError are both OSError subclasses
            self.state = ConnectionState.FAILED
            raise TransportError(f"IMAP {action} failed: {exc}", details=details) from exc


__all__ = [
    "ConnectionState",
    "IdleHandle",
    "ImapMailClient",
    "MailClient",
]
