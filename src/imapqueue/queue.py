"""A mailbox exposed as a FIFO queue of message identifiers.

:class:`MailboxQueue` keeps a buffer of identifiers that are known to exist but
have not been handed out yet, a cursor into that buffer, and a watermark: the
smallest identifier the queue has not seen. Pulling from an empty queue fetches
everything at or above the watermark; when nothing new exists the queue blocks
in IMAP IDLE until the server reports a change or ``idle_timeout`` elapses, then
fetches again.

Fetch ordering:
    The server's next-identifier value (``high``) is read *before* searching,
    and search results are restricted to ``[watermark, high)``. A message
    delivered between the two round-trips is either below ``high`` (and
    returned now) or at/above it (and returned by the next fetch, which starts
    at the new watermark ``high``). It can never be returned twice or dropped.

Failure outcomes:
    Public operations do not raise queue errors. They return ``False`` or
    ``None`` and keep the exception in :attr:`MailboxQueue.last_error`.
    ``dequeue_messages`` returns ``None`` on failure, never ``[]``.

Transport failures during a fetch reconnect (``sleep_on_retry`` seconds between
attempts, at most ``max_retry`` attempts) and restart the fetch from the top.

The queue is not thread-safe. To use it from asyncio, run one blocking call at
a time in a worker thread, e.g. ``await asyncio.to_thread(queue.dequeue_messages)``.

Usage:
    with ImapMailClient(settings.imap, password) as client:
        queue = MailboxQueue(client, skip_initial=True)
        for uid in queue:
            process(uid)
"""

from __future__ import annotations

import logging
import time
from typing import Any, Iterator, List, Optional, Tuple

from .client import MailClient
from .config import QueueSettings, build_queue_settings
from .errors import (
    ConfigurationError,
    DisconnectedError,
    ImapQueueError,
    NotSelectedError,
    RetryExhaustedError,
    TransportError,
)


logger = logging.getLogger(__name__)


class MailboxQueue:
    """Pull-based FIFO over the identifiers of one mailbox folder."""

    def __init__(
        self,
        client: Optional[MailClient],
        settings: Optional[QueueSettings] = None,
        **options: Any,
    ) -> None:
        """Initialize the queue.

        Args:
            client: Connected mail client with the target folder selected
            settings: Complete queue settings; mutually exclusive with ``options``
            **options: Individual :class:`QueueSettings` fields
                (``skip_initial``, ``initial_watermark``, ``idle_timeout``,
                ``sleep_on_retry``, ``max_retry``)

        Raises:
            ConfigurationError: Missing or non-conforming client, or invalid options
            ImapQueueError: ``skip_initial`` bootstrap could not reach the server
        """
        if client is None:
            raise ConfigurationError("Parameter 'client' must be given")
        if not isinstance(client, MailClient):
            raise ConfigurationError(
                f"{type(client).__name__} does not implement the MailClient interface"
            )
        if settings is not None and options:
            raise ConfigurationError("Pass either 'settings' or individual options, not both")

        self._client = client
        self._settings = settings if settings is not None else build_queue_settings(**options)
        self._buffer: List[int] = []
        self._cursor = 0
        self._watermark: Optional[int] = self._settings.initial_watermark
        self._last_error: Optional[ImapQueueError] = None

        if self._settings.skip_initial and self._watermark is None:
            self._skip_initial()

    def __len__(self) -> int:
        return len(self._buffer) - self._cursor

    def __iter__(self) -> Iterator[int]:
        """Yield identifiers until a fetch or wait fails."""
        while True:
            message = self.dequeue_message()
            if message is None:
                return
            yield message

    def __repr__(self) -> str:
        return (
            f"MailboxQueue(folder={self._client.folder!r}, "
            f"watermark={self._watermark}, pending={len(self)})"
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def client(self) -> MailClient:
        return self._client

    @property
    def settings(self) -> QueueSettings:
        return self._settings

    @property
    def watermark(self) -> Optional[int]:
        """Smallest identifier not yet fetched; persist it to resume later."""
        return self._watermark

    @property
    def last_error(self) -> Optional[ImapQueueError]:
        """Error behind the most recent failure outcome, ``None`` after a success."""
        return self._last_error

    # ------------------------------------------------------------------
    # Non-blocking access
    # ------------------------------------------------------------------

    def is_empty(self) -> bool:
        return self._cursor >= len(self._buffer)

    def peek_message(self) -> Optional[int]:
        """Next identifier without removing it, or ``None`` when the buffer is empty."""
        if self.is_empty():
            return None
        return self._buffer[self._cursor]

    def peek_messages(self) -> List[int]:
        """All buffered identifiers without removing them."""
        return self._buffer[self._cursor:]

    # ------------------------------------------------------------------
    # Blocking access
    # ------------------------------------------------------------------

    def dequeue_message(self) -> Optional[int]:
        """Remove and return the next identifier, blocking until one exists.

        Returns:
            The identifier, or ``None`` if loading messages failed
        """
        self.ensure_messages()
        if self.is_empty():
            return None
        message = self._buffer[self._cursor]
        self._cursor += 1
        return message

    def dequeue_messages(self) -> Optional[List[int]]:
        """Remove and return every buffered identifier, blocking until one exists.

        Returns:
            Non-empty list of identifiers, or ``None`` if loading messages failed
        """
        self.ensure_messages()
        if self.is_empty():
            return None
        messages = self._buffer[self._cursor:]
        self._cursor = len(self._buffer)
        return messages

    def ensure_messages(self) -> bool:
        """Block until the buffer holds at least one identifier.

        Alternates fetches with bounded IDLE waits; gives up only when a fetch
        or a wait fails.
        """
        while self.is_empty():
            if not self.update_messages():
                return False
            if self.is_empty() and not self.attempt_idle():
                return False
        return True

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------

    def update_messages(self) -> bool:
        """Discard the buffer and load identifiers above the watermark.

        Does not wait for new mail beyond the server round-trips.
        """
        try:
            self._fetch()
        except ImapQueueError as exc:
            return self._fail(exc)
        self._last_error = None
        return True

    def _fetch(self) -> None:
        attempts = 0
        while True:
            try:
                high, messages = self._load()
            except TransportError as exc:
                logger.warning(
                    f"Fetch failed, reconnecting: {exc}",
                    extra={"folder": self._client.folder, "watermark": self._watermark},
                )
                attempts = self._recover(attempts, failure=exc)
                continue
            break

        if messages or self._watermark is None:
            self._watermark = high
        self._buffer = messages
        self._cursor = 0
        logger.debug(
            f"Fetched {len(messages)} message(s)",
            extra={"folder": self._client.folder, "watermark": self._watermark},
        )

    def _load(self) -> Tuple[int, List[int]]:
        client = self._client
        if not client.is_folder_selected():
            raise NotSelectedError()

        # Must be read before searching; see module docstring.
        high = client.next_identifier_watermark(client.folder)
        low = self._watermark
        if low is None:
            found = client.list_all_identifiers()
            return high, [identifier for identifier in found if identifier < high]
        found = client.search_from(low)
        return high, [identifier for identifier in found if low <= identifier < high]

    def _skip_initial(self) -> None:
        self._fetch_watermark()
        for _ in range(2):
            self._fetch()
            self._cursor = len(self._buffer)
        logger.debug(
            "Skipped initial messages",
            extra={"folder": self._client.folder, "watermark": self._watermark},
        )

    def _fetch_watermark(self) -> None:
        attempts = 0
        while True:
            try:
                client = self._client
                if not client.is_folder_selected():
                    raise NotSelectedError()
                self._watermark = client.next_identifier_watermark(client.folder)
                return
            except TransportError as exc:
                attempts = self._recover(attempts, failure=exc)

    # ------------------------------------------------------------------
    # Waiting and recovery
    # ------------------------------------------------------------------

    def attempt_idle(self) -> bool:
        """Wait in IDLE for up to ``idle_timeout`` seconds.

        Leaving IDLE is always attempted, even when the wait failed. This does
        not load messages; call :meth:`update_messages` afterwards.
        """
        client = self._client
        try:
            try:
                handle = client.enter_wait_mode()
                try:
                    client.wait_for_update(handle, self._settings.idle_timeout)
                finally:
                    client.exit_wait_mode(handle)
            except TransportError as exc:
                logger.warning(
                    f"Connection lost during IDLE: {exc}", extra={"folder": client.folder}
                )
                try:
                    self._recover(failure=exc)
                except ImapQueueError as recovery_error:
                    raise DisconnectedError(
                        details={"cause": recovery_error.code}
                    ) from recovery_error
        except ImapQueueError as exc:
            return self._fail(exc)
        self._last_error = None
        return True

    def ensure_connection(self) -> bool:
        """Make sure the connection is alive and the folder selected, reconnecting if not."""
        try:
            self._recover()
        except ImapQueueError as exc:
            return self._fail(exc)
        self._last_error = None
        return True

    def _recover(self, attempts: int = 0, failure: Optional[TransportError] = None) -> int:
        """Reconnect until the folder is selected again.

        Without a ``failure`` a healthy probe counts as recovered. After a
        transport failure the session is always re-established; ``attempts``
        carries the reconnects already spent on the same operation, so
        ``max_retry`` bounds the operation as a whole.

        Returns:
            Reconnect attempts used so far

        Raises:
            RetryExhaustedError: ``max_retry`` attempts were used up
        """
        client = self._client
        if failure is None:
            try:
                client.probe()
                if client.is_folder_selected():
                    return attempts
            except TransportError as exc:
                logger.debug(f"Probe failed: {exc}")

        max_retry = self._settings.max_retry
        while max_retry is None or attempts < max_retry:
            if attempts:
                time.sleep(self._settings.sleep_on_retry)
            attempts += 1
            logger.warning(
                f"Reconnecting (attempt {attempts})",
                extra={"folder": client.folder, "attempt": attempts},
            )
            if client.reconnect() and client.is_folder_selected():
                return attempts

        logger.error(
            f"Giving up after {attempts} reconnect attempt(s)",
            extra={"folder": client.folder, "attempt": attempts},
        )
        raise RetryExhaustedError(
            f"Reconnect failed after {attempts} attempt(s)", attempts=attempts
        ) from failure

    def _fail(self, exc: ImapQueueError) -> bool:
        self._last_error = exc
        return False


__all__ = ["MailboxQueue"]
