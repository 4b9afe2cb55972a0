"""Shared test fixtures and an in-memory mailbox implementing MailClient."""

from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Optional

import pytest

from imapqueue.errors import TransportError


class FakeMailbox:
    """Simulated IMAP folder with UIDNEXT, IDLE, failures and reconnects.

    ``failures`` maps a method name to exceptions raised by its next calls.
    Raising a :class:`TransportError` drops the simulated connection unless
    ``drops_connection`` is false, so the queue has to reconnect before the
    next command succeeds.
    """

    def __init__(self, identifiers: Iterable[int] = (), *, folder: str = "INBOX") -> None:
        self.messages: List[int] = sorted(identifiers)
        self.next_uid = (self.messages[-1] + 1) if self.messages else 1
        self.selected: Optional[str] = folder
        self.connected = True
        self.uidvalidity = 1

        self.failures: Dict[str, List[Exception]] = {}
        self.reconnect_results: List[bool] = []
        self.reconnect_always_fails = False
        self.drops_connection = True

        self.on_wait: Optional[Callable[["FakeMailbox"], None]] = None
        self.after_high_read: Optional[Callable[["FakeMailbox"], None]] = None

        self.calls: List[str] = []
        self.wait_timeouts: List[float] = []
        self.in_idle = False
        self.exit_calls = 0
        self.reconnect_calls = 0
        self.closed = False

    # -- test helpers ------------------------------------------------------

    def deliver(self, count: int = 1) -> List[int]:
        delivered = []
        for _ in range(count):
            self.messages.append(self.next_uid)
            delivered.append(self.next_uid)
            self.next_uid += 1
        return delivered

    def fail(self, method: str, *errors: Exception) -> None:
        self.failures.setdefault(method, []).extend(errors)

    def _command(self, name: str) -> None:
        self.calls.append(name)
        if not self.connected:
            raise TransportError(f"{name}: not connected")
        pending = self.failures.get(name)
        if pending:
            error = pending.pop(0)
            if isinstance(error, TransportError) and self.drops_connection:
                self.connected = False
            raise error

    # -- CLI lifecycle -----------------------------------------------------

    def connect(self) -> None:
        self.connected = True

    def close(self) -> None:
        self.closed = True

    # -- MailClient --------------------------------------------------------

    @property
    def folder(self) -> Optional[str]:
        return self.selected

    def is_folder_selected(self) -> bool:
        return self.selected is not None

    def next_identifier_watermark(self, folder: str) -> int:
        self._command("next_identifier_watermark")
        high = self.next_uid
        if self.after_high_read is not None:
            hook, self.after_high_read = self.after_high_read, None
            hook(self)
        return high

    def search_from(self, watermark: int) -> List[int]:
        self._command("search_from")
        found = [uid for uid in self.messages if uid >= watermark]
        if not found and self.messages:
            # IMAP answers "n:*" with the highest message even when it is below n
            found = [self.messages[-1]]
        return found

    def list_all_identifiers(self) -> List[int]:
        self._command("list_all_identifiers")
        return list(self.messages)

    def enter_wait_mode(self) -> Any:
        self._command("enter_wait_mode")
        self.in_idle = True
        return object()

    def wait_for_update(self, handle: Any, timeout: float) -> List[Any]:
        self.wait_timeouts.append(timeout)
        self._command("wait_for_update")
        if self.on_wait is not None:
            self.on_wait(self)
        return []

    def exit_wait_mode(self, handle: Any) -> None:
        self.exit_calls += 1
        self.in_idle = False
        self._command("exit_wait_mode")

    def reconnect(self) -> bool:
        self.reconnect_calls += 1
        if self.reconnect_always_fails:
            result = False
        elif self.reconnect_results:
            result = self.reconnect_results.pop(0)
        else:
            result = True
        self.connected = result
        return result

    def probe(self) -> None:
        self._command("probe")


@pytest.fixture
def make_mailbox() -> Callable[..., FakeMailbox]:
    """Factory for mailboxes holding the given identifiers."""
    return FakeMailbox


@pytest.fixture
def mailbox() -> FakeMailbox:
    return FakeMailbox([1, 2, 3])


@pytest.fixture(autouse=True)
def sleeps(monkeypatch: pytest.MonkeyPatch) -> List[float]:
    """Record retry sleeps instead of sleeping."""
    recorded: List[float] = []
    monkeypatch.setattr("imapqueue.queue.time.sleep", recorded.append)
    return recorded
