"""Progress events posted by sync tasks and the single consumer that aggregates them."""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Callable, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccountStarted:
    account: str


@dataclass(frozen=True)
class MailboxStarted:
    account: str
    mailbox: str
    expected: int


@dataclass(frozen=True)
class MessageProgress:
    account: str
    mailbox: str
    uid: int
    new: bool


@dataclass(frozen=True)
class AccountFinished:
    account: str
    ok: bool
    diagnostic: str = ""


ProgressEvent = Union[AccountStarted, MailboxStarted, MessageProgress, AccountFinished]
Listener = Callable[[ProgressEvent], None]

_STOP = object()


def discard(_event: ProgressEvent) -> None:
    """Event sink that drops everything."""


class ProgressAggregator:
    """
    Collects progress events from every sync task over a queue.

    Tasks only call `post`; all counters are owned by the aggregator thread
    and are safe to read once `stop` has returned.
    """

    def __init__(self, listener: Listener | None = None, log_every: int = 100) -> None:
        self._queue: queue.Queue[object] = queue.Queue()
        self._listener = listener
        self._log_every = log_every
        self._thread = threading.Thread(target=self._run, name="progress", daemon=True)
        self.seen: dict[str, int] = {}
        self.new: dict[str, int] = {}
        self.finished: dict[str, AccountFinished] = {}

    def post(self, event: ProgressEvent) -> None:
        self._queue.put(event)

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        """Drain pending events and wait for the aggregator thread."""
        self._queue.put(_STOP)
        self._thread.join()

    def __enter__(self) -> ProgressAggregator:
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()

    def _run(self) -> None:
        while True:
            event = self._queue.get()
            if event is _STOP:
                return
            self._handle(event)  # type: ignore[arg-type]

    def _handle(self, event: ProgressEvent) -> None:
        if isinstance(event, AccountStarted):
            self.seen.setdefault(event.account, 0)
            self.new.setdefault(event.account, 0)
            logger.info("Account '%s': sync started", event.account)
        elif isinstance(event, MailboxStarted):
            logger.info(
                "Account '%s' / %r: %d messages in mailbox",
                event.account,
                event.mailbox,
                event.expected,
            )
        elif isinstance(event, MessageProgress):
            count = self.seen.get(event.account, 0) + 1
            self.seen[event.account] = count
            if event.new:
                self.new[event.account] = self.new.get(event.account, 0) + 1
            if count % self._log_every == 0:
                logger.info("Account '%s': %d messages processed", event.account, count)
        elif isinstance(event, AccountFinished):
            self.finished[event.account] = event
            if event.ok:
                logger.info("Account '%s': finished OK (%s)", event.account, event.diagnostic)
            else:
                logger.error("Account '%s': FAILED (%s)", event.account, event.diagnostic)

        if self._listener is not None:
            try:
                self._listener(event)
            except Exception:
                logger.exception("Progress listener failed on %r", event)
