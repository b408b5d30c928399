"""One authenticated IMAP connection: list, examine and ranged fetch of mailboxes."""

from __future__ import annotations

import enum
import logging
import ssl
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Generator, Iterable, Iterator, NamedTuple

from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientAbortError, IMAPClientError, LoginError

from archive_errors import (
    AuthenticationError,
    HandshakeError,
    InvalidInputError,
    MailError,
    ProtocolError,
    SessionStateError,
    StreamConsumedError,
    TransportError,
)
from config_loader import ImapAccount

logger = logging.getLogger(__name__)

FETCH_BATCH_SIZE = 100


class SessionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    AUTHENTICATED = "authenticated"
    SELECTED = "selected"
    CLOSED = "closed"


@dataclass(frozen=True)
class MailboxMeta:
    exists: int
    uid_validity: int | None = None


class FetchedMessage(NamedTuple):
    uid: int
    seq: int
    raw: bytes


class FetchStream:
    """
    Single-pass iterator over the messages of one ranged fetch.

    Messages are pulled from the server batch by batch as the stream is
    consumed. Iterating it a second time raises StreamConsumedError instead
    of silently yielding nothing.
    """

    def __init__(self, source: Iterator[FetchedMessage]) -> None:
        self._source = source
        self._started = False

    def __iter__(self) -> FetchStream:
        if self._started:
            raise StreamConsumedError("fetch stream can only be iterated once")
        self._started = True
        return self

    def __next__(self) -> FetchedMessage:
        return next(self._source)

    def close(self) -> None:
        self._started = True
        close = getattr(self._source, "close", None)
        if close is not None:
            close()


@contextmanager
def _mail_errors(what: str) -> Generator[None, None, None]:
    """Translate imapclient/socket/TLS exceptions into the MailError family."""
    try:
        yield
    except MailError:
        raise
    except LoginError as exc:
        raise AuthenticationError(f"{what}: {exc}") from exc
    except ssl.SSLError as exc:
        raise HandshakeError(f"{what}: {exc}") from exc
    except IMAPClientAbortError as exc:
        raise TransportError(f"{what}: connection aborted: {exc}") from exc
    except IMAPClientError as exc:
        raise ProtocolError(f"{what}: {exc}") from exc
    except OSError as exc:
        raise TransportError(f"{what}: {exc}") from exc


def _decode_name(name: Any) -> str | None:
    if isinstance(name, bytes):
        try:
            name = name.decode("utf-8")
        except UnicodeDecodeError:
            return None
    if not isinstance(name, str) or not name:
        return None
    return name


class MailSession:
    """
    Stateful handle to one IMAP account.

    Owned by a single sync task; never share it between threads. Use
    `MailSession.connect(account)` and close it (or use it as a context
    manager) when done.
    """

    def __init__(self, account: ImapAccount) -> None:
        self.account = account
        self.state = SessionState.DISCONNECTED
        self.selected: str | None = None
        self._client: Any = None

    @classmethod
    def connect(cls, account: ImapAccount) -> MailSession:
        """Connect, secure the channel and log in; raise a MailError on failure."""
        session = cls(account)
        try:
            session._open()
        except MailError:
            session._abandon()
            raise
        return session

    def _open(self) -> None:
        account = self.account
        context = ssl.create_default_context()
        logger.info(
            "Connecting to %s:%d (SSL=%s, STARTTLS=%s) as %s",
            account.host,
            account.port,
            account.ssl,
            account.starttls,
            account.user,
        )

        with _mail_errors(f"connect to {account.host}:{account.port}"):
            self._client = IMAPClient(
                account.host,
                port=account.port,
                ssl=account.ssl,
                ssl_context=context,
                timeout=account.timeout,
            )
        self.state = SessionState.CONNECTED

        if account.starttls and not account.ssl:
            with _mail_errors(f"STARTTLS with {account.host}"):
                try:
                    self._client.starttls(context)
                except IMAPClientError as exc:
                    raise HandshakeError(f"STARTTLS with {account.host}: {exc}") from exc

        with _mail_errors(f"login to {account.host} as {account.user}"):
            self._client.login(account.user, account.password)
        self.state = SessionState.AUTHENTICATED
        logger.info("Logged in successfully to %s", account.host)

        try:
            capabilities = self._client.capabilities()
        except (IMAPClientError, OSError) as exc:
            logger.warning("Could not read capabilities from %s: %s", account.host, exc)
        else:
            logger.info(
                "Server %s capabilities: %s",
                account.host,
                " ".join(c.decode() if isinstance(c, bytes) else str(c) for c in capabilities),
            )

    def _abandon(self) -> None:
        """Drop a half-open connection without a clean logout."""
        self.state = SessionState.CLOSED
        if self._client is None:
            return
        try:
            self._client.shutdown()
        except (IMAPClientError, OSError) as exc:
            logger.debug("Ignoring error while dropping connection: %s", exc)

    def _require(self, *states: SessionState) -> None:
        if self.state not in states:
            raise SessionStateError(
                f"operation not allowed in state {self.state.value} "
                f"(need {', '.join(s.value for s in states)})"
            )

    def list_mailboxes(self) -> Iterator[str]:
        """
        List every selectable mailbox once.

        Malformed entries and \\Noselect containers are skipped.
        """
        self._require(SessionState.AUTHENTICATED, SessionState.SELECTED)
        with _mail_errors("list mailboxes"):
            entries = self._client.list_folders()
        return self._mailbox_names(entries)

    def _mailbox_names(self, entries: Iterable[Any]) -> Iterator[str]:
        for entry in entries:
            if not isinstance(entry, tuple):
                logger.warning("Skipping malformed mailbox entry: %r", entry)
                continue
            try:
                flags, _delim, raw_name = entry
                noselect = any("noselect" in str(f).lower() for f in flags)
            except (TypeError, ValueError):
                logger.warning("Skipping malformed mailbox entry: %r", entry)
                continue
            name = _decode_name(raw_name)
            if name is None:
                logger.warning("Skipping mailbox entry with unusable name: %r", entry)
                continue
            if noselect:
                logger.debug("Skipping \\Noselect mailbox %r", name)
                continue
            yield name

    def examine(self, mailbox: str) -> MailboxMeta:
        """Select `mailbox` read-only and return its metadata."""
        self._require(SessionState.AUTHENTICATED, SessionState.SELECTED)
        try:
            with _mail_errors(f"examine {mailbox!r}"):
                info = self._client.select_folder(mailbox, readonly=True)
        except MailError:
            self.state = SessionState.AUTHENTICATED
            self.selected = None
            raise
        self.state = SessionState.SELECTED
        self.selected = mailbox

        uid_validity = info.get(b"UIDVALIDITY")
        meta = MailboxMeta(
            exists=int(info.get(b"EXISTS", 0)),
            uid_validity=int(uid_validity) if uid_validity is not None else None,
        )
        logger.info("Switched to mailbox %r (%d messages)", mailbox, meta.exists)
        return meta

    def fetch_range(
        self, mailbox: str, starting_uid: int | None = None
    ) -> tuple[MailboxMeta, FetchStream]:
        """
        Examine `mailbox` and stream every message with UID >= `starting_uid`.

        None means from the first message. UIDs are 1-based, so 0 (or less)
        is rejected before anything is sent to the server.
        """
        if starting_uid is not None and starting_uid < 1:
            raise InvalidInputError(f"starting uid must be >= 1, got {starting_uid}")
        self._require(SessionState.AUTHENTICATED, SessionState.SELECTED)

        meta = self.examine(mailbox)
        start = starting_uid or 1
        with _mail_errors(f"search {mailbox!r}"):
            found = self._client.search(f"UID {start}:*")
        # "n:*" always matches the highest UID, even when it is below n.
        uids = [uid for uid in found if uid >= start]
        logger.debug("Mailbox %r: %d messages from uid %d", mailbox, len(uids), start)
        return meta, FetchStream(self._iter_messages(mailbox, uids))

    def _iter_messages(self, mailbox: str, uids: list[int]) -> Iterator[FetchedMessage]:
        for i in range(0, len(uids), FETCH_BATCH_SIZE):
            batch = uids[i : i + FETCH_BATCH_SIZE]
            if self.selected != mailbox:
                raise SessionStateError(f"mailbox {mailbox!r} is no longer selected")
            with _mail_errors(f"fetch from {mailbox!r}"):
                fetched = self._client.fetch(batch, ["UID", "RFC822"])

            wanted = set(batch)
            for key, data in fetched.items():
                uid = data.get(b"UID", key)
                if not isinstance(uid, int) or uid not in wanted:
                    logger.warning(
                        "Mailbox %r: fetch response without a requested UID (%r), skipping",
                        mailbox,
                        key,
                    )
                    continue
                raw = data.get(b"RFC822")
                if raw is None:
                    logger.warning("Mailbox %r: uid=%d came without a body, skipping", mailbox, uid)
                    continue
                yield FetchedMessage(uid=uid, seq=int(data.get(b"SEQ", 0)), raw=bytes(raw))

    def close(self) -> None:
        """Log out. Raises MailError if the server or network fails."""
        if self.state in (SessionState.CLOSED, SessionState.DISCONNECTED):
            self.state = SessionState.CLOSED
            return
        self.state = SessionState.CLOSED
        self.selected = None
        with _mail_errors(f"logout from {self.account.host}"):
            self._client.logout()

    def __enter__(self) -> MailSession:
        return self

    def __exit__(self, *exc: object) -> None:
        try:
            self.close()
        except MailError as error:
            logger.warning("Error while closing session to %s: %s", self.account.host, error)
