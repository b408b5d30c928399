"""SQLite-backed content-addressed archive: messages, headers, bodies, watermarks."""

from __future__ import annotations

import logging
import queue
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Generator, Iterator

from archive_errors import ParseError, StorageError
from eml_utils import extract_body_text, parse_headers

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS messages (
    hash TEXT PRIMARY KEY NOT NULL,
    raw  BLOB NOT NULL
);

CREATE TABLE IF NOT EXISTS headers (
    msg_hash TEXT NOT NULL REFERENCES messages(hash),
    name     TEXT NOT NULL,
    value    TEXT NOT NULL,
    UNIQUE (msg_hash, name, value)
);

CREATE TABLE IF NOT EXISTS bodies (
    msg_hash TEXT PRIMARY KEY NOT NULL REFERENCES messages(hash),
    text     TEXT
);

CREATE TABLE IF NOT EXISTS last_seen_msg (
    account TEXT NOT NULL,
    mailbox TEXT NOT NULL,
    uid     INTEGER NOT NULL,
    PRIMARY KEY (account, mailbox)
);
"""


@dataclass(frozen=True)
class Message:
    hash: str
    raw: bytes


@dataclass(frozen=True, order=True)
class Header:
    msg_hash: str
    name: str
    value: str


@dataclass(frozen=True)
class Body:
    msg_hash: str
    text: str | None


@dataclass(frozen=True)
class Watermark:
    account: str
    mailbox: str
    uid: int


@contextmanager
def _storage_errors(what: str) -> Generator[None, None, None]:
    """Re-raise any sqlite3 error as StorageError."""
    try:
        yield
    except sqlite3.Error as exc:
        raise StorageError(f"{what}: {exc}") from exc


@contextmanager
def _write_transaction(conn: sqlite3.Connection) -> Generator[None, None, None]:
    """Take the write lock up front; commit on success, rollback on error."""
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield
        conn.execute("COMMIT")
    except BaseException:
        conn.rollback()
        raise


class ContentStore:
    """
    Durable archive shared by all sync tasks.

    Holds a fixed pool of connections; a caller blocks until one is free.
    Concurrent writers are serialized by SQLite itself (WAL + busy timeout),
    there is no extra application lock.
    """

    def __init__(self, path: Path, pool_size: int = 5, busy_timeout: float = 30.0) -> None:
        if pool_size < 1:
            raise ValueError("pool_size must be >= 1")
        self.path = Path(path)
        self._busy_timeout = busy_timeout
        self._pool: queue.Queue[sqlite3.Connection] = queue.Queue(maxsize=pool_size)
        self._all: list[sqlite3.Connection] = []
        self._closed = False

        with _storage_errors(f"open {self.path}"):
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise StorageError(f"cannot create {self.path.parent}: {exc}") from exc
            first = self._connect()
            first.execute("PRAGMA journal_mode=WAL")
            first.executescript(SCHEMA)
            self._pool.put(first)
            for _ in range(pool_size - 1):
                self._pool.put(self._connect())
        logger.debug("Opened store %s with %d connections", self.path, pool_size)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self.path),
            timeout=self._busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        self._all.append(conn)
        return conn

    @contextmanager
    def _connection(self) -> Generator[sqlite3.Connection, None, None]:
        if self._closed:
            raise StorageError(f"store {self.path} is closed")
        conn = self._pool.get()
        try:
            yield conn
        finally:
            self._pool.put(conn)

    def close(self) -> None:
        """Close every pooled connection."""
        if self._closed:
            return
        self._closed = True
        for conn in self._all:
            try:
                conn.close()
            except sqlite3.Error:
                logger.exception("Failed to close connection to %s", self.path)

    def __enter__(self) -> ContentStore:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # -- watermarks -----------------------------------------------------------

    def put_watermark(self, account: str, mailbox: str, uid: int) -> None:
        """Upsert the watermark; last write wins, regressions are not rejected."""
        with self._connection() as conn, _storage_errors("store watermark"):
            conn.execute(
                "INSERT OR REPLACE INTO last_seen_msg (account, mailbox, uid) VALUES (?, ?, ?)",
                (account, mailbox, uid),
            )

    def get_watermark(self, account: str, mailbox: str) -> int | None:
        """Return the stored watermark, or None if the mailbox was never synced."""
        with self._connection() as conn, _storage_errors("fetch watermark"):
            row = conn.execute(
                "SELECT uid FROM last_seen_msg WHERE account = ? AND mailbox = ?",
                (account, mailbox),
            ).fetchone()
        return None if row is None else int(row["uid"])

    def list_watermarks(self) -> list[Watermark]:
        with self._connection() as conn, _storage_errors("list watermarks"):
            rows = conn.execute(
                "SELECT account, mailbox, uid FROM last_seen_msg ORDER BY account, mailbox"
            ).fetchall()
        return [Watermark(r["account"], r["mailbox"], int(r["uid"])) for r in rows]

    # -- messages -------------------------------------------------------------

    def ingest(self, msg_hash: str, raw: bytes) -> bool:
        """
        Store one message with its parsed headers and body in one transaction.

        Idempotent: existing rows are left alone. Header or body extraction
        failures are logged and do not prevent the message row from being
        written. Returns True if the message row is new.
        """
        headers: list[tuple[str, str]] = []
        body: str | None = None
        try:
            headers = parse_headers(raw)
        except ParseError as exc:
            logger.warning("Message %s: %s", msg_hash, exc)
        try:
            body = extract_body_text(raw)
        except ParseError as exc:
            logger.warning("Message %s: %s", msg_hash, exc)

        with self._connection() as conn, _storage_errors(f"ingest {msg_hash}"):
            with _write_transaction(conn):
                cur = conn.execute(
                    "INSERT OR IGNORE INTO messages (hash, raw) VALUES (?, ?)",
                    (msg_hash, raw),
                )
                created = cur.rowcount == 1
                conn.executemany(
                    "INSERT OR IGNORE INTO headers (msg_hash, name, value) VALUES (?, ?, ?)",
                    [(msg_hash, name, value) for name, value in headers],
                )
                if body is not None:
                    conn.execute(
                        "INSERT OR IGNORE INTO bodies (msg_hash, text) VALUES (?, ?)",
                        (msg_hash, body),
                    )
        return created

    def has_message(self, msg_hash: str) -> bool:
        with self._connection() as conn, _storage_errors("lookup message"):
            row = conn.execute("SELECT 1 FROM messages WHERE hash = ?", (msg_hash,)).fetchone()
        return row is not None

    def count_messages(self) -> int:
        with self._connection() as conn, _storage_errors("count messages"):
            (count,) = conn.execute("SELECT count(*) FROM messages").fetchone()
        return int(count)

    def fetch_all_messages(self) -> Iterator[Message]:
        """
        Lazily yield every stored message.

        Each call starts a fresh scan and holds one pooled connection until
        the iterator is exhausted or closed. After a storage fault the scan
        cannot be resumed; call again from the top.
        """
        with self._connection() as conn, _storage_errors("read messages"):
            for row in conn.execute("SELECT hash, raw FROM messages ORDER BY hash"):
                yield Message(row["hash"], bytes(row["raw"]))

    def fetch_headers(self, msg_hash: str) -> list[Header]:
        with self._connection() as conn, _storage_errors("fetch headers"):
            rows = conn.execute(
                "SELECT msg_hash, name, value FROM headers WHERE msg_hash = ? ORDER BY rowid",
                (msg_hash,),
            ).fetchall()
        return [Header(r["msg_hash"], r["name"], r["value"]) for r in rows]

    def fetch_body(self, msg_hash: str) -> Body | None:
        with self._connection() as conn, _storage_errors("fetch body"):
            row = conn.execute(
                "SELECT msg_hash, text FROM bodies WHERE msg_hash = ?", (msg_hash,)
            ).fetchone()
        return None if row is None else Body(row["msg_hash"], row["text"])
