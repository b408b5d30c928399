"""Shared fixtures: a temporary archive and an in-memory stand-in for IMAPClient."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest
from imapclient.exceptions import IMAPClientError, LoginError

import mail_session
from config_loader import ImapAccount
from content_store import ContentStore


def make_raw(subject: str, body: str = "hello", sender: str = "alice@example.com") -> bytes:
    """Small RFC 822 message; distinct subjects give distinct bytes."""
    return (
        f"From: {sender}\r\n"
        f"To: bob@example.com\r\n"
        f"Subject: {subject}\r\n"
        f"Date: Tue, 14 Jan 2025 10:00:00 +0000\r\n"
        f"\r\n"
        f"{body}\r\n"
    ).encode()


def make_account(name: str = "work", host: str = "imap.example.com", **kwargs: Any) -> ImapAccount:
    return ImapAccount(name=name, host=host, user=f"{name}@example.com", password="secret", **kwargs)


@dataclass
class FakeServer:
    """Mailbox contents and failure switches for one fake host."""

    password: str = "secret"
    folders: dict[str, list[tuple[int, bytes]]] = field(default_factory=dict)
    list_entries: list[Any] | None = None
    connect_error: BaseException | None = None
    fetch_errors: dict[str, BaseException] = field(default_factory=dict)
    missing_body: set[int] = field(default_factory=set)
    unsolicited: dict[int, dict[bytes, Any]] = field(default_factory=dict)
    calls: list[tuple[str, Any]] = field(default_factory=list)

    def add(self, folder: str, uid: int, raw: bytes) -> None:
        self.folders.setdefault(folder, []).append((uid, raw))


class FakeIMAPClient:
    """Implements just the IMAPClient calls MailSession makes."""

    servers: dict[str, FakeServer] = {}

    def __init__(self, host: str, port: int | None = None, ssl: bool = True,
                 ssl_context: Any = None, timeout: Any = None) -> None:
        if host not in self.servers:
            raise ConnectionRefusedError(f"cannot reach {host}")
        self.server = self.servers[host]
        self.server.calls.append(("connect", (host, port, ssl, timeout)))
        if self.server.connect_error is not None:
            raise self.server.connect_error
        self.selected: str | None = None

    def starttls(self, ssl_context: Any = None) -> None:
        self.server.calls.append(("starttls", None))

    def login(self, user: str, password: str) -> bytes:
        self.server.calls.append(("login", user))
        if password != self.server.password:
            raise LoginError("[AUTHENTICATIONFAILED] Invalid credentials")
        return b"LOGIN completed"

    def capabilities(self) -> tuple[bytes, ...]:
        return (b"IMAP4REV1", b"IDLE", b"UIDPLUS")

    def list_folders(self) -> list[Any]:
        self.server.calls.append(("list", None))
        if self.server.list_entries is not None:
            return self.server.list_entries
        return [((b"\\HasNoChildren",), b"/", name) for name in self.server.folders]

    def select_folder(self, folder: str, readonly: bool = False) -> dict[bytes, Any]:
        self.server.calls.append(("select", folder))
        if folder not in self.server.folders:
            raise IMAPClientError(f"select failed: [NONEXISTENT] {folder}")
        self.selected = folder
        return {b"EXISTS": len(self.server.folders[folder]), b"UIDVALIDITY": 42}

    def search(self, criteria: str) -> list[int]:
        self.server.calls.append(("search", criteria))
        start = int(criteria.split()[1].split(":")[0])
        uids = [uid for uid, _raw in self.server.folders[self.selected]]
        found = [uid for uid in uids if uid >= start]
        if not found and uids:
            # IMAP: "n:*" includes the highest UID even if it is below n.
            found = [max(uids)]
        return found

    def fetch(self, uids: list[int], data: list[str]) -> dict[int, dict[bytes, Any]]:
        self.server.calls.append(("fetch", list(uids)))
        if self.selected in self.server.fetch_errors:
            raise self.server.fetch_errors[self.selected]
        messages = self.server.folders[self.selected]
        out: dict[int, dict[bytes, Any]] = {}
        for seq, (uid, raw) in enumerate(messages, start=1):
            if uid not in uids:
                continue
            entry: dict[bytes, Any] = {b"SEQ": seq}
            if uid not in self.server.missing_body:
                entry[b"RFC822"] = raw
            out[uid] = entry
        out.update(self.server.unsolicited)
        return out

    def logout(self) -> bytes:
        self.server.calls.append(("logout", None))
        return b"BYE"

    def shutdown(self) -> None:
        self.server.calls.append(("shutdown", None))


@pytest.fixture
def imap_servers(monkeypatch: pytest.MonkeyPatch) -> dict[str, FakeServer]:
    """Route MailSession to fake servers; register one per host in the returned dict."""
    servers: dict[str, FakeServer] = {}
    fake_cls = type("BoundFakeIMAPClient", (FakeIMAPClient,), {"servers": servers})
    monkeypatch.setattr(mail_session, "IMAPClient", fake_cls)
    return servers


@pytest.fixture
def store(tmp_path: Path):
    with ContentStore(tmp_path / "db" / "archive.db", pool_size=4) as s:
        yield s
