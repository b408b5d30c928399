"""Tests for :class:`MailSession` against a fake IMAPClient."""

from __future__ import annotations

import ssl

import pytest
from conftest import FakeServer, make_account, make_raw
from imapclient.exceptions import IMAPClientAbortError, IMAPClientError

from archive_errors import (
    AuthenticationError,
    HandshakeError,
    InvalidInputError,
    ProtocolError,
    SessionStateError,
    StreamConsumedError,
    TransportError,
)
from mail_session import FETCH_BATCH_SIZE, MailSession, SessionState

HOST = "imap.example.com"


@pytest.fixture
def server(imap_servers: dict[str, FakeServer]) -> FakeServer:
    srv = FakeServer()
    for uid in (1, 3, 5, 7):
        srv.add("INBOX", uid, make_raw(f"msg {uid}"))
    imap_servers[HOST] = srv
    return srv


def _names(server: FakeServer) -> list[str]:
    return [name for name, _ in server.calls]


def test_connect_logs_in(server: FakeServer) -> None:
    session = MailSession.connect(make_account(timeout=12.5))
    assert session.state is SessionState.AUTHENTICATED
    assert _names(server) == ["connect", "login"]
    assert server.calls[0][1] == (HOST, 993, True, 12.5)


def test_starttls_when_plain_connection(server: FakeServer) -> None:
    MailSession.connect(make_account(ssl=False, starttls=True, port=143))
    assert _names(server) == ["connect", "starttls", "login"]


def test_bad_credentials_raise_authentication_error(server: FakeServer) -> None:
    server.password = "other"
    with pytest.raises(AuthenticationError):
        MailSession.connect(make_account())
    assert _names(server)[-1] == "shutdown"


def test_unreachable_host_raises_transport_error(imap_servers: dict[str, FakeServer]) -> None:
    with pytest.raises(TransportError):
        MailSession.connect(make_account(host="nowhere.invalid"))


def test_tls_failure_raises_handshake_error(server: FakeServer) -> None:
    server.connect_error = ssl.SSLCertVerificationError("certificate verify failed")
    with pytest.raises(HandshakeError):
        MailSession.connect(make_account())


def test_list_mailboxes_skips_malformed_and_noselect(server: FakeServer) -> None:
    server.list_entries = [
        ((b"\\HasNoChildren",), b"/", "INBOX"),
        "garbage",
        "abc",
        ((b"\\Noselect", b"\\HasChildren"), b"/", "[Gmail]"),
        ((), b"/", ""),
        ((b"\\HasNoChildren",), b"/", "[Gmail]/Sent Mail"),
        ((b"\\HasNoChildren",), b"/", b"Archive"),
    ]
    session = MailSession.connect(make_account())
    assert list(session.list_mailboxes()) == ["INBOX", "[Gmail]/Sent Mail", "Archive"]


def test_examine_returns_metadata(server: FakeServer) -> None:
    session = MailSession.connect(make_account())
    meta = session.examine("INBOX")
    assert meta.exists == 4
    assert meta.uid_validity == 42
    assert session.state is SessionState.SELECTED
    assert session.selected == "INBOX"


def test_examine_unknown_mailbox_raises_protocol_error(server: FakeServer) -> None:
    session = MailSession.connect(make_account())
    with pytest.raises(ProtocolError):
        session.examine("Nope")
    assert session.state is SessionState.AUTHENTICATED


def test_fetch_range_rejects_zero_before_network(server: FakeServer) -> None:
    session = MailSession.connect(make_account())
    before = list(server.calls)
    with pytest.raises(InvalidInputError):
        session.fetch_range("INBOX", 0)
    assert server.calls == before


def test_fetch_range_from_five(server: FakeServer) -> None:
    session = MailSession.connect(make_account())
    meta, stream = session.fetch_range("INBOX", 5)
    assert meta.exists == 4
    fetched = list(stream)
    assert [m.uid for m in fetched] == [5, 7]
    assert [m.seq for m in fetched] == [3, 4]
    assert fetched[0].raw == make_raw("msg 5")


def test_fetch_range_without_start_yields_everything(server: FakeServer) -> None:
    session = MailSession.connect(make_account())
    _meta, stream = session.fetch_range("INBOX")
    assert [m.uid for m in stream] == [1, 3, 5, 7]


def test_fetch_range_past_highest_uid_is_empty(server: FakeServer) -> None:
    session = MailSession.connect(make_account())
    _meta, stream = session.fetch_range("INBOX", 8)
    assert list(stream) == []


def test_entries_without_body_or_uid_are_dropped(server: FakeServer) -> None:
    server.missing_body = {3}
    server.unsolicited = {99: {b"SEQ": 9, b"FLAGS": (b"\\Seen",)}}
    session = MailSession.connect(make_account())
    _meta, stream = session.fetch_range("INBOX")
    assert [m.uid for m in stream] == [1, 5, 7]


def test_stream_is_single_pass(server: FakeServer) -> None:
    session = MailSession.connect(make_account())
    _meta, stream = session.fetch_range("INBOX")
    assert len(list(stream)) == 4
    with pytest.raises(StreamConsumedError):
        iter(stream)


def test_stream_fetches_lazily_in_batches(imap_servers: dict[str, FakeServer]) -> None:
    srv = FakeServer()
    total = FETCH_BATCH_SIZE * 2 + 50
    for uid in range(1, total + 1):
        srv.add("INBOX", uid, make_raw(f"bulk {uid}"))
    imap_servers[HOST] = srv

    session = MailSession.connect(make_account())
    _meta, stream = session.fetch_range("INBOX")
    assert "fetch" not in _names(srv)

    first = next(stream)
    assert first.uid == 1
    assert _names(srv).count("fetch") == 1

    rest = list(stream)
    assert len(rest) == total - 1
    fetches = [args for name, args in srv.calls if name == "fetch"]
    assert [len(batch) for batch in fetches] == [FETCH_BATCH_SIZE, FETCH_BATCH_SIZE, 50]


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (IMAPClientError("FETCH failed"), ProtocolError),
        (IMAPClientAbortError("socket error: EOF"), TransportError),
        (TimeoutError("timed out"), TransportError),
    ],
)
def test_fetch_errors_surface_while_iterating(server: FakeServer, error: Exception, expected: type) -> None:
    server.fetch_errors["INBOX"] = error
    session = MailSession.connect(make_account())
    _meta, stream = session.fetch_range("INBOX")
    with pytest.raises(expected):
        list(stream)


def test_close_logs_out_and_blocks_further_use(server: FakeServer) -> None:
    session = MailSession.connect(make_account())
    session.close()
    assert session.state is SessionState.CLOSED
    assert _names(server)[-1] == "logout"
    with pytest.raises(SessionStateError):
        session.examine("INBOX")
    session.close()
    assert _names(server).count("logout") == 1


def test_context_manager_swallows_teardown_errors(server: FakeServer, monkeypatch: pytest.MonkeyPatch) -> None:
    session = MailSession.connect(make_account())

    def broken_logout() -> None:
        raise OSError("connection reset")

    monkeypatch.setattr(session._client, "logout", broken_logout)
    with session:
        pass
    assert session.state is SessionState.CLOSED
