"""Error taxonomy shared by the sync, ingest and storage layers."""

from __future__ import annotations


class ArchiveError(Exception):
    """Base class for every error raised on purpose by this project."""


class MailError(ArchiveError):
    """Anything that went wrong talking to the mail server."""


class TransportError(MailError):
    """Network I/O failure (connect, read, write, timeout)."""


class HandshakeError(MailError):
    """TLS handshake or certificate verification failure."""


class AuthenticationError(MailError):
    """The server rejected the credentials."""


class ProtocolError(MailError):
    """Malformed or unexpected response from the server."""


class SessionStateError(MailError):
    """A session method was called in a state that does not allow it."""


class InvalidInputError(ArchiveError, ValueError):
    """Caller passed an argument that can never be valid."""


class ParseError(ArchiveError):
    """Header or body extraction failed on an already fetched message."""


class StorageError(ArchiveError):
    """The durable store failed to read or write."""


class StreamConsumedError(ArchiveError, RuntimeError):
    """A single-pass stream was iterated a second time."""


class ConfigError(ArchiveError):
    """Account or environment configuration is invalid."""
