"""Shared utilities for raw RFC 822 message handling."""

from __future__ import annotations

import email.utils
import gzip
import hashlib
import os
from datetime import datetime, timezone
from email import policy
from email.parser import BytesParser
from pathlib import Path

from archive_errors import ParseError

EML_GZ_SUFFIX = ".eml.gz"


def content_hash(raw: bytes) -> str:
    """SHA-256 of the raw message bytes as lower-case hex."""
    return hashlib.sha256(raw).hexdigest()


def _clean_text(text: str) -> str:
    """Make parser output safe to store as UTF-8 text."""
    try:
        text.encode("utf-8")
        return text
    except UnicodeEncodeError:
        pass
    try:
        # Undecodable header bytes come back as surrogate escapes.
        return text.encode("utf-8", "surrogateescape").decode("utf-8", "replace")
    except UnicodeEncodeError:
        return text.encode("utf-8", "replace").decode("utf-8")


def parse_headers(raw: bytes) -> list[tuple[str, str]]:
    """
    Parse the header block of a raw message.

    Returns (name, value) pairs in message order, with encoded words and
    folding already decoded. Repeated names are all kept. A header whose
    value cannot be decoded is kept with its raw folded text.
    """
    try:
        msg = BytesParser(policy=policy.default).parsebytes(raw, headersonly=True)
        fields = msg.raw_items()
    except Exception as exc:
        raise ParseError(f"cannot parse headers: {exc}") from exc

    headers: list[tuple[str, str]] = []
    for name, raw_value in fields:
        try:
            value = str(msg.policy.header_fetch_parse(name, raw_value))
        except Exception:
            value = str(raw_value).replace("\r", "").replace("\n", "")
        headers.append((_clean_text(name), _clean_text(value)))
    return headers


def extract_body_text(raw: bytes) -> str | None:
    """Return the preferred text/plain body of a message, or None if it has none."""
    try:
        msg = BytesParser(policy=policy.default).parsebytes(raw)
        part = msg.get_body(preferencelist=("plain",))
        if part is None:
            return None
        text = part.get_content()
    except Exception as exc:
        raise ParseError(f"cannot extract body: {exc}") from exc
    if not isinstance(text, str):
        return None
    return _clean_text(text)


def _date_header_to_str(val: object) -> str:
    """Convert Date header value to string (handles Header objects)."""
    if val is None:
        return ""
    s = str(val).replace("\n", " ").replace("\r", "").strip()
    return s


def parse_date_from_bytes(raw: bytes) -> datetime | None:
    """Extract Date from message headers as UTC, None when missing or unparsable."""
    msg = email.message_from_bytes(raw)
    date_str = _date_header_to_str(msg.get("Date"))
    if not date_str:
        return None
    try:
        parsed = email.utils.parsedate_to_datetime(date_str)
    except (TypeError, ValueError, AttributeError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def set_file_received_time(filepath: Path, received_at: datetime) -> None:
    """Set file mtime/atime to the message's Date timestamp."""
    try:
        ts = received_at.timestamp()
        os.utime(filepath, (ts, ts))
    except OSError:
        pass  # May fail in restricted environments (e.g. sandbox)


def read_gz(path: Path) -> bytes:
    """Read and decompress a gzip file."""
    with gzip.open(path, "rb") as f:
        return f.read()


def write_gz(path: Path, data: bytes) -> None:
    """Write `data` gzip-compressed to `path`, creating parent dirs."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".part")
    with gzip.open(tmp, "wb") as f:
        f.write(data)
    tmp.replace(path)


def object_path(obj_dir: Path, digest: str) -> Path:
    """Location of a message in the sharded export tree: <dir>/ab/abcd….eml.gz."""
    return obj_dir / digest[:2] / f"{digest}{EML_GZ_SUFFIX}"
