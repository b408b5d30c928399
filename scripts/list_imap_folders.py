#!/usr/bin/env python3
"""List all mailboxes of an account with their watermark. Use to pick ignore_mailboxes."""

from __future__ import annotations

import sys
from pathlib import Path

from archive_errors import ArchiveError
from config_loader import Settings, load_account_config
from content_store import ContentStore
from mail_session import MailSession

PROJECT_ROOT = Path(__file__).resolve().parent.parent


def main(argv: list[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    if len(args) < 1:
        print("Usage: python list_imap_folders.py <account>", file=sys.stderr)
        print("  e.g. list_imap_folders.py work-imap", file=sys.stderr)
        return 1

    settings = Settings.from_env(PROJECT_ROOT)
    name = args[0].removesuffix(".yml")
    config_path = settings.config_dir / f"{name}.yml"
    if not config_path.exists():
        print(f"Config not found: {config_path}", file=sys.stderr)
        return 1

    account = load_account_config(config_path)
    if account is None:
        return 1

    print(f"Connecting to {account.host} as {account.user}...")
    try:
        with MailSession.connect(account) as session:
            mailboxes = sorted(session.list_mailboxes(), key=str.lower)
        with ContentStore(settings.db_path, pool_size=1) as store:
            marks = {m: store.get_watermark(account.name, m) for m in mailboxes}
    except ArchiveError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(f"\nFound {len(mailboxes)} mailboxes:\n")
    for mailbox in mailboxes:
        note = " (ignored)" if mailbox in account.ignore_mailboxes else ""
        mark = marks[mailbox]
        seen = f"last uid {mark}" if mark is not None else "never synced"
        print(f"  {mailbox}{note}")
        print(f"    {seen}")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
